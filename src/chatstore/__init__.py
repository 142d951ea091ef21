"""chatstore - persistence layer for a multi-user messaging service.

Usage:
    from chatstore import StoreOptions, db, users, topics, messages
    from chatstore.subscriptions import NewSubscription

    db.open_store(StoreOptions(dsn="chat.sqlite3"), init=True)

    alice = users.user_create(public={"fn": "Alice"})
    bob = users.user_create(public={"fn": "Bob"})

    name = topics.topic_create_p2p(
        NewSubscription(alice["id"], "JRWPS", "JRWPS"),
        NewSubscription(bob["id"], "JRWPS", "JRWPS"),
    )
    messages.message_save(name, alice["id"], content="Hello!")
    history = messages.get_messages(name, bob["id"])
"""

from chatstore._version import __version__
from chatstore.errors import (
    DuplicateError,
    MalformedError,
    NotFoundError,
    SchemaVersionError,
    StoreConfigError,
    StoreError,
)
from chatstore.options import StoreOptions
from chatstore.types import AccessMode, Lifecycle
from chatstore.uid import ZERO_UID, decode_uid, encode_uid

__all__ = [
    "__version__",
    "AccessMode",
    "DuplicateError",
    "Lifecycle",
    "MalformedError",
    "NotFoundError",
    "SchemaVersionError",
    "StoreConfigError",
    "StoreError",
    "StoreOptions",
    "ZERO_UID",
    "decode_uid",
    "encode_uid",
]
