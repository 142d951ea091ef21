"""Pytest fixtures for testing code built on chatstore.

Usage in conftest.py:
    pytest_plugins = ["chatstore.testing"]

Or import specific fixtures:
    from chatstore.testing import store_conn, two_users

Available fixtures:
    - store_conn: Private in-memory database with the schema created
    - two_users: Alice and Bob created in store_conn
"""

from __future__ import annotations

from typing import Any, Generator

import pytest

from . import db
from .users import user_create


@pytest.fixture
def store_conn() -> Generator[Any, None, None]:
    """Private in-memory connection with a fresh schema.

    Pass it as ``conn=`` to every store call. No cleanup needed - all data is
    ephemeral.

    Example:
        def test_something(store_conn):
            user = users.user_create(public={"fn": "Alice"}, conn=store_conn)
            ...
    """
    with db.scoped_connection(":memory:") as conn:
        db.init_db_with_conn(conn)
        yield conn


@pytest.fixture
def two_users(store_conn: Any) -> tuple[dict, dict]:
    """Two active users in store_conn.

    Returns:
        Tuple of (alice, bob) user dicts

    Example:
        def test_p2p(store_conn, two_users):
            alice, bob = two_users
            topics.topic_create_p2p(
                NewSubscription(alice["id"], "JRWPS", "JRWPS"),
                NewSubscription(bob["id"], "JRWPS", "JRWPS"),
                conn=store_conn,
            )
    """
    alice = user_create(public={"fn": "Alice"}, tags=["email:alice@example.com"], conn=store_conn)
    bob = user_create(public={"fn": "Bob"}, tags=["email:bob@example.com"], conn=store_conn)
    return alice, bob
