"""Message store.

Sequence ids are allocated on the topic row inside the insert transaction,
so concurrent writers to one topic never reuse an id. Listing applies the
deletion log of the reading user in the same query.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable

from .db import clamp_limit, get_conn, placeholders, rows_to_dicts, transaction
from .dellog import SeqRange, delete_messages, get_deleted
from .errors import MalformedError, NotFoundError
from .metrics import timed_db_operation
from .types import Lifecycle, from_json, lifecycle_of, now_iso, to_json
from .uid import ZERO_UID, decode_uid, encode_uid, require_uid

__all__ = [
    "SeqRange",
    "delete_messages",
    "get_deleted",
    "get_messages",
    "message_attachments",
    "message_save",
]

logger = logging.getLogger(__name__)

MESSAGE_COLUMNS = (
    "m.id, m.created_at, m.updated_at, m.deleted_at, m.del_id, "
    "m.seq_id, m.topic, m.from_user, m.head, m.content"
)


def _to_message(row: dict) -> dict:
    row["id"] = encode_uid(row["id"])
    row["from"] = encode_uid(row.pop("from_user"))
    row["head"] = from_json(row["head"])
    row["content"] = from_json(row["content"])
    row["lifecycle"] = lifecycle_of(row)
    return row


def message_save(
    topic: str,
    from_user: str,
    head: Any = None,
    content: Any = None,
    conn: Any | None = None,
) -> dict:
    """Store a message under the topic's next sequence id.

    Raises:
        NotFoundError: the topic does not exist.
    """
    sender = require_uid(from_user, "sender id")
    now = now_iso()
    conn = get_conn(conn)

    with transaction(conn):
        cursor = conn.execute(
            "UPDATE topics SET seq_id = seq_id + 1, touched_at = ? WHERE name = ?", (now, topic)
        )
        if cursor.rowcount == 0:
            raise NotFoundError(f"Topic not found: {topic}")
        seq_id = conn.execute("SELECT seq_id FROM topics WHERE name = ?", (topic,)).fetchone()[0]

        cursor = conn.execute(
            "INSERT INTO messages (created_at, updated_at, seq_id, topic, from_user, head, content) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (now, now, seq_id, topic, sender, to_json(head), to_json(content)),
        )
        msg_id = cursor.lastrowid

    return {
        "id": encode_uid(msg_id),
        "created_at": now,
        "updated_at": now,
        "deleted_at": None,
        "del_id": 0,
        "seq_id": seq_id,
        "topic": topic,
        "from": from_user,
        "head": head,
        "content": content,
        "lifecycle": Lifecycle.ACTIVE,
    }


def get_messages(
    topic: str,
    for_user: str | None,
    since: int = 0,
    before: int = 0,
    limit: int | None = None,
    conn: Any | None = None,
) -> list[dict]:
    """Messages of a topic visible to ``for_user``, newest first.

    Only sequence ids in [since, before) are returned; ``before == 0`` means
    no upper bound. Messages deleted for everyone and ranges the user deleted
    for themselves are excluded.
    """
    user = require_uid(for_user, "user id") if for_user else ZERO_UID
    conn = get_conn(conn)

    sql = f"""
        SELECT {MESSAGE_COLUMNS}
        FROM messages AS m LEFT JOIN dellog AS d
            ON d.topic = m.topic AND m.seq_id >= d.low AND m.seq_id < d.hi AND d.deleted_for = ?
        WHERE m.del_id = 0 AND m.topic = ? AND m.seq_id >= ? AND d.deleted_for IS NULL
    """
    args: list[Any] = [user, topic, since]
    if before > 0:
        sql += " AND m.seq_id < ?"
        args.append(before)
    sql += " ORDER BY m.seq_id DESC LIMIT ?"
    args.append(clamp_limit(limit))

    with timed_db_operation("get_messages") as timer:
        cursor = conn.execute(sql, args)
        rows = rows_to_dicts(cursor.description, cursor.fetchall())
        timer.rows = len(rows)
    return [_to_message(row) for row in rows]


def message_attachments(msg_id: str, fids: Iterable[str], conn: Any | None = None) -> None:
    """Link uploaded files to a message and mark the uploads as in use.

    Raises:
        MalformedError: the list is empty or an id does not decode.
    """
    message = decode_uid(msg_id)
    if message == ZERO_UID:
        raise MalformedError(f"Malformed message id: {msg_id!r}")
    file_ids = []
    for fid in fids:
        file_id = decode_uid(fid)
        if file_id == ZERO_UID:
            raise MalformedError(f"Malformed file id: {fid!r}")
        file_ids.append(file_id)
    if not file_ids:
        raise MalformedError("No files to attach")

    now = now_iso()
    conn = get_conn(conn)
    with transaction(conn):
        for file_id in file_ids:
            conn.execute(
                "INSERT INTO filemsglinks (created_at, file_id, msg_id) VALUES (?, ?, ?)",
                (now, file_id, message),
            )
        conn.execute(
            f"UPDATE fileuploads SET updated_at = ? WHERE id IN ({placeholders(len(file_ids))})",
            (now, *file_ids),
        )
