"""Message deletion log.

A deletion is recorded as one or more half-open sequence ranges [low, hi)
under a single ``del_id`` allocated from the topic row. Ranges deleted for
everyone (``deleted_for = 0``) also blank the affected message rows; ranges
deleted for one user only live here and are applied when that user lists
messages.

A single-message range may be written as ``(low, 0)`` or ``(low, low + 1)``.
It is stored in the second form and read back in the first, so both spellings
are indistinguishable to readers.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, NamedTuple

from .db import clamp_limit, get_conn, rows_to_dicts, transaction
from .errors import MalformedError, NotFoundError
from .types import now_iso
from .uid import ZERO_UID, encode_uid, require_uid

logger = logging.getLogger(__name__)


class SeqRange(NamedTuple):
    """Half-open range of message sequence ids. ``hi == 0`` means just ``low``."""

    low: int
    hi: int = 0


def check_range(rng: SeqRange) -> SeqRange:
    low, hi = rng
    if low < 1 or (hi != 0 and hi <= low):
        raise MalformedError(f"Invalid sequence range [{low}, {hi})")
    return SeqRange(low, hi)


def normalize_for_write(rng: SeqRange) -> SeqRange:
    low, hi = rng
    return SeqRange(low, low + 1 if hi == 0 else hi)


def normalize_for_read(rng: SeqRange) -> SeqRange:
    low, hi = rng
    return SeqRange(low, 0 if hi <= low + 1 else hi)


def record_deletion(
    conn: Any,
    topic: str,
    deleted_for: int,
    del_id: int,
    ranges: Iterable[SeqRange],
) -> None:
    """Insert one log row per range, exactly as given and in the given order.

    Overlapping or unsorted ranges are not merged.
    """
    for rng in ranges:
        low, hi = normalize_for_write(rng)
        conn.execute(
            "INSERT INTO dellog (topic, deleted_for, del_id, low, hi) VALUES (?, ?, ?, ?, ?)",
            (topic, deleted_for, del_id, low, hi),
        )


def _next_del_id(conn: Any, topic: str) -> int:
    cursor = conn.execute("UPDATE topics SET del_id = del_id + 1 WHERE name = ?", (topic,))
    if cursor.rowcount == 0:
        raise NotFoundError(f"Topic not found: {topic}")
    cursor = conn.execute("SELECT del_id FROM topics WHERE name = ?", (topic,))
    return cursor.fetchone()[0]


def _blank_messages(conn: Any, topic: str, del_id: int, ranges: list[SeqRange]) -> int:
    """Clear content of messages in ``ranges`` for everyone. Returns rows touched."""
    now = now_iso()
    touched = 0
    for rng in ranges:
        low, hi = normalize_for_write(rng)
        conn.execute(
            """
            DELETE FROM filemsglinks WHERE msg_id IN (
                SELECT id FROM messages
                WHERE topic = ? AND seq_id >= ? AND seq_id < ? AND deleted_at IS NULL
            )
            """,
            (topic, low, hi),
        )
        cursor = conn.execute(
            """
            UPDATE messages
            SET deleted_at = ?, updated_at = ?, del_id = ?, head = NULL, content = NULL
            WHERE topic = ? AND seq_id >= ? AND seq_id < ? AND deleted_at IS NULL
            """,
            (now, now, del_id, topic, low, hi),
        )
        touched += cursor.rowcount
    return touched


def delete_messages(
    topic: str,
    ranges: Iterable[SeqRange | tuple[int, int]],
    deleted_for: str | None = None,
    conn: Any | None = None,
) -> dict | None:
    """Delete message ranges for everyone, or only for ``deleted_for``.

    An empty range list does nothing and returns None. Otherwise returns the
    deletion event: topic, allocated del_id, deleted_for and the ranges.

    Raises:
        MalformedError: a range is invalid or deleted_for is not a user id.
        NotFoundError: the topic does not exist.
    """
    ranges = [check_range(SeqRange(*rng)) for rng in ranges]
    if not ranges:
        return None
    for_user = require_uid(deleted_for, "user id") if deleted_for else ZERO_UID

    conn = get_conn(conn)
    with transaction(conn):
        del_id = _next_del_id(conn, topic)
        record_deletion(conn, topic, for_user, del_id, ranges)
        if for_user == ZERO_UID:
            touched = _blank_messages(conn, topic, del_id, ranges)
            logger.debug(f"Deleted {touched} messages in {topic} (del_id={del_id})")
        else:
            conn.execute(
                "UPDATE subscriptions SET del_id = MAX(del_id, ?), updated_at = ? "
                "WHERE topic = ? AND user_id = ?",
                (del_id, now_iso(), topic, for_user),
            )

    return {
        "topic": topic,
        "del_id": del_id,
        "deleted_for": deleted_for or "",
        "ranges": ranges,
    }


def delete_all_messages(conn: Any, topic: str) -> None:
    """Remove every message and log row of a topic. File links cascade."""
    conn.execute("DELETE FROM dellog WHERE topic = ?", (topic,))
    conn.execute("DELETE FROM messages WHERE topic = ?", (topic,))


def get_deleted(
    topic: str,
    for_user: str | None,
    since: int = 0,
    before: int = 0,
    limit: int | None = None,
    conn: Any | None = None,
) -> list[dict]:
    """Deletion events visible to ``for_user`` with del_id in [since, before).

    ``before == 0`` means no upper bound. Events deleted for everyone are
    always included. Rows sharing a del_id form one event; the limit applies
    to log rows.
    """
    user = require_uid(for_user, "user id") if for_user else ZERO_UID
    conn = get_conn(conn)

    sql = """
        SELECT topic, deleted_for, del_id, low, hi FROM dellog
        WHERE topic = ? AND deleted_for IN (0, ?) AND del_id >= ?
    """
    args: list[Any] = [topic, user, since]
    if before > 0:
        sql += " AND del_id < ?"
        args.append(before)
    sql += " ORDER BY del_id, id LIMIT ?"
    args.append(clamp_limit(limit))

    cursor = conn.execute(sql, args)
    rows = rows_to_dicts(cursor.description, cursor.fetchall())

    events: list[dict] = []
    for row in rows:
        if not events or events[-1]["del_id"] != row["del_id"]:
            events.append(
                {
                    "topic": row["topic"],
                    "del_id": row["del_id"],
                    "deleted_for": encode_uid(row["deleted_for"]),
                    "ranges": [],
                }
            )
        events[-1]["ranges"].append(normalize_for_read(SeqRange(row["low"], row["hi"])))
    return events
