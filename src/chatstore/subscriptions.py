"""Subscriptions: one user attached to one topic.

A subscription carries the access mode the user wants and the mode the topic
grants, the user's private view of the topic and the read/receive
watermarks. Unsubscribing stamps ``deleted_at``; subscribing again revives
the same row, since (topic, user) is unique.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from .db import clamp_limit, get_conn, row_to_dict, rows_to_dicts, transaction
from .errors import NotFoundError, is_dupe
from .types import AccessMode, UpdateField, build_update, from_json, lifecycle_of, now_iso, to_iso, to_json
from .uid import encode_uid, require_uid

logger = logging.getLogger(__name__)

SUB_COLUMNS = (
    "created_at, updated_at, deleted_at, user_id, topic, del_id, recv_seq_id, "
    "read_seq_id, mode_want, mode_given, private, last_seen, user_agent"
)

SUBSCRIPTION_FIELDS = {
    "mode_want": UpdateField("mode_want", mode=True),
    "mode_given": UpdateField("mode_given", mode=True),
    "private": UpdateField("private", json_encoded=True),
    "recv_seq_id": UpdateField("recv_seq_id", monotonic=True),
    "read_seq_id": UpdateField("read_seq_id", monotonic=True),
    "del_id": UpdateField("del_id", monotonic=True),
    "updated_at": UpdateField("updated_at", timestamp=True),
}


@dataclass
class NewSubscription:
    """Input for creating (or reviving) a subscription."""

    user: str
    mode_want: AccessMode | str = AccessMode.NONE
    mode_given: AccessMode | str = AccessMode.NONE
    private: Any = None
    topic: str = ""

    def is_owner(self) -> bool:
        """Ownership requires both sides to agree on the owner bit."""
        return (AccessMode.parse(self.mode_want) & AccessMode.parse(self.mode_given)).is_owner()


def to_subscription(row: dict) -> dict:
    """Shape a subscriptions row for callers."""
    row["user"] = encode_uid(row.pop("user_id"))
    row["private"] = from_json(row["private"])
    row["lifecycle"] = lifecycle_of(row)
    return row


def create_subscription(
    sub: NewSubscription,
    undelete: bool = False,
    conn: Any | None = None,
) -> None:
    """Insert a subscription, or revive the existing (topic, user) row.

    When reviving with ``undelete`` only the granted mode is refreshed; the
    user's wanted mode and private data survive. Otherwise both modes and the
    private data are overwritten. A subscription that is owner on both sides
    makes its user the topic owner.
    """
    user_id = require_uid(sub.user, "user id")
    want = str(AccessMode.parse(sub.mode_want))
    given = str(AccessMode.parse(sub.mode_given))
    private = to_json(sub.private)
    now = now_iso()

    conn = get_conn(conn)
    with transaction(conn):
        try:
            conn.execute(
                """
                INSERT INTO subscriptions
                    (created_at, updated_at, deleted_at, user_id, topic, mode_want, mode_given, private)
                VALUES (?, ?, NULL, ?, ?, ?, ?, ?)
                """,
                (now, now, user_id, sub.topic, want, given, private),
            )
        except Exception as e:
            if not is_dupe(e):
                raise
            if undelete:
                conn.execute(
                    "UPDATE subscriptions SET created_at = ?, updated_at = ?, deleted_at = NULL, "
                    "mode_given = ? WHERE topic = ? AND user_id = ?",
                    (now, now, given, sub.topic, user_id),
                )
            else:
                conn.execute(
                    "UPDATE subscriptions SET created_at = ?, updated_at = ?, deleted_at = NULL, "
                    "mode_want = ?, mode_given = ?, private = ? WHERE topic = ? AND user_id = ?",
                    (now, now, want, given, private, sub.topic, user_id),
                )

        if sub.is_owner():
            conn.execute("UPDATE topics SET owner = ? WHERE name = ?", (user_id, sub.topic))


def subscription_get(
    topic: str,
    user: str,
    keep_deleted: bool = False,
    conn: Any | None = None,
) -> dict | None:
    user_id = require_uid(user, "user id")
    conn = get_conn(conn)
    cursor = conn.execute(
        f"SELECT {SUB_COLUMNS} FROM subscriptions WHERE topic = ? AND user_id = ?",
        (topic, user_id),
    )
    row = row_to_dict(cursor.description, cursor.fetchone())
    if row is None or (row["deleted_at"] is not None and not keep_deleted):
        return None
    return to_subscription(row)


def subs_last_seen(
    topic: str,
    user: str,
    last_seen: datetime | str | None = None,
    user_agent: str = "",
    conn: Any | None = None,
) -> None:
    """Record when and with which client the user last attached to the topic."""
    user_id = require_uid(user, "user id")
    conn = get_conn(conn)
    with transaction(conn):
        conn.execute(
            "UPDATE subscriptions SET last_seen = ?, user_agent = ? WHERE topic = ? AND user_id = ?",
            (to_iso(last_seen) or now_iso(), user_agent, topic, user_id),
        )


def subs_for_user(
    uid: str,
    keep_deleted: bool = False,
    topic: str | None = None,
    limit: int | None = None,
    conn: Any | None = None,
) -> list[dict]:
    """Subscriptions of one user. Public profiles are not loaded."""
    user_id = require_uid(uid, "user id")
    conn = get_conn(conn)

    sql = f"SELECT {SUB_COLUMNS} FROM subscriptions WHERE user_id = ?"
    args: list[Any] = [user_id]
    if not keep_deleted:
        sql += " AND deleted_at IS NULL"
    if topic:
        sql += " AND topic = ?"
        args.append(topic)
    sql += " ORDER BY id LIMIT ?"
    args.append(clamp_limit(limit))

    cursor = conn.execute(sql, args)
    return [to_subscription(row) for row in rows_to_dicts(cursor.description, cursor.fetchall())]


def subs_for_topic(
    topic: str,
    keep_deleted: bool = False,
    user: str | None = None,
    limit: int | None = None,
    conn: Any | None = None,
) -> list[dict]:
    """Subscriptions to one topic. Public profiles are not loaded."""
    conn = get_conn(conn)

    sql = f"SELECT {SUB_COLUMNS} FROM subscriptions WHERE topic = ?"
    args: list[Any] = [topic]
    if not keep_deleted:
        sql += " AND deleted_at IS NULL"
    if user:
        sql += " AND user_id = ?"
        args.append(require_uid(user, "user id"))
    sql += " ORDER BY id LIMIT ?"
    args.append(clamp_limit(limit))

    cursor = conn.execute(sql, args)
    return [to_subscription(row) for row in rows_to_dicts(cursor.description, cursor.fetchall())]


def subs_update(
    topic: str,
    user: str | None,
    update: dict[str, Any],
    conn: Any | None = None,
) -> int:
    """Update one user's subscription, or every subscription when ``user`` is None.

    Read, receive and delete watermarks never move backwards. Returns the
    number of rows updated.
    """
    assignments, args, _ = build_update(SUBSCRIPTION_FIELDS, update)
    if "updated_at" not in update:
        assignments.append("updated_at = ?")
        args.append(now_iso())

    sql = "UPDATE subscriptions SET " + ", ".join(assignments) + " WHERE topic = ?"
    args.append(topic)
    if user:
        sql += " AND user_id = ?"
        args.append(require_uid(user, "user id"))

    conn = get_conn(conn)
    with transaction(conn):
        cursor = conn.execute(sql, args)
    return cursor.rowcount


def subs_delete(topic: str, user: str, conn: Any | None = None) -> None:
    """Soft-delete one active subscription.

    Raises:
        NotFoundError: no active subscription of ``user`` to ``topic``.
    """
    user_id = require_uid(user, "user id")
    now = now_iso()
    conn = get_conn(conn)
    with transaction(conn):
        cursor = conn.execute(
            "UPDATE subscriptions SET updated_at = ?, deleted_at = ? "
            "WHERE topic = ? AND user_id = ? AND deleted_at IS NULL",
            (now, now, topic, user_id),
        )
        if cursor.rowcount == 0:
            raise NotFoundError(f"No subscription of {user} to {topic}")


def delete_subs_for_topic(conn: Any, topic: str, hard: bool) -> None:
    if hard:
        conn.execute("DELETE FROM subscriptions WHERE topic = ?", (topic,))
    else:
        now = now_iso()
        conn.execute(
            "UPDATE subscriptions SET updated_at = ?, deleted_at = ? "
            "WHERE topic = ? AND deleted_at IS NULL",
            (now, now, topic),
        )


def delete_subs_for_user(conn: Any, user_id: int, hard: bool) -> None:
    if hard:
        conn.execute("DELETE FROM subscriptions WHERE user_id = ?", (user_id,))
    else:
        now = now_iso()
        conn.execute(
            "UPDATE subscriptions SET updated_at = ?, deleted_at = ? "
            "WHERE user_id = ? AND deleted_at IS NULL",
            (now, now, user_id),
        )


def subs_del_for_topic(topic: str, hard: bool = False, conn: Any | None = None) -> None:
    """Delete every subscription to a topic."""
    conn = get_conn(conn)
    with transaction(conn):
        delete_subs_for_topic(conn, topic, hard)


def subs_del_for_user(uid: str, hard: bool = False, conn: Any | None = None) -> None:
    """Delete every subscription of a user."""
    user_id = require_uid(uid, "user id")
    conn = get_conn(conn)
    with transaction(conn):
        delete_subs_for_user(conn, user_id, hard)
