"""User store.

Users are soft-deleted by default: the row, the user's subscriptions, the
topics the user owns and their subscriptions are stamped with ``deleted_at``.
Hard deletion removes the user and everything that hangs off it. Messages the
user sent to topics owned by others stay.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Iterable

from .credentials import delete_credentials
from .db import get_conn, placeholders, row_to_dict, rows_to_dicts, transaction
from .devices import delete_devices
from .errors import NotFoundError
from .subscriptions import delete_subs_for_user
from .tags import add_tags, find_by_tags, list_tags, remove_tags, replace_tags, unique_tags
from .types import (
    Lifecycle,
    UpdateField,
    build_update,
    from_json,
    lifecycle_of,
    now_iso,
    to_iso,
    to_json,
)
from .uid import encode_uid, require_uid, user_topic

logger = logging.getLogger(__name__)

USER_COLUMNS = (
    "id, created_at, updated_at, deleted_at, state, access, last_seen, user_agent, public, tags"
)

USER_FIELDS = {
    "public": UpdateField("public", json_encoded=True),
    "access": UpdateField("access", json_encoded=True),
    "tags": UpdateField("tags", tags=True),
    "state": UpdateField("state"),
    "last_seen": UpdateField("last_seen", timestamp=True),
    "user_agent": UpdateField("user_agent"),
    "updated_at": UpdateField("updated_at", timestamp=True),
}


def _to_user(row: dict) -> dict:
    row["id"] = encode_uid(row["id"])
    row["access"] = from_json(row["access"])
    row["public"] = from_json(row["public"])
    row["tags"] = from_json(row["tags"]) or []
    row["lifecycle"] = lifecycle_of(row)
    return row


def user_create(
    public: Any = None,
    tags: Iterable[str] | None = None,
    access: Any = None,
    state: int = 0,
    conn: Any | None = None,
) -> dict:
    """Create a user and index its tags. Returns the stored user.

    Repeated and empty tags are dropped.
    """
    tags = unique_tags(tags)
    now = now_iso()
    conn = get_conn(conn)

    with transaction(conn):
        cursor = conn.execute(
            "INSERT INTO users (created_at, updated_at, state, access, public, tags) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (now, now, state, to_json(access), to_json(public), to_json(tags)),
        )
        user_id = cursor.lastrowid
        add_tags(conn, "usertags", user_id, tags)

    logger.debug(f"Created user {encode_uid(user_id)}")
    return {
        "id": encode_uid(user_id),
        "created_at": now,
        "updated_at": now,
        "deleted_at": None,
        "state": state,
        "access": access,
        "last_seen": None,
        "user_agent": "",
        "public": public,
        "tags": tags,
        "lifecycle": Lifecycle.ACTIVE,
    }


def user_get(uid: str, keep_deleted: bool = False, conn: Any | None = None) -> dict | None:
    """Fetch a user. Soft-deleted users are returned only with ``keep_deleted``."""
    user_id = require_uid(uid, "user id")
    conn = get_conn(conn)

    sql = f"SELECT {USER_COLUMNS} FROM users WHERE id = ?"
    if not keep_deleted:
        sql += " AND deleted_at IS NULL"
    cursor = conn.execute(sql, (user_id,))
    row = row_to_dict(cursor.description, cursor.fetchone())
    return _to_user(row) if row else None


def user_get_all(*uids: str, conn: Any | None = None) -> list[dict]:
    """Fetch several active users. Unknown ids are skipped."""
    if not uids:
        return []
    user_ids = [require_uid(uid, "user id") for uid in uids]
    conn = get_conn(conn)
    cursor = conn.execute(
        f"SELECT {USER_COLUMNS} FROM users "
        f"WHERE id IN ({placeholders(len(user_ids))}) AND deleted_at IS NULL ORDER BY id",
        user_ids,
    )
    return [_to_user(row) for row in rows_to_dicts(cursor.description, cursor.fetchall())]


def user_lifecycle(uid: str, conn: Any | None = None) -> Lifecycle:
    user_id = require_uid(uid, "user id")
    conn = get_conn(conn)
    cursor = conn.execute("SELECT deleted_at FROM users WHERE id = ?", (user_id,))
    return lifecycle_of(row_to_dict(cursor.description, cursor.fetchone()))


def _hard_delete(conn: Any, user_id: int) -> int:
    delete_devices(conn, user_id)
    delete_subs_for_user(conn, user_id, hard=True)
    conn.execute("DELETE FROM dellog WHERE deleted_for = ?", (user_id,))

    # Topics owned by the user go away with everything attached to them
    owned = "(SELECT name FROM topics WHERE owner = ?)"
    conn.execute(f"DELETE FROM dellog WHERE topic IN {owned}", (user_id,))
    conn.execute(f"DELETE FROM messages WHERE topic IN {owned}", (user_id,))
    conn.execute(f"DELETE FROM subscriptions WHERE topic IN {owned}", (user_id,))
    conn.execute(f"DELETE FROM topictags WHERE topic IN {owned}", (user_id,))
    conn.execute("DELETE FROM topics WHERE owner = ?", (user_id,))

    delete_credentials(conn, user_id, None, None)
    conn.execute("DELETE FROM usertags WHERE user_id = ?", (user_id,))
    return conn.execute("DELETE FROM users WHERE id = ?", (user_id,)).rowcount


def _soft_delete(conn: Any, user_id: int) -> int:
    now = now_iso()
    delete_subs_for_user(conn, user_id, hard=False)
    conn.execute(
        "UPDATE subscriptions SET updated_at = ?, deleted_at = ? "
        "WHERE topic IN (SELECT name FROM topics WHERE owner = ?) AND deleted_at IS NULL",
        (now, now, user_id),
    )
    conn.execute(
        "UPDATE topics SET updated_at = ?, deleted_at = ? WHERE owner = ? AND deleted_at IS NULL",
        (now, now, user_id),
    )
    cursor = conn.execute(
        "UPDATE users SET updated_at = ?, deleted_at = ? WHERE id = ? AND deleted_at IS NULL",
        (now, now, user_id),
    )
    return cursor.rowcount


def user_delete(uid: str, hard: bool = False, conn: Any | None = None) -> None:
    """Soft- or hard-delete a user.

    Raises:
        NotFoundError: there is no such (active, for soft deletion) user.
    """
    user_id = require_uid(uid, "user id")
    conn = get_conn(conn)
    with transaction(conn):
        affected = _hard_delete(conn, user_id) if hard else _soft_delete(conn, user_id)
        if affected == 0:
            raise NotFoundError(f"User not found: {uid}")
    logger.info(f"{'Hard' if hard else 'Soft'}-deleted user {uid}")


def user_get_disabled(since: datetime | str, conn: Any | None = None) -> list[str]:
    """Ids of users soft-deleted at or after ``since``."""
    conn = get_conn(conn)
    cursor = conn.execute(
        "SELECT id FROM users WHERE deleted_at >= ? ORDER BY id", (to_iso(since),)
    )
    return [encode_uid(row[0]) for row in cursor.fetchall()]


def user_update(uid: str, update: dict[str, Any], conn: Any | None = None) -> None:
    """Update user fields. A new ``tags`` list also rewrites the tag index.

    Raises:
        MalformedError: unknown field or bad id.
        NotFoundError: no such user.
    """
    user_id = require_uid(uid, "user id")
    assignments, args, tags = build_update(USER_FIELDS, update)
    if "updated_at" not in update:
        assignments.append("updated_at = ?")
        args.append(now_iso())

    conn = get_conn(conn)
    with transaction(conn):
        cursor = conn.execute(
            "UPDATE users SET " + ", ".join(assignments) + " WHERE id = ?", (*args, user_id)
        )
        if cursor.rowcount == 0:
            raise NotFoundError(f"User not found: {uid}")
        if tags is not None:
            replace_tags(conn, "usertags", user_id, tags)


def user_update_tags(
    uid: str,
    add: Iterable[str] | None = None,
    remove: Iterable[str] | None = None,
    reset: Iterable[str] | None = None,
    conn: Any | None = None,
) -> list[str]:
    """Edit a user's tags and return the resulting list.

    ``reset`` replaces everything (add and remove are ignored). Otherwise
    ``add`` is inserted, raising DuplicateError for a tag the user already
    has, then ``remove`` is deleted.
    """
    user_id = require_uid(uid, "user id")
    add, remove = unique_tags(add), unique_tags(remove)
    if reset is not None:
        reset = unique_tags(reset)
    conn = get_conn(conn)

    with transaction(conn):
        if conn.execute("SELECT 1 FROM users WHERE id = ?", (user_id,)).fetchone() is None:
            raise NotFoundError(f"User not found: {uid}")
        if reset is not None:
            replace_tags(conn, "usertags", user_id, reset)
        else:
            add_tags(conn, "usertags", user_id, add)
            remove_tags(conn, "usertags", user_id, remove)

        all_tags = list_tags(conn, "usertags", user_id)
        conn.execute(
            "UPDATE users SET tags = ?, updated_at = ? WHERE id = ?",
            (to_json(all_tags), now_iso(), user_id),
        )

    return all_tags


def user_get_by_cred(method: str, value: str, conn: Any | None = None) -> str | None:
    """Id of the user who confirmed ``method:value``, or None."""
    conn = get_conn(conn)
    cursor = conn.execute(
        "SELECT user_id FROM credentials WHERE synthetic = ?", (f"{method}:{value}",)
    )
    row = cursor.fetchone()
    return encode_uid(row[0]) if row else None


def user_unread_count(uid: str, conn: Any | None = None) -> int:
    """Unread messages across the user's readable topics."""
    user_id = require_uid(uid, "user id")
    conn = get_conn(conn)
    cursor = conn.execute(
        """
        SELECT SUM(t.seq_id) - SUM(s.read_seq_id)
        FROM topics AS t JOIN subscriptions AS s ON t.name = s.topic
        WHERE s.user_id = ? AND s.deleted_at IS NULL AND t.deleted_at IS NULL
          AND INSTR(s.mode_want, 'R') > 0 AND INSTR(s.mode_given, 'R') > 0
        """,
        (user_id,),
    )
    row = cursor.fetchone()
    return row[0] if row and row[0] is not None else 0


def find_users(
    uid: str | None,
    required: Iterable[str] | None,
    optional: Iterable[str] | None = None,
    limit: int | None = None,
    conn: Any | None = None,
) -> list[dict]:
    """Users matching every required tag and any optional ones, best match first.

    The caller (``uid``) and deleted users are never returned.
    """
    exclude = require_uid(uid, "user id") if uid else None
    conn = get_conn(conn)
    results = []
    for row in find_by_tags(conn, "users", required, optional, limit, exclude=exclude):
        user = encode_uid(row.pop("id"))
        row["user"] = user
        row["topic"] = user_topic(user)
        results.append(row)
    return results
