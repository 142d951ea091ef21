"""Topic store.

Group topics carry their own public profile and tags. P2P topics have
neither: their name is derived from the two participants and their public
profile is borrowed from the other participant whenever they are listed.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime
from typing import Any, Iterable

from .db import clamp_limit, get_conn, placeholders, row_to_dict, rows_to_dicts, transaction
from .dellog import delete_all_messages
from .errors import DuplicateError, MalformedError, NotFoundError, is_dupe
from .metrics import timed_db_operation
from .p2p import TopicCategory, p2p_name, p2p_other, swap_p2p_public, topic_category
from .subscriptions import (
    SUB_COLUMNS,
    NewSubscription,
    create_subscription,
    delete_subs_for_topic,
    to_subscription,
)
from .tags import add_tags, find_by_tags, replace_tags, unique_tags
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
from .uid import ZERO_UID, decode_uid, encode_uid, require_uid, user_topic

logger = logging.getLogger(__name__)

TOPIC_COLUMNS = (
    "created_at, updated_at, deleted_at, touched_at, name, owner, access, "
    "seq_id, del_id, public, tags"
)

TOPIC_FIELDS = {
    "public": UpdateField("public", json_encoded=True),
    "access": UpdateField("access", json_encoded=True),
    "tags": UpdateField("tags", tags=True),
    "touched_at": UpdateField("touched_at", timestamp=True),
    "updated_at": UpdateField("updated_at", timestamp=True),
}


def _to_topic(row: dict) -> dict:
    row["owner"] = encode_uid(row["owner"])
    row["access"] = from_json(row["access"])
    row["public"] = from_json(row["public"])
    row["tags"] = from_json(row["tags"]) or []
    row["lifecycle"] = lifecycle_of(row)
    return row


def _insert_topic(
    conn: Any,
    name: str,
    owner_id: int,
    access: Any,
    public: Any,
    tags: list[str],
    now: str,
) -> None:
    try:
        conn.execute(
            "INSERT INTO topics "
            "(created_at, updated_at, touched_at, name, owner, access, public, tags) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (now, now, now, name, owner_id, to_json(access), to_json(public), to_json(tags)),
        )
    except Exception as e:
        if is_dupe(e):
            raise DuplicateError(f"Topic already exists: {name}") from e
        raise
    add_tags(conn, "topictags", name, tags)


def topic_create(
    name: str,
    owner: str | None = None,
    access: Any = None,
    public: Any = None,
    tags: Iterable[str] | None = None,
    conn: Any | None = None,
) -> dict:
    """Create a group topic and index its tags.

    Raises:
        MalformedError: the name is empty or in a reserved namespace
            ("me", "usr", "fnd", "p2p").
        DuplicateError: the name is taken.
    """
    if not name or topic_category(name) != TopicCategory.GRP:
        raise MalformedError(f"Reserved or empty topic name: {name!r}")
    owner_id = require_uid(owner, "owner id") if owner else ZERO_UID
    tags = unique_tags(tags)
    now = now_iso()

    conn = get_conn(conn)
    with transaction(conn):
        _insert_topic(conn, name, owner_id, access, public, tags, now)

    logger.debug(f"Created topic {name}")
    return {
        "created_at": now,
        "updated_at": now,
        "deleted_at": None,
        "touched_at": now,
        "name": name,
        "owner": encode_uid(owner_id),
        "access": access,
        "seq_id": 0,
        "del_id": 0,
        "public": public,
        "tags": tags,
        "lifecycle": Lifecycle.ACTIVE,
    }


def topic_create_p2p(
    initiator: NewSubscription,
    invited: NewSubscription,
    conn: Any | None = None,
) -> str:
    """Create (or reopen) the P2P topic between two users. Returns its name.

    The initiator's subscription is written in full; the invited user's is
    revived keeping its own wanted mode and private data.
    """
    name = p2p_name(initiator.user, invited.user)
    now = now_iso()

    conn = get_conn(conn)
    with transaction(conn):
        create_subscription(replace(initiator, topic=name), undelete=False, conn=conn)
        create_subscription(replace(invited, topic=name), undelete=True, conn=conn)

        cursor = conn.execute(
            "UPDATE topics SET updated_at = ?, deleted_at = NULL WHERE name = ?", (now, name)
        )
        if cursor.rowcount == 0:
            _insert_topic(conn, name, ZERO_UID, None, None, [], now)

    return name


def topic_get(name: str, keep_deleted: bool = True, conn: Any | None = None) -> dict | None:
    conn = get_conn(conn)
    sql = f"SELECT {TOPIC_COLUMNS} FROM topics WHERE name = ?"
    if not keep_deleted:
        sql += " AND deleted_at IS NULL"
    cursor = conn.execute(sql, (name,))
    row = row_to_dict(cursor.description, cursor.fetchone())
    return _to_topic(row) if row else None


def topic_lifecycle(name: str, conn: Any | None = None) -> Lifecycle:
    conn = get_conn(conn)
    cursor = conn.execute("SELECT deleted_at FROM topics WHERE name = ?", (name,))
    return lifecycle_of(row_to_dict(cursor.description, cursor.fetchone()))


def _later(first: str | None, second: str | None) -> str | None:
    if first is None or second is None:
        return first or second
    return max(first, second)


def topics_for_user(
    uid: str,
    keep_deleted: bool = False,
    topic: str | None = None,
    limit: int | None = None,
    conn: Any | None = None,
) -> list[dict]:
    """A user's contact list: group and P2P subscriptions with public profiles.

    "me" and "fnd" subscriptions are skipped. Group entries carry the topic's
    public profile. P2P entries carry the other participant's public profile,
    default access and presence, and name that participant under ``with``.
    P2P entries whose counterpart is deleted are dropped unless
    ``keep_deleted`` is set.
    """
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

    with timed_db_operation("topics_for_user") as timer:
        cursor = conn.execute(sql, args)
        subs = [to_subscription(row) for row in rows_to_dicts(cursor.description, cursor.fetchall())]

        join: dict[str, dict] = {}
        others: dict[int, str] = {}
        for sub in subs:
            category = topic_category(sub["topic"])
            if category in (TopicCategory.ME, TopicCategory.FND):
                continue
            if category == TopicCategory.P2P:
                try:
                    other = p2p_other(sub["topic"], uid)
                except MalformedError:
                    logger.warning(f"Skipping unparseable P2P subscription {sub['topic']}")
                    continue
                others[decode_uid(other)] = sub["topic"]
            join[sub["topic"]] = sub

        found: set[str] = set()
        if join:
            names = list(join)
            cursor = conn.execute(
                f"SELECT {TOPIC_COLUMNS} FROM topics WHERE name IN ({placeholders(len(names))})",
                names,
            )
            for top in rows_to_dicts(cursor.description, cursor.fetchall()):
                sub = join[top["name"]]
                sub["updated_at"] = _later(sub["updated_at"], top["updated_at"])
                sub["touched_at"] = top["touched_at"]
                sub["seq_id"] = top["seq_id"]
                if topic_category(top["name"]) == TopicCategory.GRP:
                    sub["public"] = from_json(top["public"])
                    found.add(top["name"])

        if others:
            ids = list(others)
            cursor = conn.execute(
                "SELECT id, deleted_at, updated_at, access, last_seen, user_agent, public "
                f"FROM users WHERE id IN ({placeholders(len(ids))})",
                ids,
            )
            for usr in rows_to_dicts(cursor.description, cursor.fetchall()):
                if usr["deleted_at"] is not None and not keep_deleted:
                    continue
                sub = join[others[usr["id"]]]
                other = encode_uid(usr["id"])
                sub["updated_at"] = _later(sub["updated_at"], usr["updated_at"])
                sub["public"] = from_json(usr["public"])
                sub["with"] = user_topic(other)
                sub["default_access"] = from_json(usr["access"])
                sub["last_seen"] = usr["last_seen"]
                sub["user_agent"] = usr["user_agent"]
                found.add(sub["topic"])

        result = [sub for sub in subs if sub["topic"] in found]
        timer.rows = len(result)
    return result


def users_for_topic(
    topic: str,
    keep_deleted: bool = False,
    user: str | None = None,
    limit: int | None = None,
    conn: Any | None = None,
) -> list[dict]:
    """Members of a topic with their public profiles.

    For a P2P topic both subscriptions are loaded (deleted ones too) so the
    profiles can be swapped, then the result is filtered.
    """
    is_p2p = topic_category(topic) == TopicCategory.P2P
    one_user = require_uid(user, "user id") if user else ZERO_UID
    conn = get_conn(conn)

    columns = ", ".join(f"s.{column.strip()}" for column in SUB_COLUMNS.split(","))
    sql = (
        f"SELECT {columns}, u.public AS public FROM subscriptions AS s "
        "JOIN users AS u ON s.user_id = u.id WHERE s.topic = ?"
    )
    args: list[Any] = [topic]
    if not keep_deleted:
        sql += " AND u.deleted_at IS NULL"
        if not is_p2p:
            sql += " AND s.deleted_at IS NULL"
    if one_user and not is_p2p:
        sql += " AND s.user_id = ?"
        args.append(one_user)
    sql += " ORDER BY s.id LIMIT ?"
    args.append(clamp_limit(limit))

    with timed_db_operation("users_for_topic") as timer:
        cursor = conn.execute(sql, args)
        rows = rows_to_dicts(cursor.description, cursor.fetchall())
        timer.rows = len(rows)

    subs = []
    for row in rows:
        row["public"] = from_json(row["public"])
        subs.append(to_subscription(row))

    if is_p2p and subs:
        swap_p2p_public(subs)
        subs = [
            sub
            for sub in subs
            if (keep_deleted or sub["deleted_at"] is None)
            and (not one_user or sub["user"] == user)
        ]
    return subs


def own_topics(uid: str, conn: Any | None = None) -> list[str]:
    """Names of the topics owned by a user."""
    user_id = require_uid(uid, "user id")
    conn = get_conn(conn)
    cursor = conn.execute("SELECT name FROM topics WHERE owner = ? ORDER BY id", (user_id,))
    return [row[0] for row in cursor.fetchall()]


def topic_share(topic: str, shares: Iterable[NewSubscription], conn: Any | None = None) -> int:
    """Subscribe several users to a topic at once. Returns how many."""
    shares = [replace(sub, topic=topic) for sub in shares]
    conn = get_conn(conn)
    with transaction(conn):
        for sub in shares:
            create_subscription(sub, undelete=True, conn=conn)
    return len(shares)


def topic_delete(topic: str, hard: bool = False, conn: Any | None = None) -> None:
    """Soft- or hard-delete a topic with its subscriptions.

    Hard deletion also removes the messages, the deletion log and the tag
    index rows.

    Raises:
        NotFoundError: no such topic.
    """
    conn = get_conn(conn)
    with transaction(conn):
        delete_subs_for_topic(conn, topic, hard)
        if hard:
            delete_all_messages(conn, topic)
            conn.execute("DELETE FROM topictags WHERE topic = ?", (topic,))
            cursor = conn.execute("DELETE FROM topics WHERE name = ?", (topic,))
        else:
            now = now_iso()
            cursor = conn.execute(
                "UPDATE topics SET updated_at = ?, deleted_at = ? WHERE name = ?",
                (now, now, topic),
            )
        if cursor.rowcount == 0:
            raise NotFoundError(f"Topic not found: {topic}")
    logger.info(f"{'Hard' if hard else 'Soft'}-deleted topic {topic}")


def topic_update_on_message(
    topic: str,
    seq_id: int,
    touched_at: datetime | str | None = None,
    conn: Any | None = None,
) -> None:
    """Advance the topic's sequence id and touch time. Neither moves backwards."""
    conn = get_conn(conn)
    with transaction(conn):
        conn.execute(
            "UPDATE topics SET seq_id = MAX(seq_id, ?), "
            "touched_at = MAX(COALESCE(touched_at, ''), ?) WHERE name = ?",
            (seq_id, to_iso(touched_at) or now_iso(), topic),
        )


def topic_update(topic: str, update: dict[str, Any], conn: Any | None = None) -> None:
    """Update topic fields. A new ``tags`` list also rewrites the tag index.

    Raises:
        MalformedError: unknown field.
        NotFoundError: no such topic.
    """
    assignments, args, tags = build_update(TOPIC_FIELDS, update)
    if "updated_at" not in update:
        assignments.append("updated_at = ?")
        args.append(now_iso())

    conn = get_conn(conn)
    with transaction(conn):
        cursor = conn.execute(
            "UPDATE topics SET " + ", ".join(assignments) + " WHERE name = ?", (*args, topic)
        )
        if cursor.rowcount == 0:
            raise NotFoundError(f"Topic not found: {topic}")
        if tags is not None:
            replace_tags(conn, "topictags", topic, tags)


def topic_owner_change(topic: str, new_owner: str, conn: Any | None = None) -> None:
    owner_id = require_uid(new_owner, "owner id")
    conn = get_conn(conn)
    with transaction(conn):
        cursor = conn.execute(
            "UPDATE topics SET owner = ?, updated_at = ? WHERE name = ?",
            (owner_id, now_iso(), topic),
        )
        if cursor.rowcount == 0:
            raise NotFoundError(f"Topic not found: {topic}")


def find_topics(
    required: Iterable[str] | None,
    optional: Iterable[str] | None = None,
    limit: int | None = None,
    conn: Any | None = None,
) -> list[dict]:
    """Active topics matching every required tag and any optional ones, best first."""
    conn = get_conn(conn)
    results = []
    for row in find_by_tags(conn, "topics", required, optional, limit):
        row.pop("id")
        row["topic"] = row.pop("name")
        results.append(row)
    return results
