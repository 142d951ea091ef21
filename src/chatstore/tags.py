"""Tag index for users and topics.

Each searchable entity keeps its tags twice: inline as a JSON list on the
entity row and as one row per tag in an index table. Writes to both happen
in the same transaction so they never diverge.

Search ranks candidates by how many of the requested tags they carry. The
join fans out one row per matching tag, so "must carry every required tag"
is enforced by counting required matches per group, not by a per-tag
existence check.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable

from .db import clamp_limit, placeholders, rows_to_dicts
from .errors import DuplicateError, MalformedError, is_dupe
from .metrics import timed_db_operation
from .types import from_json

logger = logging.getLogger(__name__)

# Index table -> owner key column
TAG_TABLES = {
    "usertags": "user_id",
    "topictags": "topic",
}

# Search kind -> (entity table, entity key column, index table, columns returned)
_SEARCH = {
    "users": (
        "users",
        "id",
        "usertags",
        "e.id, e.created_at, e.updated_at, e.access, e.public, e.tags",
    ),
    "topics": (
        "topics",
        "name",
        "topictags",
        "e.id, e.name, e.created_at, e.updated_at, e.access, e.public, e.tags",
    ),
}


def _key_column(table: str) -> str:
    column = TAG_TABLES.get(table)
    if column is None:
        raise MalformedError(f"Unknown tag table: {table!r}")
    return column


def unique_tags(tags: Iterable[str] | None) -> list[str]:
    """Drop repeated and empty tags, keeping first-seen order.

    A bare string is rejected rather than split into characters.
    """
    if isinstance(tags, (str, bytes)):
        raise MalformedError(f"Tags must be a list, got {tags!r}")
    return [tag for tag in dict.fromkeys(tags or []) if tag]


def add_tags(
    conn: Any,
    table: str,
    key: int | str,
    tags: Iterable[str],
    ignore_duplicates: bool = False,
) -> int:
    """Insert one index row per tag. Returns the number of rows inserted.

    A tag the owner already has is skipped when ``ignore_duplicates`` is set,
    otherwise it raises DuplicateError.
    """
    column = _key_column(table)
    inserted = 0
    for tag in unique_tags(tags):
        try:
            conn.execute(f"INSERT INTO {table} ({column}, tag) VALUES (?, ?)", (key, tag))
        except Exception as e:
            if not is_dupe(e):
                raise
            if not ignore_duplicates:
                raise DuplicateError(f"Duplicate tag {tag!r}") from e
            continue
        inserted += 1
    return inserted


def remove_tags(conn: Any, table: str, key: int | str, tags: Iterable[str]) -> int:
    """Delete only the named tags of one owner."""
    column = _key_column(table)
    tags = unique_tags(tags)
    if not tags:
        return 0
    cursor = conn.execute(
        f"DELETE FROM {table} WHERE {column} = ? AND tag IN ({placeholders(len(tags))})",
        (key, *tags),
    )
    return cursor.rowcount


def replace_tags(conn: Any, table: str, key: int | str, tags: Iterable[str]) -> None:
    """Reset the owner's index rows to exactly ``tags``.

    Must run inside the transaction that writes the inline tag list.
    """
    column = _key_column(table)
    conn.execute(f"DELETE FROM {table} WHERE {column} = ?", (key,))
    add_tags(conn, table, key, tags, ignore_duplicates=True)


def list_tags(conn: Any, table: str, key: int | str) -> list[str]:
    column = _key_column(table)
    cursor = conn.execute(f"SELECT tag FROM {table} WHERE {column} = ? ORDER BY id", (key,))
    return [row[0] for row in cursor.fetchall()]


def matched_tags(tags: list[str] | None, query: Iterable[str]) -> list[str]:
    """Tags of an entity that were part of the search, in the entity's order."""
    wanted = set(query)
    return [tag for tag in tags or [] if tag in wanted]


def find_by_tags(
    conn: Any,
    kind: str,
    required: Iterable[str] | None,
    optional: Iterable[str] | None = None,
    limit: int | None = None,
    exclude: int | str | None = None,
) -> list[dict]:
    """Rank entities of ``kind`` ("users" or "topics") by tag overlap.

    Only entities carrying every required tag qualify. Soft-deleted entities
    are skipped, as is the ``exclude`` key. Each row carries ``matches`` (the
    number of requested tags found) and ``matched_tags``; JSON columns are
    decoded, numeric keys are left as they are.
    """
    search = _SEARCH.get(kind)
    if search is None:
        raise MalformedError(f"Unknown search kind: {kind!r}")
    table, key_column, tag_table, columns = search
    tag_column = TAG_TABLES[tag_table]

    required = unique_tags(required)
    optional = [tag for tag in unique_tags(optional) if tag not in required]
    query = required + optional
    if not query:
        return []

    sql = f"""
        SELECT {columns},
               COUNT(*) AS matches,
               SUM(CASE WHEN t.tag IN ({placeholders(len(required)) or "NULL"}) THEN 1 ELSE 0 END)
                   AS required_matches
        FROM {table} AS e
        JOIN {tag_table} AS t ON t.{tag_column} = e.{key_column}
        WHERE t.tag IN ({placeholders(len(query))})
          AND e.deleted_at IS NULL
    """
    args: list[Any] = [*required, *query]
    if exclude is not None:
        sql += f" AND e.{key_column} != ?"
        args.append(exclude)
    sql += """
        GROUP BY e.id
        HAVING required_matches >= ?
        ORDER BY matches DESC, e.id
        LIMIT ?
    """
    args.extend([len(required), clamp_limit(limit)])

    with timed_db_operation(f"find_{kind}") as timer:
        cursor = conn.execute(sql, args)
        rows = rows_to_dicts(cursor.description, cursor.fetchall())
        timer.rows = len(rows)

    for row in rows:
        row.pop("required_matches", None)
        row["access"] = from_json(row["access"])
        row["public"] = from_json(row["public"])
        row["tags"] = from_json(row["tags"]) or []
        row["matched_tags"] = matched_tags(row["tags"], query)
    return rows
