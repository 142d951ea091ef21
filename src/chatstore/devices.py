"""Push notification device registrations.

A device is keyed by a fixed-length hash of its natural identifier, so the
same device can only ever be registered to one user.
"""

from __future__ import annotations

import hashlib
from datetime import datetime
from typing import Any

from .db import get_conn, placeholders, rows_to_dicts, transaction
from .errors import MalformedError
from .types import now_iso, to_iso
from .uid import encode_uid, require_uid


def device_hash(device_id: str) -> str:
    """64-bit hash of a device id as 16 hex characters."""
    return hashlib.blake2b(device_id.encode("utf-8"), digest_size=8).hexdigest()


def device_upsert(
    uid: str,
    device_id: str,
    platform: str | None = None,
    last_seen: datetime | str | None = None,
    lang: str | None = None,
    conn: Any | None = None,
) -> None:
    """Register a device to ``uid``, taking it away from any previous user."""
    user_id = require_uid(uid, "user id")
    if not device_id:
        raise MalformedError("Device id is required")
    hashed = device_hash(device_id)

    conn = get_conn(conn)
    with transaction(conn):
        conn.execute("DELETE FROM devices WHERE hash = ?", (hashed,))
        conn.execute(
            "INSERT INTO devices (user_id, hash, device_id, platform, last_seen, lang) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (user_id, hashed, device_id, platform, to_iso(last_seen) or now_iso(), lang),
        )


def device_get_all(*uids: str, conn: Any | None = None) -> tuple[dict[str, list[dict]], int]:
    """Devices of the given users, grouped by user, and the total count."""
    if not uids:
        return {}, 0
    user_ids = [require_uid(uid, "user id") for uid in uids]

    conn = get_conn(conn)
    cursor = conn.execute(
        "SELECT user_id, device_id, platform, last_seen, lang FROM devices "
        f"WHERE user_id IN ({placeholders(len(user_ids))}) ORDER BY id",
        user_ids,
    )

    result: dict[str, list[dict]] = {}
    count = 0
    for row in rows_to_dicts(cursor.description, cursor.fetchall()):
        user = encode_uid(row.pop("user_id"))
        result.setdefault(user, []).append(row)
        count += 1
    return result, count


def delete_devices(conn: Any, user_id: int, device_id: str | None = None) -> None:
    if device_id:
        conn.execute(
            "DELETE FROM devices WHERE user_id = ? AND hash = ?",
            (user_id, device_hash(device_id)),
        )
    else:
        conn.execute("DELETE FROM devices WHERE user_id = ?", (user_id,))


def device_delete(uid: str, device_id: str | None = None, conn: Any | None = None) -> None:
    """Remove one device of a user, or all of them when ``device_id`` is empty."""
    user_id = require_uid(uid, "user id")
    conn = get_conn(conn)
    with transaction(conn):
        delete_devices(conn, user_id, device_id)
