"""File upload records.

Uploads are linked to messages through ``filemsglinks``. An upload that no
message links to is garbage once it is old enough; file_delete_unused drops
the records and hands back the blob locations for the caller to remove.
"""

from __future__ import annotations

import enum
import logging
from datetime import datetime
from typing import Any

from .db import get_conn, placeholders, row_to_dict, transaction
from .errors import MalformedError, NotFoundError
from .metrics import timed_operation
from .types import now_iso, to_iso
from .uid import ZERO_UID, decode_uid, encode_uid, require_uid

logger = logging.getLogger(__name__)


class FileStatus(enum.IntEnum):
    STARTED = 0
    COMPLETED = 1
    FAILED = -1


def _to_file(row: dict) -> dict:
    row["id"] = encode_uid(row["id"])
    row["user"] = encode_uid(row.pop("user_id"))
    row["status"] = FileStatus(row["status"])
    return row


def _file_id(fid: str) -> int:
    file_id = decode_uid(fid)
    if file_id == ZERO_UID:
        raise MalformedError(f"Malformed file id: {fid!r}")
    return file_id


def file_start_upload(
    user: str,
    mime_type: str,
    location: str,
    size: int = 0,
    conn: Any | None = None,
) -> dict:
    """Record an upload in progress. Returns the record with its new id."""
    user_id = require_uid(user, "user id")
    now = now_iso()
    conn = get_conn(conn)
    with transaction(conn):
        cursor = conn.execute(
            "INSERT INTO fileuploads (created_at, updated_at, user_id, status, mime_type, size, location) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (now, now, user_id, int(FileStatus.STARTED), mime_type, size, location),
        )
        file_id = cursor.lastrowid

    return {
        "id": encode_uid(file_id),
        "created_at": now,
        "updated_at": now,
        "user": user,
        "status": FileStatus.STARTED,
        "mime_type": mime_type,
        "size": size,
        "location": location,
    }


def file_get(fid: str, conn: Any | None = None) -> dict | None:
    file_id = _file_id(fid)
    conn = get_conn(conn)
    cursor = conn.execute(
        "SELECT id, created_at, updated_at, user_id, status, mime_type, size, location "
        "FROM fileuploads WHERE id = ?",
        (file_id,),
    )
    row = row_to_dict(cursor.description, cursor.fetchone())
    return _to_file(row) if row else None


def file_finish_upload(
    fid: str,
    status: FileStatus | int,
    size: int,
    conn: Any | None = None,
) -> dict:
    """Mark an upload as finished, successfully or not.

    Raises:
        MalformedError: ``fid`` does not decode.
        NotFoundError: no such upload.
    """
    file_id = _file_id(fid)
    status = FileStatus(status)
    now = now_iso()
    conn = get_conn(conn)
    with transaction(conn):
        cursor = conn.execute(
            "UPDATE fileuploads SET updated_at = ?, status = ?, size = ? WHERE id = ?",
            (now, int(status), size, file_id),
        )
        if cursor.rowcount == 0:
            raise NotFoundError(f"File not found: {fid}")
        fd = file_get(fid, conn=conn)

    if fd is None:
        raise NotFoundError(f"File not found: {fid}")
    return fd


@timed_operation("file_delete_unused")
def file_delete_unused(
    older_than: datetime | str | None = None,
    limit: int = 0,
    conn: Any | None = None,
) -> list[str]:
    """Delete uploads no message links to. Returns their storage locations.

    Only uploads last updated before ``older_than`` are considered when it is
    given; ``limit`` caps how many are removed in one call.
    """
    sql = (
        "SELECT fu.id, fu.location FROM fileuploads AS fu "
        "LEFT JOIN filemsglinks AS fml ON fml.file_id = fu.id WHERE fml.id IS NULL"
    )
    args: list[Any] = []
    if older_than is not None:
        sql += " AND fu.updated_at < ?"
        args.append(to_iso(older_than))
    sql += " ORDER BY fu.id"
    if limit > 0:
        sql += " LIMIT ?"
        args.append(limit)

    conn = get_conn(conn)
    with transaction(conn):
        rows = conn.execute(sql, args).fetchall()
        ids = [row[0] for row in rows]
        if ids:
            conn.execute(f"DELETE FROM fileuploads WHERE id IN ({placeholders(len(ids))})", ids)

    if ids:
        logger.info(f"Deleted {len(ids)} unused file uploads")
    return [row[1] for row in rows]
