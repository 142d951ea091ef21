"""Credential lifecycle: out-of-band verification methods (email, phone, ...).

Uniqueness is carried by the ``synthetic`` column:
- ``method:value`` once confirmed, so a value is confirmed at most once globally
- ``user:method:value`` while unconfirmed, so several users may be verifying
  the same value at the same time

A user has at most one active unconfirmed record per method. Starting a new
attempt soft-deletes the others. Records that consumed verification attempts
are soft-deleted rather than removed, so deleting and re-creating a credential
cannot reset its retry budget.
"""

from __future__ import annotations

import enum
import logging
from typing import Any

from .db import get_conn, row_to_dict, rows_to_dicts, transaction
from .errors import DuplicateError, MalformedError, NotFoundError, is_dupe
from .types import lifecycle_of, now_iso
from .uid import encode_uid, require_uid

logger = logging.getLogger(__name__)

_COLUMNS = "created_at, updated_at, deleted_at, user_id, method, value, resp, done, retries"


class CredState(str, enum.Enum):
    UNCONFIRMED_ACTIVE = "unconfirmed-active"
    UNCONFIRMED_DELETED = "unconfirmed-deleted"
    CONFIRMED = "confirmed"


def synthetic_key(user: str, method: str, value: str, confirmed: bool) -> str:
    """Uniqueness key of a credential in the given confirmation state."""
    key = f"{method}:{value}"
    return key if confirmed else f"{user}:{key}"


def cred_state(row: dict) -> CredState:
    if row["done"]:
        return CredState.CONFIRMED
    if row["deleted_at"] is not None:
        return CredState.UNCONFIRMED_DELETED
    return CredState.UNCONFIRMED_ACTIVE


def _to_credential(row: dict) -> dict:
    row["user"] = encode_uid(row.pop("user_id"))
    row["done"] = bool(row["done"])
    row["state"] = cred_state(row)
    row["lifecycle"] = lifecycle_of(row)
    return row


def _check_method(method: str) -> None:
    if not method:
        raise MalformedError("Credential method is required")


def cred_upsert(
    user: str,
    method: str,
    value: str,
    resp: str | None = None,
    confirmed: bool = False,
    conn: Any | None = None,
) -> bool:
    """Add or refresh a credential.

    Returns True when a new row was inserted and False when an earlier
    unconfirmed attempt for the same value was revived.

    Raises:
        DuplicateError: the value is already confirmed (by anyone).
        MalformedError: ``user`` is not a valid id or method is empty.
    """
    user_id = require_uid(user, "user id")
    _check_method(method)
    if not value:
        raise MalformedError("Credential value is required")

    conn = get_conn(conn)
    now = now_iso()
    confirmed_key = synthetic_key(user, method, value, confirmed=True)
    pending_key = synthetic_key(user, method, value, confirmed=False)

    with transaction(conn):
        if not confirmed:
            cursor = conn.execute(
                "SELECT done FROM credentials WHERE synthetic = ?", (confirmed_key,)
            )
            if cursor.fetchone() is not None:
                raise DuplicateError(f"Credential {confirmed_key} is already confirmed")

            # Only one active attempt per method
            conn.execute(
                "UPDATE credentials SET deleted_at = ? "
                "WHERE user_id = ? AND method = ? AND done = 0 AND deleted_at IS NULL",
                (now, user_id, method),
            )
            cursor = conn.execute(
                "UPDATE credentials SET updated_at = ?, deleted_at = NULL, resp = ?, done = 0 "
                "WHERE synthetic = ?",
                (now, resp, pending_key),
            )
            if cursor.rowcount > 0:
                return False
            synthetic = pending_key
        else:
            conn.execute("DELETE FROM credentials WHERE synthetic = ?", (pending_key,))
            synthetic = confirmed_key

        try:
            conn.execute(
                """
                INSERT INTO credentials
                    (created_at, updated_at, method, value, synthetic, user_id, resp, done)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (now, now, method, value, synthetic, user_id, resp, int(confirmed)),
            )
        except Exception as e:
            if is_dupe(e):
                raise DuplicateError(f"Credential {confirmed_key} is already confirmed") from e
            raise

    return True


def cred_confirm(user: str, method: str, conn: Any | None = None) -> None:
    """Mark the active unconfirmed credential of ``method`` as confirmed.

    Raises:
        NotFoundError: there is no active unconfirmed credential.
        DuplicateError: the value got confirmed by someone else meanwhile.
    """
    user_id = require_uid(user, "user id")
    _check_method(method)
    conn = get_conn(conn)

    with transaction(conn):
        try:
            cursor = conn.execute(
                """
                UPDATE credentials SET updated_at = ?, done = 1, synthetic = method || ':' || value
                WHERE user_id = ? AND method = ? AND deleted_at IS NULL AND done = 0
                """,
                (now_iso(), user_id, method),
            )
        except Exception as e:
            if is_dupe(e):
                raise DuplicateError(f"Credential {method} is already confirmed elsewhere") from e
            raise
        if cursor.rowcount < 1:
            raise NotFoundError(f"No pending {method} credential for {user}")


def cred_fail(user: str, method: str, conn: Any | None = None) -> None:
    """Count a failed verification attempt."""
    user_id = require_uid(user, "user id")
    _check_method(method)
    conn = get_conn(conn)
    with transaction(conn):
        conn.execute(
            "UPDATE credentials SET updated_at = ?, retries = retries + 1 "
            "WHERE user_id = ? AND method = ? AND done = 0",
            (now_iso(), user_id, method),
        )


def delete_credentials(conn: Any, user_id: int, method: str | None, value: str | None) -> None:
    """Remove credentials of a user inside the caller's transaction.

    Without a method everything is removed (the user is being deleted).
    Otherwise confirmed and never-retried records are removed and the rest
    are soft-deleted, keeping their retry counts.
    """
    if not method:
        conn.execute("DELETE FROM credentials WHERE user_id = ?", (user_id,))
        return

    where = " WHERE user_id = ? AND method = ?"
    args: list[Any] = [user_id, method]
    if value:
        where += " AND value = ?"
        args.append(value)

    conn.execute("DELETE FROM credentials" + where + " AND (done = 1 OR retries = 0)", args)
    conn.execute(
        "UPDATE credentials SET deleted_at = ?" + where + " AND deleted_at IS NULL",
        [now_iso(), *args],
    )


def cred_delete(
    user: str,
    method: str | None = None,
    value: str | None = None,
    conn: Any | None = None,
) -> None:
    """Delete credentials of a user: all of them, one method, or one value."""
    user_id = require_uid(user, "user id")
    conn = get_conn(conn)
    with transaction(conn):
        delete_credentials(conn, user_id, method, value)


def cred_is_confirmed(user: str, method: str, conn: Any | None = None) -> bool:
    user_id = require_uid(user, "user id")
    conn = get_conn(conn)
    cursor = conn.execute(
        "SELECT 1 FROM credentials WHERE user_id = ? AND method = ? AND done = 1 LIMIT 1",
        (user_id, method),
    )
    return cursor.fetchone() is not None


def cred_get_active(user: str, method: str, conn: Any | None = None) -> dict | None:
    """The active unconfirmed credential of ``method``, or None."""
    user_id = require_uid(user, "user id")
    conn = get_conn(conn)
    cursor = conn.execute(
        f"SELECT {_COLUMNS} FROM credentials "
        "WHERE user_id = ? AND deleted_at IS NULL AND method = ? AND done = 0",
        (user_id, method),
    )
    row = row_to_dict(cursor.description, cursor.fetchone())
    return _to_credential(row) if row else None


def cred_get_all(
    user: str,
    method: str | None = None,
    validated_only: bool = False,
    conn: Any | None = None,
) -> list[dict]:
    """Non-deleted credentials of a user, optionally one method or confirmed only."""
    user_id = require_uid(user, "user id")
    conn = get_conn(conn)

    sql = f"SELECT {_COLUMNS} FROM credentials WHERE user_id = ? AND deleted_at IS NULL"
    args: list[Any] = [user_id]
    if method:
        sql += " AND method = ?"
        args.append(method)
    if validated_only:
        sql += " AND done = 1"
    sql += " ORDER BY id"

    cursor = conn.execute(sql, args)
    return [_to_credential(row) for row in rows_to_dicts(cursor.description, cursor.fetchall())]
