"""Database layer for chatstore - supports SQLite, Turso, and pluggable connections.

This module owns everything below the entity stores:
- Connection management (thread-local SQLite, shared libsql/Turso, scoped)
- Schema definition, versioning and migrations
- The transaction context manager every multi-statement operation runs in
- Row conversion and result-size limits

Connection Management:
    # Global thread-local connection (target from open_store() or CHATSTORE_DB)
    init_db()
    user = users.user_create(public={"fn": "Alice"})

    # Scoped connection
    with scoped_connection("/path/to/chat.sqlite3") as conn:
        init_db_with_conn(conn)
        user = users.user_create(conn=conn)

    # In-memory for testing
    with scoped_connection(":memory:") as conn:
        init_db_with_conn(conn)
        ...
"""

from __future__ import annotations

import logging
import os
import sqlite3
import threading
from collections.abc import Callable
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any, Iterator

from .errors import SchemaVersionError
from .metrics import metrics

if TYPE_CHECKING:
    from .options import StoreOptions

logger = logging.getLogger(__name__)

# Current schema version (increment when adding migrations)
SCHEMA_VERSION = 2

DEFAULT_MAX_RESULTS = 1024

# Thread-local storage for per-thread connections
# Each thread gets its own SQLite connection; the storage layer keeps no
# other shared mutable state.
_local = threading.local()

# Global config for connection parameters (shared across threads)
_db_config: dict[str, Any] = {
    "path": None,  # Set by open_store(), otherwise CHATSTORE_DB
    "auth_token": None,
    "max_results": DEFAULT_MAX_RESULTS,
}

# Shared libsql connection (libsql uses one connection for all threads)
_conn: Any = None
_is_libsql: bool = False

# Lock for thread-safe libsql reconnection
_libsql_lock = threading.Lock()

# Timeout for libsql connection operations (seconds)
LIBSQL_CONNECT_TIMEOUT = 10.0


def is_using_libsql() -> bool:
    """Check if the database backend is libsql/Turso."""
    return _is_libsql or _libsql_url() is not None


def _libsql_url() -> str | None:
    path = _db_config.get("path")
    if path and str(path).startswith("libsql://"):
        return str(path)
    url = os.environ.get("TURSO_URL", "")
    if url.startswith("libsql://"):
        return url
    return None


def _is_hrana_stream_error(error: Exception) -> bool:
    """Check if an exception indicates a stale Hrana stream.

    Turso/libsql uses HTTP/2 streams that can expire or disconnect.
    When this happens, we need to reconnect.
    """
    error_str = str(error).lower()
    return (
        "stream not found" in error_str
        or "hrana" in error_str
        or ("connection" in error_str and "closed" in error_str)
    )


# --- Connection Management ---


def _configure_sqlite(conn: sqlite3.Connection, wal: bool) -> sqlite3.Connection:
    if wal:
        # Enable WAL mode for better concurrent read/write performance
        conn.execute("PRAGMA journal_mode=WAL")
    # Wait for locks instead of failing immediately
    conn.execute("PRAGMA busy_timeout=5000")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.row_factory = sqlite3.Row
    return conn


def get_connection(db_path: str | Path | None = None) -> Any:
    """Get or create database connection.

    Uses thread-local storage to give each thread its own connection,
    which is essential for safe concurrent access in threaded servers.

    Args:
        db_path: Optional explicit database path. If given, a new connection is
                 created (not thread-local). ":memory:" creates a private
                 in-memory database.

    Returns:
        A DB-API connection (sqlite3.Connection or libsql connection).

    Raises:
        TimeoutError: If unable to acquire the libsql connection lock.
        RuntimeError: If the libsql connection cannot be established.
    """
    global _conn, _is_libsql

    if db_path is not None:
        if str(db_path) == ":memory:":
            conn = sqlite3.connect(":memory:", check_same_thread=False)
            return _configure_sqlite(conn, wal=False)
        conn = sqlite3.connect(str(db_path), check_same_thread=False)
        return _configure_sqlite(conn, wal=True)

    libsql_url = _libsql_url()
    if libsql_url is not None:
        lock_acquired = _libsql_lock.acquire(timeout=LIBSQL_CONNECT_TIMEOUT)
        if not lock_acquired:
            raise TimeoutError(
                f"Timeout acquiring database connection lock after {LIBSQL_CONNECT_TIMEOUT}s. "
                "Another connection attempt may be hanging."
            )

        should_release_lock = True
        try:
            if _conn is None:
                import libsql_experimental as libsql  # type: ignore[import-not-found]

                logger.info(f"Creating new libsql connection to {libsql_url[:50]}...")
                auth_token = _db_config.get("auth_token") or os.environ.get("TURSO_AUTH_TOKEN", "")
                try:
                    _conn = libsql.connect(libsql_url, auth_token=auth_token)
                    _is_libsql = True
                except Exception as e:
                    logger.error(f"Failed to connect to libsql: {e}")
                    raise RuntimeError(f"Failed to connect to Turso database: {e}") from e

            # Catch stale Hrana streams before they fail a real operation
            try:
                _conn.execute("SELECT 1")
            except Exception as e:
                if _is_hrana_stream_error(e):
                    logger.warning(f"Libsql connection stale, reconnecting: {e}")
                    try:
                        _conn.close()
                    except Exception as close_error:
                        logger.debug(f"Ignoring close error on stale connection: {close_error}")
                    _conn = None
                    _is_libsql = False
                    _libsql_lock.release()
                    should_release_lock = False
                    return get_connection(db_path)
                raise

            return _conn
        finally:
            if should_release_lock:
                _libsql_lock.release()

    if getattr(_local, "conn", None) is None:
        path = _db_config.get("path") or os.environ.get("CHATSTORE_DB", ":memory:")

        if str(path) == ":memory:":
            # Shared cache so all threads see the same data. The name carries
            # the process ID so parallel test processes don't collide.
            conn = sqlite3.connect(
                f"file:chatstore_{os.getpid()}?mode=memory&cache=shared",
                uri=True,
                check_same_thread=False,
            )
            _local.conn = _configure_sqlite(conn, wal=False)
        else:
            conn = sqlite3.connect(str(path), check_same_thread=False)
            _local.conn = _configure_sqlite(conn, wal=True)

    return _local.conn


@contextmanager
def scoped_connection(db_path: str | Path) -> Iterator[Any]:
    """Context manager for scoped database connections.

    Creates a new connection that is closed when the context exits.

    Example:
        with scoped_connection("/tmp/chat.sqlite3") as conn:
            init_db_with_conn(conn)
            users.user_create(conn=conn)
    """
    conn = get_connection(db_path)
    try:
        yield conn
    finally:
        conn.close()


def close_db() -> None:
    """Close the thread-local connection and the shared libsql connection."""
    global _conn, _is_libsql

    close_thread_connection()

    if _conn is not None:
        _conn.close()
        _conn = None
        _is_libsql = False


def close_thread_connection() -> None:
    """Close the connection for the current thread only."""
    if getattr(_local, "conn", None) is not None:
        _local.conn.close()
        _local.conn = None


def open_store(options: "StoreOptions", init: bool = False) -> None:
    """Apply StoreOptions to the global connection settings.

    Closes connections opened under the previous settings. With ``init`` the
    schema is created (or migrated) on the new target.
    """
    from .uid import configure_codec

    close_db()
    _db_config["path"] = options.resolved_path()
    _db_config["auth_token"] = options.auth_token
    set_max_results(options.max_results)
    configure_codec(options.uid_key)
    logger.info(f"Opening chatstore at {_db_config['path']}")

    if init:
        init_db()


def get_conn(conn: Any | None) -> Any:
    """Use the provided connection or fall back to the global one."""
    if conn is not None:
        return conn
    return get_connection()


@contextmanager
def transaction(conn: Any) -> Iterator[Any]:
    """Run the enclosed statements atomically.

    Opens an immediate (write-locking) transaction, commits on success and
    rolls back on any exception before re-raising it. Inside an already open
    transaction the block simply joins it; the outermost block decides.
    """
    if getattr(conn, "in_transaction", False):
        yield conn
        return

    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException as e:
        conn.rollback()
        metrics.record_transaction(committed=False)
        logger.debug(f"Transaction rolled back: {e!r}")
        raise
    conn.commit()
    metrics.record_transaction(committed=True)


def row_to_dict(cursor_description: Any, row: Any) -> dict | None:
    """Convert a database row to a dictionary."""
    if row is None:
        return None
    if isinstance(row, sqlite3.Row):
        return dict(row)
    # For libsql, manually create dict from cursor description
    columns = [col[0] for col in cursor_description]
    return dict(zip(columns, row))


def rows_to_dicts(cursor_description: Any, rows: list) -> list[dict]:
    """Convert database rows to a list of dictionaries."""
    if not rows:
        return []
    if isinstance(rows[0], sqlite3.Row):
        return [dict(row) for row in rows]
    columns = [col[0] for col in cursor_description]
    return [dict(zip(columns, row)) for row in rows]


def placeholders(count: int) -> str:
    """Comma-separated "?" markers for an IN (...) list."""
    return ",".join("?" * count)


# --- Result limits ---


def set_max_results(value: int) -> None:
    """Configure how many rows a single call may return. Non-positive resets."""
    _db_config["max_results"] = value if value > 0 else DEFAULT_MAX_RESULTS


def get_max_results() -> int:
    return _db_config["max_results"]


def clamp_limit(limit: int | None) -> int:
    """Effective row limit: the requested one, capped at max_results."""
    cap = get_max_results()
    if limit is not None and 0 < limit < cap:
        return limit
    return cap


# --- Schema and Migrations ---


def _ensure_schema_version_table(conn: Any) -> None:
    """Create the schema_version table if it doesn't exist."""
    conn.execute("""
        CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER PRIMARY KEY,
            applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            description TEXT
        )
    """)
    conn.commit()


def get_schema_version(conn: Any | None = None) -> int:
    """Get the current schema version from the database.

    Returns 0 if no migrations have been applied yet.
    """
    conn = get_conn(conn)
    _ensure_schema_version_table(conn)

    cursor = conn.execute("SELECT MAX(version) FROM schema_version")
    row = cursor.fetchone()
    return row[0] if row and row[0] is not None else 0


def check_schema_version(conn: Any | None = None) -> int:
    """Verify the stored schema matches this code. Returns the version."""
    version = get_schema_version(conn)
    if version != SCHEMA_VERSION:
        raise SchemaVersionError(SCHEMA_VERSION, version)
    return version


def record_migration(conn: Any, version: int, description: str) -> None:
    """Record that a migration has been applied."""
    conn.execute(
        "INSERT INTO schema_version (version, description) VALUES (?, ?)",
        (version, description),
    )
    conn.commit()


def _column_exists(conn: Any, table: str, column: str) -> bool:
    """Check if a column exists in a table."""
    cursor = conn.execute(f"PRAGMA table_info({table})")
    columns = [row[1] for row in cursor.fetchall()]
    return column in columns


# --- Migration Functions ---


def _migrate_001_subscription_last_seen(conn: Any) -> None:
    """Migration 001: Track when and from where a user last attached to a topic."""
    if not _column_exists(conn, "subscriptions", "last_seen"):
        conn.execute("ALTER TABLE subscriptions ADD COLUMN last_seen TIMESTAMP")
    if not _column_exists(conn, "subscriptions", "user_agent"):
        conn.execute("ALTER TABLE subscriptions ADD COLUMN user_agent TEXT DEFAULT ''")
    conn.commit()


def _migrate_002_dellog_indexes(conn: Any) -> None:
    """Migration 002: Index the deletion log for per-user message filtering."""
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_dellog_topic_delid ON dellog(topic, del_id, deleted_for)"
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_dellog_topic_for_range "
        "ON dellog(topic, deleted_for, low, hi)"
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_dellog_deleted_for ON dellog(deleted_for)")
    conn.commit()


# Migration registry: (version, description, migration_function)
MIGRATIONS: list[tuple[int, str, Callable[[Any], None]]] = [
    (1, "Add last_seen and user_agent to subscriptions", _migrate_001_subscription_last_seen),
    (2, "Add deletion log indexes", _migrate_002_dellog_indexes),
]


def run_migrations(conn: Any | None = None) -> list[int]:
    """Run any pending migrations.

    Returns a list of migration versions that were applied.
    """
    conn = get_conn(conn)
    _ensure_schema_version_table(conn)
    current_version = get_schema_version(conn)
    applied: list[int] = []

    for version, description, migrate_fn in MIGRATIONS:
        if version > current_version:
            try:
                migrate_fn(conn)
                record_migration(conn, version, description)
                applied.append(version)
                logger.info(f"Applied migration {version}: {description}")
            except Exception as e:
                raise RuntimeError(f"Migration {version} failed: {e}") from e

    return applied


# --- Schema Definition ---


SCHEMA_SQL = """
    -- Structured attributes (access, public, private, head, content, tags)
    -- are JSON in TEXT columns so scalars are not coerced to numbers.
    CREATE TABLE IF NOT EXISTS users (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL,
        deleted_at TIMESTAMP,
        state INTEGER DEFAULT 0,
        access TEXT,
        last_seen TIMESTAMP,
        user_agent TEXT DEFAULT '',
        public TEXT,
        tags TEXT
    );

    CREATE INDEX IF NOT EXISTS idx_users_deleted_at ON users(deleted_at);

    -- Tag index for user discovery
    CREATE TABLE IF NOT EXISTS usertags (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id INTEGER NOT NULL REFERENCES users(id),
        tag TEXT NOT NULL,
        UNIQUE (user_id, tag)
    );

    CREATE INDEX IF NOT EXISTS idx_usertags_tag ON usertags(tag);

    -- Push notification registrations, one user per device hash
    CREATE TABLE IF NOT EXISTS devices (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id INTEGER NOT NULL REFERENCES users(id),
        hash CHAR(16) NOT NULL UNIQUE,
        device_id TEXT NOT NULL,
        platform TEXT,
        last_seen TIMESTAMP NOT NULL,
        lang TEXT
    );

    CREATE INDEX IF NOT EXISTS idx_devices_user ON devices(user_id);

    CREATE TABLE IF NOT EXISTS topics (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL,
        deleted_at TIMESTAMP,
        touched_at TIMESTAMP,
        name TEXT NOT NULL UNIQUE,
        owner INTEGER NOT NULL DEFAULT 0,
        access TEXT,
        seq_id INTEGER NOT NULL DEFAULT 0,
        del_id INTEGER NOT NULL DEFAULT 0,
        public TEXT,
        tags TEXT
    );

    CREATE INDEX IF NOT EXISTS idx_topics_owner ON topics(owner);

    CREATE TABLE IF NOT EXISTS topictags (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        topic TEXT NOT NULL REFERENCES topics(name),
        tag TEXT NOT NULL,
        UNIQUE (topic, tag)
    );

    CREATE INDEX IF NOT EXISTS idx_topictags_tag ON topictags(tag);

    -- Subscriptions reference topics by name only: "me" subscriptions point
    -- at user topics that have no topics row.
    CREATE TABLE IF NOT EXISTS subscriptions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL,
        deleted_at TIMESTAMP,
        user_id INTEGER NOT NULL REFERENCES users(id),
        topic TEXT NOT NULL,
        del_id INTEGER DEFAULT 0,
        recv_seq_id INTEGER DEFAULT 0,
        read_seq_id INTEGER DEFAULT 0,
        mode_want TEXT,
        mode_given TEXT,
        private TEXT,
        last_seen TIMESTAMP,
        user_agent TEXT DEFAULT '',
        UNIQUE (topic, user_id)
    );

    CREATE INDEX IF NOT EXISTS idx_subscriptions_topic ON subscriptions(topic);
    CREATE INDEX IF NOT EXISTS idx_subscriptions_user ON subscriptions(user_id);

    CREATE TABLE IF NOT EXISTS messages (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL,
        deleted_at TIMESTAMP,
        del_id INTEGER NOT NULL DEFAULT 0,
        seq_id INTEGER NOT NULL,
        topic TEXT NOT NULL REFERENCES topics(name),
        from_user INTEGER NOT NULL,
        head TEXT,
        content TEXT,
        UNIQUE (topic, seq_id)
    );

    -- Deletion log: ranges [low, hi) removed for everyone (deleted_for = 0)
    -- or for one user
    CREATE TABLE IF NOT EXISTS dellog (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        topic TEXT NOT NULL REFERENCES topics(name),
        deleted_for INTEGER NOT NULL DEFAULT 0,
        del_id INTEGER NOT NULL,
        low INTEGER NOT NULL,
        hi INTEGER NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_dellog_topic_delid ON dellog(topic, del_id, deleted_for);
    CREATE INDEX IF NOT EXISTS idx_dellog_topic_for_range ON dellog(topic, deleted_for, low, hi);
    CREATE INDEX IF NOT EXISTS idx_dellog_deleted_for ON dellog(deleted_for);

    CREATE TABLE IF NOT EXISTS credentials (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL,
        deleted_at TIMESTAMP,
        method TEXT NOT NULL,
        value TEXT NOT NULL,
        synthetic TEXT NOT NULL UNIQUE,
        user_id INTEGER NOT NULL REFERENCES users(id),
        resp TEXT,
        done INTEGER NOT NULL DEFAULT 0,
        retries INTEGER NOT NULL DEFAULT 0
    );

    CREATE INDEX IF NOT EXISTS idx_credentials_user ON credentials(user_id, method);

    -- No foreign key on user_id: uploads outlive their uploader
    CREATE TABLE IF NOT EXISTS fileuploads (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL,
        user_id INTEGER NOT NULL,
        status INTEGER NOT NULL,
        mime_type TEXT NOT NULL,
        size INTEGER NOT NULL,
        location TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS filemsglinks (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        created_at TIMESTAMP NOT NULL,
        file_id INTEGER NOT NULL REFERENCES fileuploads(id) ON DELETE CASCADE,
        msg_id INTEGER NOT NULL REFERENCES messages(id) ON DELETE CASCADE
    );

    CREATE INDEX IF NOT EXISTS idx_filemsglinks_file ON filemsglinks(file_id);
    CREATE INDEX IF NOT EXISTS idx_filemsglinks_msg ON filemsglinks(msg_id);
"""

# Drop order matters with foreign keys enabled.
TABLES = [
    "filemsglinks",
    "fileuploads",
    "credentials",
    "dellog",
    "messages",
    "subscriptions",
    "topictags",
    "topics",
    "devices",
    "usertags",
    "users",
    "schema_version",
]


def init_db_with_conn(conn: Any) -> None:
    """Initialize database schema with an explicit connection."""
    conn.executescript(SCHEMA_SQL)
    conn.commit()
    run_migrations(conn)


def init_db() -> None:
    """Initialize database schema using the global connection."""
    conn = get_connection()
    init_db_with_conn(conn)


def reset_db(conn: Any | None = None) -> None:
    """Drop every table and recreate the schema."""
    conn = get_conn(conn)
    logger.warning("Dropping all chatstore tables")
    conn.executescript("".join(f"DROP TABLE IF EXISTS {table};\n" for table in TABLES))
    conn.commit()
    init_db_with_conn(conn)
