"""Shared pytest configuration and fixtures."""

import os

# Set environment variables before any imports
os.environ["CHATSTORE_DB"] = ":memory:"
os.environ.pop("TURSO_URL", None)
os.environ.pop("CHATSTORE_UID_KEY", None)
os.environ.pop("CHATSTORE_MAX_RESULTS", None)


import pytest
from chatstore import db, uid
from chatstore.metrics import metrics


@pytest.fixture(autouse=True, scope="function")
def reset_database(monkeypatch):
    """Reset database before each test function.

    For in-memory shared cache databases, we need to do a full reset to
    clear all tables, since close_db() doesn't destroy the shared cache.
    Global settings changed by open_store() are restored afterwards.
    """
    monkeypatch.setattr(db, "_db_config", dict(db._db_config))
    monkeypatch.setattr(uid, "_codec", uid.UidCodec())

    conn = db.get_connection()
    # Temporarily disable foreign keys to allow dropping in any order
    conn.execute("PRAGMA foreign_keys=OFF")
    conn.executescript("".join(f"DROP TABLE IF EXISTS {table};\n" for table in db.TABLES))
    conn.commit()
    conn.execute("PRAGMA foreign_keys=ON")

    # Now initialize fresh schema
    db.init_db_with_conn(conn)
    metrics.reset()
    yield
    db.close_db()  # Cleanup after test
