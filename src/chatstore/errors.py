"""Error types raised by the chatstore storage layer.

Callers distinguish four outcomes:
- NotFoundError: a targeted mutation matched nothing
- DuplicateError: a uniqueness constraint was violated
- MalformedError: an argument was rejected before any statement ran
- anything else: an engine failure, propagated unchanged
"""

from __future__ import annotations


class StoreError(Exception):
    """Base class for errors reported by the storage layer."""

    pass


class NotFoundError(StoreError):
    """Raised when a targeted mutation affected zero rows."""

    pass


class DuplicateError(StoreError):
    """Raised when a uniqueness constraint was violated."""

    pass


class MalformedError(StoreError, ValueError):
    """Raised when an identifier or argument is invalid."""

    pass


class SchemaVersionError(StoreError):
    """Raised when the stored schema version does not match the code."""

    def __init__(self, expected: int, actual: int):
        self.expected = expected
        self.actual = actual
        super().__init__(f"Schema version mismatch: expected {expected}, found {actual}")


class StoreConfigError(StoreError):
    """Raised when StoreOptions configuration is invalid."""

    pass


def is_dupe(error: Exception) -> bool:
    """Check if an engine error reports a uniqueness violation.

    sqlite3 raises IntegrityError with "UNIQUE constraint failed"; libsql
    surfaces the same message text through its own exception types.
    """
    message = str(error)
    return "UNIQUE constraint failed" in message or "SQLITE_CONSTRAINT_UNIQUE" in message
