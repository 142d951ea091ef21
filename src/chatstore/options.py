"""Configuration options for the chatstore storage layer.

Provides StoreOptions for choosing the database and the limits applied to
every query. Supports environment variable overrides for CI/CD and
containerized deployments.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

import yaml

from .db import DEFAULT_MAX_RESULTS
from .errors import MalformedError, StoreConfigError
from .uid import UidCodec


@dataclass
class StoreOptions:
    """Configuration options for opening a chatstore.

    Environment Variables:
        CHATSTORE_DB: Database file, directory or ":memory:"
        TURSO_URL: libsql:// URL of a Turso database
        CHATSTORE_MAX_RESULTS: Cap on rows returned by one call
        CHATSTORE_UID_KEY: Base64 key for the identifier codec
        TURSO_AUTH_TOKEN: Token for the Turso database

    Examples:
        # In-memory for tests
        options = StoreOptions(dsn=":memory:")

        # File database, one file per database name inside a directory
        options = StoreOptions(dsn="/var/lib/chat", database="prod")

        # From the single JSON configuration value
        options = StoreOptions.from_json('{"dsn": "chat.sqlite3", "max_results": 200}')
    """

    dsn: str | None = None
    """File path, directory, ":memory:" or libsql:// URL."""

    database: str = "chatstore"
    """Database name; the file name when dsn is a directory."""

    max_results: int = DEFAULT_MAX_RESULTS
    """Maximum rows returned by a single call. Non-positive resets to the default."""

    uid_key: str | None = None
    """Base64 key for identifier obfuscation. None uses the built-in key."""

    auth_token: str | None = None
    """Auth token for libsql:// databases."""

    def __post_init__(self) -> None:
        """Apply environment variable overrides, then validate."""
        self._apply_env_overrides()
        self._validate()

    def _apply_env_overrides(self) -> None:
        """Environment variables only apply when no explicit dsn is given.

        Secrets (auth token, identifier key) are always taken from the
        environment when not set explicitly.
        """
        if not self.auth_token:
            self.auth_token = os.environ.get("TURSO_AUTH_TOKEN") or None
        if not self.uid_key:
            self.uid_key = os.environ.get("CHATSTORE_UID_KEY") or None

        if self.dsn is not None:
            return

        self.dsn = os.environ.get("CHATSTORE_DB") or os.environ.get("TURSO_URL") or None

        env_max = os.environ.get("CHATSTORE_MAX_RESULTS")
        if env_max:
            try:
                self.max_results = int(env_max)
            except ValueError as e:
                raise StoreConfigError(f"CHATSTORE_MAX_RESULTS is not an integer: {env_max!r}") from e

    def _validate(self) -> None:
        if not isinstance(self.max_results, int) or isinstance(self.max_results, bool):
            raise StoreConfigError(f"max_results must be an integer, got {self.max_results!r}")
        if self.max_results <= 0:
            self.max_results = DEFAULT_MAX_RESULTS

        if not self.database:
            raise StoreConfigError("database name must not be empty")

        if self.uid_key:
            try:
                UidCodec(self.uid_key)
            except MalformedError as e:
                raise StoreConfigError(str(e)) from e

        if self.dsn and "://" in self.dsn and not self.is_libsql():
            raise StoreConfigError(f"Unsupported database URL: {self.dsn}")

    def is_libsql(self) -> bool:
        return bool(self.dsn and self.dsn.startswith("libsql://"))

    def is_in_memory(self) -> bool:
        return self.dsn in (None, ":memory:")

    def resolved_path(self) -> str:
        """Connection target: ":memory:", a libsql:// URL or a file path."""
        if self.dsn is None or self.is_in_memory():
            return ":memory:"
        if self.is_libsql():
            return self.dsn
        path = Path(self.dsn).expanduser()
        if path.is_dir():
            path = path / f"{self.database}.sqlite3"
        return str(path)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StoreOptions":
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise StoreConfigError(f"Unknown store options: {', '.join(sorted(unknown))}")
        return cls(**data)

    @classmethod
    def from_json(cls, text: str) -> "StoreOptions":
        """Build options from the single JSON configuration value."""
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise StoreConfigError(f"Invalid store configuration: {e}") from e
        if not isinstance(data, dict):
            raise StoreConfigError("Store configuration must be a JSON object")
        return cls.from_dict(data)

    @classmethod
    def load(cls, path: str | Path) -> "StoreOptions":
        """Load options from a YAML file, either flat or under a ``store:`` key."""
        path = Path(path)
        if not path.exists():
            raise StoreConfigError(f"Config file not found: {path}")

        with open(path) as f:
            data = yaml.safe_load(f) or {}
        if isinstance(data, dict) and isinstance(data.get("store"), dict):
            data = data["store"]
        if not isinstance(data, dict):
            raise StoreConfigError(f"Config file must contain a mapping: {path}")
        return cls.from_dict(data)

    def save(self, path: str | Path) -> None:
        """Write options to a YAML file. Secrets are not written."""
        data = {"store": {"dsn": self.dsn, "database": self.database, "max_results": self.max_results}}
        with open(path, "w") as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary (for debugging/logging)."""
        return {
            "dsn": self.dsn,
            "database": self.database,
            "path": self.resolved_path(),
            "max_results": self.max_results,
            "has_uid_key": self.uid_key is not None,
            "has_auth_token": self.auth_token is not None,
        }
