"""Shared types for chatstore entities.

- Lifecycle: the three-way state every deletable entity is in
- AccessMode: subscription permission bits ("JRWPASDO")
- UpdateField / build_update: explicit updatable-column descriptors
- JSON and timestamp helpers used by every store module
"""

from __future__ import annotations

import enum
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping

from .errors import MalformedError


def now_iso() -> str:
    """Current UTC time as an ISO-8601 string (the storage format for timestamps)."""
    return datetime.now(timezone.utc).isoformat()


def to_iso(value: datetime | str | None) -> str | None:
    """Normalize a datetime or ISO-8601 string to the storage format.

    Stored timestamps are compared as strings, so every value is re-emitted
    in UTC with an explicit offset. Naive values are taken as UTC.
    """
    if value is None:
        return None
    if isinstance(value, str):
        text = value.strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            value = datetime.fromisoformat(text)
        except ValueError:
            raise MalformedError(f"Invalid timestamp: {value!r}") from None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def to_json(value: Any) -> str | None:
    """Serialize a structured attribute as JSON text. None stays NULL."""
    if value is None:
        return None
    return json.dumps(value)


def from_json(value: str | bytes | None) -> Any:
    """Deserialize a JSON column value. NULL and empty values read back as None."""
    if value is None or value == "":
        return None
    return json.loads(value)


class Lifecycle(str, enum.Enum):
    """Lifecycle state of a user, topic, subscription, message or credential."""

    ACTIVE = "active"
    SOFT_DELETED = "soft-deleted"
    ABSENT = "absent"


def lifecycle_of(row: Mapping[str, Any] | None) -> Lifecycle:
    """Derive the lifecycle state from a row's deleted_at column."""
    if row is None:
        return Lifecycle.ABSENT
    if row.get("deleted_at") is not None:
        return Lifecycle.SOFT_DELETED
    return Lifecycle.ACTIVE


class AccessMode(enum.IntFlag):
    """Subscription permission bits."""

    NONE = 0
    JOIN = 0x01
    READ = 0x02
    WRITE = 0x04
    PRES = 0x08
    APPROVE = 0x10
    SHARE = 0x20
    DELETE = 0x40
    OWNER = 0x80

    @classmethod
    def parse(cls, value: "str | AccessMode | None") -> "AccessMode":
        """Parse a mode string such as "JRWPS". "N" and empty mean no access."""
        if isinstance(value, AccessMode):
            return value
        if not value or value == "N":
            return cls.NONE

        mode = cls.NONE
        for char in value.upper():
            bit = _MODE_CHARS.get(char)
            if bit is None:
                raise MalformedError(f"Invalid access mode {value!r}")
            mode |= bit
        return mode

    def is_owner(self) -> bool:
        return bool(self & AccessMode.OWNER)

    def __str__(self) -> str:
        if not self:
            return "N"
        return "".join(char for char, bit in _MODE_CHARS.items() if self & bit)


_MODE_CHARS: dict[str, AccessMode] = {
    "J": AccessMode.JOIN,
    "R": AccessMode.READ,
    "W": AccessMode.WRITE,
    "P": AccessMode.PRES,
    "A": AccessMode.APPROVE,
    "S": AccessMode.SHARE,
    "D": AccessMode.DELETE,
    "O": AccessMode.OWNER,
}


@dataclass(frozen=True)
class UpdateField:
    """Descriptor for one updatable column of an entity."""

    column: str
    json_encoded: bool = False
    """Value is a structured attribute serialized with to_json."""

    tags: bool = False
    """Value is the tag list; the tag index must be replaced alongside."""

    monotonic: bool = False
    """Column only ever advances (sequence watermarks)."""

    mode: bool = False
    """Value is an access mode, stored as its string form."""

    timestamp: bool = False
    """Value is a datetime, stored in ISO-8601 form."""


def build_update(
    fields: Mapping[str, UpdateField],
    update: Mapping[str, Any],
) -> tuple[list[str], list[Any], list[str] | None]:
    """Translate an update mapping into SET clauses.

    Returns (assignments, args, tags). ``tags`` is None unless the update
    replaces the tag list. Unknown keys raise MalformedError so nothing is
    executed for a bad request.
    """
    if not update:
        raise MalformedError("Empty update")

    assignments: list[str] = []
    args: list[Any] = []
    tags: list[str] | None = None

    for key, value in update.items():
        descriptor = fields.get(key)
        if descriptor is None:
            raise MalformedError(f"Field {key!r} cannot be updated")

        if descriptor.json_encoded:
            value = to_json(value)
        elif descriptor.mode:
            value = str(AccessMode.parse(value))
        elif descriptor.timestamp:
            value = to_iso(value)

        if descriptor.tags:
            if isinstance(value, (str, bytes)):
                raise MalformedError(f"Field {key!r} must be a list of tags")
            tags = [tag for tag in dict.fromkeys(value or []) if tag]
            value = to_json(tags)

        if descriptor.monotonic:
            assignments.append(f"{descriptor.column} = MAX({descriptor.column}, ?)")
        else:
            assignments.append(f"{descriptor.column} = ?")
        args.append(value)

    return assignments, args, tags
