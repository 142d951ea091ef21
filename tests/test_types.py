"""Tests for access modes, lifecycle and update descriptors."""

from datetime import datetime, timezone

import pytest
from chatstore.errors import MalformedError
from chatstore.types import (
    AccessMode,
    Lifecycle,
    UpdateField,
    build_update,
    from_json,
    lifecycle_of,
    to_iso,
    to_json,
)


class TestAccessMode:
    def test_parse_and_format(self):
        mode = AccessMode.parse("JRWPS")
        assert mode & AccessMode.READ
        assert mode & AccessMode.SHARE
        assert not mode & AccessMode.OWNER
        assert str(mode) == "JRWPS"

    def test_canonical_order(self):
        assert str(AccessMode.parse("OSRJ")) == "JRSO"

    def test_lowercase(self):
        assert AccessMode.parse("jrw") == AccessMode.JOIN | AccessMode.READ | AccessMode.WRITE

    @pytest.mark.parametrize("value", ["N", "", None])
    def test_none(self, value):
        mode = AccessMode.parse(value)
        assert mode == AccessMode.NONE
        assert str(mode) == "N"

    def test_invalid(self):
        with pytest.raises(MalformedError):
            AccessMode.parse("JRX")

    def test_owner(self):
        assert AccessMode.parse("JRWPASDO").is_owner()
        assert not AccessMode.parse("JRWPASD").is_owner()


class TestLifecycle:
    def test_states(self):
        assert lifecycle_of(None) == Lifecycle.ABSENT
        assert lifecycle_of({"deleted_at": None}) == Lifecycle.ACTIVE
        assert lifecycle_of({"deleted_at": "2024-01-01T00:00:00+00:00"}) == Lifecycle.SOFT_DELETED


class TestJsonHelpers:
    def test_none_stays_null(self):
        assert to_json(None) is None
        assert from_json(None) is None
        assert from_json("") is None

    def test_structured(self):
        value = {"fn": "Alice", "tags": [1, 2]}
        assert from_json(to_json(value)) == value

    @pytest.mark.parametrize("value", [0, 7, 1.5, "0", "", False])
    def test_scalars_are_not_null(self, value):
        assert from_json(to_json(value)) == value

    def test_to_iso_naive_is_utc(self):
        naive = datetime(2024, 5, 1, 12, 0, 0)
        assert to_iso(naive) == "2024-05-01T12:00:00+00:00"
        assert to_iso(datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)) == "2024-05-01T12:00:00+00:00"
        assert to_iso(None) is None

    @pytest.mark.parametrize(
        "text",
        [
            "2024-05-01T12:00:00Z",
            "2024-05-01T12:00:00",
            "2024-05-01T14:00:00+02:00",
            "2024-05-01T12:00:00+00:00",
        ],
    )
    def test_to_iso_normalizes_strings(self, text):
        assert to_iso(text) == "2024-05-01T12:00:00+00:00"

    def test_to_iso_malformed(self):
        with pytest.raises(MalformedError, match="Invalid timestamp"):
            to_iso("last tuesday")


FIELDS = {
    "public": UpdateField("public", json_encoded=True),
    "tags": UpdateField("tags", tags=True),
    "read_seq_id": UpdateField("read_seq_id", monotonic=True),
    "mode_want": UpdateField("mode_want", mode=True),
    "state": UpdateField("state"),
}


class TestBuildUpdate:
    """Update mappings are validated against explicit field descriptors."""

    def test_plain_and_json(self):
        assignments, args, tags = build_update(FIELDS, {"public": {"fn": "A"}, "state": 1})
        assert assignments == ["public = ?", "state = ?"]
        assert args == ['{"fn": "A"}', 1]
        assert tags is None

    def test_monotonic(self):
        assignments, args, _ = build_update(FIELDS, {"read_seq_id": 7})
        assert assignments == ["read_seq_id = MAX(read_seq_id, ?)"]
        assert args == [7]

    def test_tags(self):
        assignments, args, tags = build_update(FIELDS, {"tags": ["a", "b"]})
        assert assignments == ["tags = ?"]
        assert args == ['["a", "b"]']
        assert tags == ["a", "b"]

    @pytest.mark.parametrize("value", ["travel", b"travel"])
    def test_tags_must_be_a_list(self, value):
        with pytest.raises(MalformedError, match="list of tags"):
            build_update(FIELDS, {"tags": value})

    def test_mode(self):
        _, args, _ = build_update(FIELDS, {"mode_want": "RJ"})
        assert args == ["JR"]

    def test_unknown_field(self):
        with pytest.raises(MalformedError, match="cannot be updated"):
            build_update(FIELDS, {"public": None, "id": 5})

    def test_empty(self):
        with pytest.raises(MalformedError, match="Empty update"):
            build_update(FIELDS, {})
