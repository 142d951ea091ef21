"""Opaque identifiers for chatstore entities.

Rows are keyed by monotonic integers. Callers never see those: every key
crossing the storage boundary is permuted with a keyed 64-bit Feistel
network and rendered as 11 characters of unpadded base64url.

Decoding never raises. Anything that is not a canonical encoding of a
positive 64-bit id decodes to ZERO_UID, which callers check before use.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import re

from .errors import MalformedError

ZERO_UID = 0

# Default obfuscation key (16 bytes, base64). Override with configure_codec().
DEFAULT_UID_KEY = "la6YsO+bNX/+XIkOqc5Svw=="

UID_STRING_LEN = 11
MAX_ID = (1 << 63) - 1

_MASK32 = 0xFFFFFFFF
_ROUNDS = 8
_UID_RE = re.compile(r"^[A-Za-z0-9_-]+$")


def b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def b64url_decode(text: str, length: int) -> bytes | None:
    """Strictly decode unpadded base64url; None when malformed or wrong length."""
    if not isinstance(text, str) or not _UID_RE.match(text):
        return None
    padded = text + "=" * (-len(text) % 4)
    try:
        raw = base64.urlsafe_b64decode(padded)
    except (binascii.Error, ValueError):
        return None
    if len(raw) != length or b64url_encode(raw) != text:
        return None
    return raw


class UidCodec:
    """Keyed bijection between numeric ids and opaque identifier strings."""

    def __init__(self, key: bytes | str | None = None):
        if key is None:
            key = DEFAULT_UID_KEY
        if isinstance(key, str):
            try:
                key = base64.b64decode(key, validate=True)
            except (binascii.Error, ValueError) as e:
                raise MalformedError(f"Identifier key is not valid base64: {e}") from e
        if not 1 <= len(key) <= 64:
            raise MalformedError("Identifier key must be 1 to 64 bytes")
        self._key = key

    def _round(self, half: int, index: int) -> int:
        digest = hashlib.blake2b(
            half.to_bytes(4, "little"),
            digest_size=4,
            key=self._key,
            person=b"chatstore-uid-%d" % index,
        ).digest()
        return int.from_bytes(digest, "little")

    def obfuscate(self, number: int) -> int:
        """Permute a 64-bit value."""
        left, right = number >> 32, number & _MASK32
        for index in range(_ROUNDS):
            left, right = right, left ^ self._round(right, index)
        return (left << 32) | right

    def reveal(self, value: int) -> int:
        """Inverse of obfuscate()."""
        left, right = value >> 32, value & _MASK32
        for index in reversed(range(_ROUNDS)):
            left, right = right ^ self._round(left, index), left
        return (left << 32) | right

    def encode(self, number: int | None) -> str:
        """Encode a numeric id. Ids outside 1..2**63-1 encode to ""."""
        if not isinstance(number, int) or isinstance(number, bool):
            return ""
        if number < 1 or number > MAX_ID:
            return ""
        return b64url_encode(self.obfuscate(number).to_bytes(8, "little"))

    def decode(self, text: str | None) -> int:
        """Decode an opaque id. Malformed input yields ZERO_UID."""
        raw = b64url_decode(text, 8) if text else None
        if raw is None:
            return ZERO_UID
        value = int.from_bytes(raw, "little")
        if value == 0:
            return ZERO_UID
        number = self.reveal(value)
        if number < 1 or number > MAX_ID:
            return ZERO_UID
        return number


_codec = UidCodec()


def configure_codec(key: bytes | str | None) -> None:
    """Install the identifier key used by encode_uid/decode_uid."""
    global _codec
    _codec = UidCodec(key)


def encode_uid(number: int | None) -> str:
    """Encode an internal numeric key as an opaque identifier."""
    return _codec.encode(number)


def decode_uid(text: str | None) -> int:
    """Decode an opaque identifier; returns ZERO_UID when malformed."""
    return _codec.decode(text)


def require_uid(text: str | None, what: str = "identifier") -> int:
    """Decode an opaque identifier or raise MalformedError."""
    number = decode_uid(text)
    if number == ZERO_UID:
        raise MalformedError(f"Malformed {what}: {text!r}")
    return number


def uid_bytes(text: str) -> bytes:
    """Raw 8-byte form of a valid opaque identifier."""
    require_uid(text)
    raw = b64url_decode(text, 8)
    if raw is None:
        raise MalformedError(f"Malformed identifier: {text!r}")
    return raw


def uid_from_bytes(raw: bytes) -> str:
    """Opaque identifier from its raw 8-byte form."""
    return b64url_encode(raw)


def user_topic(uid: str) -> str:
    """Name of a user's own ("me") topic."""
    require_uid(uid, "user id")
    return "usr" + uid
