"""Topic naming and peer-to-peer identity.

A P2P topic has no stored back-reference to its two participants. Its name
is derived from both user ids, so the participants (and "the other party"
relative to a given user) are always computed from the name itself.
"""

from __future__ import annotations

import enum
from typing import Any

from .errors import MalformedError
from .uid import ZERO_UID, b64url_decode, b64url_encode, decode_uid, uid_bytes, uid_from_bytes

P2P_PREFIX = "p2p"
USER_PREFIX = "usr"
FND_PREFIX = "fnd"
GRP_PREFIX = "grp"


class TopicCategory(str, enum.Enum):
    """Category of a topic, derived from its name."""

    ME = "me"
    FND = "fnd"
    P2P = "p2p"
    GRP = "grp"


def topic_category(name: str) -> TopicCategory:
    """Classify a topic name."""
    if name == "me" or name.startswith(USER_PREFIX):
        return TopicCategory.ME
    if name.startswith(FND_PREFIX):
        return TopicCategory.FND
    if name.startswith(P2P_PREFIX):
        return TopicCategory.P2P
    return TopicCategory.GRP


def p2p_name(user1: str, user2: str) -> str:
    """Order-independent P2P topic name for two users."""
    raw1 = uid_bytes(user1)
    raw2 = uid_bytes(user2)
    if raw1 == raw2:
        raise MalformedError("P2P topic requires two distinct users")
    if int.from_bytes(raw1, "little") > int.from_bytes(raw2, "little"):
        raw1, raw2 = raw2, raw1
    return P2P_PREFIX + b64url_encode(raw1 + raw2)


def parse_p2p(name: str) -> tuple[str, str]:
    """Extract both participant ids from a P2P topic name."""
    if not name.startswith(P2P_PREFIX):
        raise MalformedError(f"Not a P2P topic: {name!r}")
    raw = b64url_decode(name[len(P2P_PREFIX) :], 16)
    if raw is None:
        raise MalformedError(f"Malformed P2P topic name: {name!r}")

    user1, user2 = uid_from_bytes(raw[:8]), uid_from_bytes(raw[8:])
    if decode_uid(user1) == ZERO_UID or decode_uid(user2) == ZERO_UID:
        raise MalformedError(f"Malformed P2P topic name: {name!r}")
    return user1, user2


def p2p_other(name: str, user: str) -> str:
    """The participant of a P2P topic that is not ``user``."""
    user1, user2 = parse_p2p(name)
    if user == user1:
        return user2
    if user == user2:
        return user1
    raise MalformedError(f"User {user} is not a participant of {name}")


def swap_p2p_public(subs: list[dict[str, Any]]) -> None:
    """Give each member of a P2P topic the other member's public profile.

    A P2P topic has no public profile of its own. With both members present
    the profiles are swapped pairwise; with only one left the profile is
    cleared.
    """
    if len(subs) == 1:
        subs[0]["public"] = None
    elif len(subs) >= 2:
        subs[0]["public"], subs[1]["public"] = subs[1]["public"], subs[0]["public"]
