"""Tests for P2P topic naming and profile swapping."""

import pytest
from chatstore.errors import MalformedError
from chatstore.p2p import (
    TopicCategory,
    p2p_name,
    p2p_other,
    parse_p2p,
    swap_p2p_public,
    topic_category,
)
from chatstore.uid import encode_uid


@pytest.fixture
def alice():
    return encode_uid(1)


@pytest.fixture
def bob():
    return encode_uid(2)


class TestP2PName:
    """The P2P name is derived from both participants."""

    def test_order_independent(self, alice, bob):
        assert p2p_name(alice, bob) == p2p_name(bob, alice)

    def test_shape(self, alice, bob):
        name = p2p_name(alice, bob)
        assert name.startswith("p2p")
        assert len(name) == 25

    def test_distinct_pairs(self, alice, bob):
        carol = encode_uid(3)
        assert p2p_name(alice, bob) != p2p_name(alice, carol)

    def test_same_user_rejected(self, alice):
        with pytest.raises(MalformedError):
            p2p_name(alice, alice)

    def test_malformed_user_rejected(self, alice):
        with pytest.raises(MalformedError):
            p2p_name(alice, "nope")


class TestParseP2P:
    def test_parse_returns_both(self, alice, bob):
        users = parse_p2p(p2p_name(alice, bob))
        assert set(users) == {alice, bob}

    def test_other(self, alice, bob):
        name = p2p_name(alice, bob)
        assert p2p_other(name, alice) == bob
        assert p2p_other(name, bob) == alice

    def test_other_not_participant(self, alice, bob):
        name = p2p_name(alice, bob)
        with pytest.raises(MalformedError, match="not a participant"):
            p2p_other(name, encode_uid(3))

    @pytest.mark.parametrize("name", ["p2p", "p2pshort", "grpSomething", "p2p" + "A" * 22])
    def test_malformed(self, name):
        with pytest.raises(MalformedError):
            parse_p2p(name)


class TestTopicCategory:
    @pytest.mark.parametrize(
        "name, category",
        [
            ("me", TopicCategory.ME),
            ("usrAbCdEfGhIjK", TopicCategory.ME),
            ("fnd", TopicCategory.FND),
            ("p2pAbCd", TopicCategory.P2P),
            ("grpXyZ", TopicCategory.GRP),
            ("anything", TopicCategory.GRP),
        ],
    )
    def test_category(self, name, category):
        assert topic_category(name) == category


class TestSwapPublic:
    """Each P2P member sees the other's profile."""

    def test_two_members_swap(self):
        subs = [{"public": {"fn": "Alice"}}, {"public": {"fn": "Bob"}}]
        swap_p2p_public(subs)
        assert subs[0]["public"] == {"fn": "Bob"}
        assert subs[1]["public"] == {"fn": "Alice"}

    def test_single_member_cleared(self):
        subs = [{"public": {"fn": "Alice"}}]
        swap_p2p_public(subs)
        assert subs[0]["public"] is None

    def test_empty(self):
        subs = []
        swap_p2p_public(subs)
        assert subs == []
