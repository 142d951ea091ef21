"""Tests for subscriptions."""

import pytest
from chatstore import subscriptions, topics, users
from chatstore.errors import MalformedError, NotFoundError
from chatstore.subscriptions import NewSubscription, create_subscription
from chatstore.types import AccessMode, Lifecycle


@pytest.fixture
def team():
    alice = users.user_create(public={"fn": "Alice"})
    bob = users.user_create(public={"fn": "Bob"})
    topics.topic_create("grpTeam", owner=alice["id"])
    create_subscription(NewSubscription(alice["id"], "JRWPASDO", "JRWPASDO", topic="grpTeam"))
    create_subscription(
        NewSubscription(bob["id"], "JRWPS", "JRWP", private={"alias": "work"}, topic="grpTeam")
    )
    return alice, bob


class TestNewSubscription:
    def test_is_owner(self):
        assert NewSubscription("x", "JRWPASDO", "JRWPASDO").is_owner()
        assert not NewSubscription("x", "JRWPASDO", "JRWP").is_owner()
        assert not NewSubscription("x").is_owner()

    def test_bad_mode(self, team):
        alice, _ = team
        with pytest.raises(MalformedError):
            create_subscription(NewSubscription(alice["id"], "JRX", "JR", topic="grpTeam"))


class TestGet:
    def test_get(self, team):
        _, bob = team

        sub = subscriptions.subscription_get("grpTeam", bob["id"])

        assert sub["user"] == bob["id"]
        assert sub["topic"] == "grpTeam"
        assert sub["mode_want"] == "JRWPS"
        assert sub["mode_given"] == "JRWP"
        assert sub["private"] == {"alias": "work"}
        assert sub["read_seq_id"] == 0
        assert sub["lifecycle"] == Lifecycle.ACTIVE

    def test_deleted(self, team):
        _, bob = team
        subscriptions.subs_delete("grpTeam", bob["id"])

        assert subscriptions.subscription_get("grpTeam", bob["id"]) is None
        sub = subscriptions.subscription_get("grpTeam", bob["id"], keep_deleted=True)
        assert sub["lifecycle"] == Lifecycle.SOFT_DELETED

    def test_for_topic_and_user(self, team):
        alice, bob = team

        assert [s["user"] for s in subscriptions.subs_for_topic("grpTeam")] == [alice["id"], bob["id"]]
        assert [s["user"] for s in subscriptions.subs_for_topic("grpTeam", user=bob["id"])] == [bob["id"]]
        assert [s["topic"] for s in subscriptions.subs_for_user(bob["id"])] == ["grpTeam"]
        assert subscriptions.subs_for_user(bob["id"], topic="grpOther") == []

    def test_limit(self, team):
        assert len(subscriptions.subs_for_topic("grpTeam", limit=1)) == 1


class TestUpdate:
    def test_watermarks_never_go_back(self, team):
        _, bob = team

        subscriptions.subs_update("grpTeam", bob["id"], {"read_seq_id": 5, "recv_seq_id": 7})
        subscriptions.subs_update("grpTeam", bob["id"], {"read_seq_id": 3, "recv_seq_id": 9})

        sub = subscriptions.subscription_get("grpTeam", bob["id"])
        assert sub["read_seq_id"] == 5
        assert sub["recv_seq_id"] == 9

    def test_modes_and_private(self, team):
        _, bob = team

        updated = subscriptions.subs_update(
            "grpTeam", bob["id"], {"mode_given": AccessMode.parse("JR"), "private": None}
        )

        assert updated == 1
        sub = subscriptions.subscription_get("grpTeam", bob["id"])
        assert sub["mode_given"] == "JR"
        assert sub["private"] is None

    def test_all_members(self, team):
        assert subscriptions.subs_update("grpTeam", None, {"mode_given": "JRW"}) == 2
        assert {s["mode_given"] for s in subscriptions.subs_for_topic("grpTeam")} == {"JRW"}

    def test_unknown_field(self, team):
        _, bob = team
        with pytest.raises(MalformedError):
            subscriptions.subs_update("grpTeam", bob["id"], {"topic": "grpElsewhere"})

    def test_last_seen(self, team):
        _, bob = team

        subscriptions.subs_last_seen("grpTeam", bob["id"], "2024-05-01T12:00:00+00:00", "android/2.0")

        sub = subscriptions.subscription_get("grpTeam", bob["id"])
        assert sub["last_seen"] == "2024-05-01T12:00:00+00:00"
        assert sub["user_agent"] == "android/2.0"


class TestDelete:
    def test_delete_twice(self, team):
        _, bob = team
        subscriptions.subs_delete("grpTeam", bob["id"])
        with pytest.raises(NotFoundError):
            subscriptions.subs_delete("grpTeam", bob["id"])

    def test_resubscribe_revives_row(self, team):
        _, bob = team
        subscriptions.subs_delete("grpTeam", bob["id"])

        create_subscription(NewSubscription(bob["id"], "JR", "JR", topic="grpTeam"))

        sub = subscriptions.subscription_get("grpTeam", bob["id"])
        assert sub["mode_want"] == "JR"
        assert sub["private"] is None
        assert len(subscriptions.subs_for_topic("grpTeam", keep_deleted=True)) == 2

    def test_delete_for_topic(self, team):
        subscriptions.subs_del_for_topic("grpTeam")
        assert subscriptions.subs_for_topic("grpTeam") == []
        assert len(subscriptions.subs_for_topic("grpTeam", keep_deleted=True)) == 2

        subscriptions.subs_del_for_topic("grpTeam", hard=True)
        assert subscriptions.subs_for_topic("grpTeam", keep_deleted=True) == []

    def test_delete_for_user(self, team):
        alice, bob = team
        topics.topic_create("grpOther", owner=alice["id"])
        create_subscription(NewSubscription(bob["id"], "JR", "JR", topic="grpOther"))

        subscriptions.subs_del_for_user(bob["id"])

        assert subscriptions.subs_for_user(bob["id"]) == []
        assert len(subscriptions.subs_for_user(bob["id"], keep_deleted=True)) == 2
        assert [s["user"] for s in subscriptions.subs_for_topic("grpTeam")] == [alice["id"]]
