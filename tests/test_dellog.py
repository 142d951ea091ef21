"""Tests for message deletion and the deletion log."""

import pytest
from chatstore import db, files, messages, topics, users
from chatstore.dellog import SeqRange, check_range, normalize_for_read, normalize_for_write
from chatstore.errors import MalformedError, NotFoundError
from chatstore.messages import delete_messages, get_deleted, get_messages
from chatstore.subscriptions import NewSubscription, create_subscription, subscription_get


@pytest.fixture
def chat():
    """A group topic with five messages from Alice, Alice and Bob subscribed."""
    alice = users.user_create(public={"fn": "Alice"})
    bob = users.user_create(public={"fn": "Bob"})
    topics.topic_create("grpChat", owner=alice["id"])
    for user in (alice, bob):
        create_subscription(NewSubscription(user["id"], "JRWPS", "JRWPS", topic="grpChat"))
    for i in range(5):
        messages.message_save("grpChat", alice["id"], content=f"message {i + 1}")
    return alice, bob


def seq_ids(rows):
    return [row["seq_id"] for row in rows]


class TestRanges:
    def test_single_message_forms(self):
        assert normalize_for_write(SeqRange(3)) == SeqRange(3, 4)
        assert normalize_for_write(SeqRange(3, 4)) == SeqRange(3, 4)
        assert normalize_for_read(SeqRange(3, 4)) == SeqRange(3, 0)
        assert normalize_for_read(SeqRange(3, 7)) == SeqRange(3, 7)

    @pytest.mark.parametrize("rng", [(0, 0), (-1, 2), (5, 5), (5, 3)])
    def test_invalid(self, rng):
        with pytest.raises(MalformedError):
            check_range(SeqRange(*rng))


class TestDeleteForOneUser:
    def test_hidden_only_for_that_user(self, chat):
        alice, bob = chat

        event = delete_messages("grpChat", [(2, 4)], deleted_for=alice["id"])

        assert event == {
            "topic": "grpChat",
            "del_id": 1,
            "deleted_for": alice["id"],
            "ranges": [SeqRange(2, 4)],
        }
        assert seq_ids(get_messages("grpChat", alice["id"])) == [5, 4, 1]
        assert seq_ids(get_messages("grpChat", bob["id"])) == [5, 4, 3, 2, 1]

    def test_subscription_del_id_advances(self, chat):
        alice, bob = chat

        delete_messages("grpChat", [(1, 0)], deleted_for=alice["id"])

        assert subscription_get("grpChat", alice["id"])["del_id"] == 1
        assert subscription_get("grpChat", bob["id"])["del_id"] == 0

    def test_other_users_do_not_see_the_event(self, chat):
        alice, bob = chat

        delete_messages("grpChat", [(1, 0)], deleted_for=alice["id"])

        assert len(get_deleted("grpChat", alice["id"])) == 1
        assert get_deleted("grpChat", bob["id"]) == []


class TestDeleteForEveryone:
    def test_messages_blanked(self, chat):
        alice, bob = chat

        event = delete_messages("grpChat", [(2, 0)])

        assert event["deleted_for"] == ""
        assert seq_ids(get_messages("grpChat", bob["id"])) == [5, 4, 3, 1]
        row = db.get_connection().execute(
            "SELECT deleted_at, del_id, head, content FROM messages WHERE topic = ? AND seq_id = 2",
            ("grpChat",),
        ).fetchone()
        assert row["deleted_at"] is not None
        assert row["del_id"] == 1
        assert row["head"] is None
        assert row["content"] is None

    def test_event_visible_to_everyone(self, chat):
        alice, bob = chat

        delete_messages("grpChat", [(2, 0)])

        for user in (alice, bob):
            events = get_deleted("grpChat", user["id"])
            assert events == [
                {"topic": "grpChat", "del_id": 1, "deleted_for": "", "ranges": [SeqRange(2, 0)]}
            ]

    def test_attachments_released(self, chat):
        alice, _ = chat
        msg = messages.message_save("grpChat", alice["id"], content="see attached")
        upload = files.file_start_upload(alice["id"], "image/png", "/blobs/cat.png")
        messages.message_attachments(msg["id"], [upload["id"]])

        assert files.file_delete_unused() == []

        delete_messages("grpChat", [(msg["seq_id"], 0)])

        assert files.file_delete_unused() == ["/blobs/cat.png"]


class TestDeletionLog:
    def test_both_single_forms_read_back_alike(self, chat):
        alice, _ = chat

        delete_messages("grpChat", [(3, 0)], deleted_for=alice["id"])
        delete_messages("grpChat", [(4, 5)], deleted_for=alice["id"])

        events = get_deleted("grpChat", alice["id"])
        assert [event["ranges"] for event in events] == [[SeqRange(3, 0)], [SeqRange(4, 0)]]

    def test_ranges_not_merged(self, chat):
        alice, _ = chat

        delete_messages("grpChat", [(3, 5), (1, 2), (4, 6)], deleted_for=alice["id"])

        events = get_deleted("grpChat", alice["id"])
        assert len(events) == 1
        assert events[0]["ranges"] == [SeqRange(3, 5), SeqRange(1, 0), SeqRange(4, 6)]

    def test_empty_ranges_do_nothing(self, chat):
        assert delete_messages("grpChat", []) is None
        assert topics.topic_get("grpChat")["del_id"] == 0
        assert get_deleted("grpChat", None) == []

    def test_malformed_range_records_nothing(self, chat):
        with pytest.raises(MalformedError):
            delete_messages("grpChat", [(2, 4), (0, 1)])

        assert topics.topic_get("grpChat")["del_id"] == 0
        assert get_deleted("grpChat", None) == []
        assert seq_ids(get_messages("grpChat", None)) == [5, 4, 3, 2, 1]

    def test_del_ids_increase(self, chat):
        alice, _ = chat

        ids = [delete_messages("grpChat", [(i, 0)])["del_id"] for i in (1, 2, 3)]

        assert ids == [1, 2, 3]
        assert topics.topic_get("grpChat")["del_id"] == 3

    def test_since_before(self, chat):
        for i in (1, 2, 3):
            delete_messages("grpChat", [(i, 0)])

        assert [e["del_id"] for e in get_deleted("grpChat", None, since=2)] == [2, 3]
        assert [e["del_id"] for e in get_deleted("grpChat", None, before=3)] == [1, 2]
        assert [e["del_id"] for e in get_deleted("grpChat", None, since=2, before=3)] == [2]

    def test_unknown_topic(self):
        with pytest.raises(NotFoundError):
            delete_messages("grpNope", [(1, 0)])

    def test_malformed_user(self, chat):
        with pytest.raises(MalformedError):
            delete_messages("grpChat", [(1, 0)], deleted_for="not-a-uid")
