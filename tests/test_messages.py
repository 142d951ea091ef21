"""Tests for storing and listing messages."""

import pytest
from chatstore import files, messages, topics, users
from chatstore.errors import MalformedError, NotFoundError
from chatstore.types import Lifecycle
from chatstore.uid import encode_uid


@pytest.fixture
def alice():
    user = users.user_create(public={"fn": "Alice"})
    topics.topic_create("grpChat", owner=user["id"])
    return user


class TestMessageSave:
    def test_sequence_ids(self, alice):
        saved = [messages.message_save("grpChat", alice["id"], content=str(i)) for i in range(3)]

        assert [msg["seq_id"] for msg in saved] == [1, 2, 3]
        assert topics.topic_get("grpChat")["seq_id"] == 3

    def test_returns_message(self, alice):
        msg = messages.message_save(
            "grpChat", alice["id"], head={"mime": "text/x-drafty"}, content={"txt": "hi"}
        )

        assert msg["from"] == alice["id"]
        assert msg["topic"] == "grpChat"
        assert msg["lifecycle"] == Lifecycle.ACTIVE
        assert msg["id"]

        stored = messages.get_messages("grpChat", alice["id"])[0]
        assert stored["id"] == msg["id"]
        assert stored["from"] == alice["id"]
        assert stored["head"] == {"mime": "text/x-drafty"}
        assert stored["content"] == {"txt": "hi"}
        assert stored["lifecycle"] == Lifecycle.ACTIVE

    @pytest.mark.parametrize("content", [0, 7, 1.5, "0", "", False, [0]])
    def test_scalar_content_round_trips(self, alice, content):
        messages.message_save("grpChat", alice["id"], head={"seq": 0}, content=content)

        stored = messages.get_messages("grpChat", alice["id"])[0]
        assert stored["content"] == content
        assert type(stored["content"]) is type(content)
        assert stored["head"] == {"seq": 0}

    def test_sequences_are_per_topic(self, alice):
        topics.topic_create("grpOther", owner=alice["id"])

        messages.message_save("grpChat", alice["id"], content="a")
        messages.message_save("grpChat", alice["id"], content="b")
        other = messages.message_save("grpOther", alice["id"], content="c")

        assert other["seq_id"] == 1

    def test_unknown_topic(self, alice):
        with pytest.raises(NotFoundError):
            messages.message_save("grpNope", alice["id"], content="lost")

    def test_malformed_sender(self, alice):
        with pytest.raises(MalformedError):
            messages.message_save("grpChat", "bogus", content="lost")
        assert topics.topic_get("grpChat")["seq_id"] == 0

    def test_touches_topic(self, alice):
        before = topics.topic_get("grpChat")["touched_at"]
        messages.message_save("grpChat", alice["id"], content="x")
        assert topics.topic_get("grpChat")["touched_at"] >= before


class TestGetMessages:
    @pytest.fixture
    def ten(self, alice):
        for i in range(10):
            messages.message_save("grpChat", alice["id"], content=i)
        return alice

    def test_newest_first(self, ten):
        rows = messages.get_messages("grpChat", ten["id"])
        assert [row["seq_id"] for row in rows] == list(range(10, 0, -1))

    def test_since_before(self, ten):
        rows = messages.get_messages("grpChat", ten["id"], since=3, before=6)
        assert [row["seq_id"] for row in rows] == [5, 4, 3]

    def test_limit(self, ten):
        rows = messages.get_messages("grpChat", ten["id"], limit=2)
        assert [row["seq_id"] for row in rows] == [10, 9]

    def test_max_results_caps_limit(self, ten):
        from chatstore import db

        db.set_max_results(4)
        assert len(messages.get_messages("grpChat", ten["id"], limit=100)) == 4

    def test_other_topic_empty(self, ten):
        assert messages.get_messages("grpEmpty", ten["id"]) == []


class TestAttachments:
    def test_links_files(self, alice):
        msg = messages.message_save("grpChat", alice["id"], content="files")
        first = files.file_start_upload(alice["id"], "image/png", "/blobs/1")
        second = files.file_start_upload(alice["id"], "image/png", "/blobs/2")
        unused = files.file_start_upload(alice["id"], "image/png", "/blobs/3")

        messages.message_attachments(msg["id"], [first["id"], second["id"]])

        assert files.file_delete_unused() == ["/blobs/3"]
        assert files.file_get(unused["id"]) is None
        assert files.file_get(first["id"]) is not None

    def test_empty_list(self, alice):
        msg = messages.message_save("grpChat", alice["id"], content="files")
        with pytest.raises(MalformedError):
            messages.message_attachments(msg["id"], [])

    def test_malformed_file_id(self, alice):
        msg = messages.message_save("grpChat", alice["id"], content="files")
        upload = files.file_start_upload(alice["id"], "image/png", "/blobs/1")

        with pytest.raises(MalformedError):
            messages.message_attachments(msg["id"], [upload["id"], "???"])

        assert files.file_delete_unused() == ["/blobs/1"]

    def test_malformed_message_id(self, alice):
        upload = files.file_start_upload(alice["id"], "image/png", "/blobs/1")
        with pytest.raises(MalformedError):
            messages.message_attachments(encode_uid(0), [upload["id"]])
