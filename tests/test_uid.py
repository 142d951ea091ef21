"""Tests for the opaque identifier codec."""

import pytest
from chatstore import uid
from chatstore.errors import MalformedError
from chatstore.uid import MAX_ID, ZERO_UID, UidCodec, decode_uid, encode_uid


class TestRoundTrip:
    """encode/decode are inverses for every valid id."""

    @pytest.mark.parametrize("number", [1, 2, 3, 255, 1000, 2**31, 2**32 + 7, MAX_ID])
    def test_round_trip(self, number):
        encoded = encode_uid(number)
        assert len(encoded) == uid.UID_STRING_LEN
        assert decode_uid(encoded) == number

    def test_encoding_is_not_sequential(self):
        """Consecutive ids should not produce related-looking strings."""
        first, second = encode_uid(1), encode_uid(2)
        assert first != second
        assert first[:5] != second[:5] or first[-5:] != second[-5:]

    def test_encoding_is_url_safe(self):
        for number in range(1, 200):
            encoded = encode_uid(number)
            assert "=" not in encoded
            assert "+" not in encoded
            assert "/" not in encoded


class TestMalformed:
    """Malformed input decodes to the zero sentinel, never raises."""

    @pytest.mark.parametrize(
        "text",
        ["garbage", "", None, "!!!!!!!!!!!", "AAAAAAAAAAAA", "AAAAAAAAAA", "AAAA AAAAAAA", 12345],
    )
    def test_decode_garbage(self, text):
        assert decode_uid(text) == ZERO_UID

    def test_decode_all_zero_bytes(self):
        assert decode_uid("AAAAAAAAAAA") == ZERO_UID

    def test_decode_out_of_range(self):
        """A value that reveals to more than 63 bits is rejected."""
        codec = uid._codec
        raw = codec.obfuscate(2**63 + 5).to_bytes(8, "little")
        assert decode_uid(uid.b64url_encode(raw)) == ZERO_UID

    @pytest.mark.parametrize("number", [0, -1, 2**63, None, True])
    def test_encode_invalid(self, number):
        assert encode_uid(number) == ""

    def test_require_uid_raises(self):
        with pytest.raises(MalformedError, match="user id"):
            uid.require_uid("garbage", "user id")

    def test_require_uid_accepts_valid(self):
        assert uid.require_uid(encode_uid(42)) == 42


class TestCodecKeys:
    """Different keys give different, self-consistent encodings."""

    def test_keys_differ(self):
        one = UidCodec(b"first key")
        two = UidCodec(b"second key")
        assert one.encode(77) != two.encode(77)
        assert one.decode(one.encode(77)) == 77
        assert two.decode(two.encode(77)) == 77

    def test_configure_codec(self):
        before = encode_uid(9)
        uid.configure_codec(b"another key")
        after = encode_uid(9)

        assert before != after
        assert decode_uid(after) == 9

    def test_invalid_key(self):
        with pytest.raises(MalformedError):
            UidCodec("not base64!!")
        with pytest.raises(MalformedError):
            UidCodec(b"")

    def test_obfuscate_is_a_permutation(self):
        codec = UidCodec()
        for number in (1, 2, 12345, 2**40 + 3, MAX_ID):
            assert codec.reveal(codec.obfuscate(number)) == number


class TestUserTopic:
    def test_user_topic(self):
        user = encode_uid(5)
        assert uid.user_topic(user) == "usr" + user

    def test_user_topic_malformed(self):
        with pytest.raises(MalformedError):
            uid.user_topic("bad")


class TestRawBytes:
    def test_bytes_round_trip(self):
        user = encode_uid(42)
        raw = uid.uid_bytes(user)
        assert len(raw) == 8
        assert uid.uid_from_bytes(raw) == user

    @pytest.mark.parametrize("text", ["bad", "", "A" * 11])
    def test_malformed(self, text):
        with pytest.raises(MalformedError):
            uid.uid_bytes(text)
