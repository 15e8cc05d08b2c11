"""Tests for the inner message codec."""
import msgpack
import pytest

from jailhouse.core.exceptions import ProtocolError
from jailhouse.protocol.codec import (
    Message,
    MessageDecoder,
    MessageTag,
    decode_dispatch,
    encode,
    encode_dispatch,
)


class TestEncode:
    def test_message_is_tag_payload_pair(self) -> None:
        data = encode(MessageTag.YIELD, [1, "two"])
        assert msgpack.unpackb(data, raw=False) == ["yield", [1, "two"]]

    def test_bytes_stay_binary(self) -> None:
        data = encode(MessageTag.STDOUT, b"\xff\x00raw")
        assert MessageDecoder().feed(data) == [Message(MessageTag.STDOUT, b"\xff\x00raw")]

    def test_unencodable_payload_raises_type_error(self) -> None:
        with pytest.raises(TypeError):
            encode(MessageTag.RETURN, object())

    def test_terminal_tags(self) -> None:
        assert Message(MessageTag.RETURN, None).is_terminal
        assert Message(MessageTag.RAISE, {}).is_terminal
        assert not Message(MessageTag.YIELD, []).is_terminal
        assert not Message(MessageTag.STDOUT, b"").is_terminal


class TestDispatch:
    @pytest.mark.parametrize(
        "args",
        [
            [],
            ["page", {"width": 80}, None],
            [b"\x00\xffbinary", "text"],
            [3.25, -0.5, float("inf")],
            [True, False, 0, 1],
            [-1, -(2**63), 2**64 - 1, 2**40],
            [[1, [2, [3, []]]], {"a": {"b": [{"c": None}]}}],
            [{1: "int key", "s": b"bytes value"}],
            ["caf\u00e9", "\u65e5\u672c\u8a9e", "\U0001f512", ""],
        ],
        ids=["empty", "mixed", "bytes-vs-str", "floats", "bools-vs-ints",
             "wide-ints", "nested", "map-keys", "unicode"],
    )
    def test_dispatch_roundtrip(self, args: list) -> None:
        name, decoded = decode_dispatch(encode_dispatch("render", args))

        assert name == "render"
        assert decoded == args
        assert [type(value) for value in decoded] == [type(value) for value in args]

    def test_dispatch_with_no_args(self) -> None:
        assert decode_dispatch(encode_dispatch("ping", ())) == ("ping", [])

    def test_rejects_other_tags(self) -> None:
        with pytest.raises(ProtocolError, match="Expected a dispatch message"):
            decode_dispatch(encode(MessageTag.RETURN, 1))

    def test_rejects_malformed_payload(self) -> None:
        with pytest.raises(ProtocolError, match="Malformed dispatch payload"):
            decode_dispatch(encode(MessageTag.DISPATCH, "render"))

    def test_rejects_trailing_messages(self) -> None:
        data = encode_dispatch("a", []) + encode_dispatch("b", [])
        with pytest.raises(ProtocolError, match="Expected one dispatch message, got 2"):
            decode_dispatch(data)


class TestMessageDecoder:
    """Tests for incremental decoding."""

    def test_byte_at_a_time(self) -> None:
        stream = (
            encode(MessageTag.STDOUT, b"printed\n")
            + encode(MessageTag.YIELD, [50, "percent"])
            + encode(MessageTag.RETURN, {"ok": True})
        )
        decoder = MessageDecoder()
        messages = []
        for i in range(len(stream)):
            messages.extend(decoder.feed(stream[i:i + 1]))

        assert messages == [
            Message(MessageTag.STDOUT, b"printed\n"),
            Message(MessageTag.YIELD, [50, "percent"]),
            Message(MessageTag.RETURN, {"ok": True}),
        ]

    def test_incomplete_message_yields_nothing(self) -> None:
        data = encode(MessageTag.RETURN, "x" * 100)
        decoder = MessageDecoder()
        assert decoder.feed(data[:10]) == []
        assert decoder.feed(data[10:]) == [Message(MessageTag.RETURN, "x" * 100)]

    def test_unknown_tag(self) -> None:
        data = msgpack.packb(["teleport", 1], use_bin_type=True)
        with pytest.raises(ProtocolError, match="Unknown message tag 'teleport'"):
            MessageDecoder().feed(data)

    def test_not_a_pair(self) -> None:
        data = msgpack.packb({"tag": "return"}, use_bin_type=True)
        with pytest.raises(ProtocolError, match=r"Expected a \[tag, payload\] pair"):
            MessageDecoder().feed(data)

    def test_corrupt_bytes(self) -> None:
        with pytest.raises(ProtocolError, match="Corrupt message stream"):
            MessageDecoder().feed(b"\xc1")

    def test_error_keeps_messages_decoded_before_it(self) -> None:
        data = (
            encode(MessageTag.YIELD, [1])
            + encode(MessageTag.STDOUT, b"out")
            + b"\xc1"
        )

        with pytest.raises(ProtocolError) as exc_info:
            MessageDecoder().feed(data)

        assert exc_info.value.messages == [
            Message(MessageTag.YIELD, [1]),
            Message(MessageTag.STDOUT, b"out"),
        ]

    def test_unknown_tag_keeps_earlier_messages(self) -> None:
        data = encode(MessageTag.YIELD, ["step"]) + msgpack.packb(["teleport", 1], use_bin_type=True)

        with pytest.raises(ProtocolError, match="Unknown message tag") as exc_info:
            MessageDecoder().feed(data)

        assert exc_info.value.messages == [Message(MessageTag.YIELD, ["step"])]
