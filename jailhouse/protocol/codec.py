"""Inner message codec shared by both sides of the sandbox boundary.

Every message is a msgpack array ``[tag, payload]``. msgpack is
self-delimiting, so messages can be concatenated on a byte stream and
decoded incrementally with no outer framing.

Tags and payloads:

- ``dispatch``: ``[method_name, [args...]]``. Sandbox-bound, once per call.
- ``yield``: list of progress values. Zero or more, in send order.
- ``return``: the return value. Terminal.
- ``raise``: ``{"class", "message", "backtrace"?}``. Terminal.
- ``stdout``: raw bytes printed by the inmate. May appear anywhere.
"""

from __future__ import annotations

from collections.abc import Sequence
from enum import StrEnum
from typing import Any, NamedTuple

import msgpack

from jailhouse.core.exceptions import ProtocolError


class MessageTag(StrEnum):
    """Inner protocol message tags."""

    DISPATCH = "dispatch"
    YIELD = "yield"
    RETURN = "return"
    RAISE = "raise"
    STDOUT = "stdout"


TERMINAL_TAGS = frozenset({MessageTag.RETURN, MessageTag.RAISE})


class Message(NamedTuple):
    """One decoded inner message."""

    tag: MessageTag
    payload: Any

    @property
    def is_terminal(self) -> bool:
        return self.tag in TERMINAL_TAGS


def encode(tag: MessageTag, payload: Any) -> bytes:
    """Encode one message.

    Raises:
        TypeError: If the payload holds a value msgpack cannot encode.
    """
    return msgpack.packb([tag.value, payload], use_bin_type=True)


def encode_dispatch(name: str, args: Sequence[Any]) -> bytes:
    """Encode the ``dispatch`` message for ``name(*args)``."""
    return encode(MessageTag.DISPATCH, [name, list(args)])


def _to_message(obj: Any) -> Message:
    if not isinstance(obj, list) or len(obj) != 2:
        raise ProtocolError(f"Expected a [tag, payload] pair, got {obj!r:.200}")
    raw_tag, payload = obj
    if isinstance(raw_tag, bytes):
        raw_tag = raw_tag.decode(errors="replace")
    try:
        tag = MessageTag(raw_tag)
    except ValueError as exc:
        raise ProtocolError(f"Unknown message tag {raw_tag!r}") from exc
    return Message(tag, payload)


class MessageDecoder:
    """Incremental decoder: feed bytes in any split, get whole messages back."""

    def __init__(self) -> None:
        self._unpacker = msgpack.Unpacker(raw=False, strict_map_key=False)

    def feed(self, data: bytes) -> list[Message]:
        """Consume ``data`` and return every message it completes.

        Raises:
            ProtocolError: If the stream does not hold valid messages. The
                messages decoded before the bad one are on its ``messages``.
        """
        self._unpacker.feed(data)
        messages: list[Message] = []
        try:
            for obj in self._unpacker:
                messages.append(_to_message(obj))
        except ProtocolError as exc:
            raise ProtocolError(str(exc), messages=messages) from exc
        except (msgpack.UnpackException, ValueError) as exc:
            raise ProtocolError(f"Corrupt message stream: {exc}", messages=messages) from exc
        return messages


def decode_dispatch(data: bytes) -> tuple[str, list[Any]]:
    """Decode a complete ``dispatch`` message.

    Returns:
        ``(method_name, args)``.

    Raises:
        ProtocolError: If ``data`` is not exactly one well-formed dispatch.
    """
    messages = MessageDecoder().feed(data)
    if len(messages) != 1:
        raise ProtocolError(f"Expected one dispatch message, got {len(messages)}")
    return parse_dispatch(messages[0])


def parse_dispatch(message: Message) -> tuple[str, list[Any]]:
    if message.tag is not MessageTag.DISPATCH:
        raise ProtocolError(f"Expected a dispatch message, got {message.tag.value}")
    payload = message.payload
    if (
        not isinstance(payload, list)
        or len(payload) != 2
        or not isinstance(payload[0], str)
        or not isinstance(payload[1], list)
    ):
        raise ProtocolError(f"Malformed dispatch payload: {payload!r:.200}")
    return payload[0], payload[1]
