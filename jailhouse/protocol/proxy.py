"""Trusted-side proxy for one inmate call.

Encodes the dispatch message and turns the container's demultiplexed
output back into local effects: yield callbacks, the return value, a
reconstructed exception, and passthrough of stdout/stderr bytes.
"""

from __future__ import annotations

import sys
from collections.abc import Callable, Sequence
from typing import Any, BinaryIO, TypeAlias

from jailhouse.core.exceptions import InmateRuntimeError, ProtocolError
from jailhouse.core.types import StreamTag
from jailhouse.protocol.codec import Message, MessageDecoder, MessageTag, encode_dispatch


YieldCallback: TypeAlias = Callable[..., None]


class Proxy:
    """Decodes the response stream of a single inmate call.

    Args:
        on_yield: Called with the yielded values each time the inmate
            reports progress.
        stdout: Where the inmate's own stdout is written (default: our stdout).
        stderr: Where the container's stderr is written (default: our stderr).
    """

    def __init__(
        self,
        on_yield: YieldCallback | None = None,
        stdout: BinaryIO | None = None,
        stderr: BinaryIO | None = None,
    ) -> None:
        self._on_yield = on_yield
        self._stdout = stdout if stdout is not None else sys.stdout.buffer
        self._stderr = stderr if stderr is not None else sys.stderr.buffer
        self._decoder = MessageDecoder()
        self._return_value: Any = None
        self._finished = False

    def encode_dispatch(self, name: str, args: Sequence[Any]) -> bytes:
        """Encode a call to ``name(*args)`` for the inmate."""
        return encode_dispatch(name, args)

    @property
    def finished(self) -> bool:
        """True once a ``return`` message has been received."""
        return self._finished

    @property
    def return_value(self) -> Any:
        """The inmate's return value.

        Raises:
            ProtocolError: If no ``return`` message has arrived.
        """
        if not self._finished:
            raise ProtocolError("Inmate exited without sending a return value")
        return self._return_value

    def receive(self, tag: StreamTag, chunk: bytes) -> None:
        """Handle one demultiplexed frame from the attach stream.

        Args:
            tag: STDOUT for protocol bytes, anything else for raw stderr.
            chunk: Frame payload; messages may span any number of frames.

        Raises:
            InmateRuntimeError: As soon as a ``raise`` message is decoded.
            ProtocolError: If the protocol stream is corrupt.
        """
        if tag is not StreamTag.STDOUT:
            self._stderr.write(chunk)
            self._stderr.flush()
            return
        try:
            messages = self._decoder.feed(chunk)
        except ProtocolError as exc:
            for message in exc.messages:
                self._handle(message)
            raise
        for message in messages:
            self._handle(message)

    def _handle(self, message: Message) -> None:
        match message.tag:
            case MessageTag.YIELD:
                if self._on_yield is not None:
                    self._on_yield(*_as_values(message.payload))
            case MessageTag.RETURN:
                self._return_value = message.payload
                self._finished = True
            case MessageTag.RAISE:
                raise _remote_error(message.payload)
            case MessageTag.STDOUT:
                data = message.payload
                self._stdout.write(data if isinstance(data, bytes) else str(data).encode())
                self._stdout.flush()
            case MessageTag.DISPATCH:
                raise ProtocolError("Unexpected dispatch message from the inmate")


def _as_values(payload: Any) -> list[Any]:
    return payload if isinstance(payload, list) else [payload]


def _remote_error(payload: Any) -> InmateRuntimeError:
    if not isinstance(payload, dict):
        return InmateRuntimeError("InmateError", str(payload))
    backtrace = payload.get("backtrace") or []
    return InmateRuntimeError(
        str(payload.get("class", "InmateError")),
        str(payload.get("message", "")),
        [str(frame) for frame in backtrace],
    )
