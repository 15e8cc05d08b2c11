"""Combining entry point: merge an inmate's stdout and its side channel.

Used when the runner executes in a child process. The child's own stdout
and its side channel arrive on two descriptors. The combiner forwards side
channel messages whole and wraps bare stdout bytes as ``stdout`` messages,
producing one protocol stream. Messages go out in the order their
descriptors became readable.

A corrupt side channel ends structured forwarding: the combiner reports a
``raise`` message (unless a terminal message already went out) and
discards the rest of the side channel while still relaying stdout.
"""

from __future__ import annotations

import os
import selectors
import threading
from typing import BinaryIO

from loguru import logger

from jailhouse.core.exceptions import ProtocolError
from jailhouse.protocol.codec import Message, MessageDecoder, MessageTag, encode


_READ_SIZE = 64 * 1024


class OutputCombiner:
    """Polls two descriptors on a background thread and merges them.

    Args:
        output: Stream receiving the merged protocol messages.
        inmate_stdout: Descriptor with the inmate's unstructured stdout.
        sidechannel: Descriptor with the inmate's encoded messages.
        poll_interval: Seconds between checks of the stop signal.
    """

    def __init__(
        self,
        output: BinaryIO,
        inmate_stdout: int,
        sidechannel: int,
        poll_interval: float = 1.0,
    ) -> None:
        self._output = output
        self._inmate_stdout = inmate_stdout
        self._sidechannel = sidechannel
        self._poll_interval = poll_interval
        self._decoder = MessageDecoder()
        self._corrupt = False
        self._terminal_sent = False
        self._output_closed = False
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> OutputCombiner:
        self._thread = threading.Thread(target=self.run_loop, name="jailhouse-combiner", daemon=True)
        self._thread.start()
        return self

    def finish(self) -> None:
        """Stop once both descriptors are drained (or idle) and join."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join()

    def run_loop(self) -> None:
        """Forward output until both descriptors close, or until stopped while idle.

        Both descriptors are drained to EOF whatever happens to the side
        channel, so the inmate never blocks on a full pipe.
        """
        with selectors.DefaultSelector() as selector:
            selector.register(self._inmate_stdout, selectors.EVENT_READ)
            selector.register(self._sidechannel, selectors.EVENT_READ)
            while selector.get_map():
                ready = selector.select(timeout=self._poll_interval)
                if not ready:
                    if self._stop.is_set():
                        break
                    continue
                for key, _ in ready:
                    fd = key.fd
                    try:
                        data = os.read(fd, _READ_SIZE)
                    except OSError as exc:
                        logger.warning("Could not read inmate output", fd=fd, error=str(exc))
                        data = b""
                    if not data:
                        selector.unregister(fd)
                    elif fd == self._sidechannel:
                        self._forward_sidechannel(data)
                    else:
                        self._write(encode(MessageTag.STDOUT, data))

    def _forward_sidechannel(self, data: bytes) -> None:
        if self._corrupt:
            return
        try:
            messages = self._decoder.feed(data)
        except ProtocolError as exc:
            for message in exc.messages:
                self._forward(message)
            self._corrupt = True
            logger.error("Corrupt side channel from inmate", error=str(exc))
            if not self._terminal_sent:
                self._forward(Message(MessageTag.RAISE, {
                    "class": "ProtocolError",
                    "message": f"Corrupt side channel from inmate: {exc}",
                    "backtrace": [],
                }))
            return
        for message in messages:
            self._forward(message)

    def _forward(self, message: Message) -> None:
        self._terminal_sent = self._terminal_sent or message.is_terminal
        self._write(encode(message.tag, message.payload))

    def _write(self, data: bytes) -> None:
        if self._output_closed:
            return
        try:
            self._output.write(data)
            self._output.flush()
        except OSError as exc:
            # keep draining so the inmate can exit
            self._output_closed = True
            logger.error("Could not write combined output", error=str(exc))
