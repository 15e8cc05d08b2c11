"""Sandbox-side runner: turns one dispatch message into a local call.

Inside the container the runner reads a single ``dispatch`` message from
stdin, calls the registered handler and reports progress, the return value
or the raised error as messages on a side channel.

While the handler runs, file descriptor 1 (and ``sys.stdout``) point at a
pipe. A background thread drains that pipe and forwards whatever the handler
prints as ``stdout`` messages on the same side channel, so stray prints
cannot corrupt the structured stream. The thread is joined before the
terminal message is sent, on every exit path.
"""

from __future__ import annotations

import contextlib
import io
import os
import selectors
import sys
import threading
import traceback
from collections.abc import Iterator
from typing import Any, BinaryIO

from loguru import logger

from jailhouse.core.exceptions import ProtocolError
from jailhouse.protocol.codec import MessageDecoder, MessageTag, encode, parse_dispatch
from jailhouse.registry import InmateRegistry, load_registry


_READ_SIZE = 64 * 1024


class SideChannel:
    """Writes whole messages to a stream, one writer at a time."""

    def __init__(self, stream: BinaryIO) -> None:
        self._stream = stream
        self._lock = threading.Lock()

    def send(self, tag: MessageTag, payload: Any) -> None:
        """Encode and write one message.

        Raises:
            TypeError: If the payload cannot be encoded. Nothing is written.
        """
        data = encode(tag, payload)
        with self._lock:
            self._stream.write(data)
            self._stream.flush()


class StdoutInterceptor:
    """Background poller forwarding bytes from a pipe as ``stdout`` messages.

    Use as a context manager around the code whose output is redirected into
    the pipe. On exit it drains whatever is left, joins the thread and closes
    ``read_fd``. End of file on the pipe is a normal way to finish.

    Args:
        read_fd: Read end of the pipe; owned by the interceptor.
        channel: Side channel receiving the ``stdout`` messages.
        poll_interval: Seconds between checks of the stop signal.
    """

    def __init__(self, read_fd: int, channel: SideChannel, poll_interval: float = 0.05) -> None:
        self._read_fd = read_fd
        self._channel = channel
        self._poll_interval = poll_interval
        self._stop = threading.Event()
        self._thread = threading.Thread(
            target=self._run, name="jailhouse-stdout", daemon=True
        )

    def start(self) -> StdoutInterceptor:
        self._thread.start()
        return self

    def stop(self) -> None:
        """Signal the poller, wait for it to drain and finish, close the pipe."""
        self._stop.set()
        if self._thread.is_alive():
            self._thread.join()
        with contextlib.suppress(OSError):
            os.close(self._read_fd)

    def __enter__(self) -> StdoutInterceptor:
        return self.start()

    def __exit__(self, *exc_info: object) -> None:
        self.stop()

    def _run(self) -> None:
        with selectors.DefaultSelector() as selector:
            selector.register(self._read_fd, selectors.EVENT_READ)
            while True:
                if not selector.select(timeout=self._poll_interval):
                    if self._stop.is_set():
                        return
                    continue
                try:
                    data = os.read(self._read_fd, _READ_SIZE)
                except OSError:
                    return
                if not data:
                    return
                try:
                    self._channel.send(MessageTag.STDOUT, data)
                except OSError as exc:
                    logger.warning("Side channel closed while forwarding stdout", error=str(exc))
                    return


@contextlib.contextmanager
def redirect_stdout(write_fd: int) -> Iterator[None]:
    """Point fd 1 and ``sys.stdout`` at ``write_fd`` for the duration.

    Takes ownership of ``write_fd``: once the block exits no descriptor in
    this process refers to the pipe's write end, so the reader sees EOF.
    """
    sys.stdout.flush()
    saved_fd = os.dup(1)
    saved_stdout = sys.stdout
    os.dup2(write_fd, 1)
    os.close(write_fd)
    redirected = open(1, "w", buffering=1, closefd=False, encoding="utf-8", errors="replace")
    sys.stdout = redirected
    try:
        yield
    finally:
        with contextlib.suppress(OSError, ValueError):
            redirected.flush()
        redirected.close()
        sys.stdout = saved_stdout
        os.dup2(saved_fd, 1)
        os.close(saved_fd)


def format_backtrace(exc: BaseException) -> list[str]:
    """Frames of ``exc``'s traceback as ``"file:line:in function"`` strings."""
    return [
        f"{frame.filename}:{frame.lineno}:in {frame.name}"
        for frame in traceback.extract_tb(exc.__traceback__)
    ]


class InmateRunner:
    """Runs exactly one dispatched call and reports it on the side channel.

    Args:
        registry: The inmate methods, or a ``module:attribute`` path loaded
            when the call runs (so import failures are reported too).
        stdin: Stream carrying the dispatch message.
        sidechannel: Stream receiving the response messages.
        capture_stdout: Intercept the handler's stdout (fd 1) and forward it
            as ``stdout`` messages.
    """

    def __init__(
        self,
        registry: InmateRegistry | str,
        stdin: io.BufferedIOBase,
        sidechannel: BinaryIO,
        *,
        capture_stdout: bool = True,
    ) -> None:
        self._registry = registry
        self._stdin = stdin
        self._channel = SideChannel(sidechannel)
        self._capture_stdout = capture_stdout

    def run(self) -> None:
        """Read, dispatch, report. Never raises on behalf of the inmate."""
        try:
            registry = self._load_registry()
            name, args = self.read_dispatch()
            logger.debug("Dispatching inmate call", method=name, args=len(args))
            result = self._invoke(registry, name, args)
            self._channel.send(MessageTag.RETURN, result)
        except Exception as exc:
            self._report_error(exc)

    def read_dispatch(self) -> tuple[str, list[Any]]:
        """Read stdin until one complete dispatch message has arrived.

        Raises:
            ProtocolError: If stdin closes first or holds something else.
        """
        decoder = MessageDecoder()
        while True:
            chunk = self._stdin.read1(_READ_SIZE)
            if not chunk:
                raise ProtocolError("stdin closed before a dispatch message arrived")
            messages = decoder.feed(chunk)
            if messages:
                return parse_dispatch(messages[0])

    def _load_registry(self) -> InmateRegistry:
        if isinstance(self._registry, str):
            self._registry = load_registry(self._registry)
        return self._registry

    def _invoke(self, registry: InmateRegistry, name: str, args: list[Any]) -> Any:
        def progress(*values: Any) -> None:
            self._channel.send(MessageTag.YIELD, list(values))

        if not self._capture_stdout:
            return registry.dispatch(name, args, progress)

        read_fd, write_fd = os.pipe()
        with StdoutInterceptor(read_fd, self._channel), redirect_stdout(write_fd):
            return registry.dispatch(name, args, progress)

    def _report_error(self, exc: Exception) -> None:
        payload = {
            "class": type(exc).__name__,
            "message": str(exc),
            "backtrace": format_backtrace(exc),
        }
        try:
            self._channel.send(MessageTag.RAISE, payload)
        except (OSError, TypeError) as send_exc:
            logger.error(
                "Could not report inmate error",
                error=f"{payload['class']}: {payload['message']}",
                reason=str(send_exc),
            )
