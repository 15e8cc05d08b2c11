"""Shared fixtures and helpers for all tests.

This module provides an in-memory stand-in for the Docker control endpoint
and small inmate registries used throughout the test suite.
"""
import io
import json
from collections.abc import AsyncIterator, Callable
from typing import Any, NamedTuple

import pytest

from jailhouse.core.exceptions import DriverError
from jailhouse.core.types import StreamTag
from jailhouse.docker.demux import encode_frame
from jailhouse.docker.transport import HttpResponse
from jailhouse.protocol.inmate import InmateRunner
from jailhouse.registry import InmateRegistry


class Call(NamedTuple):
    """One request seen by FakeTransport."""

    method: str
    path: str
    query: dict[str, Any] | None
    json_body: Any


def make_response(status: int = 200, body: Any = b"", reason: str = "OK") -> HttpResponse:
    """Build an HttpResponse; non-bytes bodies are JSON encoded."""
    if not isinstance(body, bytes):
        body = json.dumps(body).encode()
    return HttpResponse(status, reason, {"content-length": str(len(body))}, body)


class FakeHijackedStream:
    """Attach stream whose output is computed from what was written to it."""

    def __init__(self, handler: Callable[[bytes], list[bytes]]) -> None:
        self._handler = handler
        self._chunks: list[bytes] | None = None
        self.written = bytearray()
        self.write_closed = False
        self.closed = False

    async def write(self, data: bytes) -> None:
        self.written.extend(data)

    async def close_write(self) -> None:
        self.write_closed = True

    async def read(self, size: int = 65536) -> bytes:
        if self._chunks is None:
            self._chunks = list(self._handler(bytes(self.written)))
        return self._chunks.pop(0) if self._chunks else b""

    async def close(self) -> None:
        self.closed = True

    async def __aenter__(self) -> "FakeHijackedStream":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()


class FakeTransport:
    """In-memory Docker control endpoint.

    Every request is recorded in ``calls``. Responses default to success;
    ``respond`` overrides them per ``(method, path)``. Hijacked attach
    streams answer with ``attach_handler(stdin_bytes)``.
    """

    def __init__(self) -> None:
        self.calls: list[Call] = []
        self.responses: dict[tuple[str, str], list[HttpResponse | Exception]] = {}
        self.attach_handler: Callable[[bytes], list[bytes]] = lambda data: []
        self.build_chunks: list[bytes] = []
        self.streams: list[FakeHijackedStream] = []
        self._next_id = 0

    def respond(self, method: str, path: str, *responses: HttpResponse | Exception) -> None:
        """Queue responses for ``(method, path)``; the last one repeats."""
        self.responses[(method, path)] = list(responses)

    def paths(self, method: str | None = None) -> list[str]:
        return [c.path for c in self.calls if method is None or c.method == method]

    async def request(
        self,
        method: str,
        path: str,
        *,
        query: dict[str, Any] | None = None,
        json_body: Any = None,
        body: bytes | None = None,
        content_type: str | None = None,
    ) -> HttpResponse:
        self.calls.append(Call(method, path, query, json_body))
        queued = self.responses.get((method, path))
        if queued:
            response = queued.pop(0) if len(queued) > 1 else queued[0]
            if isinstance(response, Exception):
                raise response
            return response
        return self._default(method, path)

    async def stream(
        self,
        method: str,
        path: str,
        *,
        query: dict[str, Any] | None = None,
        body: bytes | None = None,
        content_type: str | None = None,
    ) -> AsyncIterator[bytes]:
        self.calls.append(Call(method, path, query, None))
        for chunk in self.build_chunks:
            yield chunk

    async def hijack(self, path: str, *, query: dict[str, Any] | None = None) -> FakeHijackedStream:
        self.calls.append(Call("HIJACK", path, query, None))
        stream = FakeHijackedStream(self.attach_handler)
        self.streams.append(stream)
        return stream

    def _default(self, method: str, path: str) -> HttpResponse:
        if method == "POST" and path == "/containers/create":
            self._next_id += 1
            return make_response(201, {"Id": f"container{self._next_id:04d}", "Warnings": []})
        if method == "POST" and path.endswith("/wait"):
            return make_response(200, {"StatusCode": 0})
        if method == "GET" and path.endswith("/json"):
            container_id = path.split("/")[2]
            return make_response(200, {"Id": container_id, "State": {"Status": "running"}})
        return make_response(204, b"", reason="No Content")


def run_inmate(registry: InmateRegistry, data: bytes) -> list[bytes]:
    """Run a dispatch through a real InmateRunner and frame its output."""
    sidechannel = io.BytesIO()
    InmateRunner(registry, io.BytesIO(data), sidechannel, capture_stdout=False).run()
    return [encode_frame(StreamTag.STDOUT, sidechannel.getvalue())]


@pytest.fixture
def fake_transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def docker_error() -> DriverError:
    return DriverError("Docker delete failed (500): boom", status=500)


@pytest.fixture
def registry() -> InmateRegistry:
    """Registry with a few representative inmate methods."""
    registry = InmateRegistry()

    @registry.register
    def add(a: int, b: int) -> int:
        return a + b

    @registry.register
    def count(n: int, progress) -> str:
        for i in range(n):
            progress(i, "of", n)
        return "done"

    @registry.register
    def fail(message: str) -> None:
        raise RuntimeError(message)

    @registry.register
    def shout(text: str) -> str:
        print(text.upper())
        return text

    return registry


@pytest.fixture(name="make_response")
def make_response_fixture() -> Callable[..., HttpResponse]:
    return make_response


@pytest.fixture(name="run_inmate")
def run_inmate_fixture() -> Callable[[InmateRegistry, bytes], list[bytes]]:
    return run_inmate
