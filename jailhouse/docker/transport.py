"""HTTP transport for the Docker control endpoint.

Talks to the Engine API over a unix domain socket or TCP with httpx: plain
request/response exchanges, streamed response bodies (image builds) and
hijacked connections (container attach), where the connection turns into a
raw bidirectional byte stream after the ``101 UPGRADED`` response.

Every exchange uses its own client. No read timeout is applied: sandboxed
work may legitimately run for a long time.
"""

from __future__ import annotations

import json
import socket
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any, NamedTuple, TypeAlias

import httpcore
import httpx
from loguru import logger

from jailhouse.core.exceptions import DriverError
from jailhouse.core.types import DockerEndpoint


_READ_SIZE = 64 * 1024
_TIMEOUT = httpx.Timeout(None, connect=10.0)

Query: TypeAlias = dict[str, str | int] | None


class HttpResponse(NamedTuple):
    """A fully read HTTP response.

    Attributes:
        status: Numeric status code.
        reason: Reason phrase from the status line.
        headers: Header map with lower-cased names.
        body: Raw response body.
    """

    status: int
    reason: str
    headers: dict[str, str]
    body: bytes

    @classmethod
    def from_httpx(cls, response: httpx.Response) -> HttpResponse:
        """Snapshot a response whose body has been read."""
        return cls(
            response.status_code,
            response.reason_phrase,
            {name.lower(): value for name, value in response.headers.items()},
            response.content,
        )

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def json(self) -> Any:
        """Decode the body as JSON.

        Raises:
            DriverError: If the body is not valid JSON.
        """
        try:
            return json.loads(self.body or b"null")
        except ValueError as exc:
            raise DriverError(
                f"Invalid JSON from Docker: {self.body[:200]!r}", status=self.status
            ) from exc

    def error_message(self) -> str:
        """Docker's error message, falling back to the raw body."""
        try:
            payload = json.loads(self.body)
        except ValueError:
            payload = None
        if isinstance(payload, dict) and "message" in payload:
            return str(payload["message"])
        text = self.body.decode(errors="replace").strip()
        return text or self.reason

    def raise_for_status(self, action: str) -> None:
        """Raise DriverError unless the status is 2xx.

        Args:
            action: Short description used in the error message.
        """
        if not self.ok:
            raise DriverError(
                f"Docker {action} failed ({self.status}): {self.error_message()}",
                status=self.status,
            )


class HijackedStream:
    """Raw bidirectional stream left over after an HTTP upgrade.

    Owns the upgraded response and its client; closing the stream releases
    both.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        response: httpx.Response,
    ) -> None:
        self._client = client
        self._response = response
        self._network_stream = response.extensions["network_stream"]

    async def write(self, data: bytes) -> None:
        try:
            await self._network_stream.write(data)
        except (httpcore.NetworkError, OSError) as exc:
            raise DriverError(f"Attach stream failed: {exc}") from exc

    async def close_write(self) -> None:
        """Half-close the connection so the container sees EOF on stdin."""
        sock = self._network_stream.get_extra_info("socket")
        if sock is None:
            logger.debug("Attach stream has no socket to half-close")
            return
        try:
            sock.shutdown(socket.SHUT_WR)
        except OSError as exc:
            raise DriverError(f"Attach stream failed: {exc}") from exc

    async def read(self, size: int = _READ_SIZE) -> bytes:
        """Read up to ``size`` bytes; ``b""`` means the remote end closed."""
        try:
            return await self._network_stream.read(size)
        except (httpcore.NetworkError, OSError) as exc:
            raise DriverError(f"Attach stream failed: {exc}") from exc

    async def close(self) -> None:
        try:
            await self._response.aclose()
        finally:
            await self._client.aclose()

    async def __aenter__(self) -> HijackedStream:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()


class DockerTransport:
    """Sends Engine API requests to the Docker control endpoint.

    Args:
        endpoint: Where the control endpoint listens. Defaults to the local
            unix socket.
    """

    def __init__(self, endpoint: DockerEndpoint | None = None) -> None:
        self.endpoint = endpoint or DockerEndpoint()

    async def request(
        self,
        method: str,
        path: str,
        *,
        query: Query = None,
        json_body: Any = None,
        body: bytes | None = None,
        content_type: str | None = None,
    ) -> HttpResponse:
        """Send one request and read the whole response.

        Args:
            method: HTTP method.
            path: Request path, without query string.
            query: Optional query parameters.
            json_body: Object sent as a JSON body.
            body: Raw body, used when ``json_body`` is None.
            content_type: Content type for a raw body.

        Returns:
            The response; non-2xx statuses are returned, not raised.

        Raises:
            DriverError: On connection or protocol failures.
        """
        async with self._http_client(method, path) as client:
            response = await client.request(
                method, path, params=query, json=json_body, content=body,
                headers=_content_headers(content_type),
            )
            return HttpResponse.from_httpx(response)

    async def stream(
        self,
        method: str,
        path: str,
        *,
        query: Query = None,
        body: bytes | None = None,
        content_type: str | None = None,
    ) -> AsyncIterator[bytes]:
        """Send one request and yield the response body as it arrives.

        Raises:
            DriverError: On connection failures or a non-2xx status.
        """
        async with self._http_client(method, path) as client:
            async with client.stream(
                method, path, params=query, content=body,
                headers=_content_headers(content_type),
            ) as response:
                if not response.is_success:
                    await response.aread()
                    HttpResponse.from_httpx(response).raise_for_status(f"{method} {path}")
                async for chunk in response.aiter_bytes():
                    yield chunk

    async def hijack(self, path: str, *, query: Query = None) -> HijackedStream:
        """Upgrade a POST to a raw stream (the Docker attach handshake).

        Returns:
            The hijacked stream. The caller owns it and must close it.

        Raises:
            DriverError: If the endpoint refuses the upgrade.
        """
        client = self._new_client()
        try:
            request = client.build_request(
                "POST", path, params=query, content=b"",
                headers={"Connection": "Upgrade", "Upgrade": "tcp"},
            )
            try:
                response = await client.send(request, stream=True)
                if response.status_code != 101:
                    try:
                        await response.aread()
                    finally:
                        await response.aclose()
            except httpx.HTTPError as exc:
                raise self._driver_error("POST", path, exc) from exc
            if response.status_code != 101:
                snapshot = HttpResponse.from_httpx(response)
                snapshot.raise_for_status(f"attach {path}")
                raise DriverError(
                    f"Docker attach {path} did not upgrade the connection ({snapshot.status})",
                    status=snapshot.status,
                )
        except BaseException:
            await client.aclose()
            raise
        logger.debug("Hijacked connection", path=path, status=response.status_code)
        return HijackedStream(client, response)

    def _new_client(self) -> httpx.AsyncClient:
        transport = None
        if not self.endpoint.is_tcp:
            transport = httpx.AsyncHTTPTransport(uds=self.endpoint.socket)
        return httpx.AsyncClient(
            base_url=self.endpoint.base_url,
            transport=transport,
            headers={"User-Agent": "jailhouse"},
            timeout=_TIMEOUT,
        )

    @asynccontextmanager
    async def _http_client(self, method: str, path: str) -> AsyncIterator[httpx.AsyncClient]:
        """Client for one exchange, with httpx errors raised as DriverError."""
        try:
            async with self._new_client() as client:
                yield client
        except httpx.HTTPError as exc:
            raise self._driver_error(method, path, exc) from exc

    def _driver_error(self, method: str, path: str, exc: httpx.HTTPError) -> DriverError:
        if isinstance(exc, httpx.ConnectError):
            return DriverError(f"Cannot connect to Docker at {self.endpoint.url}: {exc}")
        return DriverError(f"Docker request {method} {path} failed: {exc}")


def _content_headers(content_type: str | None) -> dict[str, str] | None:
    return {"Content-Type": content_type} if content_type else None
