"""DockerDriver: container lifecycle over the Docker Engine API.

Drives one container at a time through
``absent -> created -> started -> attached -> waited -> deleted`` and
ships a payload to it over a hijacked attach connection. With prestart
enabled, the next container is created and started as soon as a call has
been cleaned up, so the following ``run`` goes straight to attach.

A driver instance is not safe for concurrent calls: it tracks a single
container. Use one driver per in-flight call.
"""

from __future__ import annotations

import codecs
import inspect
import json
from collections.abc import Awaitable, Callable, Mapping
from typing import Any, TypeAlias
from urllib.parse import quote

from loguru import logger

from jailhouse.core.exceptions import ConfigurationError, DriverError, ImageBuildError
from jailhouse.core.types import (
    AttachResult,
    ContainerInfo,
    ContainerState,
    DockerEndpoint,
    StreamTag,
    VolumeSpec,
    volumes_for_bind,
    volumes_for_create,
)
from jailhouse.docker.demux import AttachStreamDemuxer
from jailhouse.docker.transport import DockerTransport


MANAGED_LABEL = "jailhouse.managed"

ContainerHook: TypeAlias = Callable[[dict[str, Any]], Awaitable[None] | None]
OutputHandler: TypeAlias = Callable[[StreamTag, bytes], None]
ProgressHandler: TypeAlias = Callable[[dict[str, Any]], None]


class DockerDriver:
    """Creates, runs and disposes of sandbox containers.

    Args:
        image: Image reference used by ``create`` when none is given.
        endpoint: Docker control endpoint (ignored when ``transport`` is given).
        transport: Pre-built transport, mainly for tests.
        volumes: Container path -> VolumeSpec or ``"/host/path[:ro|rw]"``.
        create_options: Extra container-create fields merged into the request.
        prestart: Keep a started container ready for the next call.
        after_create: Called with inspect metadata after create.
        after_start: Called with inspect metadata after start.
        after_stop: Called with inspect metadata after stop or wait.
    """

    def __init__(
        self,
        image: str | None = None,
        *,
        endpoint: DockerEndpoint | None = None,
        transport: DockerTransport | None = None,
        volumes: Mapping[str, VolumeSpec | str] | None = None,
        create_options: Mapping[str, Any] | None = None,
        prestart: bool = True,
        after_create: ContainerHook | None = None,
        after_start: ContainerHook | None = None,
        after_stop: ContainerHook | None = None,
    ) -> None:
        self.transport = transport or DockerTransport(endpoint)
        self.image = image
        self.volumes = {
            container_path: VolumeSpec.parse(spec)
            for container_path, spec in (volumes or {}).items()
        }
        self.create_options = dict(create_options or {})
        self.prestart = prestart
        self.after_create = after_create
        self.after_start = after_start
        self.after_stop = after_stop
        self.container: ContainerInfo | None = None

    @property
    def is_prestarted(self) -> bool:
        """True when a started container is waiting for its payload."""
        return self.container is not None and self.container.state is ContainerState.STARTED

    async def run(self, data: bytes, on_output: OutputHandler | None = None) -> AttachResult:
        """Run one payload through a container, like ``echo data | docker run -i image``.

        Args:
            data: Bytes written to the container's stdin.
            on_output: Called with each demultiplexed frame as it arrives.

        Returns:
            The demultiplexed stdout and stderr of the container.
        """
        if not self.is_prestarted:
            await self.create()
            try:
                await self.start()
            except BaseException:
                await self.delete()
                raise
        try:
            result = await self.attach(data, on_output)
            await self.wait()
        finally:
            await self.delete()
            if self.prestart:
                await self._prestart_next()
        return result

    async def create(self, image: str | None = None) -> ContainerInfo:
        """Create a container with stdin open and no TTY.

        Raises:
            ConfigurationError: If no image is known.
            DriverError: If Docker rejects the request.
        """
        image = image or self.image
        if not image:
            raise ConfigurationError("No image configured for the sandbox container")

        response = await self.transport.request(
            "POST", "/containers/create", json_body=self._create_body(image),
        )
        response.raise_for_status(f"create from {image}")
        payload = response.json()
        container_id = payload.get("Id") if isinstance(payload, dict) else None
        if not isinstance(container_id, str) or not container_id:
            raise DriverError(
                f"Docker create from {image} returned no container id: {response.body[:200]!r}",
                status=response.status,
            )
        self.container = ContainerInfo(
            id=container_id, image=image, binds=volumes_for_bind(self.volumes),
        )
        logger.debug("Container created", container=container_id[:12], image=image)
        await self._fire_hook("after_create", self.after_create)
        return self.container

    async def start(self) -> None:
        """Start the active container.

        Bind mounts were already set in ``HostConfig`` at create time.

        Raises:
            DriverError: If Docker rejects the start, including a second
                start of the same container.
        """
        container = self._require_container()
        response = await self.transport.request("POST", f"/containers/{container.id}/start")
        if response.status == 304:
            raise DriverError(
                f"Container {container.id[:12]} is already started", status=304,
            )
        response.raise_for_status(f"start {container.id[:12]}")
        container.state = ContainerState.STARTED
        logger.debug("Container started", container=container.id[:12])
        await self._fire_hook("after_start", self.after_start)

    async def attach(self, data: bytes, on_output: OutputHandler | None = None) -> AttachResult:
        """Attach to the container, send ``data`` and collect its output.

        Blocks until Docker closes the stream. Frames are handed to
        ``on_output`` as soon as each one is complete; an exception raised
        there aborts the attach.
        """
        container = self._require_container()
        demuxer = AttachStreamDemuxer()
        stream = await self.transport.hijack(
            f"/containers/{container.id}/attach",
            query={"stdin": 1, "stdout": 1, "stderr": 1, "stream": 1, "logs": 0},
        )
        async with stream:
            container.state = ContainerState.ATTACHED
            await stream.write(data)
            await stream.close_write()
            while chunk := await stream.read():
                for tag, payload in demuxer.feed(chunk):
                    if on_output is not None:
                        on_output(tag, payload)
        if demuxer.pending:
            logger.warning(
                "Attach stream ended inside a frame",
                container=container.id[:12],
                pending=demuxer.pending,
            )
        return demuxer.result()

    async def wait(self) -> int:
        """Block until the container's process exits.

        Returns:
            The process exit code.
        """
        container = self._require_container()
        response = await self.transport.request("POST", f"/containers/{container.id}/wait")
        response.raise_for_status(f"wait {container.id[:12]}")
        status_code = int(response.json().get("StatusCode", 0))
        container.state = ContainerState.WAITED
        logger.debug("Container exited", container=container.id[:12], status=status_code)
        await self._fire_hook("after_stop", self.after_stop)
        return status_code

    async def stop(self, timeout: int = 0) -> None:
        """Stop the container; stopping an exited container is not an error."""
        container = self._require_container()
        response = await self.transport.request(
            "POST", f"/containers/{container.id}/stop", query={"t": timeout},
        )
        if response.status != 304:
            response.raise_for_status(f"stop {container.id[:12]}")
        container.state = ContainerState.WAITED
        await self._fire_hook("after_stop", self.after_stop)

    async def delete(self) -> None:
        """Remove the active container, best effort.

        Failures are logged and swallowed: a container that cannot be
        removed must not block the next call. The driver forgets the
        container either way.
        """
        container = self.container
        if container is None:
            return
        self.container = None
        try:
            response = await self.transport.request(
                "DELETE", f"/containers/{container.id}", query={"force": 1, "v": 1},
            )
            if response.status != 404:
                response.raise_for_status(f"delete {container.id[:12]}")
        except (DriverError, OSError) as exc:
            logger.warning(
                "Docker could not delete container", container=container.id, error=str(exc),
            )
            return
        container.state = ContainerState.DELETED
        logger.debug("Container deleted", container=container.id[:12])

    async def inspect(self) -> dict[str, Any]:
        """Docker's metadata for the active container."""
        container = self._require_container()
        response = await self.transport.request("GET", f"/containers/{container.id}/json")
        response.raise_for_status(f"inspect {container.id[:12]}")
        return response.json()

    async def close(self) -> None:
        """Dispose of a prestarted container, if any."""
        if self.container is not None:
            await self.delete()

    async def image_exists(self, name: str) -> bool:
        """Check whether ``name`` is present on the Docker host."""
        response = await self.transport.request("GET", f"/images/{quote(name, safe=':/@')}/json")
        if response.status == 404:
            return False
        response.raise_for_status(f"inspect image {name}")
        return True

    async def build_image(
        self,
        name: str,
        tarball: bytes,
        on_progress: ProgressHandler | None = None,
    ) -> list[dict[str, Any]]:
        """Build an image from a tar build context.

        Args:
            name: Tag for the new image.
            tarball: Tar archive holding the Dockerfile and its context.
            on_progress: Called with each progress object as it is parsed.

        Returns:
            All progress objects, in the order Docker sent them.

        Raises:
            ImageBuildError: If a progress object carries an ``error``.
            DriverError: If the endpoint rejects the build outright.
        """
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        buffer = ""
        progress: list[dict[str, Any]] = []
        logger.info("Building sandbox image", image=name, context_bytes=len(tarball))
        async for chunk in self.transport.stream(
            "POST", "/build", query={"t": name, "rm": 1},
            body=tarball, content_type="application/x-tar",
        ):
            buffer += decoder.decode(chunk)
            objects, buffer = _split_json_objects(buffer)
            for obj in objects:
                if "error" in obj:
                    raise ImageBuildError(obj)
                if text := str(obj.get("stream", "")).rstrip():
                    logger.bind(source="image-build").debug(text)
                progress.append(obj)
                if on_progress is not None:
                    on_progress(obj)
        buffer += decoder.decode(b"", final=True)
        if buffer.strip():
            raise DriverError(f"Truncated build output from Docker: {buffer[:200]!r}")
        logger.info("Sandbox image built", image=name)
        return progress

    async def list_managed_containers(self) -> list[dict[str, Any]]:
        """Every container, running or not, created by a Jailhouse driver."""
        response = await self.transport.request(
            "GET", "/containers/json",
            query={"all": 1, "filters": json.dumps({"label": [f"{MANAGED_LABEL}=true"]})},
        )
        response.raise_for_status("list containers")
        return response.json()

    async def remove_container(self, container_id: str) -> None:
        """Force-remove a container that this driver does not own."""
        response = await self.transport.request(
            "DELETE", f"/containers/{container_id}", query={"force": 1, "v": 1},
        )
        if response.status != 404:
            response.raise_for_status(f"delete {container_id[:12]}")

    def _create_body(self, image: str) -> dict[str, Any]:
        options = dict(self.create_options)
        host_config = dict(options.pop("HostConfig", {}))
        binds = volumes_for_bind(self.volumes)
        if binds:
            host_config["Binds"] = [*host_config.get("Binds", []), *binds]
        labels = {**options.pop("Labels", {}), MANAGED_LABEL: "true"}
        placeholders = {**options.pop("Volumes", {}), **volumes_for_create(self.volumes)}

        body: dict[str, Any] = {
            "Image": image,
            "OpenStdin": True,
            "StdinOnce": True,
            "AttachStdin": True,
            "AttachStdout": True,
            "AttachStderr": True,
            "Tty": False,
            **options,
            "Labels": labels,
        }
        if placeholders:
            body["Volumes"] = placeholders
        if host_config:
            body["HostConfig"] = host_config
        return body

    async def _prestart_next(self) -> None:
        try:
            await self.create()
            await self.start()
        except (DriverError, ConfigurationError) as exc:
            logger.warning("Could not prestart the next container", error=str(exc))
            await self.delete()

    async def _fire_hook(self, name: str, hook: ContainerHook | None) -> None:
        if hook is None:
            return
        try:
            info = await self.inspect()
            result = hook(info)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            logger.warning("Container hook failed", hook=name, error=str(exc))

    def _require_container(self) -> ContainerInfo:
        if self.container is None:
            raise DriverError("No active container; call create() first")
        return self.container


def _split_json_objects(buffer: str) -> tuple[list[dict[str, Any]], str]:
    """Parse complete JSON objects off the front of ``buffer``.

    Docker sends build progress as newline-delimited objects, but chunks do
    not respect object boundaries and some versions omit the newlines.

    Returns:
        Parsed objects and the unparsed remainder.
    """
    decoder = json.JSONDecoder()
    objects: list[dict[str, Any]] = []
    position = 0
    while True:
        while position < len(buffer) and buffer[position].isspace():
            position += 1
        if position >= len(buffer):
            return objects, ""
        try:
            obj, position = decoder.raw_decode(buffer, position)
        except json.JSONDecodeError:
            return objects, buffer[position:]
        if isinstance(obj, dict):
            objects.append(obj)
        else:
            objects.append({"stream": str(obj)})
