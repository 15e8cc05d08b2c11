"""Shared type definitions for Jailhouse.

Contains the container model (ContainerState, ContainerInfo), the
control endpoint address (DockerEndpoint), volume bind specifications
(VolumeSpec) and the result of an attach session (AttachResult).
"""
from collections.abc import Mapping
from enum import IntEnum, StrEnum
from typing import Any, Literal, NamedTuple

from pydantic import BaseModel, ConfigDict, Field, model_validator


DEFAULT_DOCKER_SOCKET = "/var/run/docker.sock"

VolumeMode = Literal["ro", "rw"]


class StreamTag(IntEnum):
    """Stream identifiers used in Docker's multiplexed attach frames."""

    STDIN = 0
    STDOUT = 1
    STDERR = 2


class ContainerState(StrEnum):
    """Lifecycle states of the driver's active container."""

    ABSENT = "absent"
    CREATED = "created"
    STARTED = "started"
    ATTACHED = "attached"
    WAITED = "waited"
    DELETED = "deleted"


class ContainerInfo(BaseModel):
    """The container currently owned by a driver.

    Attributes:
        id: Runtime-assigned container id.
        image: Image reference the container was created from.
        state: Current lifecycle state.
        binds: Bind list in ``host:container:mode`` form.
    """

    id: str
    image: str
    state: ContainerState = ContainerState.CREATED
    binds: list[str] = Field(default_factory=list)


class DockerEndpoint(BaseModel):
    """Address of the Docker control endpoint.

    Either a unix domain socket path or a TCP host and port. When ``host``
    is set the socket path is ignored.
    """

    model_config = ConfigDict(frozen=True)

    socket: str = DEFAULT_DOCKER_SOCKET
    host: str | None = None
    port: int | None = Field(default=None, ge=1, le=65535)

    @model_validator(mode="after")
    def _require_port_with_host(self) -> "DockerEndpoint":
        if self.host is not None and self.port is None:
            raise ValueError("port is required when host is set")
        return self

    @property
    def is_tcp(self) -> bool:
        return self.host is not None

    @property
    def url(self) -> str:
        if self.is_tcp:
            return f"tcp://{self.host}:{self.port}"
        return f"unix://{self.socket}"

    @property
    def base_url(self) -> str:
        """HTTP base URL for requests; unix sockets use a placeholder host."""
        if self.is_tcp:
            return f"http://{self.host}:{self.port}"
        return "http://docker"


class VolumeSpec(BaseModel):
    """A host directory bound into the container.

    Attributes:
        host_path: Directory on the host.
        mode: ``ro`` (default) or ``rw``.
    """

    model_config = ConfigDict(frozen=True)

    host_path: str
    mode: VolumeMode = "ro"

    @classmethod
    def parse(cls, value: "str | VolumeSpec | Mapping[str, Any]") -> "VolumeSpec":
        """Build a VolumeSpec from ``"/host/path[:ro|rw]"`` or a mapping."""
        if isinstance(value, VolumeSpec):
            return value
        if isinstance(value, Mapping):
            return cls.model_validate(value)
        host_path, sep, mode = value.rpartition(":")
        if sep and mode in ("ro", "rw"):
            return cls(host_path=host_path, mode=mode)  # type: ignore[arg-type]
        return cls(host_path=value)


class AttachResult(NamedTuple):
    """Demultiplexed output of one attach session.

    Attributes:
        stdout: Protocol-bearing bytes (frame tag 1).
        stderr: Unstructured passthrough bytes (other tags).
    """

    stdout: bytes
    stderr: bytes


def volumes_for_create(volumes: Mapping[str, VolumeSpec]) -> dict[str, dict[str, Any]]:
    """Creation-time placeholder map: ``{"/container/path": {}}``."""
    return {container_path: {} for container_path in volumes}


def volumes_for_bind(volumes: Mapping[str, VolumeSpec]) -> list[str]:
    """Bind list entries in ``host:container:mode`` form."""
    return [
        f"{spec.host_path}:{container_path}:{spec.mode}"
        for container_path, spec in volumes.items()
    ]
