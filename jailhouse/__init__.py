"""Jailhouse: run Python methods inside throwaway Docker containers.

Lazy imports are used because the worker entrypoint (jailhouse.worker)
runs inside a sandbox image that only has loguru and msgpack installed.
Eagerly importing the guard (which requires pydantic) would break it.
"""

from __future__ import annotations  # noqa: I001

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from jailhouse.bundle import ImageBundle
    from jailhouse.config import JailhouseConfig
    from jailhouse.docker.driver import DockerDriver
    from jailhouse.guard import Guard
    from jailhouse.registry import InmateRegistry

__version__ = "0.1.0"

__all__ = [
    "DockerDriver",
    "Guard",
    "ImageBundle",
    "InmateRegistry",
    "JailhouseConfig",
]


def __getattr__(name: str) -> object:
    if name == "Guard":
        from jailhouse.guard import Guard  # noqa: PLC0415

        return Guard
    if name == "DockerDriver":
        from jailhouse.docker.driver import DockerDriver  # noqa: PLC0415

        return DockerDriver
    if name == "ImageBundle":
        from jailhouse.bundle import ImageBundle  # noqa: PLC0415

        return ImageBundle
    if name == "InmateRegistry":
        from jailhouse.registry import InmateRegistry  # noqa: PLC0415

        return InmateRegistry
    if name == "JailhouseConfig":
        from jailhouse.config import JailhouseConfig  # noqa: PLC0415

        return JailhouseConfig
    msg = f"module {__name__!r} has no attribute {name!r}"
    raise AttributeError(msg)
