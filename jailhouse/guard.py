"""Guard: the caller-facing entry point for inmate methods.

A Guard runs in one of two modes, fixed when it is constructed:

- proxied (default): each call is encoded, shipped to a fresh sandbox
  container through a DockerDriver, and the response is decoded by a Proxy;
- no-proxy: each call goes straight to the local handler, for development
  and tests where no container runtime is available.

Either way the caller sees the same thing: ``await guard.call(name, *args)``
returns the method's value, progress values reach ``on_yield``, and errors
are raised.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any, BinaryIO

from loguru import logger

from jailhouse.bundle import ImageBundle, default_bundle
from jailhouse.config import JailhouseConfig
from jailhouse.core.exceptions import ConfigurationError
from jailhouse.docker.driver import DockerDriver
from jailhouse.protocol.proxy import Proxy, YieldCallback
from jailhouse.registry import InmateRegistry, load_registry


class Guard:
    """Dispatches inmate calls locally or into a sandbox container.

    Args:
        registry: Local inmate methods; required in no-proxy mode.
        driver: Container driver owned by this guard; required in proxied mode.
        bundle: Build context for the sandbox image. When given, the image is
            built on first use if Docker does not have it yet.
        no_proxy: Call handlers in-process instead of in a container.
        stdout: Destination for the inmate's stdout (proxied mode).
        stderr: Destination for the container's stderr (proxied mode).
    """

    def __init__(
        self,
        registry: InmateRegistry | None = None,
        *,
        driver: DockerDriver | None = None,
        bundle: ImageBundle | None = None,
        no_proxy: bool = False,
        stdout: BinaryIO | None = None,
        stderr: BinaryIO | None = None,
    ) -> None:
        if no_proxy and registry is None:
            raise ConfigurationError("A registry is required to call inmate methods in-process")
        if not no_proxy and driver is None:
            raise ConfigurationError("A Docker driver is required to call inmate methods in a sandbox")
        self._registry = registry
        self._driver = driver
        self._bundle = bundle
        self._no_proxy = no_proxy
        self._stdout = stdout
        self._stderr = stderr
        self._image_ready = False
        self._call: Callable[[str, tuple[Any, ...], YieldCallback | None], Awaitable[Any]] = (
            self._call_local if no_proxy else self._call_proxied
        )

    @classmethod
    def from_config(
        cls,
        config: JailhouseConfig,
        registry: InmateRegistry | None = None,
    ) -> Guard:
        """Build a guard (and, in proxied mode, its driver) from configuration.

        Raises:
            ConfigurationError: If the configuration cannot support the mode.
            InmateImportError: If the local registry cannot be loaded.
        """
        if config.no_proxy:
            if registry is None:
                if not config.inmate:
                    raise ConfigurationError("no_proxy mode needs 'inmate' (module:attribute)")
                registry = load_registry(config.inmate)
            return cls(registry, no_proxy=True)

        bundle = None
        if config.inmate_dir is not None:
            if not config.inmate:
                raise ConfigurationError("'inmate_dir' is set but 'inmate' is not")
            bundle = default_bundle(
                config.inmate_dir,
                config.inmate,
                base_name=config.image_base_name,
                python_version=config.python_version,
                dockerfile=config.dockerfile,
            )
        image = config.image_name or (bundle.image_name if bundle else None)
        if image is None:
            raise ConfigurationError("Set 'image_name' or 'inmate_dir' to locate the sandbox image")

        driver = DockerDriver(
            image,
            endpoint=config.endpoint,
            volumes=config.volumes,
            create_options=config.create_options,
            prestart=config.prestart,
        )
        return cls(registry, driver=driver, bundle=bundle)

    @property
    def no_proxy(self) -> bool:
        return self._no_proxy

    @property
    def driver(self) -> DockerDriver | None:
        return self._driver

    async def call(self, name: str, *args: Any, on_yield: YieldCallback | None = None) -> Any:
        """Call inmate method ``name`` with ``args``.

        Args:
            name: Registered inmate method name.
            *args: Positional arguments (msgpack-encodable in proxied mode).
            on_yield: Receives progress values reported by the method.

        Returns:
            The method's return value.

        Raises:
            InmateRuntimeError: If the sandboxed method raised.
            ProtocolError: If the sandbox ended the call without a result.
            DriverError: If the container runtime failed.
        """
        return await self._call(name, args, on_yield)

    def method(self, name: str) -> Callable[..., Awaitable[Any]]:
        """Bind ``name`` into an async callable: ``await guard.method("x")(1, 2)``."""
        async def bound(*args: Any, on_yield: YieldCallback | None = None) -> Any:
            return await self.call(name, *args, on_yield=on_yield)

        bound.__name__ = name
        return bound

    async def ensure_image(self) -> str:
        """Make sure the sandbox image exists, building it from the bundle if needed.

        Returns:
            The image reference.
        """
        driver = self._require_driver()
        image = driver.image
        if image is None:
            raise ConfigurationError("No image configured for the sandbox container")
        if self._bundle is not None:
            if await driver.image_exists(image):
                logger.info("Image cache hit", image=image)
            else:
                await driver.build_image(image, self._bundle.tarball)
        self._image_ready = True
        return image

    async def close(self) -> None:
        """Dispose of any prestarted container."""
        if self._driver is not None:
            await self._driver.close()

    async def __aenter__(self) -> Guard:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def _call_local(
        self, name: str, args: tuple[Any, ...], on_yield: YieldCallback | None
    ) -> Any:
        return self._require_registry().dispatch(name, args, on_yield)

    async def _call_proxied(
        self, name: str, args: tuple[Any, ...], on_yield: YieldCallback | None
    ) -> Any:
        driver = self._require_driver()
        if not self._image_ready:
            await self.ensure_image()
        proxy = Proxy(on_yield, stdout=self._stdout, stderr=self._stderr)
        logger.debug("Proxying inmate call", method=name, args=len(args))
        await driver.run(proxy.encode_dispatch(name, args), on_output=proxy.receive)
        return proxy.return_value

    def _require_driver(self) -> DockerDriver:
        if self._driver is None:
            raise ConfigurationError("This guard calls inmate methods in-process; it has no driver")
        return self._driver

    def _require_registry(self) -> InmateRegistry:
        if self._registry is None:
            raise ConfigurationError("This guard calls inmate methods in a sandbox; it has no registry")
        return self._registry
