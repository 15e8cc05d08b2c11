"""Registry of inmate methods: the only names the sandbox will dispatch.

Handlers are plain callables. A handler that declares a ``progress``
parameter receives a callback it can call any number of times to report
progress values back to the caller::

    registry = InmateRegistry()

    @registry.register
    def reverse(text: str, progress: ProgressCallback) -> str:
        progress("reversing", len(text))
        return text[::-1]
"""

from __future__ import annotations

import importlib
import inspect
import types
from collections.abc import Callable, Iterator, Sequence
from typing import Any, NamedTuple, TypeAlias, overload

from jailhouse.core.exceptions import InmateImportError, UnknownMethodError


ProgressCallback: TypeAlias = Callable[..., None]
Handler: TypeAlias = Callable[..., Any]

PROGRESS_PARAMETER = "progress"


class _Entry(NamedTuple):
    handler: Handler
    accepts_progress: bool


def _accepts_progress(handler: Handler) -> bool:
    try:
        parameters = inspect.signature(handler).parameters
    except (TypeError, ValueError):
        return False
    return PROGRESS_PARAMETER in parameters


class InmateRegistry:
    """Maps method names to handlers."""

    def __init__(self) -> None:
        self._entries: dict[str, _Entry] = {}

    @overload
    def register(self, handler: Handler, /) -> Handler: ...

    @overload
    def register(self, *, name: str) -> Callable[[Handler], Handler]: ...

    def register(
        self, handler: Handler | None = None, /, *, name: str | None = None
    ) -> Handler | Callable[[Handler], Handler]:
        """Decorator registering a handler under its own name or ``name``."""
        def decorator(func: Handler) -> Handler:
            self.add(name or func.__name__, func)
            return func

        if handler is not None:
            return decorator(handler)
        return decorator

    def add(self, name: str, handler: Handler) -> None:
        """Register ``handler`` as ``name``, replacing any previous one.

        Raises:
            TypeError: If ``handler`` is not callable.
        """
        if not callable(handler):
            raise TypeError(f"Inmate handler {name!r} is not callable")
        self._entries[name] = _Entry(handler, _accepts_progress(handler))

    @classmethod
    def from_object(cls, obj: object) -> InmateRegistry:
        """Register every public callable of ``obj``.

        ``obj`` is typically an instance implementing the inmate interface,
        or a module of functions (only functions defined in that module are
        taken).
        """
        registry = cls()
        for name in dir(obj):
            if name.startswith("_"):
                continue
            attr = getattr(obj, name)
            if not callable(attr) or inspect.isclass(attr):
                continue
            if isinstance(obj, types.ModuleType) and getattr(attr, "__module__", None) != obj.__name__:
                continue
            registry.add(name, attr)
        return registry

    def names(self) -> list[str]:
        return sorted(self._entries)

    def __contains__(self, name: object) -> bool:
        return name in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def get(self, name: str) -> Handler:
        """Return the handler registered as ``name``.

        Raises:
            UnknownMethodError: If nothing is registered under ``name``.
        """
        try:
            return self._entries[name].handler
        except KeyError:
            raise UnknownMethodError(f"No inmate method named {name!r}") from None

    def dispatch(
        self,
        name: str,
        args: Sequence[Any],
        progress: ProgressCallback | None = None,
    ) -> Any:
        """Call the handler registered as ``name`` with ``args``.

        Args:
            name: Registered method name.
            args: Positional arguments.
            progress: Progress callback passed to handlers that accept one.

        Raises:
            UnknownMethodError: If nothing is registered under ``name``.
        """
        handler = self.get(name)
        if self._entries[name].accepts_progress:
            return handler(*args, progress=progress or _ignore_progress)
        return handler(*args)


def _ignore_progress(*values: Any) -> None:
    pass


def load_registry(path: str) -> InmateRegistry:
    """Load the inmate registry from a ``module:attribute`` path.

    The attribute may be an InmateRegistry, a class (instantiated with no
    arguments), or any object whose public callables become the methods.
    A bare module path registers the module's ``registry`` attribute if it
    has one, otherwise its functions.

    Raises:
        InmateImportError: If the module or attribute cannot be loaded.
    """
    module_path, _, attr_name = path.partition(":")
    if not module_path:
        raise InmateImportError(f"Inmate path must be 'module[:attribute]', got: {path!r}")
    try:
        module = importlib.import_module(module_path)
    except Exception as exc:
        raise InmateImportError(f"Cannot import inmate module {module_path!r}: {exc}") from exc

    if not attr_name:
        target: object = getattr(module, "registry", module)
    else:
        try:
            target = getattr(module, attr_name)
        except AttributeError as exc:
            raise InmateImportError(
                f"Inmate module {module_path!r} has no attribute {attr_name!r}"
            ) from exc

    if isinstance(target, InmateRegistry):
        return target
    if inspect.isclass(target):
        try:
            target = target()
        except Exception as exc:
            raise InmateImportError(f"Cannot instantiate inmate {path!r}: {exc}") from exc
    return InmateRegistry.from_object(target)
