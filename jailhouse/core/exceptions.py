# jailhouse/core/exceptions.py
"""Custom exceptions for Jailhouse."""
from typing import Any


class JailhouseError(Exception):
    """Base exception for all Jailhouse errors."""

    pass


class ConfigurationError(JailhouseError):
    """Raised when required configuration is missing or invalid."""

    pass


class DriverError(JailhouseError):
    """Raised when a call to the container control endpoint fails.

    Covers both transport failures (refused connections, malformed HTTP) and
    HTTP-level rejections. For the latter, ``status`` holds the response code.
    """

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class ImageBuildError(JailhouseError):
    """Raised when the image build stream reports an error object.

    Attributes:
        detail: The ``errorDetail`` object reported by Docker, if any.
            Example: ``{"code": 127, "message": "The command ... returned a non-zero code: 127"}``
        progress: The offending progress object as reported.
    """

    def __init__(self, message: str | dict[str, Any]) -> None:
        self.detail: dict[str, Any] | None = None
        self.progress: dict[str, Any] | None = None
        if isinstance(message, dict):
            self.progress = message
            self.detail = message.get("errorDetail")
            message = str(message.get("error", message))
        super().__init__(message)


class InmateImportError(JailhouseError):
    """Raised when the sandbox-side method table cannot be loaded."""

    pass


class UnknownMethodError(JailhouseError):
    """Raised when a dispatched method name is not registered."""

    pass


class ProtocolError(JailhouseError):
    """Raised when the inner message stream is malformed or incomplete.

    Attributes:
        messages: Messages decoded cleanly from the same input before the
            malformed part. They are valid and should still be handled.
    """

    def __init__(self, message: str, *, messages: list[Any] | None = None) -> None:
        super().__init__(message)
        self.messages = list(messages or [])


class InmateRuntimeError(JailhouseError):
    """A remote exception reconstructed on the trusted side.

    The message reads ``"<class>: <message>"``; when the sandbox sent a
    backtrace it follows a separator line. The local stack is the one
    Python attaches when this error is raised.
    """

    BACKTRACE_SEPARATOR = "--- inmate backtrace ---"

    def __init__(
        self,
        remote_class: str,
        remote_message: str,
        remote_backtrace: list[str] | None = None,
    ) -> None:
        self.remote_class = remote_class
        self.remote_message = remote_message
        self.remote_backtrace = list(remote_backtrace or [])
        text = f"{remote_class}: {remote_message}"
        if self.remote_backtrace:
            text = "\n".join([text, self.BACKTRACE_SEPARATOR, *self.remote_backtrace])
        super().__init__(text)
