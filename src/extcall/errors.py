"""Error hierarchy for external program invocations.

Every failure of a single invocation is terminal; nothing here is retried.
Cancellation is not modelled as its own class: the awaiting task sees
``asyncio.CancelledError`` after the child has been killed.
"""

from __future__ import annotations

from collections.abc import Iterable

__all__ = [
    "ConfigError",
    "ExternalCallError",
    "ExternalTimeoutError",
    "InvocationError",
    "NoReplyError",
    "SchemaError",
]

_PAYLOAD_QUOTE_LIMIT = 2048


class ExternalCallError(RuntimeError):
    """Base class for failures of a single external invocation."""

    def __init__(self, message: str, *, command: str | None = None) -> None:
        self.command = command
        super().__init__(message)


class SchemaError(ExternalCallError, ValueError):
    """Raised when a request or reply does not match the expected shape.

    The raw payload is kept on the exception and quoted in the message so
    operators can see exactly what a misbehaving provider produced.
    """

    def __init__(
        self,
        errors: Iterable[str],
        *,
        payload: bytes | str | None = None,
        command: str | None = None,
    ) -> None:
        self.errors = [error for error in errors if error]
        self.payload = payload
        details = "; ".join(self.errors) or "invalid payload"
        message = details
        if payload is not None:
            message = f"{details}: {quote_payload(payload)}"
        super().__init__(message, command=command)


class InvocationError(ExternalCallError):
    """Raised when the child could not be started or exited non-zero."""

    def __init__(
        self,
        message: str,
        *,
        command: str | None = None,
        returncode: int | None = None,
        stderr: str = "",
    ) -> None:
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(message, command=command)


class ExternalTimeoutError(ExternalCallError, TimeoutError):
    """Raised when the child outlived its deadline and was killed."""

    def __init__(self, message: str, *, command: str | None = None, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(message, command=command)


class NoReplyError(ExternalCallError):
    """Raised when the reply file or stream is absent or empty."""


class ConfigError(ValueError):
    """Raised when configuration values are missing or malformed."""

    def __init__(self, source: str, errors: Iterable[str]) -> None:
        self.source = source
        self.errors = [error for error in errors if error]
        details = "\n".join(f"- {error}" for error in self.errors)
        message = f"Invalid configuration: {source}"
        if details:
            message = f"{message}\n{details}"
        super().__init__(message)


def quote_payload(payload: bytes | str) -> str:
    """Return a printable, bounded quotation of a raw payload."""
    text = payload.decode("utf-8", errors="replace") if isinstance(payload, bytes) else payload
    if len(text) > _PAYLOAD_QUOTE_LIMIT:
        text = f"{text[:_PAYLOAD_QUOTE_LIMIT]}...({len(text) - _PAYLOAD_QUOTE_LIMIT} more bytes)"
    return repr(text)
