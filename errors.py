"""Exceptions raised by ollama-stream.

Everything derives from :class:`OllamaError`, so callers can catch the whole
family with one clause:

    try:
        client.generate()
    except OllamaError as e:
        print(f"Ollama request failed: {e}")
"""


class OllamaError(Exception):
    """Base class for all ollama-stream errors."""


class TransportError(OllamaError):
    """The HTTP exchange itself failed.

    Covers connection failures, timeouts and non-2xx responses.  The original
    ``httpx`` exception is chained as ``__cause__``.
    """

    def __init__(
        self,
        message: str,
        *,
        method: str | None = None,
        url: str | None = None,
        status_code: int | None = None,
    ):
        super().__init__(message)
        self.method = method
        self.url = url
        self.status_code = status_code


class DecodeError(OllamaError, ValueError):
    """Text that should hold a JSON value could not be decoded."""

    def __init__(self, message: str, raw: str):
        super().__init__(message)
        self.raw = raw


class IncompleteTrailingDataError(OllamaError):
    """The stream ended while part of an object was still buffered."""

    def __init__(self, leftover: str):
        preview = leftover if len(leftover) <= 80 else leftover[:77] + "..."
        super().__init__(f"stream ended with {len(leftover)} unconsumed chars: {preview!r}")
        self.leftover = leftover
