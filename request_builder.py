"""Fluent request state shared by every Ollama operation."""

from typing import Any, Mapping

from config import DEFAULT_BASE_URL, DEFAULT_KEEP_ALIVE
from stream_decoder import Sink


def join_url(base_url: str, path: str) -> str:
    """Join a base URL and an endpoint path with exactly one slash between."""
    return f"{base_url.rstrip('/')}/{path.lstrip('/')}"


class RequestBuilder:
    """Accumulates model, prompt, keep-alive and option overrides.

    Setters return ``self`` so calls chain::

        builder.model("llama2").prompt("hi").append_options({"temperature": 0.7})

    :meth:`build` merges an operation's base fields with the configured
    options; options win on key conflicts.  With ``carry_payload=True`` the
    merged payload also replaces the stored options, so each call sees the
    previous call's payload.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        model: str | None = None,
        keep_alive: int = DEFAULT_KEEP_ALIVE,
        carry_payload: bool = False,
    ):
        self._base_url = base_url
        self._model = model
        self._prompt: str | None = None
        self._keep_alive = keep_alive
        self._options: dict[str, Any] = {}
        self._callback: Sink | None = None
        self.carry_payload = carry_payload

    def base_url(self, base_url: str) -> "RequestBuilder":
        self._base_url = base_url
        return self

    def model(self, model: str | None) -> "RequestBuilder":
        self._model = model
        return self

    def prompt(self, prompt: str) -> "RequestBuilder":
        self._prompt = prompt
        return self

    def keep_alive(self, seconds: int) -> "RequestBuilder":
        self._keep_alive = int(seconds)
        return self

    def options(self, options: Mapping[str, Any]) -> "RequestBuilder":
        """Replace all option overrides."""
        self._options = dict(options)
        return self

    def append_options(self, options: Mapping[str, Any]) -> "RequestBuilder":
        """Merge *options* over the current overrides; new keys win."""
        self._options = {**self._options, **options}
        return self

    def callback(self, sink: Sink | None) -> "RequestBuilder":
        """Register the handler for streamed objects (``None`` unregisters)."""
        if sink is not None and not callable(sink):
            raise TypeError(f"callback must be callable, got {type(sink).__name__}")
        self._callback = sink
        return self

    def has_callback(self) -> bool:
        return self._callback is not None

    def get_options(self) -> dict[str, Any]:
        return dict(self._options)

    def url_for(self, path: str) -> str:
        return join_url(self._base_url, path)

    def build(self, base: Mapping[str, Any]) -> dict[str, Any]:
        """Return the outgoing payload for an operation with *base* fields."""
        payload = {**base, **self._options}
        if self.carry_payload:
            self._options = dict(payload)
        return payload
