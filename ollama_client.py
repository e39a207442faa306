"""Ollama API client with incremental streaming support."""

import json
from typing import Any

import httpx

from config import DEFAULT_BASE_URL, DEFAULT_KEEP_ALIVE, ClientConfig, load_config
from errors import DecodeError, IncompleteTrailingDataError, TransportError
from logger import get_logger
from request_builder import RequestBuilder
from stream_decoder import DecodedEvent, DecodePolicy, StreamDecoder

log = get_logger("client")

# operation -> (HTTP method, path)
ENDPOINTS: dict[str, tuple[str, str]] = {
    "generate": ("POST", "/api/generate"),
    "chat": ("POST", "/api/chat"),
    "show": ("POST", "/api/show"),
    "copy": ("POST", "/api/copy"),
    "delete": ("DELETE", "/api/delete"),
    "pull": ("POST", "/api/pull"),
    "embeddings": ("POST", "/api/embeddings"),
    "list": ("GET", "/api/tags"),
    "ps": ("GET", "/api/ps"),
}


def _stream_result(raw: str, events: list[DecodedEvent]) -> Any:
    """Value returned from a streamed call.

    The whole concatenated stream is decoded once more; a multi-object stream
    is not a single JSON value, so in that case the decoded objects are
    returned as a list in stream order.
    """
    if not raw.strip():
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        if not events:
            return None
        return [event.value for event in events]


class OllamaClient(RequestBuilder):
    """Blocking client for the Ollama HTTP API.

    Without a callback every call reads the whole response body and returns
    its decoded JSON.  With a callback registered the body is read as a
    stream and each JSON object is passed to ``callback(value, raw)`` as soon
    as it is complete::

        client = OllamaClient(model="llama2")
        client.prompt("Why is the sky blue?").callback(lambda obj, raw: print(obj["response"], end=""))
        client.generate()
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        model: str | None = None,
        *,
        keep_alive: int = DEFAULT_KEEP_ALIVE,
        timeout: float | None = None,
        policy: DecodePolicy | str = DecodePolicy.ABORT,
        carry_payload: bool = False,
        strict_trailing: bool = False,
    ):
        super().__init__(base_url, model, keep_alive=keep_alive, carry_payload=carry_payload)
        self.policy = DecodePolicy(policy)
        self.strict_trailing = strict_trailing
        # unconsumed tail of the last streamed response; non-blank means it was cut short
        self.last_leftover = ""
        self._client = httpx.Client(timeout=timeout)

    @classmethod
    def from_config(
        cls,
        config: ClientConfig | None = None,
        model: str | None = None,
        **kwargs,
    ) -> "OllamaClient":
        """Create a client from *config* (loaded from env/file when omitted)."""
        config = config or load_config()
        return cls(
            config.base_url,
            model or config.model,
            keep_alive=config.keep_alive,
            timeout=config.timeout,
            **kwargs,
        )

    # ── Operations ─────────────────────────────────────────────────────────────

    def generate(self) -> Any:
        return self._call("generate", {"model": self._model, "prompt": self._prompt})

    def chat(self, messages: list[dict]) -> Any:
        return self._call("chat", {"model": self._model, "messages": messages})

    def show(self, source_model: str | None = None, verbose: bool = False) -> Any:
        return self._call("show", {"model": source_model or self._model, "verbose": verbose})

    def copy(self, new_model: str, source_model: str | None = None) -> Any:
        return self._call("copy", {"source": source_model or self._model, "destination": new_model})

    def delete(self, source_model: str | None = None) -> Any:
        return self._call("delete", {"model": source_model or self._model})

    def pull(self, model: str | None = None, insecure: bool = False) -> Any:
        return self._call("pull", {"model": model or self._model, "insecure": insecure})

    def embeddings(self, model: str | None = None) -> Any:
        return self._call("embeddings", {"model": model or self._model, "keep_alive": self._keep_alive})

    def get_local_models(self) -> Any:
        return self._call("list")

    def get_running_models(self) -> Any:
        return self._call("ps")

    def _call(self, operation: str, base: dict | None = None) -> Any:
        method, path = ENDPOINTS[operation]
        payload = self.build(base) if base is not None else None
        return self.ask(method, path, payload)

    # ── Transport ──────────────────────────────────────────────────────────────

    def ask(self, method: str, path: str, payload: dict | None = None) -> Any:
        """Send one request and return the decoded response.

        Raises:
            TransportError: connection failure, timeout or non-2xx status.
            DecodeError: the response could not be decoded as JSON.
            IncompleteTrailingDataError: the body ended inside an object
                (streamed calls only with ``strict_trailing=True``).
        """
        url = self.url_for(path)
        kwargs = {} if payload is None else {"json": payload}
        streaming = self.has_callback()
        self.last_leftover = ""
        log.debug("%s %s stream=%s", method, url, streaming)

        try:
            if streaming:
                return self._ask_streaming(method, url, kwargs)
            resp = self._client.request(method, url, **kwargs)
            resp.raise_for_status()
        except httpx.HTTPError as e:
            raise self._transport_error(method, url, e) from e

        return self._decode_body(resp.text)

    def _ask_streaming(self, method: str, url: str, kwargs: dict) -> Any:
        decoder = StreamDecoder(sink=self._callback, policy=self.policy)
        with self._client.stream(method, url, **kwargs) as resp:
            if resp.is_error:
                resp.read()
            resp.raise_for_status()
            events = []
            for chunk in resp.iter_bytes():
                events.extend(decoder.feed(chunk))
            try:
                self.last_leftover = decoder.finish(strict=self.strict_trailing)
            except IncompleteTrailingDataError as e:
                self.last_leftover = e.leftover
                raise
        log.debug("%s %s streamed %d objects", method, url, len(events))
        return _stream_result(decoder.raw_text, events)

    def _decode_body(self, text: str) -> Any:
        if not text.strip():
            return None
        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            # Streaming endpoints called without "stream": false answer with
            # several objects even when read in one go.  The whole body is
            # here, so noise or a cut-off tail is an error, not "wait for more".
            if not text.lstrip().startswith("{"):
                raise DecodeError(f"response body is not valid JSON: {e}", raw=text) from e
            events = list(StreamDecoder(policy=self.policy).decode_iter([text], strict=True))
            if not events:
                raise DecodeError(f"response body is not valid JSON: {e}", raw=text) from e
            return [event.value for event in events]

    @staticmethod
    def _transport_error(method: str, url: str, exc: httpx.HTTPError) -> TransportError:
        status_code = None
        if isinstance(exc, httpx.HTTPStatusError):
            status_code = exc.response.status_code
            detail = exc.response.text.strip()
            message = f"{method} {url} returned {status_code}"
            if detail:
                message += f": {detail}"
        else:
            message = f"Cannot reach Ollama at {url}: {exc}"
        log.error(message)
        return TransportError(message, method=method, url=url, status_code=status_code)

    def close(self):
        self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, *_):
        self.close()
