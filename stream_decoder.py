"""Incremental decoder for undelimited JSON object streams.

Ollama answers streaming requests with a chunked body holding one JSON object
after another.  Objects are usually newline separated, but nothing guarantees
that a network read ends on an object boundary, so the decoder buffers text
until a brace-balanced object is complete and only then decodes it.
"""

import codecs
import json
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterable, Iterator, NamedTuple

from errors import DecodeError, IncompleteTrailingDataError
from logger import get_logger

log = get_logger("stream")

Sink = Callable[[Any, str], None]

# the only characters that change the scanner's state
_STRUCTURAL = re.compile(r'[{}"\\]')
_NON_SPACE = re.compile(r"\S")


class DecodedEvent(NamedTuple):
    """One complete object from the stream: parsed value plus its source text."""

    value: Any
    raw: str


class DecodePolicy(str, Enum):
    """What to do when an extracted object is not valid JSON."""

    ABORT = "abort"
    SKIP = "skip"


@dataclass
class _ScanState:
    """Where a brace scan stopped, so it can resume when more text arrives."""

    pos: int = 0
    start: int = -1
    depth: int = 0
    in_string: bool = False
    escaped: bool = False


def _scan(buffer: str, state: _ScanState) -> int:
    """Advance *state* through *buffer*; return the end of the object or -1.

    Every character is examined at most once across calls, as long as the
    caller only appends to *buffer* between them.
    """
    n = len(buffer)
    if state.start < 0:
        start = buffer.find("{", state.pos)
        if start < 0:
            state.pos = n
            return -1
        state.start = start
        state.pos = start

    i = state.pos
    while True:
        if state.escaped:
            if i >= n:
                break
            i += 1
            state.escaped = False
            continue

        m = _STRUCTURAL.search(buffer, i)
        if m is None:
            i = n
            break
        ch = m.group()
        i = m.end()

        if state.in_string:
            if ch == "\\":
                state.escaped = True
            elif ch == '"':
                state.in_string = False
        elif ch == '"':
            state.in_string = True
        elif ch == "{":
            state.depth += 1
        elif ch == "}":
            state.depth -= 1
            if state.depth == 0:
                state.pos = i
                return i

    state.pos = i
    return -1


def extract_one(buffer: str) -> tuple[str | None, int]:
    """Find the first complete, brace-balanced object in *buffer*.

    Anything before the first ``{`` is skipped.  Braces inside string
    literals are not counted, and backslash escapes inside strings are
    honoured, so ``{"text": "a } b"}`` is a single object.

    Returns ``(object_text, consumed)`` where *consumed* is the number of
    characters up to and including the closing ``}`` (skipped noise
    included), or ``(None, 0)`` if no complete object is buffered yet.
    """
    state = _ScanState()
    end = _scan(buffer, state)
    if end < 0:
        return None, 0
    return buffer[state.start : end], end


class StreamDecoder:
    """Turn a sequence of byte chunks into decoded JSON objects.

    Each instance owns its buffer and must be used for a single response.
    Objects are handed to *sink* (if given) as ``sink(value, raw)`` in stream
    order, and are also returned from :meth:`feed` / yielded from
    :meth:`decode_iter`.

    The brace scan resumes where the previous :meth:`feed` stopped, so an
    object arriving in many small chunks is scanned once, not once per chunk.
    """

    def __init__(
        self,
        sink: Sink | None = None,
        policy: DecodePolicy | str = DecodePolicy.ABORT,
        encoding: str = "utf-8",
    ):
        self.sink = sink
        self.policy = DecodePolicy(policy)
        self.encoding = encoding
        self._text_decoder = codecs.getincrementaldecoder(encoding)()
        self._buffer = ""
        self._offset = 0
        self._state = _ScanState()
        self._scanned = 0
        self._received: list[str] = []

    @property
    def pending(self) -> str:
        """Text buffered but not yet part of a complete object."""
        return self._buffer[self._offset:]

    @property
    def raw_text(self) -> str:
        """Everything received so far, concatenated."""
        return "".join(self._received)

    def feed(self, chunk: bytes | str) -> list[DecodedEvent]:
        """Append *chunk* and dispatch every object it completes."""
        if isinstance(chunk, bytes):
            try:
                text = self._text_decoder.decode(chunk)
            except UnicodeDecodeError as e:
                raise DecodeError(
                    f"stream is not valid {self.encoding}: {e}",
                    raw=chunk.decode(self.encoding, errors="replace"),
                ) from e
        else:
            text = chunk

        if not text:
            return []
        self._received.append(text)
        self._buffer += text
        return self._drain()

    def _drain(self) -> list[DecodedEvent]:
        events: list[DecodedEvent] = []
        try:
            while True:
                before = self._state.pos
                end = _scan(self._buffer, self._state)
                self._scanned += self._state.pos - before
                if end < 0:
                    break

                raw = self._buffer[self._state.start : end]
                m = _NON_SPACE.search(self._buffer, end)
                self._offset = m.start() if m else len(self._buffer)
                self._state = _ScanState(pos=self._offset)

                try:
                    value = json.loads(raw)
                except json.JSONDecodeError as e:
                    if self.policy is DecodePolicy.SKIP:
                        log.warning("Skipping malformed object (%s): %.200s", e, raw)
                        continue
                    raise DecodeError(f"invalid JSON object in stream: {e}", raw=raw) from e

                log.debug("Decoded object (%d chars)", len(raw))
                if self.sink is not None:
                    self.sink(value, raw)
                events.append(DecodedEvent(value, raw))
        finally:
            self._compact()
        return events

    def _compact(self) -> None:
        """Drop consumed text from the front of the buffer."""
        if not self._offset:
            return
        self._buffer = self._buffer[self._offset:]
        self._state.pos -= self._offset
        if self._state.start >= 0:
            self._state.start -= self._offset
        self._offset = 0

    def finish(self, strict: bool = False) -> str:
        """Signal end of stream and return whatever was left unconsumed.

        A non-blank leftover means the response was cut short.  It is logged
        and dropped, or raised as :class:`IncompleteTrailingDataError` when
        *strict* is true.  The buffer is empty afterwards.
        """
        undecoded, _ = self._text_decoder.getstate()
        leftover = self.pending + undecoded.decode(self.encoding, errors="replace")
        self._buffer = ""
        self._offset = 0
        self._state = _ScanState()
        self._text_decoder.reset()

        if leftover.strip():
            if strict:
                raise IncompleteTrailingDataError(leftover)
            log.warning("Dropping %d chars of incomplete trailing data", len(leftover))
        return leftover

    def decode_iter(self, chunks: Iterable[bytes | str], strict: bool = False) -> Iterator[DecodedEvent]:
        """Feed *chunks* in order, yielding events as soon as they complete."""
        for chunk in chunks:
            yield from self.feed(chunk)
        self.finish(strict=strict)
