"""
stream_decoder.py — Chat-stream decoder for the assistant endpoint

Decodes the chat-stream protocol from async byte streams (httpx
response.aiter_bytes()) into text deltas and control messages.
Handles: cross-chunk UTF-8 state, partial lines, one level of proxy
wrapping, JSON control payloads vs. freeform text payloads.

Backend output, one frame per line:

    event: init
    data: {"conversationId": "c-1"}
    data: Hola\\nmundo
    event: complete
    data: {"status": "done"}

Behind the edge proxy every line arrives wrapped once more ("data:event: init").
"""

from __future__ import annotations

import codecs
import json
import logging
from collections import deque
from dataclasses import dataclass
from typing import (
    Any,
    AsyncGenerator,
    AsyncIterable,
    Deque,
    Dict,
    Iterator,
    List,
    Optional,
    Union,
)

logger = logging.getLogger("mama.stream_decoder")

DONE_SENTINEL = "[DONE]"

EVENT_PREFIX = "event:"
DATA_PREFIX = "data:"
COMMENT_PREFIX = ":"

# Prefixes that mark a proxy-wrapped line once the outer "data:" is removed
_FRAMING_PREFIXES = (EVENT_PREFIX, DATA_PREFIX, COMMENT_PREFIX)


# === Error Classes ===


class ChatStreamError(Exception):
    """Structured send failure with code and optional HTTP status."""

    def __init__(
        self,
        code: str,
        message: str,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.code = code
        self.status_code = status_code

    def to_dict(self) -> dict:
        return {
            "error": "ChatStreamError",
            "code": self.code,
            "message": str(self),
            "status_code": self.status_code,
        }


class StreamError(ChatStreamError):
    """Error control message sent by the backend inside the stream."""

    def __init__(self, message: str):
        super().__init__("stream_error", message)


# === Frames ===


@dataclass(frozen=True)
class EventMarker:
    kind: str


@dataclass(frozen=True)
class DataPayload:
    raw: str


@dataclass(frozen=True)
class Ignorable:
    pass


@dataclass(frozen=True)
class PlainText:
    text: str


Frame = Union[EventMarker, DataPayload, Ignorable, PlainText]

IGNORABLE = Ignorable()


# === Stream Events ===


@dataclass(frozen=True)
class ConversationAssigned:
    conversation_id: str


@dataclass(frozen=True)
class StreamDone:
    pass


@dataclass(frozen=True)
class DeltaEvent:
    text: str


StreamEvent = Union[ConversationAssigned, StreamDone, DeltaEvent]


# === Byte Decoder / Line Framer ===


class ByteDecoder:
    """Incremental UTF-8 decoder; a character split across chunks is held back."""

    def __init__(self, encoding: str = "utf-8"):
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")

    def decode(self, chunk: bytes) -> str:
        return self._decoder.decode(chunk)

    def flush(self) -> str:
        """Release held-back bytes at end of stream (replaced if incomplete)."""
        return self._decoder.decode(b"", final=True)


class LineFramer:
    """Accumulate text and hand out complete "\\n"-terminated lines.

    The trailing partial line stays buffered until the next feed().
    Carriage returns are left in place; the classifier trims them.
    """

    def __init__(self) -> None:
        self._buffer = ""

    def feed(self, text: str) -> List[str]:
        self._buffer += text
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        return lines

    def flush(self) -> Optional[str]:
        """Return the unterminated residual, or None if only whitespace remains."""
        residual, self._buffer = self._buffer, ""
        if residual.strip():
            return residual
        return None

    @property
    def pending(self) -> str:
        return self._buffer


# === Unwrap / Classify ===


def unwrap_line(line: str) -> str:
    """Remove one proxy "data:" envelope from a line.

    The proxy re-emits each backend line as "data:<line>", so a wrapped
    line exposes event/data/comment framing after the prefix is removed.
    A direct data line ("data: Hola", "data:{...}") has no inner framing
    and is returned trimmed but otherwise unchanged. Only one level is
    removed.
    """
    line = line.strip()
    if not line.startswith(DATA_PREFIX):
        return line
    inner = line[len(DATA_PREFIX):].strip()
    if inner.startswith(_FRAMING_PREFIXES):
        return inner
    return line


def classify_line(line: str) -> Frame:
    """Classify an unwrapped line into a Frame."""
    line = line.strip()
    if not line:
        return IGNORABLE
    if line.startswith(EVENT_PREFIX):
        return EventMarker(kind=line[len(EVENT_PREFIX):].strip())
    if line.startswith(DATA_PREFIX):
        return DataPayload(raw=line[len(DATA_PREFIX):].strip())
    if line.startswith(COMMENT_PREFIX):
        return IGNORABLE
    # Backend should not send bare text, but it must not be dropped
    return PlainText(text=line)


# === Payload Interpretation ===


def parse_structured(raw: str) -> Optional[Dict[str, Any]]:
    """Decode raw as a JSON object. Returns None for anything else.

    Freeform text is rejected before reaching the JSON parser, so the
    common delta path never raises.
    """
    if not raw.startswith("{"):
        return None
    try:
        value = json.loads(raw)
    except ValueError:
        return None
    if not isinstance(value, dict):
        return None
    return value


def unescape_text(text: str) -> str:
    """Turn literal backslash-n / backslash-r sequences into real line breaks."""
    return text.replace("\\n", "\n").replace("\\r", "\r")


def interpret_control(message: Dict[str, Any]) -> Optional[StreamEvent]:
    """Map a structured payload to a control event. First matching key wins.

    Raises StreamError for an error payload. Unknown shapes yield None.
    """
    conversation_id = message.get("conversationId")
    if conversation_id:
        return ConversationAssigned(conversation_id=str(conversation_id))

    if message.get("status") == "done":
        return StreamDone()

    error = message.get("error")
    if error:
        raise StreamError(str(error))

    logger.debug("Ignoring unrecognized structured payload: keys=%s", sorted(message))
    return None


def interpret_payload(raw: str) -> Optional[StreamEvent]:
    """Interpret a data payload as control message, text delta, or nothing."""
    if not raw or raw == DONE_SENTINEL:
        return None

    message = parse_structured(raw)
    if message is not None:
        return interpret_control(message)

    return DeltaEvent(text=unescape_text(raw))


def interpret_frame(frame: Frame) -> Optional[StreamEvent]:
    if isinstance(frame, DataPayload):
        return interpret_payload(frame.raw)
    if isinstance(frame, PlainText):
        return DeltaEvent(text=unescape_text(frame.text))
    if isinstance(frame, EventMarker):
        # Informational only; the following data line carries the content
        logger.debug("Event marker: %s", frame.kind)
    return None


def process_line(line: str) -> Optional[StreamEvent]:
    """Run one raw line through unwrap, classify and interpret."""
    return interpret_frame(classify_line(unwrap_line(line)))


# === Decoder ===


class StreamDecoder:
    """Incremental chat-stream decoder for one response body.

    feed() consumes a chunk and returns an iterator over the events of every
    completed line not yet handed out. Completed lines wait in a queue until
    some iterator drains them, so an iterator that is dropped unconsumed
    loses nothing: its lines come out of the next feed() or finish(). A
    StreamError is raised at the offending line, after every earlier event
    has been handed out.
    """

    def __init__(self, encoding: str = "utf-8"):
        self._bytes = ByteDecoder(encoding)
        self._lines = LineFramer()
        self._ready: Deque[str] = deque()

    @property
    def queued_lines(self) -> int:
        """Completed lines not yet turned into events."""
        return len(self._ready)

    def feed(self, chunk: bytes) -> Iterator[StreamEvent]:
        self._ready.extend(self._lines.feed(self._bytes.decode(chunk)))
        return self._drain()

    def finish(self) -> Iterator[StreamEvent]:
        """Flush decoder and framer at end of stream."""
        self._ready.extend(self._lines.feed(self._bytes.flush()))
        residual = self._lines.flush()
        if residual is not None:
            self._ready.append(residual)
        return self._drain()

    def _drain(self) -> Iterator[StreamEvent]:
        while self._ready:
            event = process_line(self._ready.popleft())
            if event is not None:
                yield event


async def decode_stream(
    stream: AsyncIterable[bytes],
) -> AsyncGenerator[StreamEvent, None]:
    """Decode chat-stream events from an async byte stream.

    Yields ConversationAssigned, StreamDone and DeltaEvent objects in
    arrival order. Each chunk is fully drained before the next is read.
    Raises StreamError when the backend sends an error payload.
    """
    decoder = StreamDecoder()

    async for chunk in stream:
        for event in decoder.feed(chunk):
            yield event

    for event in decoder.finish():
        yield event
