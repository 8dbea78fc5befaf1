"""
Decode Notion's NDJSON inference stream into bridge stream events.

Notion answers `runInferenceTranscript` with newline-delimited JSON. Each
record is keyed by its `type`:

- `agent-inference` (current): `value` is a list of channels
  `{"type": "text" | "thinking", "content": "..."}`, each holding the
  cumulative content so far, plus thread id and token counts.
- `markdown-chat` (legacy): `value` is the whole answer so far.
- `error`: a backend-side failure report.
- anything else (`recordMap` payloads and friends) is ignored.

Both answer shapes converge on per-channel cumulative content, and the decoder
emits only the suffix that has not been emitted yet.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

import continuity
from errors import UpstreamProtocolError

log = logging.getLogger("notion_bridge")

TEXT_CHANNEL = "text"
REASONING_CHANNEL = "thinking"


class EventKind(str, Enum):
    TEXT = "text"
    REASONING = "reasoning"
    USAGE = "usage"
    NO_CONTENT = "no_content"
    TIMEOUT = "timeout"
    ERROR = "error"
    DONE = "done"


TERMINAL_KINDS = frozenset({EventKind.NO_CONTENT, EventKind.TIMEOUT, EventKind.ERROR, EventKind.DONE})


@dataclass(frozen=True)
class Usage:
    """Token accounting reported by Notion."""

    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None
    total_tokens: Optional[int] = None
    cached_tokens_read: Optional[int] = None
    cached_tokens_created: Optional[int] = None

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> Optional[Usage]:
        """Build usage from a record carrying inputTokens, else None."""
        if record.get("inputTokens") is None:
            return None
        prompt = _as_int(record.get("inputTokens"))
        completion = _as_int(record.get("outputTokens"))
        return cls(
            prompt_tokens=prompt,
            completion_tokens=completion,
            total_tokens=(prompt or 0) + (completion or 0),
            cached_tokens_read=_as_int(record.get("cachedTokensRead")),
            cached_tokens_created=_as_int(record.get("cachedTokensCreated")),
        )

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }
        if self.cached_tokens_read is not None:
            out["cached_tokens_read"] = self.cached_tokens_read
        if self.cached_tokens_created is not None:
            out["cached_tokens_created"] = self.cached_tokens_created
        return out


def _as_int(v: Any) -> Optional[int]:
    if isinstance(v, bool) or v is None:
        return None
    if isinstance(v, int):
        return v
    if isinstance(v, float):
        return int(v)
    return None


@dataclass(frozen=True)
class StreamEvent:
    """One unit of output for the outbound writer."""

    kind: EventKind
    text: str = ""
    usage: Optional[Usage] = None

    @property
    def is_terminal(self) -> bool:
        return self.kind in TERMINAL_KINDS

    @property
    def is_content(self) -> bool:
        return self.kind in (EventKind.TEXT, EventKind.REASONING)

    @classmethod
    def text_delta(cls, text: str) -> StreamEvent:
        return cls(EventKind.TEXT, text=text)

    @classmethod
    def reasoning_delta(cls, text: str) -> StreamEvent:
        return cls(EventKind.REASONING, text=text)

    @classmethod
    def usage_report(cls, usage: Optional[Usage]) -> StreamEvent:
        return cls(EventKind.USAGE, usage=usage)

    @classmethod
    def no_content(cls, detail: str = "") -> StreamEvent:
        return cls(EventKind.NO_CONTENT, text=detail)

    @classmethod
    def timeout(cls, detail: str = "") -> StreamEvent:
        return cls(EventKind.TIMEOUT, text=detail)

    @classmethod
    def error(cls, detail: str = "") -> StreamEvent:
        return cls(EventKind.ERROR, text=detail)

    @classmethod
    def done(cls) -> StreamEvent:
        return cls(EventKind.DONE)


# ---------------------------------------------------------------------------
# Envelopes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Channel:
    type: str
    content: str


@dataclass(frozen=True)
class AgentInferenceEnvelope:
    channels: List[Channel]
    thread_id: Optional[str] = None
    usage: Optional[Usage] = None


@dataclass(frozen=True)
class MarkdownChatEnvelope:
    text: str
    thread_id: Optional[str] = None


@dataclass(frozen=True)
class ErrorEnvelope:
    message: str


@dataclass(frozen=True)
class IgnoredEnvelope:
    type: Optional[str]


Envelope = Union[AgentInferenceEnvelope, MarkdownChatEnvelope, ErrorEnvelope, IgnoredEnvelope]


def _optional_str(v: Any) -> Optional[str]:
    return v if isinstance(v, str) and v else None


def _parse_agent_inference(record: Dict[str, Any]) -> AgentInferenceEnvelope:
    value = record.get("value")
    if not isinstance(value, list):
        raise UpstreamProtocolError("agent-inference record without a value list")
    channels: List[Channel] = []
    for item in value:
        if not isinstance(item, dict):
            continue
        ctype, content = item.get("type"), item.get("content")
        if ctype in (TEXT_CHANNEL, REASONING_CHANNEL) and isinstance(content, str):
            channels.append(Channel(type=ctype, content=content))
    return AgentInferenceEnvelope(
        channels=channels,
        thread_id=_optional_str(record.get("threadId")) or _optional_str(record.get("id")),
        usage=Usage.from_record(record),
    )


def _parse_markdown_chat(record: Dict[str, Any]) -> MarkdownChatEnvelope:
    value = record.get("value")
    if not isinstance(value, str):
        raise UpstreamProtocolError("markdown-chat record without a string value")
    return MarkdownChatEnvelope(text=value, thread_id=_optional_str(record.get("threadId")))


def _parse_error(record: Dict[str, Any]) -> ErrorEnvelope:
    message = record.get("message")
    if not isinstance(message, str) or not message:
        message = json.dumps(record, ensure_ascii=False)[:500]
    return ErrorEnvelope(message=message)


_ENVELOPE_PARSERS: Dict[str, Callable[[Dict[str, Any]], Envelope]] = {
    "agent-inference": _parse_agent_inference,
    "markdown-chat": _parse_markdown_chat,
    "error": _parse_error,
}


def parse_envelope(line: str) -> Envelope:
    """Decode one NDJSON line into an envelope. Raises UpstreamProtocolError."""
    try:
        record = json.loads(line)
    except json.JSONDecodeError as e:
        raise UpstreamProtocolError(f"invalid JSON: {e}", line) from e
    if not isinstance(record, dict):
        raise UpstreamProtocolError("record is not a JSON object", line)
    rtype = record.get("type")
    parser = _ENVELOPE_PARSERS.get(rtype) if isinstance(rtype, str) else None
    if parser is None:
        return IgnoredEnvelope(type=rtype if isinstance(rtype, str) else None)
    try:
        return parser(record)
    except UpstreamProtocolError as e:
        e.line = line
        raise


# ---------------------------------------------------------------------------
# Line framing and delta tracking
# ---------------------------------------------------------------------------

class NDJSONLineBuffer:
    """Split a byte stream into complete lines; partial lines wait for more bytes."""

    def __init__(self) -> None:
        self._buf = bytearray()

    def feed(self, chunk: bytes) -> List[str]:
        self._buf.extend(chunk)
        lines: List[str] = []
        while True:
            idx = self._buf.find(b"\n")
            if idx < 0:
                break
            raw = bytes(self._buf[:idx])
            del self._buf[: idx + 1]
            line = raw.decode("utf-8", errors="replace").strip()
            if line:
                lines.append(line)
        return lines

    @property
    def pending(self) -> bytes:
        return bytes(self._buf)


@dataclass
class DeltaTracker:
    """Per-channel count of characters already emitted."""

    emitted: Dict[str, int] = field(default_factory=dict)

    def delta(self, channel: str, cumulative: str) -> str:
        """Return the not-yet-emitted suffix of `cumulative`, or "" if it is not longer."""
        seen = self.emitted.get(channel, 0)
        if len(cumulative) <= seen:
            return ""
        self.emitted[channel] = len(cumulative)
        return cumulative[seen:]


# ---------------------------------------------------------------------------
# Decoder
# ---------------------------------------------------------------------------

class StreamDecoder:
    """Stateful NDJSON -> StreamEvent decoder for one exchange."""

    def __init__(self, thread_id: Optional[str] = None) -> None:
        self._known_thread_id = thread_id
        self._discovered_thread_id: Optional[str] = None
        self._lines = NDJSONLineBuffer()
        self._tracker = DeltaTracker()
        self._usage: Optional[Usage] = None
        self._content_events = 0
        self._records = 0
        self._skipped = 0
        self._backend_error: Optional[str] = None
        self._finished = False

    @property
    def thread_id(self) -> Optional[str]:
        return self._known_thread_id or self._discovered_thread_id

    @property
    def usage(self) -> Optional[Usage]:
        return self._usage

    @property
    def content_emitted(self) -> bool:
        return self._content_events > 0

    @property
    def records(self) -> int:
        return self._records

    @property
    def skipped(self) -> int:
        return self._skipped

    @property
    def backend_error(self) -> Optional[str]:
        return self._backend_error

    def feed(self, chunk: bytes) -> List[StreamEvent]:
        """Consume raw bytes and return the events produced by every completed line."""
        events: List[StreamEvent] = []
        for line in self._lines.feed(chunk):
            events.extend(self.decode_line(line))
        return events

    def decode_line(self, line: str) -> List[StreamEvent]:
        try:
            envelope = parse_envelope(line)
        except UpstreamProtocolError as e:
            self._skipped += 1
            log.warning("Skipping malformed Notion record: %s line=%r", e, line[:200])
            return []
        self._records += 1
        return self._apply(envelope)

    def _apply(self, envelope: Envelope) -> List[StreamEvent]:
        if isinstance(envelope, AgentInferenceEnvelope):
            if self._discovered_thread_id is None and envelope.thread_id:
                self._discovered_thread_id = envelope.thread_id
            if envelope.usage is not None:
                self._usage = envelope.usage
            events: List[StreamEvent] = []
            for ch in envelope.channels:
                events.extend(self._channel_delta(ch.type, ch.content))
            return events

        if isinstance(envelope, MarkdownChatEnvelope):
            if self._discovered_thread_id is None and envelope.thread_id:
                self._discovered_thread_id = envelope.thread_id
            return self._channel_delta(TEXT_CHANNEL, envelope.text)

        if isinstance(envelope, ErrorEnvelope):
            log.error("Notion returned an error record: %s", envelope.message)
            self._backend_error = envelope.message
            return []

        log.debug("Ignoring Notion record type=%s", envelope.type)
        return []

    def _channel_delta(self, channel: str, cumulative: str) -> List[StreamEvent]:
        delta = self._tracker.delta(channel, cumulative)
        if not delta:
            return []
        self._content_events += 1
        if channel == REASONING_CHANNEL:
            return [StreamEvent.reasoning_delta(delta)]
        return [StreamEvent.text_delta(delta)]

    def finish(self) -> List[StreamEvent]:
        """
        Close the decoder at end of input.

        Without any content this is a single `no_content` event. Otherwise the
        thread marker (if a thread id is known) is appended to the text
        channel, followed by usage and `done`. A second call returns nothing.
        """
        if self._finished:
            return []
        self._finished = True

        if self._lines.pending.strip():
            log.warning("Discarding incomplete trailing Notion record (%d bytes)", len(self._lines.pending))

        if not self.content_emitted:
            return [StreamEvent.no_content(self._backend_error or "")]

        events: List[StreamEvent] = []
        if self.thread_id:
            events.append(StreamEvent.text_delta(continuity.marker(self.thread_id)))
        events.append(StreamEvent.usage_report(self._usage))
        events.append(StreamEvent.done())
        return events
