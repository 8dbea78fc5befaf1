"""Render bridge stream events as OpenAI chat completions (SSE or a single JSON body)."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import time
import uuid
from typing import Any, AsyncGenerator, Dict, List, Optional

from stream_decoder import EventKind, StreamEvent, Usage

log = logging.getLogger("notion_bridge")

FINISH_REASONS = {
    EventKind.DONE: "stop",
    EventKind.NO_CONTENT: "no_content",
    EventKind.TIMEOUT: "timeout",
    EventKind.ERROR: "error",
}

NO_CONTENT_MESSAGE = "No content received from Notion. Please retry, possibly from a different IP."


def new_completion_id() -> str:
    return f"chatcmpl-{uuid.uuid4()}"


def terminal_message(event: StreamEvent) -> str:
    """Visible explanation for a terminal event ("" when none is needed)."""
    if event.kind == EventKind.NO_CONTENT:
        if event.text:
            return f"{NO_CONTENT_MESSAGE} Notion said: {event.text}"
        return NO_CONTENT_MESSAGE
    if event.kind == EventKind.TIMEOUT:
        return f"Request timed out: {event.text or 'no response from Notion'}."
    if event.kind == EventKind.ERROR and event.text:
        return f"Error while processing the request: {event.text}"
    return ""


def create_chunk_dict(
    req_id: str,
    model_id: str,
    delta: dict | None = None,
    finish_reason: str | None = None,
    usage: Optional[Usage] = None,
) -> dict:
    """Create a standard OpenAI chat completion chunk dictionary."""
    chunk: Dict[str, Any] = {
        "id": req_id,
        "object": "chat.completion.chunk",
        "created": int(time.time()),
        "model": model_id,
        "choices": [{"index": 0, "delta": delta or {}, "finish_reason": finish_reason}],
    }
    if usage is not None:
        chunk["usage"] = usage.to_dict()
    return chunk


def first_choice_chunk(req_id: str, model_id: str) -> dict:
    """First chunk with role + empty content."""
    return create_chunk_dict(req_id, model_id, {"role": "assistant", "content": ""})


def sse_data(obj: dict) -> bytes:
    """Encode dict as SSE data event."""
    return f"data: {json.dumps(obj, ensure_ascii=False)}\n\n".encode("utf-8")


def sse_done() -> bytes:
    """SSE [DONE] event."""
    return b"data: [DONE]\n\n"


def delta_for(event: StreamEvent) -> Optional[dict]:
    if event.kind == EventKind.TEXT:
        return {"content": event.text}
    if event.kind == EventKind.REASONING:
        return {"reasoning_content": event.text}
    return None


class SSEStreamer:
    """Write an exchange's events to the client as SSE."""

    @staticmethod
    async def stream_events(
        events: AsyncGenerator[StreamEvent, None],
        req_id: str,
        model_id: str,
    ) -> AsyncGenerator[bytes, None]:
        """
        One chunk per delta, a final chunk carrying finish_reason and usage,
        then [DONE].

        Closing this generator (client disconnect) closes `events`, which in
        turn closes the upstream Notion response.
        """
        usage: Optional[Usage] = None
        terminated = False
        try:
            yield sse_data(first_choice_chunk(req_id, model_id))
            async for ev in events:
                delta = delta_for(ev)
                if delta is not None:
                    yield sse_data(create_chunk_dict(req_id, model_id, delta))
                    continue
                if ev.kind == EventKind.USAGE:
                    usage = ev.usage
                    continue
                if ev.is_terminal:
                    msg = terminal_message(ev)
                    yield sse_data(
                        create_chunk_dict(
                            req_id,
                            model_id,
                            {"content": msg} if msg else {},
                            FINISH_REASONS[ev.kind],
                            usage if ev.kind == EventKind.DONE else None,
                        )
                    )
                    yield sse_done()
                    terminated = True
                    break
            if not terminated:
                log.error("Event stream ended without a terminal event req_id=%s", req_id)
                async for b in SSEStreamer.error_response("stream ended unexpectedly", model_id, req_id):
                    yield b
        except asyncio.CancelledError:
            log.info("Client disconnected req_id=%s", req_id)
            raise
        except Exception as e:
            log.exception("SSE stream failed req_id=%s", req_id)
            if not terminated:
                async for b in SSEStreamer.error_response(f"{type(e).__name__}: {e}", model_id, req_id):
                    yield b
        finally:
            with contextlib.suppress(Exception):
                await events.aclose()

    @staticmethod
    async def error_response(
        message: str, model_id: str, req_id: str | None = None
    ) -> AsyncGenerator[bytes, None]:
        """
        Emit single SSE event with error message, then [DONE].

        A client never sees a stream that closes with neither content nor an
        explanation.
        """
        chunk = create_chunk_dict(
            req_id or new_completion_id(),
            model_id,
            {"role": "assistant", "content": f"Error while processing the request: {message}"},
            "error",
        )
        yield sse_data(chunk)
        yield sse_done()


async def collect_completion(
    events: AsyncGenerator[StreamEvent, None],
    req_id: str,
    model_id: str,
) -> dict:
    """Drain an exchange into one non-streaming chat.completion body."""
    text: List[str] = []
    reasoning: List[str] = []
    usage: Optional[Usage] = None
    finish_reason = "error"
    try:
        async for ev in events:
            if ev.kind == EventKind.TEXT:
                text.append(ev.text)
            elif ev.kind == EventKind.REASONING:
                reasoning.append(ev.text)
            elif ev.kind == EventKind.USAGE:
                usage = ev.usage
            elif ev.is_terminal:
                finish_reason = FINISH_REASONS[ev.kind]
                msg = terminal_message(ev)
                if msg and not text:
                    text.append(msg)
                break
    finally:
        await events.aclose()

    if finish_reason == "error" and not text:
        text.append("Error while processing the request: stream ended unexpectedly")

    message: Dict[str, Any] = {"role": "assistant", "content": "".join(text)}
    if reasoning:
        message["reasoning_content"] = "".join(reasoning)

    return {
        "id": req_id,
        "object": "chat.completion",
        "created": int(time.time()),
        "model": model_id,
        "choices": [{"index": 0, "message": message, "finish_reason": finish_reason}],
        "usage": usage.to_dict() if usage is not None else {
            "prompt_tokens": None,
            "completion_tokens": None,
            "total_tokens": None,
        },
    }
