"""Fake Notion backend pieces shared by the tests."""

from __future__ import annotations

import asyncio
import json
from dataclasses import replace
from typing import Any, AsyncIterator, Callable, Dict, Iterable, List, Optional

import httpx

from config import AppConfig
from session_pool import CredentialSource, SessionPool

THREAD_ID = "1f2e3d4c-0000-4abc-8def-0123456789ab"


def make_config(**overrides: Any) -> AppConfig:
    return replace(AppConfig.from_env(), **overrides)


async def make_pool(*user_ids: str) -> SessionPool:
    pool = SessionPool()
    inline = "|".join(f"tok-{u},{u},space-{u}" for u in user_ids)
    await pool.initialize(CredentialSource(inline=inline))
    return pool


def ndjson(*records: Dict[str, Any]) -> bytes:
    return b"".join(json.dumps(r).encode("utf-8") + b"\n" for r in records)


def agent_inference(
    text: Optional[str] = None,
    thinking: Optional[str] = None,
    thread_id: Optional[str] = THREAD_ID,
    **extra: Any,
) -> Dict[str, Any]:
    value: List[Dict[str, str]] = []
    if thinking is not None:
        value.append({"type": "thinking", "content": thinking})
    if text is not None:
        value.append({"type": "text", "content": text})
    record: Dict[str, Any] = {"type": "agent-inference", "value": value}
    if thread_id:
        record["threadId"] = thread_id
    record.update(extra)
    return record


def markdown_chat(text: str) -> Dict[str, Any]:
    return {"type": "markdown-chat", "value": text}


async def chunked(parts: Iterable[bytes], delay_s: float = 0.0) -> AsyncIterator[bytes]:
    for p in parts:
        if delay_s:
            await asyncio.sleep(delay_s)
        yield p


class FakeNotion:
    """
    httpx.MockTransport handler standing in for runInferenceTranscript.

    `responders` maps user id (x-notion-active-user-header) to a callable
    returning an httpx.Response; `default` answers everyone else.
    """

    def __init__(
        self,
        default: Optional[Callable[[httpx.Request], httpx.Response]] = None,
        responders: Optional[Dict[str, Callable[[httpx.Request], httpx.Response]]] = None,
    ) -> None:
        self.default = default or (lambda req: httpx.Response(200, content=b""))
        self.responders = responders or {}
        self.requests: List[httpx.Request] = []
        self.bodies: List[Dict[str, Any]] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        self.bodies.append(json.loads(request.content))
        user_id = request.headers.get("x-notion-active-user-header", "")
        responder = self.responders.get(user_id, self.default)
        return responder(request)

    @property
    def user_ids(self) -> List[str]:
        return [r.headers.get("x-notion-active-user-header", "") for r in self.requests]

    def client_factory(self) -> Callable[[], httpx.AsyncClient]:
        return lambda: httpx.AsyncClient(transport=httpx.MockTransport(self))


def ok(body: bytes) -> Callable[[httpx.Request], httpx.Response]:
    return lambda req: httpx.Response(200, content=body)


def status(code: int, text: str = "") -> Callable[[httpx.Request], httpx.Response]:
    return lambda req: httpx.Response(code, text=text)
