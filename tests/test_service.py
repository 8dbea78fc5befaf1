"""
End-to-end tests for notion_bridge_service.py.

The FastAPI app runs in-process via httpx.ASGITransport; Notion is replaced by
httpx.MockTransport. Lifespan is not run, so each test installs its own pool
and bridge on the service module.
"""

import asyncio
import json

import httpx
import pytest
from fastapi import Request

import continuity
import notion_bridge_service as service
from bridge import ChatBridge
from session_pool import SessionPool
from tests.notion_fakes import (
    FakeNotion,
    agent_inference,
    make_config,
    make_pool,
    ndjson,
    ok,
    status,
)

AUTH = {"Authorization": "Bearer test-token"}

HELLO = ndjson(
    agent_inference("Hel"),
    agent_inference("Hello!", inputTokens=9, outputTokens=2),
)


@pytest.fixture
async def install(monkeypatch):
    """Install a pool of the given users and a bridge backed by `fake`."""

    async def _install(fake, *user_ids):
        pool = await make_pool(*(user_ids or ("u1",)))
        bridge = ChatBridge(
            make_config(first_byte_timeout_s=2.0),
            pool,
            service.upstream_client,
            service.model_catalog,
            client_factory=fake.client_factory(),
        )
        monkeypatch.setattr(service, "session_pool", pool)
        monkeypatch.setattr(service, "bridge", bridge)
        return pool

    return _install


@pytest.fixture
async def client():
    transport = httpx.ASGITransport(app=service.app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


def _chat(stream=False, **extra):
    body = {"model": "apple-danish", "stream": stream, "messages": [{"role": "user", "content": "Hi"}]}
    body.update(extra)
    return body


@pytest.mark.asyncio
async def test_non_streaming_completion(install, client):
    await install(FakeNotion(default=ok(HELLO)))
    r = await client.post("/v1/chat/completions", headers=AUTH, json=_chat())
    assert r.status_code == 200
    data = r.json()
    choice = data["choices"][0]
    assert choice["finish_reason"] == "stop"
    assert continuity.strip(choice["message"]["content"]) == "Hello!"
    assert continuity.extract([choice["message"]]) is not None
    assert data["model"] == "apple-danish"
    assert data["usage"]["total_tokens"] == 11
    assert service.session_pool.status()["in_flight"] == 0


@pytest.mark.asyncio
async def test_streaming_completion(install, client):
    await install(FakeNotion(default=ok(HELLO)))
    r = await client.post("/v1/chat/completions", headers=AUTH, json=_chat(stream=True))
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/event-stream")

    frames = [f for f in r.text.split("\n\n") if f]
    assert frames[-1] == "data: [DONE]"
    chunks = [json.loads(f[len("data: "):]) for f in frames[:-1]]
    text = "".join(c["choices"][0]["delta"].get("content", "") for c in chunks)
    assert continuity.strip(text) == "Hello!"
    assert chunks[-1]["choices"][0]["finish_reason"] == "stop"


@pytest.mark.asyncio
async def test_conversation_round_trip(install, client):
    fake = FakeNotion(default=ok(HELLO))
    await install(fake)
    first = (await client.post("/v1/chat/completions", headers=AUTH, json=_chat())).json()
    reply = first["choices"][0]["message"]

    messages = [{"role": "user", "content": "Hi"}, reply, {"role": "user", "content": "Again"}]
    r = await client.post("/v1/chat/completions", headers=AUTH, json=_chat(messages=messages))
    assert r.status_code == 200
    second = fake.bodies[1]
    assert second["createThread"] is False
    assert second["threadId"] == continuity.extract([reply])
    assert [i["value"] for i in second["transcript"] if i["type"] == "user"] == [[["Again"]]]


@pytest.mark.asyncio
async def test_empty_answer_reports_no_content(install, client):
    await install(FakeNotion(default=ok(b"")))
    r = await client.post("/v1/chat/completions", headers=AUTH, json=_chat())
    assert r.status_code == 200
    assert r.json()["choices"][0]["finish_reason"] == "no_content"


@pytest.mark.asyncio
async def test_all_sessions_rejected_is_503(install, client):
    pool = await install(FakeNotion(default=status(401)), "u1", "u2")
    r = await client.post("/v1/chat/completions", headers=AUTH, json=_chat(stream=True))
    assert r.status_code == 503
    assert r.json()["error"]["type"] == "service_unavailable"
    assert pool.valid_count() == 0

    # Pool is now empty: rejected before any backend call.
    r = await client.post("/v1/chat/completions", headers=AUTH, json=_chat())
    assert r.status_code == 503


@pytest.mark.asyncio
async def test_auth_required(install, client):
    await install(FakeNotion())
    r = await client.post("/v1/chat/completions", json=_chat())
    assert r.status_code == 401
    assert r.json()["error"]["type"] == "authentication_error"

    r = await client.get("/v1/models", headers={"Authorization": "Bearer wrong"})
    assert r.status_code == 401


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payload",
    [b"{not json", b"[]", b'{"messages": []}', b'{"messages": "hi"}'],
)
async def test_invalid_requests_are_400(install, client, payload):
    await install(FakeNotion())
    r = await client.post(
        "/v1/chat/completions",
        headers={**AUTH, "Content-Type": "application/json"},
        content=payload,
    )
    assert r.status_code == 400
    assert r.json()["error"]["type"] == "invalid_request_error"


@pytest.mark.asyncio
async def test_uninitialized_pool_is_500(monkeypatch, client):
    monkeypatch.setattr(service, "session_pool", SessionPool())
    r = await client.post("/v1/chat/completions", headers=AUTH, json=_chat())
    assert r.status_code == 500
    assert r.json()["error"]["type"] == "server_error"


@pytest.mark.asyncio
async def test_health(install, client):
    await install(FakeNotion(), "u1", "u2")
    r = await client.get("/health")
    assert r.status_code == 200
    data = r.json()
    assert data["status"] == "ok"
    assert data["initialized"] is True
    assert data["valid_cookies"] == 2


@pytest.mark.asyncio
async def test_models(client):
    r = await client.get("/v1/models", headers=AUTH)
    assert r.status_code == 200
    ids = [m["id"] for m in r.json()["data"]]
    assert ids == ["oatmeal-cookie", "apple-danish", "gateau-roule"]


@pytest.mark.asyncio
async def test_cookies_status(install, client):
    await install(FakeNotion(), "u1", "u2")
    service.session_pool.invalidate("u2")
    r = await client.get("/cookies/status", headers=AUTH)
    assert r.status_code == 200
    data = r.json()
    assert data["total_cookies"] == 2
    assert data["valid_cookies"] == 1
    assert [c["valid"] for c in data["cookies"]] == [True, False]


def _direct_request(payload, after_body):
    """A Request whose receive yields the JSON body once, then defers to `after_body`."""
    body = json.dumps(payload).encode("utf-8")
    body_sent = False

    async def receive():
        nonlocal body_sent
        if not body_sent:
            body_sent = True
            return {"type": "http.request", "body": body, "more_body": False}
        return await after_body()

    scope = {
        "type": "http",
        "asgi": {"version": "3.0"},
        "http_version": "1.1",
        "method": "POST",
        "scheme": "http",
        "path": "/v1/chat/completions",
        "raw_path": b"/v1/chat/completions",
        "query_string": b"",
        "headers": [(b"content-type", b"application/json")],
        "client": ("testclient", 50000),
        "server": ("test", 80),
    }
    return Request(scope, receive)


@pytest.mark.asyncio
async def test_non_streaming_disconnect_cancels_notion_read(install):
    state = {"closed": False, "finished": False}
    answer_paused = asyncio.Event()

    async def paused_answer():
        try:
            yield ndjson(agent_inference("Hel"))
            answer_paused.set()
            await asyncio.sleep(5)
            yield ndjson(agent_inference("Hello!"))
            state["finished"] = True
        finally:
            state["closed"] = True

    pool = await install(FakeNotion(default=lambda req: httpx.Response(200, content=paused_answer())))

    async def disconnect_once_answer_paused():
        if answer_paused.is_set():
            return {"type": "http.disconnect"}
        return {"type": "http.request", "body": b"", "more_body": False}

    loop = asyncio.get_running_loop()
    started = loop.time()
    r = await service.v1_chat_completions(
        _direct_request(_chat(), disconnect_once_answer_paused), authorization="Bearer test-token"
    )
    assert loop.time() - started < 2
    assert r.status_code == 499
    assert state["closed"] is True
    assert state["finished"] is False
    assert pool.status()["in_flight"] == 0


@pytest.mark.asyncio
async def test_streaming_exchange_closed_when_response_never_starts(install):
    pool = await install(FakeNotion(default=ok(HELLO)))

    async def stay_connected():
        await asyncio.Event().wait()

    request = _direct_request(_chat(stream=True), stay_connected)
    response = await service.v1_chat_completions(request, authorization="Bearer test-token")
    assert isinstance(response, service.ExchangeStreamingResponse)
    assert pool.status()["in_flight"] == 1

    async def broken_send(message):
        raise OSError("connection reset by peer")

    with pytest.raises(Exception):
        await response(request.scope, request.receive, broken_send)
    assert pool.status()["in_flight"] == 0
