"""
Notion AI bridge (OpenAI-compatible) -> Notion AI as upstream.

Endpoints:
  POST /v1/chat/completions   streaming (SSE) and non-streaming
  GET  /v1/models             Notion models exposed to clients
  GET  /health                liveness + pool summary
  GET  /cookies/status        per-session pool state

Conversation continuity rides on a hidden thread marker in the assistant
text; clients only have to send the history back unchanged.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import FastAPI, Header, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from bridge import ChatBridge, Exchange
from config import load_config
from errors import BridgeError, NoCredentialsError, SessionExhausted
from logger import setup_logging
from models import ModelCatalog
from session_pool import CredentialSource, SessionPool
from sse_handler import SSEStreamer, collect_completion, new_completion_id
from upstream import UpstreamClient
from utils import dump_config, load_env_files

# Load environment
load_env_files()

# Load configuration
config = load_config()
config.validate(require_credentials=False)

# Initialize logging
log = setup_logging(config.log_path, config.log_level, config.log_color)
dump_config(config)

session_pool = SessionPool()
upstream_client = UpstreamClient(config)
model_catalog = ModelCatalog(config.default_model)
sse_streamer = SSEStreamer()
bridge = ChatBridge(config, session_pool, upstream_client, model_catalog)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Lifespan context manager for FastAPI application.

    Startup loads the credential pool; with no usable credential the server
    refuses to start.
    """
    log.info("Initializing Notion session pool...")
    source = CredentialSource(inline=config.notion_cookie, file_path=config.cookie_file)
    try:
        count = await session_pool.initialize(source, resolver=upstream_client.resolve_identity)
    except NoCredentialsError:
        log.critical(
            "No usable Notion credentials. Set NOTION_COOKIE or COOKIE_FILE to valid token_v2 values."
        )
        raise
    log.info("Session pool ready: %d valid of %d", session_pool.valid_count(), count)

    yield  # Application is running

    log.info("Shutting down; pool status=%s", session_pool.valid_count())


app = FastAPI(
    title="notion-ai-bridge",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    t0 = time.time()
    response = await call_next(request)
    log.info(
        "[%s] %s %s %.0fms",
        request.method,
        request.url.path,
        response.status_code,
        (time.time() - t0) * 1000,
    )
    return response


def _error_response(status_code: int, message: str, error_type: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": {"message": message, "type": error_type}},
    )


def _check_auth(authorization: Optional[str]) -> Optional[JSONResponse]:
    """Return a 401 response unless the bearer token matches PROXY_AUTH_TOKEN."""
    if not authorization or not authorization.startswith("Bearer "):
        return _error_response(
            401,
            "Authentication required. Please provide a valid Bearer token.",
            "authentication_error",
        )
    token = authorization[len("Bearer "):].strip()
    if token != config.proxy_auth_token:
        return _error_response(401, "Invalid authentication credentials", "authentication_error")
    return None


class ExchangeStreamingResponse(StreamingResponse):
    """SSE response that closes its exchange however the send ends, started or not."""

    def __init__(self, exchange: Exchange, content: AsyncIterator[bytes], **kwargs: Any) -> None:
        super().__init__(content, **kwargs)
        self.exchange = exchange

    async def __call__(self, scope, receive, send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            await self.exchange.aclose()


async def _wait_for_disconnect(request: Request, poll_s: float = 0.1) -> None:
    while True:
        if await request.is_disconnected():
            return
        await asyncio.sleep(poll_s)


async def _collect_until_disconnect(
    request: Request, exchange: Exchange, req_id: str, model_id: str
) -> Optional[Dict[str, Any]]:
    """
    Drain the exchange into one completion body.

    Returns None if the client disconnects first; the Notion read is then
    cancelled and the exchange closed.
    """
    collect = asyncio.create_task(collect_completion(exchange.events(), req_id, model_id))
    watcher = asyncio.create_task(_wait_for_disconnect(request))
    try:
        await asyncio.wait({collect, watcher}, return_when=asyncio.FIRST_COMPLETED)
        if collect.done():
            return collect.result()
        log.info("Client disconnected req_id=%s; cancelling Notion read", req_id)
        collect.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await collect
        return None
    finally:
        for task in (collect, watcher):
            if not task.done():
                task.cancel()
        await asyncio.gather(collect, watcher, return_exceptions=True)
        await exchange.aclose()


@app.get("/health")
async def health() -> Dict[str, Any]:
    """Health check endpoint."""
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "initialized": session_pool.initialized,
        "valid_cookies": session_pool.valid_count(),
    }


@app.get("/v1/models")
async def v1_models(authorization: Optional[str] = Header(default=None)) -> Response:
    """List the Notion models clients can ask for."""
    denied = _check_auth(authorization)
    if denied is not None:
        return denied
    return JSONResponse(model_catalog.to_openai_list())


@app.get("/cookies/status")
async def cookies_status(authorization: Optional[str] = Header(default=None)) -> Response:
    """Per-session pool state (tokens masked)."""
    denied = _check_auth(authorization)
    if denied is not None:
        return denied
    return JSONResponse(session_pool.status())


@app.post("/v1/chat/completions")
async def v1_chat_completions(
    request: Request,
    authorization: Optional[str] = Header(default=None),
) -> Response:
    """Handle chat completion requests."""
    denied = _check_auth(authorization)
    if denied is not None:
        return denied

    if not session_pool.initialized:
        return _error_response(
            500,
            "Service is not initialized. Check that NOTION_COOKIE is valid.",
            "server_error",
        )
    if session_pool.valid_count() == 0:
        return _error_response(
            503,
            "No valid Notion cookie left. Check your NOTION_COOKIE configuration.",
            "service_unavailable",
        )

    # Basic request size guard (prevents trivial DoS via huge JSON bodies).
    cl = request.headers.get("content-length")
    if cl:
        try:
            n = int(cl)
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Invalid Content-Length header: {cl!r}")
        if n < 0:
            raise HTTPException(status_code=400, detail="Invalid Content-Length: must be non-negative")
        if n > config.max_request_bytes:
            raise HTTPException(
                status_code=413,
                detail=f"Request too large: {n} bytes (max {config.max_request_bytes})",
            )

    try:
        body = await request.json()
    except Exception:
        return _error_response(400, "Invalid JSON body", "invalid_request_error")
    if not isinstance(body, dict):
        return _error_response(400, "Invalid JSON body: expected object", "invalid_request_error")

    messages = body.get("messages")
    if not isinstance(messages, list) or not messages:
        return _error_response(
            400,
            "Invalid request: 'messages' field must be a non-empty array.",
            "invalid_request_error",
        )

    req_id = new_completion_id()
    model_id = str(body.get("model") or config.default_model)
    stream = bool(body.get("stream", False))
    client_ip = request.client.host if request.client else "unknown"
    log.info(
        "Incoming chat req_id=%s from=%s model=%r stream=%s messages=%d",
        req_id,
        client_ip,
        model_id,
        stream,
        len(messages),
    )

    try:
        exchange = await bridge.open(body, req_id)
    except SessionExhausted as e:
        log.error("req_id=%s: %s", req_id, e)
        return _error_response(503, f"All Notion sessions are invalid: {e}", "service_unavailable")
    except BridgeError as e:
        log.exception("req_id=%s: bridge error", req_id)
        return _error_response(500, f"Internal server error: {e}", "server_error")

    if stream:
        return ExchangeStreamingResponse(
            exchange,
            sse_streamer.stream_events(exchange.events(), req_id, model_id),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            },
        )

    completion = await _collect_until_disconnect(request, exchange, req_id, model_id)
    if completion is None:
        return _error_response(499, "Client closed request", "client_closed_request")
    return JSONResponse(completion)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=config.port, reload=False)
