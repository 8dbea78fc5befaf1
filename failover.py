"""Bounded credential failover for one Notion exchange."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from errors import SessionExhausted, UpstreamAuthError, UpstreamTransportError
from session_pool import SessionLease, SessionPool
from transcript import BackendRequest, RequestTranslator
from upstream import UpstreamClient

log = logging.getLogger("notion_bridge")


@dataclass
class OpenedExchange:
    """A Notion call that answered 200 and is ready to stream."""

    lease: SessionLease
    request: BackendRequest
    response: httpx.Response
    attempts: int


class FailoverController:
    """
    Issue the Notion call, rotating credentials on 401.

    Each retry rebuilds the request from the original chat request with the
    new session's identity. At most one attempt is made per session in the
    pool; running out raises SessionExhausted.
    """

    def __init__(
        self,
        pool: SessionPool,
        translator: RequestTranslator,
        upstream: UpstreamClient,
    ) -> None:
        self._pool = pool
        self._translator = translator
        self._upstream = upstream

    async def open(
        self,
        client: httpx.AsyncClient,
        chat_request: Dict[str, Any],
        lease: SessionLease,
        thread_id: Optional[str],
    ) -> OpenedExchange:
        max_attempts = max(1, self._pool.size())
        attempt = 0
        while True:
            attempt += 1
            session = lease.session
            backend_request = self._translator.build(chat_request, session, thread_id)
            resp = await self._upstream.run_inference(client, backend_request.body, session)

            if resp.status_code == 401:
                await resp.aclose()
                auth_err = UpstreamAuthError(session.user_id)
                log.error("%s (attempt %d/%d)", auth_err, attempt, max_attempts)
                if attempt >= max_attempts:
                    self._pool.invalidate(session.user_id)
                    raise SessionExhausted("all Notion sessions are invalid") from auth_err
                try:
                    nxt = lease.rotate()
                except SessionExhausted as e:
                    raise e from auth_err
                log.info("Retrying with next session user_id=%s", nxt.user_id)
                continue

            if resp.status_code != 200:
                snippet = await self._upstream.read_error_snippet(resp, limit=500)
                await resp.aclose()
                raise UpstreamTransportError(
                    f"HTTP error! status: {resp.status_code}",
                    status_code=resp.status_code,
                    body=snippet,
                )

            return OpenedExchange(
                lease=lease,
                request=backend_request,
                response=resp,
                attempts=attempt,
            )
