"""Upstream Notion API communication."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, Tuple

import httpx

from config import AppConfig
from errors import UpstreamTransportError
from session_pool import Session

log = logging.getLogger("notion_bridge")


class UpstreamClient:
    """Handle communication with the Notion web API."""

    def __init__(self, config: AppConfig) -> None:
        self._config = config

    def get_headers(self, session: Session) -> Dict[str, str]:
        """Browser-like headers plus the session identity and cookie."""
        return {
            "Content-Type": "application/json",
            "accept": "application/x-ndjson",
            "accept-language": "en-US,en;q=0.9",
            "notion-audit-log-platform": "web",
            "notion-client-version": self._config.notion_client_version,
            "origin": "https://www.notion.so",
            "referer": "https://www.notion.so/chat",
            "user-agent": self._config.user_agent,
            "x-notion-active-user-header": session.user_id,
            "x-notion-space-id": session.space_id,
            "Cookie": session.cookie,
        }

    def get_proxy_url(self) -> str | None:
        """Outbound proxy for httpx, or None for a direct connection."""
        if self._config.proxy_url:
            log.debug("Outbound proxy configured: %s", self._config.proxy_url)
            return self._config.proxy_url
        return None

    def new_client(self) -> httpx.AsyncClient:
        """
        Create an httpx client for one exchange.

        No read timeout: Notion may pause for a long time between records once
        the answer has started; the first-byte window is enforced by the caller.
        """
        t = float(self._config.request_timeout_s)
        return httpx.AsyncClient(
            timeout=httpx.Timeout(connect=t, write=t, pool=t, read=None),
            proxy=self.get_proxy_url(),
        )

    async def run_inference(
        self,
        client: httpx.AsyncClient,
        body: Dict[str, Any],
        session: Session,
    ) -> httpx.Response:
        """
        POST a transcript to Notion and return the streaming response.

        The caller owns the response and must close it.
        """
        t0 = time.time()
        req = client.build_request(
            "POST",
            self._config.notion_api_url,
            headers=self.get_headers(session),
            json=body,
        )
        try:
            resp = await client.send(req, stream=True)
        except httpx.HTTPError as e:
            raise UpstreamTransportError(f"Notion request failed: {type(e).__name__}: {e}") from e

        dt = (time.time() - t0) * 1000
        log.info(
            "Upstream inference user_id=%s status=%s ms=%.1f",
            session.user_id,
            resp.status_code,
            dt,
        )
        if resp.status_code != 200:
            log.warning(
                "Upstream inference error user_id=%s status=%s content-type=%s",
                session.user_id,
                resp.status_code,
                resp.headers.get("content-type", ""),
            )
        return resp

    async def fetch_identity(self, client: httpx.AsyncClient, token: str) -> Tuple[str, str]:
        """
        Derive (user_id, space_id) for a token_v2 via getSpaces.

        The response is keyed by user id; each entry lists that user's spaces.
        The first user with at least one space wins.
        """
        headers = {
            "Content-Type": "application/json",
            "accept": "application/json",
            "notion-audit-log-platform": "web",
            "notion-client-version": self._config.notion_client_version,
            "origin": "https://www.notion.so",
            "referer": "https://www.notion.so/",
            "user-agent": self._config.user_agent,
            "Cookie": f"token_v2={token}",
        }
        r = await client.post(self._config.notion_spaces_url, headers=headers, json={})
        if r.status_code != 200:
            raise UpstreamTransportError(
                f"getSpaces failed: HTTP {r.status_code}",
                status_code=r.status_code,
                body=r.text[:500],
            )
        data = r.json()
        if not isinstance(data, dict):
            raise UpstreamTransportError("getSpaces returned a non-object body")
        for user_id, entry in data.items():
            spaces = entry.get("space") if isinstance(entry, dict) else None
            if isinstance(spaces, dict) and spaces:
                return user_id, next(iter(spaces))
        raise UpstreamTransportError("getSpaces returned no user with a space")

    async def resolve_identity(self, token: str) -> Tuple[str, str]:
        """Standalone identity lookup used by the session pool at startup."""
        async with self.new_client() as client:
            return await asyncio.wait_for(
                self.fetch_identity(client, token),
                timeout=self._config.request_timeout_s,
            )

    @staticmethod
    async def read_error_snippet(
        resp: httpx.Response, limit: int = 2000, timeout_s: float = 2.0
    ) -> str:
        """Best-effort: read small error body without risking a hang."""
        try:
            raw = await asyncio.wait_for(resp.aread(), timeout=timeout_s)
        except (asyncio.TimeoutError, httpx.HTTPError):
            return ""
        return raw.decode("utf-8", errors="replace")[:limit]
