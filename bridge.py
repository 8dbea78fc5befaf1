"""
One chat exchange against Notion, from inbound request to stream events.

    request -> continuity.extract -> SessionPool.acquire -> FailoverController
            -> StreamDecoder -> StreamEvent*

The first-byte window starts when the call is issued and covers failover
retries; it is cancelled by the first byte of the answer.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, AsyncIterator, Callable, Dict, Optional

import httpx

import continuity
from config import AppConfig
from errors import UpstreamTimeout, UpstreamTransportError
from failover import FailoverController, OpenedExchange
from models import ModelCatalog
from session_pool import SessionLease, SessionPool
from stream_decoder import EventKind, StreamDecoder, StreamEvent
from transcript import RequestTranslator
from upstream import UpstreamClient

log = logging.getLogger("notion_bridge")


class Exchange:
    """An opened exchange. Iterate `events()` exactly once; it closes everything on exit."""

    def __init__(
        self,
        *,
        pool: SessionPool,
        client: httpx.AsyncClient,
        lease: SessionLease,
        thread_id: Optional[str],
        deadline: float,
        window_s: float,
        req_id: str,
        opened: Optional[OpenedExchange] = None,
        failure: Optional[StreamEvent] = None,
    ) -> None:
        self._pool = pool
        self._client = client
        self._lease = lease
        self._thread_id = thread_id
        self._deadline = deadline
        self._window_s = window_s
        self._opened = opened
        self._failure = failure
        self._closed = False
        self.req_id = req_id
        self.decoder: Optional[StreamDecoder] = None

    @property
    def user_id(self) -> str:
        return self._lease.session.user_id

    @property
    def model(self) -> Optional[str]:
        return self._opened.request.model if self._opened else None

    async def events(self) -> AsyncIterator[StreamEvent]:
        try:
            if self._failure is not None:
                yield self._failure
                return
            if self._opened is None:
                raise RuntimeError("exchange has neither a response nor a failure")
            async for ev in self._stream(self._opened.response):
                yield ev
        finally:
            await self.aclose()

    async def _stream(self, resp: httpx.Response) -> AsyncIterator[StreamEvent]:
        decoder = StreamDecoder(thread_id=self._thread_id)
        self.decoder = decoder
        loop = asyncio.get_running_loop()
        aiter = resp.aiter_bytes()
        received = False

        while True:
            try:
                if received:
                    chunk = await aiter.__anext__()
                else:
                    remaining = self._deadline - loop.time()
                    if remaining <= 0:
                        raise asyncio.TimeoutError()
                    chunk = await asyncio.wait_for(aiter.__anext__(), timeout=remaining)
            except StopAsyncIteration:
                break
            except asyncio.TimeoutError:
                err = UpstreamTimeout(self._window_s)
                log.warning("Request timed out req_id=%s user_id=%s: %s", self.req_id, self.user_id, err)
                yield StreamEvent.timeout(str(err))
                return
            except httpx.HTTPError as e:
                err = UpstreamTransportError(f"stream read error: {type(e).__name__}: {e}")
                log.error("Notion stream failed req_id=%s user_id=%s: %s", self.req_id, self.user_id, err)
                # After content has gone out the partial answer stands; just close it.
                yield StreamEvent.error("" if decoder.content_emitted else str(err))
                return

            if not chunk:
                continue
            if not received:
                received = True
                log.info("Connected to Notion req_id=%s user_id=%s", self.req_id, self.user_id)
            for ev in decoder.feed(chunk):
                yield ev

        final = decoder.finish()
        if final and final[0].kind == EventKind.NO_CONTENT:
            log.warning(
                "No content from Notion req_id=%s user_id=%s records=%d; the session or outbound IP may be blocked",
                self.req_id,
                self.user_id,
                decoder.records,
            )
            self._pool.record_empty_response(self.user_id)
        else:
            log.info(
                "Response complete req_id=%s user_id=%s records=%d skipped=%d thread=%s",
                self.req_id,
                self.user_id,
                decoder.records,
                decoder.skipped,
                decoder.thread_id,
            )
        for ev in final:
            yield ev

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._opened is not None:
            with contextlib.suppress(Exception):
                await self._opened.response.aclose()
        with contextlib.suppress(Exception):
            await self._client.aclose()
        self._lease.release()


class ChatBridge:
    """Entry point used by the HTTP layer."""

    def __init__(
        self,
        config: AppConfig,
        pool: SessionPool,
        upstream: UpstreamClient,
        catalog: ModelCatalog,
        client_factory: Optional[Callable[[], httpx.AsyncClient]] = None,
    ) -> None:
        self._pool = pool
        self._first_byte_timeout_s = float(config.first_byte_timeout_s)
        self._translator = RequestTranslator(catalog, timezone=config.notion_timezone)
        self._failover = FailoverController(pool, self._translator, upstream)
        self._client_factory = client_factory or upstream.new_client

    @property
    def pool(self) -> SessionPool:
        return self._pool

    async def open(self, chat_request: Dict[str, Any], req_id: str) -> Exchange:
        """
        Lease a session and issue the Notion call.

        Raises SessionExhausted when no valid session is left. Timeouts and
        transport failures do not raise: they come back as an exchange whose
        only event is the matching terminal event.
        """
        thread_id = continuity.extract(chat_request.get("messages"))
        lease = self._pool.acquire()
        client = self._client_factory()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._first_byte_timeout_s

        log.info(
            "Exchange start req_id=%s user_id=%s mode=%s",
            req_id,
            lease.session.user_id,
            "continue" if thread_id else "new-thread",
        )

        def _exchange(**kw: Any) -> Exchange:
            return Exchange(
                pool=self._pool,
                client=client,
                lease=lease,
                thread_id=thread_id,
                deadline=deadline,
                window_s=self._first_byte_timeout_s,
                req_id=req_id,
                **kw,
            )

        try:
            opened = await asyncio.wait_for(
                self._failover.open(client, chat_request, lease, thread_id),
                timeout=self._first_byte_timeout_s,
            )
        except asyncio.TimeoutError:
            err = UpstreamTimeout(self._first_byte_timeout_s)
            log.warning("Request timed out req_id=%s: %s", req_id, err)
            return _exchange(failure=StreamEvent.timeout(str(err)))
        except UpstreamTransportError as e:
            log.error("Notion API request failed req_id=%s: %s body=%r", req_id, e, e.body[:200])
            return _exchange(failure=StreamEvent.error(str(e)))
        except BaseException:
            with contextlib.suppress(Exception):
                await client.aclose()
            lease.release()
            raise

        return _exchange(opened=opened)
