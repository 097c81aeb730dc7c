"""Cache-aside orchestration: fetch the origin, persist or recover, fall back."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Literal, Mapping, Optional

import httpx
import structlog
from opentelemetry import trace

from ..common.metrics import GLOBAL_REGISTRY, Counter
from ..common.settings import ProxySettings, RedirectPolicy, WritePolicy
from .errors import FetchError
from .fetcher import OriginFetcher, OriginResponse
from .keys import derive_key
from .store import ObjectStore


Outcome = Literal["origin", "cache", "fallback", "passthrough"]

RESULTS_COUNTER = GLOBAL_REGISTRY.register(
    Counter("urlcache_results_total", "Completed cache_url calls by outcome", labelnames=("outcome",))
)
COALESCED_COUNTER = GLOBAL_REGISTRY.register(
    Counter("urlcache_coalesced_fetches_total", "Requests that joined an in-flight origin fetch")
)
TRACER = trace.get_tracer("urlcache.cache_proxy")


@dataclass(frozen=True)
class CacheResult:
    status_code: int
    headers: httpx.Headers
    content: bytes
    outcome: Outcome

    @classmethod
    def from_upstream(cls, response: OriginResponse, outcome: Outcome) -> "CacheResult":
        return cls(response.status_code, response.headers, response.content, outcome)


class CacheOrchestrator:
    """Drives one request through origin fetch, store write or read, and fallback.

    Status handling:

    * 2xx: the body is written to the store (write-if-absent) and the origin
      response is returned unchanged.
    * >=400: a stored copy is served as a bare 200; without one the fallback
      URL is fetched and its response returned as-is.
    * 3xx: decided by ``redirect_policy`` (``failure``, ``success`` or
      ``passthrough``).
    * anything else raises :class:`FetchError`.

    With ``write_policy="confirmed"`` a failed store write fails the request;
    with ``"background"`` the write is detached and failures are only logged.
    """

    def __init__(
        self,
        fetcher: OriginFetcher,
        store: ObjectStore,
        fallback_url: str,
        *,
        write_policy: WritePolicy = "confirmed",
        redirect_policy: RedirectPolicy = "failure",
        coalesce: bool = False,
        logger=None,
    ) -> None:
        self._fetcher = fetcher
        self._store = store
        self._fallback_url = fallback_url
        self._write_policy = write_policy
        self._redirect_policy = redirect_policy
        self._coalesce = coalesce
        self._logger = logger or structlog.get_logger("urlcache.cache_proxy")
        self._inflight: dict[str, asyncio.Future] = {}
        self._pending_writes: set[asyncio.Task] = set()
        # Writes whose outcome no caller will see; their failures are logged here.
        self._unobserved_writes: set[asyncio.Task] = set()

    @classmethod
    def from_settings(cls, settings: ProxySettings, fetcher: OriginFetcher, store: ObjectStore, logger=None):
        return cls(
            fetcher,
            store,
            settings.fallback_url,
            write_policy=settings.write_policy,
            redirect_policy=settings.redirect_policy,
            coalesce=settings.coalesce_requests,
            logger=logger,
        )

    @property
    def pending_writes(self) -> int:
        return len(self._pending_writes)

    async def cache_url(self, url: str, request_headers: Optional[Mapping[str, str]] = None) -> CacheResult:
        with TRACER.start_as_current_span("cache_proxy.cache_url", attributes={"urlcache.url": url}) as span:
            origin = await self._fetch_origin(url, request_headers)
            span.set_attribute("urlcache.origin_status", origin.status_code)

            if origin.is_success or (origin.is_redirect and self._redirect_policy == "success"):
                await self._persist(url, origin)
                result = CacheResult.from_upstream(origin, "origin")
            elif origin.is_failure or (origin.is_redirect and self._redirect_policy == "failure"):
                result = await self._recover(url, origin)
            elif origin.is_redirect:
                self._logger.info("origin_passthrough", url=url, status=origin.status_code)
                result = CacheResult.from_upstream(origin, "passthrough")
            else:
                raise FetchError(f"unexpected status code {origin.status_code} from origin")

            span.set_attribute("urlcache.outcome", result.outcome)
            RESULTS_COUNTER.inc(outcome=result.outcome)
            return result

    async def aclose(self) -> None:
        """Wait for detached store writes to finish."""
        if self._pending_writes:
            await asyncio.gather(*self._pending_writes, return_exceptions=True)

    async def _fetch_origin(self, url: str, request_headers: Optional[Mapping[str, str]]) -> OriginResponse:
        if not self._coalesce:
            return await self._fetcher.fetch(url, request_headers)

        key = derive_key(url)
        shared = self._inflight.get(key)
        if shared is not None:
            COALESCED_COUNTER.inc()
            self._logger.debug("origin_fetch_coalesced", url=url, key=key)
        else:
            shared = asyncio.ensure_future(self._fetcher.fetch(url, request_headers))
            self._inflight[key] = shared
            shared.add_done_callback(lambda _: self._inflight.pop(key, None))
        # Shielded so one caller going away does not cancel the fetch for the others.
        return await asyncio.shield(shared)

    async def _persist(self, url: str, origin: OriginResponse) -> None:
        task = asyncio.ensure_future(self._write(url, origin.content))
        self._pending_writes.add(task)
        task.add_done_callback(self._write_finished)
        if self._write_policy == "background":
            self._unobserved_writes.add(task)
            return
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            if not task.done():
                self._unobserved_writes.add(task)
            raise

    async def _write(self, url: str, content: bytes) -> None:
        with TRACER.start_as_current_span("cache_proxy.store_put", attributes={"urlcache.url": url}) as span:
            written = await self._store.put_if_absent(url, content, {"url": url})
            span.set_attribute("urlcache.written", written)
        if written:
            self._logger.info("cache_write", url=url, key=derive_key(url), bytes=len(content))

    def _write_finished(self, task: asyncio.Task) -> None:
        self._pending_writes.discard(task)
        unobserved = task in self._unobserved_writes
        self._unobserved_writes.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None and unobserved:
            self._logger.error(
                "cache_write_failed",
                write_policy=self._write_policy,
                error=str(exc),
                error_type=type(exc).__name__,
            )

    async def _recover(self, url: str, origin: OriginResponse) -> CacheResult:
        with TRACER.start_as_current_span("cache_proxy.store_get", attributes={"urlcache.url": url}) as span:
            cached = await self._store.get(url)
            span.set_attribute("urlcache.hit", cached is not None)

        if cached is not None:
            self._logger.info(
                "cache_hit",
                url=url,
                key=cached.key,
                origin_status=origin.status_code,
                bytes=cached.size,
            )
            return CacheResult(200, httpx.Headers(), cached.body, "cache")

        self._logger.warning(
            "cache_miss_fallback",
            url=url,
            status=origin.status_code,
            body=origin.text(),
            fallback_url=self._fallback_url,
        )
        with TRACER.start_as_current_span("cache_proxy.fallback", attributes={"urlcache.url": self._fallback_url}):
            fallback = await self._fetcher.forward(self._fallback_url)
        return CacheResult.from_upstream(fallback, "fallback")
