"""Outbound HTTP fetches against origins and the fallback URL."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional

import httpx
import structlog

from ..common.metrics import GLOBAL_REGISTRY, Counter
from ..common.settings import DEFAULT_USER_AGENT, ProxySettings
from .errors import FetchError


FETCH_ERRORS_COUNTER = GLOBAL_REGISTRY.register(
    Counter("urlcache_fetch_errors_total", "Origin or fallback transport failures")
)


@dataclass(frozen=True)
class OriginResponse:
    """A fully buffered upstream response."""

    status_code: int
    headers: httpx.Headers
    content: bytes
    url: str
    encoding: str = "utf-8"

    @property
    def is_success(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def is_redirect(self) -> bool:
        return 300 <= self.status_code < 400

    @property
    def is_failure(self) -> bool:
        return self.status_code >= 400

    def text(self) -> str:
        """Body as text for logging; an undecodable body reads as empty."""
        try:
            return self.content.decode(self.encoding)
        except (LookupError, UnicodeDecodeError):
            return ""


class OriginFetcher:
    def __init__(
        self,
        client: httpx.AsyncClient,
        default_user_agent: str = DEFAULT_USER_AGENT,
        logger=None,
    ) -> None:
        self._client = client
        self._default_user_agent = default_user_agent
        self._logger = logger or structlog.get_logger("urlcache.cache_proxy.fetcher")

    async def fetch(self, url: str, headers: Optional[Mapping[str, str]] = None) -> OriginResponse:
        """GET ``url`` forwarding only the caller's User-Agent, or a browser default."""
        user_agent = None
        if headers is not None:
            user_agent = httpx.Headers(headers).get("user-agent")
        return await self._send(url, {"User-Agent": user_agent or self._default_user_agent})

    async def forward(self, url: str) -> OriginResponse:
        """Plain GET with the client's own headers, used for the fallback URL."""
        return await self._send(url, None)

    async def _send(self, url: str, headers: Optional[dict[str, str]]) -> OriginResponse:
        try:
            response = await self._client.get(url, headers=headers)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            FETCH_ERRORS_COUNTER.inc()
            self._logger.warning("origin_fetch_failed", url=url, error=str(exc))
            raise FetchError(f"failed to fetch {url}") from exc
        return OriginResponse(
            status_code=response.status_code,
            headers=response.headers,
            content=response.content,
            url=url,
            encoding=response.encoding or "utf-8",
        )


def build_http_client(settings: ProxySettings, transport: Optional[httpx.AsyncBaseTransport] = None) -> httpx.AsyncClient:
    kwargs: dict[str, object] = {"follow_redirects": settings.follow_redirects}
    if settings.origin_timeout_seconds is not None:
        kwargs["timeout"] = httpx.Timeout(settings.origin_timeout_seconds)
    if transport is not None:
        kwargs["transport"] = transport
    return httpx.AsyncClient(**kwargs)
