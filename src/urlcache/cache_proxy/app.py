"""HTTP front end for the caching proxy."""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import Optional

import httpx
import structlog
from fastapi import Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.responses import PlainTextResponse
from pydantic import ValidationError

from ..common.http_security import require_metrics_access, verify_access_token
from ..common.metrics import GLOBAL_REGISTRY, Counter, Histogram
from ..common.observability import configure_from_settings, instrument_fastapi_app
from ..common.schemas import CacheRequest
from ..common.settings import ProxySettings
from .errors import InputError, ProxyError
from .fetcher import OriginFetcher, build_http_client
from .orchestrator import CacheOrchestrator, CacheResult
from .store import ObjectStore, build_store


SERVICE_NAME = "urlcache.cache_proxy"

# Headers describing the upstream connection or an encoding httpx already undid.
EXCLUDED_RESPONSE_HEADERS = frozenset(
    {
        "connection",
        "content-encoding",
        "content-length",
        "keep-alive",
        "transfer-encoding",
        "upgrade",
    }
)

HTTP_REQUEST_COUNTER = GLOBAL_REGISTRY.register(
    Counter("urlcache_http_requests_total", "HTTP requests by method", labelnames=("method",))
)
PROXY_ERRORS_COUNTER = GLOBAL_REGISTRY.register(
    Counter("urlcache_proxy_errors_total", "Requests ending in a proxy error", labelnames=("error",))
)
REQUEST_LATENCY_HISTOGRAM = GLOBAL_REGISTRY.register(
    Histogram(
        "urlcache_request_latency_seconds",
        buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
        description="Proxy request latency",
    )
)


class ProxyState:
    def __init__(self, settings: ProxySettings, store: ObjectStore) -> None:
        self.settings = settings
        self.store = store
        self.logger = structlog.get_logger(SERVICE_NAME).bind(backend=store.backend_name)
        self.http_client: Optional[httpx.AsyncClient] = None
        self.orchestrator: Optional[CacheOrchestrator] = None

    async def start(self, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.http_client = build_http_client(self.settings, transport)
        fetcher = OriginFetcher(self.http_client, self.settings.default_user_agent, logger=self.logger)
        self.orchestrator = CacheOrchestrator.from_settings(self.settings, fetcher, self.store, logger=self.logger)

    async def stop(self) -> None:
        if self.orchestrator is not None:
            await self.orchestrator.aclose()
        if self.http_client is not None:
            await self.http_client.aclose()


def to_response(result: CacheResult) -> Response:
    response = Response(content=result.content, status_code=result.status_code)
    for name, value in result.headers.multi_items():
        if name.lower() not in EXCLUDED_RESPONSE_HEADERS:
            response.headers.append(name, value)
    return response


def get_state(request: Request) -> ProxyState:
    return request.app.state.proxy  # type: ignore[attr-defined]


def get_orchestrator(state: ProxyState = Depends(get_state)) -> CacheOrchestrator:
    if state.orchestrator is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Proxy not started")
    return state.orchestrator


def create_app(
    settings: Optional[ProxySettings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    settings = settings or ProxySettings()
    configure_from_settings(SERVICE_NAME, settings)
    state = ProxyState(settings, build_store(settings))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await state.start(transport)
        try:
            yield
        finally:
            await state.stop()

    app = FastAPI(lifespan=lifespan)
    instrument_fastapi_app(app)
    app.state.proxy = state

    @app.middleware("http")
    async def record_latency(request: Request, call_next):  # noqa: ANN001 - FastAPI middleware signature
        start = time.perf_counter()
        HTTP_REQUEST_COUNTER.inc(method=request.method)
        try:
            response = await call_next(request)
        except Exception:
            duration = time.perf_counter() - start
            REQUEST_LATENCY_HISTOGRAM.observe(duration)
            state.logger.exception(
                "http_request_error",
                method=request.method,
                path=request.url.path,
                duration_ms=round(duration * 1000, 2),
            )
            raise

        duration = time.perf_counter() - start
        REQUEST_LATENCY_HISTOGRAM.observe(duration)
        log_kwargs = {
            "method": request.method,
            "path": request.url.path,
            "status": response.status_code,
            "duration_ms": round(duration * 1000, 2),
        }
        if response.status_code >= 500:
            state.logger.error("http_request", **log_kwargs)
        else:
            state.logger.info("http_request", **log_kwargs)
        return response

    @app.exception_handler(ProxyError)
    async def handle_proxy_error(request: Request, exc: ProxyError) -> PlainTextResponse:
        PROXY_ERRORS_COUNTER.inc(error=type(exc).__name__)
        log = state.logger.error if exc.status_code >= 500 else state.logger.info
        log(
            "proxy_error",
            error_type=type(exc).__name__,
            detail=exc.detail,
            cause=repr(exc.__cause__) if exc.__cause__ else None,
            path=request.url.path,
        )
        return PlainTextResponse(exc.public_detail, status_code=exc.status_code)

    @app.get("/")
    async def proxy_get(
        request: Request,
        url: Optional[str] = None,
        orchestrator: CacheOrchestrator = Depends(get_orchestrator),
    ) -> Response:
        if not url:
            raise InputError("missing url parameter")
        result = await orchestrator.cache_url(url, request.headers)
        return to_response(result)

    @app.post("/")
    async def proxy_post(
        request: Request,
        orchestrator: CacheOrchestrator = Depends(get_orchestrator),
    ) -> Response:
        try:
            payload = CacheRequest.model_validate(await request.json())
        except ValueError as exc:
            # ValidationError is a ValueError, as is a JSON decode failure.
            raise InputError(f"invalid request body: {_describe(exc)}") from exc
        verify_access_token(payload.access_token, state.settings.api_token.get_secret_value())
        await orchestrator.cache_url(payload.url, request.headers)
        return Response(status_code=status.HTTP_200_OK)

    @app.get("/healthz", status_code=status.HTTP_200_OK)
    async def health_check() -> dict:
        """Health check for readiness/liveness probes."""
        health: dict[str, object] = {"status": "healthy", "checks": {}}
        try:
            backend_status = state.store.status()
            health["checks"] = {
                "backend": backend_status.get("backend", "unknown"),
                "writable": backend_status.get("writable", True),
            }
        except Exception as exc:  # noqa: BLE001 - any backend failure marks the probe unhealthy
            health["checks"] = {"backend": f"error: {exc}"}
            health["status"] = "unhealthy"
        if health["status"] != "healthy":
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=health)
        return health

    @app.get("/metrics", response_class=PlainTextResponse)
    async def metrics_endpoint(request: Request) -> PlainTextResponse:
        token = state.settings.metrics_token.get_secret_value() if state.settings.metrics_token else None
        require_metrics_access(request, token)
        return PlainTextResponse(GLOBAL_REGISTRY.render())

    return app


def _describe(exc: ValueError) -> str:
    if isinstance(exc, ValidationError):
        return "; ".join(
            f"{'.'.join(str(part) for part in error['loc']) or 'body'}: {error['msg']}" for error in exc.errors()
        )
    return "malformed JSON"
