"""
Contentful cache proxy - shields the Contentful API from repeated identical reads.
"""

import logging
import os
import time
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from starlette.responses import Response

load_dotenv()

from cache import CacheStore
from config import ProxySettings
from exceptions import ConfigurationError
from materializer import ResponseMaterializer
from models import CacheStatsResponse, HealthResponse, ProxyRequest, ProxyResponse
from retry_controller import RetryFallbackController
from router import RequestRouter
from upstream_client import CircuitBreaker, UpstreamClient
import metrics  # Prometheus instrumentation

__version__ = "0.1.0"

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Served by the app itself, never proxied.
INTERNAL_PATHS = {"/health": "health", "/metrics": "metrics"}


def build_router(settings: ProxySettings, upstream: Optional[UpstreamClient] = None) -> RequestRouter:
    """
    Wire cache store, upstream client, materializer and controller.

    One CacheStore instance is shared by the router and the controller;
    tests build their own with a scripted upstream.
    """
    cache = CacheStore(max_items=settings.cache_max_items, ttl_seconds=settings.cache_ttl_seconds)
    if upstream is None:
        upstream = UpstreamClient(
            base_url=settings.upstream_url(),
            token=settings.auth_token(),
            timeout_seconds=settings.upstream_timeout_seconds,
            circuit_breaker=CircuitBreaker(
                failure_threshold=settings.circuit_breaker_threshold,
                cooldown_sec=settings.circuit_breaker_cooldown_seconds,
            ),
        )
    controller = RetryFallbackController(
        cache=cache,
        upstream=upstream,
        materializer=ResponseMaterializer(cache),
        max_attempts=settings.upstream_max_attempts,
        backoff_seconds=settings.upstream_retry_backoff_seconds,
    )
    return RequestRouter(
        cache=cache,
        controller=controller,
        resource_pattern=settings.resource_pattern,
        invalidation_policy=settings.invalidation_policy,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup: validate config and connect upstream. Shutdown: close the pool."""
    try:
        settings = ProxySettings.from_env()
        router = build_router(settings)
        await router.controller.upstream.connect()
    except ConfigurationError as e:
        logger.error(f"Startup failed: {e}")
        raise

    app.state.settings = settings
    app.state.router = router
    logger.info(
        f"Proxy started | upstream={settings.upstream_url()} | preview={settings.preview} "
        f"| invalidation={settings.invalidation_policy.value} | max_attempts={settings.upstream_max_attempts}"
    )

    yield

    logger.info("Shutting down...")
    await router.controller.upstream.disconnect()
    logger.info("Proxy shut down")


app = FastAPI(
    title="Contentful Cache Proxy",
    description="Caching reverse proxy with stale fallback for the Contentful API",
    version=__version__,
    lifespan=lifespan,
    docs_url=None,
    redoc_url=None,
    openapi_url=None,
)


def request_path(request: Request) -> str:
    """Path as received on the wire, still percent-encoded."""
    raw_path = request.scope.get("raw_path")
    return raw_path.decode("latin-1") if raw_path else request.url.path


def _route_label(request: Request) -> str:
    if request.url.path in INTERNAL_PATHS:
        return INTERNAL_PATHS[request.url.path]
    router: Optional[RequestRouter] = getattr(request.app.state, "router", None)
    if router is None:
        return "unknown"
    return router.classify(request.method, request_path(request)).value


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log request method, path, latency; record Prometheus request metrics."""
    start_time = time.time()
    route = _route_label(request)

    logger.info(f"→ {request.method} {request.url.path}")
    response = await call_next(request)

    latency_seconds = time.time() - start_time
    logger.info(f"← {response.status_code} | {latency_seconds * 1000:.1f}ms")
    metrics.record_request(route=route, status=response.status_code, duration_seconds=latency_seconds)
    return response


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """
    Handle unhandled exceptions (last resort).

    Upstream and decode failures never get here; the retry controller turns
    them into responses. Anything that does is a bug in the proxy itself.
    """
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"error": "internal_error", "message": "An unexpected error occurred"},
    )


@app.get("/health", response_model=HealthResponse, tags=["health"])
async def health_check(request: Request) -> HealthResponse:
    """Health check for load balancers."""
    router: RequestRouter = request.app.state.router
    return HealthResponse(
        status="healthy",
        version=__version__,
        upstream=router.controller.upstream.base_url,
        cache=CacheStatsResponse(**router.cache.stats()),
    )


@app.get("/metrics", tags=["monitoring"])
async def prometheus_metrics() -> Response:
    """Prometheus metrics endpoint (text format)."""
    return Response(content=generate_latest(metrics.REGISTRY), media_type=CONTENT_TYPE_LATEST)


def to_proxy_request(request: Request) -> ProxyRequest:
    return ProxyRequest(
        method=request.method,
        path=request_path(request),
        query_string=request.url.query,
        headers={name.lower(): value for name, value in request.headers.items()},
        client_host=request.client.host if request.client else None,
        scheme=request.url.scheme,
    )


def to_response(result: ProxyResponse) -> Response:
    if result.payload is not None:
        return JSONResponse(content=result.payload, status_code=result.status_code, headers=result.headers)
    if result.text is not None:
        return PlainTextResponse(content=result.text, status_code=result.status_code, headers=result.headers)
    return Response(status_code=result.status_code, headers=result.headers)


@app.api_route("/{path:path}", methods=["GET", "HEAD", "DELETE"], include_in_schema=False)
async def proxy(request: Request) -> Response:
    """Everything else goes through the cache router."""
    router: RequestRouter = request.app.state.router
    result = await router.handle(to_proxy_request(request), is_disconnected=request.is_disconnected)
    return to_response(result)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")), log_level="info")
