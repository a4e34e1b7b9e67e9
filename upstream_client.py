"""Upstream Client - forwards one request to the fixed Contentful origin."""

import asyncio
import logging
import time
from enum import Enum
from typing import Awaitable, Callable, Optional, TypeVar

import aiohttp
from yarl import URL

from exceptions import CircuitBreakerOpenError, UpstreamTransportError
from models import ProxyRequest, UpstreamResponse

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Never forwarded from the client: hop-by-hop headers plus the ones we own.
_DROPPED_REQUEST_HEADERS = frozenset({
    "host",
    "authorization",
    "accept-encoding",
    "content-length",
    "connection",
    "keep-alive",
    "proxy-authorization",
    "proxy-connection",
    "te",
    "trailer",
    "transfer-encoding",
    "upgrade",
})


class CircuitBreakerState(Enum):
    """Circuit breaker state machine."""
    CLOSED = "closed"          # Normal operation
    OPEN = "open"              # Failing - reject all requests
    HALF_OPEN = "half_open"    # Testing - allow 1 request


class CircuitBreaker:
    """Simple circuit breaker for upstream calls."""

    def __init__(self, failure_threshold: int = 5, cooldown_sec: float = 60, clock=time.monotonic):
        """Initialize circuit breaker."""
        self.failure_threshold = failure_threshold
        self.cooldown_sec = cooldown_sec
        self.state = CircuitBreakerState.CLOSED
        self.failure_count = 0
        self.last_failure_time: Optional[float] = None
        self._clock = clock
        self._trial_in_flight = False

    async def call(self, func: Callable[[], Awaitable[T]]) -> T:
        """Run `func()` with circuit breaker protection."""
        if self.state == CircuitBreakerState.OPEN:
            if self.last_failure_time is not None and self._clock() - self.last_failure_time >= self.cooldown_sec:
                self.state = CircuitBreakerState.HALF_OPEN
                logger.info("Circuit breaker: HALF_OPEN - attempting recovery")
            else:
                raise CircuitBreakerOpenError("Circuit breaker OPEN - upstream unavailable")
        elif self.state == CircuitBreakerState.HALF_OPEN and self._trial_in_flight:
            raise CircuitBreakerOpenError("Circuit breaker HALF_OPEN - recovery attempt in flight")

        trial = self.state == CircuitBreakerState.HALF_OPEN
        if trial:
            self._trial_in_flight = True
        try:
            result = await func()
        except UpstreamTransportError:
            self.record_failure()
            raise
        finally:
            if trial:
                self._trial_in_flight = False

        if self.state != CircuitBreakerState.CLOSED or self.failure_count:
            if self.state == CircuitBreakerState.HALF_OPEN:
                logger.info("Circuit breaker: CLOSED - recovered")
            self.state = CircuitBreakerState.CLOSED
            self.failure_count = 0
        return result

    def record_failure(self) -> None:
        self.failure_count += 1
        self.last_failure_time = self._clock()

        if self.state == CircuitBreakerState.HALF_OPEN or self.failure_count >= self.failure_threshold:
            self.state = CircuitBreakerState.OPEN
            logger.error(f"Circuit breaker: OPEN - {self.failure_count} consecutive failures")


class UpstreamClient:
    """
    Forwards requests to one fixed upstream origin.

    - Path is appended to `base_url`, query string forwarded untouched
    - Authorization comes from configuration, never from the client
    - X-Forwarded-* headers carry the client's address and host
    - Accept-Encoding: identity so the body is plain JSON
    One call is one attempt; retries belong to the controller.
    """

    def __init__(
        self,
        base_url: str,
        token: Optional[str],
        timeout_seconds: float = 30.0,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout_seconds = timeout_seconds
        self.circuit_breaker = circuit_breaker or CircuitBreaker()
        self.session: Optional[aiohttp.ClientSession] = None

    async def connect(self) -> None:
        """Create aiohttp session for connection pooling."""
        if self.session is None:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout_seconds),
                auto_decompress=True,
            )
            logger.info(f"Upstream connection pool created for {self.base_url}")

    async def disconnect(self) -> None:
        """Close aiohttp session."""
        if self.session:
            await self.session.close()
            self.session = None
            logger.info("Upstream connection pool closed")

    def build_url(self, request: ProxyRequest) -> URL:
        path = request.path if request.path.startswith("/") else f"/{request.path}"
        target = f"{self.base_url}{path}"
        if request.query_string:
            target = f"{target}?{request.query_string}"
        return URL(target, encoded=True)

    def build_headers(self, request: ProxyRequest) -> dict[str, str]:
        headers = {
            name: value
            for name, value in request.headers.items()
            if name.lower() not in _DROPPED_REQUEST_HEADERS and not name.lower().startswith("x-forwarded-")
        }

        forwarded_for = request.headers.get("x-forwarded-for")
        if request.client_host:
            forwarded_for = f"{forwarded_for}, {request.client_host}" if forwarded_for else request.client_host
        if forwarded_for:
            headers["X-Forwarded-For"] = forwarded_for

        host = request.headers.get("host")
        if host:
            headers["X-Forwarded-Host"] = host
        headers["X-Forwarded-Proto"] = request.scheme

        headers["Accept-Encoding"] = "identity"
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def forward(self, request: ProxyRequest) -> UpstreamResponse:
        """
        Send one attempt upstream.

        Raises:
            UpstreamTransportError: connection failure or timeout
            CircuitBreakerOpenError: breaker open, no call made
        """
        if self.session is None:
            await self.connect()
        return await self.circuit_breaker.call(lambda: self._send(request))

    async def _send(self, request: ProxyRequest) -> UpstreamResponse:
        url = self.build_url(request)
        headers = self.build_headers(request)
        start_time = time.perf_counter()

        try:
            async with self.session.request(request.method, url, headers=headers, allow_redirects=False) as response:
                body = await response.read()
                latency_ms = (time.perf_counter() - start_time) * 1000
                logger.info(f"Upstream {request.method} {url.path} | status={response.status} | latency={latency_ms:.1f}ms")
                return UpstreamResponse(
                    status=response.status,
                    headers={name: value for name, value in response.headers.items()},
                    body=body,
                    reason=response.reason or "",
                )
        except asyncio.TimeoutError as e:
            logger.error(f"Upstream timeout after {self.timeout_seconds}s: {url.path}")
            raise UpstreamTransportError(f"Upstream timeout after {self.timeout_seconds}s") from e
        except aiohttp.ClientError as e:
            logger.error(f"Upstream connection error: {type(e).__name__}: {e}")
            raise UpstreamTransportError(f"Upstream unreachable: {e}") from e
