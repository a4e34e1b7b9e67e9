"""
Retry/Fallback Controller - forwards a cache miss upstream, retries, falls back.

RESPONSIBILITY:
    Drive one cache-miss request through a small state machine:

        ATTEMPT ──success──────────────────────────▶ DONE (200, MISS)
           │
           failure, budget left ──▶ RETRY_WAIT ──▶ ATTEMPT
           │
           failure, budget spent ──▶ FALLBACK ──entry──▶ DONE (200, STALE)
                                              └─none───▶ DONE (400)

    Every upstream or decode failure is resolved here into a response;
    nothing escapes to the API layer.

AVAILABILITY OVER FRESHNESS:
    A stale entry (kept after invalidation) is better than an error while the
    upstream is down, so FALLBACK serves it with X-Contentful-Cache: STALE.

CONCURRENCY NOTE:
    Two simultaneous misses for the same key each run their own sequence
    (no request coalescing). Both may write the cache; the last put wins,
    which is fine because entries are snapshots of the same upstream data.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional

from cache import CacheStore
from exceptions import UpstreamError
from materializer import ResponseMaterializer
from models import (
    CACHE_STATUS_HEADER,
    CacheEntry,
    CacheOutcome,
    ErrorResponse,
    ProxyRequest,
    ProxyResponse,
)
from upstream_client import UpstreamClient
import metrics

logger = logging.getLogger(__name__)

# nginx's "client closed request"; nobody is listening for it anyway.
CLIENT_CLOSED_REQUEST = 499
UPSTREAM_FAILURE_STATUS = 400


class ControllerState(Enum):
    ATTEMPT = "attempt"
    RETRY_WAIT = "retry_wait"
    FALLBACK = "fallback"
    DONE = "done"


@dataclass
class RequestContext:
    """Per-request state threaded through the controller."""

    request: ProxyRequest
    key: str
    retries_remaining: int
    attempts: int = 0
    last_error: Optional[Exception] = None
    is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None


def entry_response(entry: CacheEntry, outcome: CacheOutcome) -> ProxyResponse:
    """Build the caller response for a cache entry."""
    headers = dict(entry.response_headers)
    headers[CACHE_STATUS_HEADER] = outcome.value
    return ProxyResponse(status_code=200, headers=headers, payload=entry.payload, outcome=outcome)


class RetryFallbackController:
    """
    Service layer for cache misses.

    Dependencies are injected (cache, upstream client, materializer) so tests
    can drive the state machine with a scripted upstream.
    """

    def __init__(
        self,
        cache: CacheStore,
        upstream: UpstreamClient,
        materializer: ResponseMaterializer,
        max_attempts: int = 3,
        backoff_seconds: float = 0.0,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.cache = cache
        self.upstream = upstream
        self.materializer = materializer
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds

    async def run(
        self,
        request: ProxyRequest,
        key: str,
        is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
    ) -> ProxyResponse:
        """Fetch `key` upstream with retries, falling back to a stale entry."""
        context = RequestContext(
            request=request,
            key=key,
            retries_remaining=self.max_attempts - 1,
            is_disconnected=is_disconnected,
        )
        state = ControllerState.ATTEMPT
        response: Optional[ProxyResponse] = None

        while state is not ControllerState.DONE:
            if state is ControllerState.ATTEMPT:
                response = await self._attempt(context)
                if response is not None:
                    state = ControllerState.DONE
                elif context.retries_remaining > 0:
                    context.retries_remaining -= 1
                    state = ControllerState.RETRY_WAIT
                else:
                    state = ControllerState.FALLBACK

            elif state is ControllerState.RETRY_WAIT:
                await self._backoff(context)
                if await self._caller_gone(context):
                    logger.info(f"Caller disconnected, abandoning retries for {key} after {context.attempts} attempt(s)")
                    response = ProxyResponse(status_code=CLIENT_CLOSED_REQUEST)
                    state = ControllerState.DONE
                else:
                    state = ControllerState.ATTEMPT

            elif state is ControllerState.FALLBACK:
                response = self._fallback(context)
                state = ControllerState.DONE

        return response

    async def _attempt(self, context: RequestContext) -> Optional[ProxyResponse]:
        """One upstream call + materialization. None means the attempt failed."""
        context.attempts += 1

        try:
            upstream_response = await self.upstream.forward(context.request)
        except UpstreamError as e:
            context.last_error = e
            metrics.record_upstream_attempt(success=False)
            logger.warning(f"Upstream attempt {context.attempts}/{self.max_attempts} failed for {context.key}: {e}")
            return None

        result = self.materializer.materialize(upstream_response, context.key)
        if not result.ok:
            context.last_error = result.error
            metrics.record_upstream_attempt(success=False)
            logger.warning(f"Upstream attempt {context.attempts}/{self.max_attempts} failed for {context.key}: {result.error}")
            return None

        metrics.record_upstream_attempt(success=True)
        metrics.record_cache_outcome(CacheOutcome.MISS.value)
        metrics.set_cache_entries(len(self.cache))
        logger.info(f"Cache MISS: {context.key} fetched in {context.attempts} attempt(s)")
        return entry_response(result.entry, result.outcome)

    async def _backoff(self, context: RequestContext) -> None:
        if self.backoff_seconds <= 0:
            return
        retry_number = context.attempts - 1
        await asyncio.sleep(self.backoff_seconds * (2 ** retry_number))

    async def _caller_gone(self, context: RequestContext) -> bool:
        if context.is_disconnected is None:
            return False
        return await context.is_disconnected()

    def _fallback(self, context: RequestContext) -> ProxyResponse:
        entry, found = self.cache.get(context.key)
        if found:
            logger.warning(f"Serving STALE {context.key} after {context.attempts} failed attempt(s)")
            metrics.record_cache_outcome(CacheOutcome.STALE.value)
            return entry_response(entry, CacheOutcome.STALE)

        logger.error(f"Upstream failed for {context.key} after {context.attempts} attempt(s), no fallback: {context.last_error}")
        body = ErrorResponse(error="upstream_failure", message=str(context.last_error or "upstream request failed"))
        return ProxyResponse(status_code=UPSTREAM_FAILURE_STATUS, payload=body.model_dump())
