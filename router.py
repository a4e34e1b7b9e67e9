"""Request Router - classifies inbound requests and dispatches them."""

import logging
import re
from dataclasses import replace
from enum import Enum
from typing import Awaitable, Callable, Optional
from urllib.parse import parse_qsl, urlencode

from cache import CacheStore, InvalidationPolicy
from config import DEFAULT_RESOURCE_PATTERN
from models import CacheOutcome, ProxyRequest, ProxyResponse
from retry_controller import RetryFallbackController, entry_response
import metrics

logger = logging.getLogger(__name__)

# Client preconditions would let upstream answer 304 and bypass our cache.
CONDITIONAL_HEADERS = frozenset({
    "if-none-match",
    "if-modified-since",
    "if-match",
    "if-unmodified-since",
    "if-range",
})


class RouteKind(str, Enum):
    INVALIDATE = "invalidate"
    NOT_FOUND = "not_found"
    CACHED_READ = "read"


def cache_key(path: str, query_string: str = "") -> str:
    """
    Normalized request identity: path plus query sorted by parameter name.

    `?limit=1&skip=2` and `?skip=2&limit=1` share an entry; repeated
    parameters keep their relative order.
    """
    if not query_string:
        return path
    params = parse_qsl(query_string, keep_blank_values=True)
    if not params:
        return path
    params.sort(key=lambda item: item[0])
    return f"{path}?{urlencode(params)}"


def strip_conditional_headers(headers: dict[str, str]) -> dict[str, str]:
    return {name: value for name, value in headers.items() if name.lower() not in CONDITIONAL_HEADERS}


class RequestRouter:
    """
    Entry point for every proxied request.

    - DELETE (any path): invalidate the cache, 200 with empty body
    - path outside the upstream resource pattern: 404, cache untouched
    - anything else: cache lookup, then the retry controller on a miss
    """

    def __init__(
        self,
        cache: CacheStore,
        controller: RetryFallbackController,
        resource_pattern: str = DEFAULT_RESOURCE_PATTERN,
        invalidation_policy: InvalidationPolicy = InvalidationPolicy.SOFT,
    ):
        self.cache = cache
        self.controller = controller
        self.resource_pattern = re.compile(resource_pattern)
        self.invalidation_policy = invalidation_policy

    def classify(self, method: str, path: str) -> RouteKind:
        if method.upper() == "DELETE":
            return RouteKind.INVALIDATE
        if not self.resource_pattern.match(path):
            return RouteKind.NOT_FOUND
        return RouteKind.CACHED_READ

    async def handle(
        self,
        request: ProxyRequest,
        is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
    ) -> ProxyResponse:
        kind = self.classify(request.method, request.path)

        if kind is RouteKind.INVALIDATE:
            return self._invalidate()

        if kind is RouteKind.NOT_FOUND:
            logger.info(f"No route for {request.method} {request.path}")
            return ProxyResponse(status_code=404, text="Not Found")

        return await self._read(request, is_disconnected)

    def _invalidate(self) -> ProxyResponse:
        count = self.cache.invalidate(self.invalidation_policy)
        metrics.record_invalidation(self.invalidation_policy.value)
        metrics.set_cache_entries(len(self.cache))
        logger.info(f"Cache invalidation ({self.invalidation_policy.value}): {count} entries")
        return ProxyResponse(status_code=200)

    async def _read(
        self,
        request: ProxyRequest,
        is_disconnected: Optional[Callable[[], Awaitable[bool]]],
    ) -> ProxyResponse:
        key = cache_key(request.path, request.query_string)

        entry, found = self.cache.get(key)
        if found and not entry.stale:
            self.cache.touch(key)
            metrics.record_cache_outcome(CacheOutcome.HIT.value)
            logger.info(f"Cache HIT: {key}")
            return entry_response(entry, CacheOutcome.HIT)

        # Always fetch the full JSON document, even for HEAD.
        forwarded = replace(
            request,
            method="GET",
            headers=strip_conditional_headers(request.headers),
        )
        return await self.controller.run(forwarded, key, is_disconnected=is_disconnected)
