"""
Response Materializer - turns an upstream response into a cache entry.

Only a 2xx response whose body decodes as JSON is written to the cache.
Everything else comes back as a failure result and leaves the cache untouched,
so a truncated or HTML error body can never replace good data.
"""

import json
import logging
from datetime import datetime, timezone

from cache import CacheStore
from exceptions import MaterializationError
from models import CACHE_TIME_HEADER, CacheEntry, CacheOutcome, MaterializeResult, UpstreamResponse

logger = logging.getLogger(__name__)

# Describe the upstream body/connection, not the JSON we re-serialize.
# Date and Server are set again by our own HTTP server.
_UNCACHED_RESPONSE_HEADERS = frozenset({
    "content-length",
    "content-encoding",
    "transfer-encoding",
    "connection",
    "keep-alive",
    "set-cookie",
    "date",
    "server",
})


def _reject_constant(token: str):
    raise ValueError(f"{token} is not valid JSON")


def cacheable_headers(headers: dict[str, str]) -> dict[str, str]:
    """Upstream headers worth replaying on cache hits."""
    return {name: value for name, value in headers.items() if name.lower() not in _UNCACHED_RESPONSE_HEADERS}


class ResponseMaterializer:
    """Decodes upstream responses and writes successful ones to the cache."""

    def __init__(self, cache: CacheStore, clock=None) -> None:
        self.cache = cache
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def materialize(self, response: UpstreamResponse, key: str) -> MaterializeResult:
        """
        Decode `response` and cache it under `key`.

        Decode and cache write happen back to back with no await in between:
        once decoding succeeds the write always completes.
        """
        if not response.ok:
            reason = f"Upstream returned {response.status} {response.reason}".rstrip()
            logger.warning(f"Not caching {key}: {reason}")
            return MaterializeResult(error=MaterializationError(reason, status=response.status))

        try:
            payload = json.loads(response.body.decode("utf-8"), parse_constant=_reject_constant)
        except (UnicodeDecodeError, ValueError) as e:
            logger.warning(f"Not caching {key}: body is not valid JSON ({e})")
            return MaterializeResult(error=MaterializationError(f"Invalid JSON body: {e}", status=response.status))

        now = self._clock()
        headers = cacheable_headers(response.headers)
        headers[CACHE_TIME_HEADER] = now.isoformat().replace("+00:00", "Z")

        entry = CacheEntry(key=key, payload=payload, response_headers=headers, created_at=now.timestamp())
        self.cache.put(key, entry)
        logger.info(f"Cached {key}")

        return MaterializeResult(entry=entry, outcome=CacheOutcome.MISS)
