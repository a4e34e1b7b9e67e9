"""
Prometheus Metrics for the cache proxy - Observability instrumentation.

RESPONSIBILITY:
    Define and expose metrics for monitoring proxy health and cache
    effectiveness. Follows RED methodology: Rate, Errors, Duration.

WHAT THE METRICS ANSWER:
    - Is the proxy healthy? (error rate, latency)
    - Is the cache working? (hit/miss/stale ratio)
    - Is the upstream healthy? (failed attempts, stale serves)

CARDINALITY WARNING:
    Labels create separate time series. Request paths are unbounded
    (every entry id is a new path), so requests are labelled by route kind
    (read / invalidate / not_found / health / metrics), never by path.
"""

from prometheus_client import Counter, Histogram, Gauge, REGISTRY
import logging

logger = logging.getLogger(__name__)


# =============================================================================
# RED METRICS (Rate, Errors, Duration)
# =============================================================================

# RATE: Request counter
# Labels: route (router classification), status (HTTP status code)
# Example queries:
#   - rate(proxy_requests_total[5m]) → requests/second
#   - proxy_requests_total{status="400"} → unresolved upstream failures
proxy_requests_total = Counter(
    "proxy_requests_total",
    "Total HTTP requests handled by the proxy",
    labelnames=["route", "status"],
)

# DURATION: Request latency histogram
# Labels: route
proxy_request_duration_seconds = Histogram(
    "proxy_request_duration_seconds",
    "HTTP request latency in seconds",
    labelnames=["route"],
    buckets=[
        0.001,  # 1ms - cache hits
        0.005,
        0.01,
        0.05,
        0.1,    # typical CDN fetch
        0.25,
        0.5,
        1.0,
        2.5,
        5.0,
        10.0,
        30.0,   # upstream timeout
        float("inf")
    ]
)


# =============================================================================
# CACHE METRICS
# =============================================================================

# Cache outcome counter
# Labels: outcome (hit, miss, stale)
# Example queries:
#   - proxy_cache_outcomes_total{outcome="hit"} / sum(proxy_cache_outcomes_total) → hit rate
#   - rate(proxy_cache_outcomes_total{outcome="stale"}[5m]) → upstream outage indicator
proxy_cache_outcomes_total = Counter(
    "proxy_cache_outcomes_total",
    "Cache outcomes by type",
    labelnames=["outcome"],
)

# Invalidation counter
# Labels: policy (soft, hard)
proxy_cache_invalidations_total = Counter(
    "proxy_cache_invalidations_total",
    "Cache invalidation requests",
    labelnames=["policy"],
)

# Current entry count (stale entries included)
proxy_cache_entries = Gauge(
    "proxy_cache_entries",
    "Number of entries currently held in the cache",
)


# =============================================================================
# UPSTREAM METRICS
# =============================================================================

# Upstream attempt counter
# Labels: result (success, failure)
# A failure is any attempt that did not produce a cacheable response
# (transport error, open circuit, non-2xx, invalid JSON).
proxy_upstream_attempts_total = Counter(
    "proxy_upstream_attempts_total",
    "Upstream attempts by result",
    labelnames=["result"],
)


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

_CACHE_OUTCOMES = ["hit", "miss", "stale"]


def record_request(route: str, status: int, duration_seconds: float) -> None:
    """
    Record request metrics (counter + duration histogram).

    Args:
        route: Router classification (e.g. "read", "invalidate")
        status: HTTP status code
        duration_seconds: Request latency in seconds
    """
    proxy_requests_total.labels(route=route, status=str(status)).inc()
    proxy_request_duration_seconds.labels(route=route).observe(duration_seconds)


def record_cache_outcome(outcome: str) -> None:
    """
    Record cache hit/miss/stale.

    Args:
        outcome: "hit", "miss" or "stale" (case-insensitive)
    """
    outcome = outcome.lower()
    if outcome not in _CACHE_OUTCOMES:
        logger.warning(f"Invalid cache outcome: {outcome}")
        return

    proxy_cache_outcomes_total.labels(outcome=outcome).inc()


def record_upstream_attempt(success: bool) -> None:
    """Record one upstream attempt."""
    proxy_upstream_attempts_total.labels(result="success" if success else "failure").inc()


def record_invalidation(policy: str) -> None:
    """Record a cache invalidation."""
    proxy_cache_invalidations_total.labels(policy=policy).inc()


def set_cache_entries(count: int) -> None:
    """Update the cache size gauge."""
    proxy_cache_entries.set(count)


__all__ = [
    "proxy_requests_total",
    "proxy_request_duration_seconds",
    "proxy_cache_outcomes_total",
    "proxy_cache_invalidations_total",
    "proxy_cache_entries",
    "proxy_upstream_attempts_total",
    "record_request",
    "record_cache_outcome",
    "record_upstream_attempt",
    "record_invalidation",
    "set_cache_entries",
    "REGISTRY",
]
