"""
Domain exceptions for the cache proxy.

WHY THIS FILE EXISTS:
    The cache/retry core must not know about HTTP status codes.
    Components raise domain exceptions; the controller and the API layer
    decide what the caller sees.

    - Upstream failures are resolved inside the retry controller
      (retry, then stale fallback, then a 400 response).
    - Configuration failures are fatal at startup.
    - Anything else reaching the API layer becomes a generic 500.
"""


class ProxyError(Exception):
    """Base exception for all proxy domain errors."""
    pass


class UpstreamError(ProxyError):
    """
    A single upstream attempt failed before a response could be used.

    Retried by the controller until the attempt budget is spent.
    """
    pass


class UpstreamTransportError(UpstreamError):
    """
    Upstream unreachable, connection reset, or request timed out.
    """
    pass


class CircuitBreakerOpenError(UpstreamError):
    """
    Circuit breaker is open - upstream failed repeatedly.

    No network call is made while the breaker is open. The controller treats
    this like any other transport failure, so callers still get stale data
    when an entry exists.
    """
    pass


class MaterializationError(ProxyError):
    """
    Upstream answered, but the response cannot be cached.

    Raised for non-2xx statuses and bodies that are not valid JSON.
    Never written to the cache.
    """

    def __init__(self, reason: str, status: int | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.status = status


class ConfigurationError(ProxyError):
    """
    Invalid process configuration (e.g. preview mode without preview token).

    Raised while building settings at startup; the process must not serve.
    """
    pass
