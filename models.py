"""
Proxy data model.
Internal value types (cache entries, request/response snapshots) and the
Pydantic schemas served by the management endpoints.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from exceptions import MaterializationError


CACHE_STATUS_HEADER = "X-Contentful-Cache"
CACHE_TIME_HEADER = "X-Contentful-Cache-Time"


class CacheOutcome(str, Enum):
    """Which cache path served a read. Sent back in the X-Contentful-Cache header."""
    HIT = "HIT"
    MISS = "MISS"
    STALE = "STALE"


@dataclass(frozen=True)
class CacheEntry:
    """
    One cached upstream response.

    Frozen: the store replaces entries instead of mutating them, so a reader
    holding an entry always sees a consistent snapshot.
    """

    key: str
    payload: Any
    response_headers: dict[str, str]
    created_at: float
    stale: bool = False


@dataclass
class ProxyRequest:
    """Transport-independent view of an inbound request. Header names are lower-case."""

    method: str
    path: str
    query_string: str = ""
    headers: dict[str, str] = field(default_factory=dict)
    client_host: Optional[str] = None
    scheme: str = "http"


@dataclass
class UpstreamResponse:
    """Raw upstream answer for a single attempt (body fully read)."""

    status: int
    headers: dict[str, str]
    body: bytes
    reason: str = ""

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


@dataclass
class MaterializeResult:
    """Result of turning an upstream response into a cache entry."""

    entry: Optional[CacheEntry] = None
    outcome: Optional[CacheOutcome] = None
    error: Optional[MaterializationError] = None

    @property
    def ok(self) -> bool:
        return self.entry is not None


@dataclass
class ProxyResponse:
    """
    What the API layer sends back.

    `payload` is a decoded JSON value (served as JSON); `text` is used for
    plain-text bodies; both None means an empty body.
    """

    status_code: int
    headers: dict[str, str] = field(default_factory=dict)
    payload: Any = None
    text: Optional[str] = None
    outcome: Optional[CacheOutcome] = None


class CacheStatsResponse(BaseModel):
    """Cache section of GET /health."""

    entries: int
    stale_entries: int
    max_items: int
    ttl_seconds: float


class HealthResponse(BaseModel):
    """Schema for GET /health responses."""

    status: str
    version: str
    upstream: str
    cache: CacheStatsResponse


class ErrorResponse(BaseModel):
    """Body of failure responses."""

    error: str = Field(..., description="Machine-readable error code")
    message: str = Field(default="", description="Human-readable detail")
