"""
Proxy configuration - upstream target, credentials, cache and retry limits.

All values come from the process environment (a `.env` file is loaded by
main.py via python-dotenv before settings are built).

Upstream selection mirrors the Contentful APIs:
    CONTENTFUL_PREVIEW=false -> cdn.contentful.com      (CONTENTFUL_ACCESS_TOKEN)
    CONTENTFUL_PREVIEW=true  -> preview.contentful.com  (CONTENTFUL_PREVIEW_TOKEN)

Preview mode without a preview token is a startup failure: serving draft
content with the delivery token would silently return the wrong data.
"""

import logging
import os
from typing import Optional

from pydantic import BaseModel, Field, ValidationError

from cache import InvalidationPolicy
from exceptions import ConfigurationError

logger = logging.getLogger(__name__)

DELIVERY_HOST = "cdn.contentful.com"
PREVIEW_HOST = "preview.contentful.com"

# Delivery API collections, optionally under /spaces/{id}[/environments/{env}].
DEFAULT_RESOURCE_PATTERN = (
    r"^(/spaces/[^/]+(/environments/[^/]+)?)?"
    r"/(entries|assets|content_types|locales|sync|tags)(/[^/]+)?/?$"
    r"|^/spaces/[^/]+/?$"
)

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off", ""}


class ProxySettings(BaseModel):
    """Validated proxy settings."""

    access_token: Optional[str] = None
    preview_token: Optional[str] = None
    preview: bool = False
    secure: bool = True
    space_id: Optional[str] = None
    base_url: Optional[str] = Field(default=None, description="Overrides the computed Contentful URL")
    resource_pattern: str = DEFAULT_RESOURCE_PATTERN

    cache_max_items: int = Field(default=5000, ge=1)
    cache_ttl_seconds: float = Field(default=86400.0, ge=0)  # one day
    invalidation_policy: InvalidationPolicy = InvalidationPolicy.SOFT

    upstream_max_attempts: int = Field(default=3, ge=1)
    upstream_retry_backoff_seconds: float = Field(default=0.0, ge=0)
    upstream_timeout_seconds: float = Field(default=30.0, gt=0)
    circuit_breaker_threshold: int = Field(default=5, ge=1)
    circuit_breaker_cooldown_seconds: float = Field(default=60.0, ge=0)

    @classmethod
    def from_env(cls, environ: Optional[dict] = None) -> "ProxySettings":
        """
        Build settings from environment variables.

        Raises:
            ConfigurationError: on unparsable values or preview mode without
            a preview token.
        """
        env = os.environ if environ is None else environ

        raw = {
            "access_token": env.get("CONTENTFUL_ACCESS_TOKEN") or None,
            "preview_token": env.get("CONTENTFUL_PREVIEW_TOKEN") or None,
            "preview": _parse_bool(env, "CONTENTFUL_PREVIEW", False),
            "secure": _parse_bool(env, "CONTENTFUL_SECURE", True),
            "space_id": env.get("CONTENTFUL_SPACE_ID") or None,
            "base_url": env.get("CONTENTFUL_BASE_URL") or None,
            "resource_pattern": env.get("CONTENTFUL_RESOURCE_PATTERN") or DEFAULT_RESOURCE_PATTERN,
        }
        optional = {
            "cache_max_items": "CACHE_MAX_ITEMS",
            "cache_ttl_seconds": "CACHE_TTL_SECONDS",
            "invalidation_policy": "CACHE_INVALIDATION",
            "upstream_max_attempts": "UPSTREAM_MAX_ATTEMPTS",
            "upstream_retry_backoff_seconds": "UPSTREAM_RETRY_BACKOFF_SECONDS",
            "upstream_timeout_seconds": "UPSTREAM_TIMEOUT_SECONDS",
            "circuit_breaker_threshold": "CIRCUIT_BREAKER_THRESHOLD",
            "circuit_breaker_cooldown_seconds": "CIRCUIT_BREAKER_COOLDOWN_SECONDS",
        }
        for field_name, var in optional.items():
            value = env.get(var)
            if value not in (None, ""):
                raw[field_name] = value.strip().lower() if field_name == "invalidation_policy" else value

        try:
            settings = cls(**raw)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid proxy configuration: {e}") from e

        settings.auth_token()  # fail fast on preview without token
        if not settings.preview and not settings.access_token:
            logger.warning("CONTENTFUL_ACCESS_TOKEN not set. Upstream will reject requests")
        return settings

    def auth_token(self) -> Optional[str]:
        """Return the bearer token for the selected API."""
        if self.preview and not self.preview_token:
            raise ConfigurationError("Please provide preview API token to use the preview API.")
        return self.preview_token if self.preview else self.access_token

    def upstream_url(self) -> str:
        """Return the upstream origin (plus space prefix) that request paths are appended to."""
        if self.base_url:
            return self.base_url.rstrip("/")

        protocol = "https" if self.secure else "http"
        host = PREVIEW_HOST if self.preview else DELIVERY_HOST
        path = f"/spaces/{self.space_id}" if self.space_id else ""
        return f"{protocol}://{host}{path}"


def _parse_bool(env, name: str, default: bool) -> bool:
    value = env.get(name)
    if value is None:
        return default
    value = value.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ConfigurationError(f"{name} must be a boolean, got {value!r}")
