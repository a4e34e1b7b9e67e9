"""Shared pytest fixtures: scripted upstream, fresh cache and wired router."""

import json
from typing import Union

import pytest

from cache import CacheStore
from exceptions import UpstreamTransportError
from materializer import ResponseMaterializer
from models import ProxyRequest, UpstreamResponse
from retry_controller import RetryFallbackController
from router import RequestRouter


def json_response(payload, status: int = 200, headers: dict | None = None) -> UpstreamResponse:
    base = {"Content-Type": "application/vnd.contentful.delivery.v1+json"}
    base.update(headers or {})
    return UpstreamResponse(status=status, headers=base, body=json.dumps(payload).encode(), reason="OK")


class FakeUpstream:
    """
    Stands in for UpstreamClient.

    `script` items are returned (UpstreamResponse) or raised (Exception) in
    order; the last item repeats once the script runs out.
    """

    base_url = "https://cdn.contentful.com/spaces/test"

    def __init__(self, *script: Union[UpstreamResponse, Exception]):
        self.script = list(script) or [UpstreamTransportError("no script")]
        self.calls: list[ProxyRequest] = []

    async def forward(self, request: ProxyRequest) -> UpstreamResponse:
        self.calls.append(request)
        index = min(len(self.calls) - 1, len(self.script) - 1)
        item = self.script[index]
        if isinstance(item, Exception):
            raise item
        return item

    async def connect(self) -> None:
        pass

    async def disconnect(self) -> None:
        pass


@pytest.fixture
def cache() -> CacheStore:
    return CacheStore(max_items=100, ttl_seconds=3600)


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream(json_response({"id": "abc"}))


@pytest.fixture
def controller(cache, upstream) -> RetryFallbackController:
    return RetryFallbackController(
        cache=cache,
        upstream=upstream,
        materializer=ResponseMaterializer(cache),
        max_attempts=3,
    )


@pytest.fixture
def router(cache, controller) -> RequestRouter:
    return RequestRouter(cache=cache, controller=controller)
