"""Retry/fallback state machine driven by a scripted upstream."""

import asyncio

import pytest

from cache import CacheStore
from conftest import FakeUpstream, json_response
from exceptions import CircuitBreakerOpenError, UpstreamTransportError
from materializer import ResponseMaterializer
from models import CACHE_STATUS_HEADER, CacheEntry, ProxyRequest, UpstreamResponse
from retry_controller import CLIENT_CLOSED_REQUEST, RetryFallbackController

KEY = "/entries/abc"
REQUEST = ProxyRequest(method="GET", path=KEY)


def make_controller(cache: CacheStore, upstream: FakeUpstream, **kwargs) -> RetryFallbackController:
    return RetryFallbackController(
        cache=cache,
        upstream=upstream,
        materializer=ResponseMaterializer(cache),
        **kwargs,
    )


def seed_stale(cache: CacheStore, payload) -> None:
    cache.put(KEY, CacheEntry(key=KEY, payload=payload, response_headers={"X-Old": "1"}, created_at=cache._clock()))
    cache.invalidate_all()


@pytest.mark.asyncio
async def test_first_attempt_success_is_a_miss():
    cache = CacheStore()
    upstream = FakeUpstream(json_response({"id": "abc"}))

    response = await make_controller(cache, upstream).run(REQUEST, KEY)

    assert response.status_code == 200
    assert response.payload == {"id": "abc"}
    assert response.headers[CACHE_STATUS_HEADER] == "MISS"
    assert len(upstream.calls) == 1
    assert cache.get(KEY)[0].payload == {"id": "abc"}


@pytest.mark.asyncio
async def test_recovers_within_budget():
    cache = CacheStore()
    upstream = FakeUpstream(
        UpstreamTransportError("reset"),
        UpstreamResponse(status=502, headers={}, body=b"bad gateway"),
        json_response({"id": "abc"}),
    )

    response = await make_controller(cache, upstream, max_attempts=3).run(REQUEST, KEY)

    assert response.status_code == 200
    assert response.headers[CACHE_STATUS_HEADER] == "MISS"
    assert len(upstream.calls) == 3


@pytest.mark.asyncio
async def test_exhausted_budget_serves_stale_entry():
    cache = CacheStore()
    seed_stale(cache, {"id": "abc", "version": 1})
    upstream = FakeUpstream(UpstreamTransportError("down"))

    response = await make_controller(cache, upstream, max_attempts=3).run(REQUEST, KEY)

    assert len(upstream.calls) == 3
    assert response.status_code == 200
    assert response.payload == {"id": "abc", "version": 1}
    assert response.headers[CACHE_STATUS_HEADER] == "STALE"
    assert response.headers["X-Old"] == "1"
    assert cache.get(KEY)[0].stale is True


@pytest.mark.asyncio
async def test_exhausted_budget_without_entry_fails_with_400():
    cache = CacheStore()
    upstream = FakeUpstream(UpstreamResponse(status=200, headers={}, body=b"not json"))

    response = await make_controller(cache, upstream, max_attempts=3).run(REQUEST, KEY)

    assert len(upstream.calls) == 3
    assert response.status_code == 400
    assert response.payload["error"] == "upstream_failure"
    assert "Invalid JSON" in response.payload["message"]
    assert len(cache) == 0


@pytest.mark.asyncio
async def test_open_circuit_counts_as_failure():
    cache = CacheStore()
    seed_stale(cache, {"id": "abc"})
    upstream = FakeUpstream(CircuitBreakerOpenError("open"))

    response = await make_controller(cache, upstream, max_attempts=2).run(REQUEST, KEY)

    assert len(upstream.calls) == 2
    assert response.headers[CACHE_STATUS_HEADER] == "STALE"


@pytest.mark.asyncio
async def test_single_attempt_budget_goes_straight_to_fallback():
    cache = CacheStore()
    upstream = FakeUpstream(UpstreamTransportError("down"))

    response = await make_controller(cache, upstream, max_attempts=1).run(REQUEST, KEY)

    assert len(upstream.calls) == 1
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_disconnected_caller_abandons_retries():
    cache = CacheStore()
    seed_stale(cache, {"id": "abc"})
    upstream = FakeUpstream(UpstreamTransportError("down"))

    async def gone() -> bool:
        return True

    response = await make_controller(cache, upstream, max_attempts=3).run(REQUEST, KEY, is_disconnected=gone)

    assert len(upstream.calls) == 1
    assert response.status_code == CLIENT_CLOSED_REQUEST


@pytest.mark.asyncio
async def test_backoff_doubles_between_attempts(monkeypatch):
    delays = []

    async def fake_sleep(seconds):
        delays.append(seconds)

    monkeypatch.setattr(asyncio, "sleep", fake_sleep)
    cache = CacheStore()
    upstream = FakeUpstream(UpstreamTransportError("down"))

    await make_controller(cache, upstream, max_attempts=4, backoff_seconds=0.5).run(REQUEST, KEY)

    assert delays == [0.5, 1.0, 2.0]


@pytest.mark.asyncio
async def test_concurrent_misses_each_fetch_and_last_write_wins():
    cache = CacheStore()
    upstream = FakeUpstream(json_response({"id": "abc"}))
    controller = make_controller(cache, upstream)

    first, second = await asyncio.gather(controller.run(REQUEST, KEY), controller.run(REQUEST, KEY))

    assert first.status_code == second.status_code == 200
    assert len(upstream.calls) == 2
    assert len(cache) == 1
