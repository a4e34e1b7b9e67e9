"""Request router: classification, HIT/MISS/STALE flow and invalidation."""

import pytest

from cache import CacheStore, InvalidationPolicy
from conftest import FakeUpstream, json_response
from exceptions import UpstreamTransportError
from materializer import ResponseMaterializer
from models import CACHE_STATUS_HEADER, CACHE_TIME_HEADER, ProxyRequest
from retry_controller import RetryFallbackController
from router import RequestRouter, RouteKind, cache_key


def get(path: str, query: str = "", headers: dict | None = None) -> ProxyRequest:
    return ProxyRequest(method="GET", path=path, query_string=query, headers=headers or {})


def build(upstream: FakeUpstream, policy: InvalidationPolicy = InvalidationPolicy.SOFT) -> RequestRouter:
    cache = CacheStore()
    controller = RetryFallbackController(cache, upstream, ResponseMaterializer(cache), max_attempts=3)
    return RequestRouter(cache=cache, controller=controller, invalidation_policy=policy)


@pytest.mark.parametrize("method,path,expected", [
    ("GET", "/entries", RouteKind.CACHED_READ),
    ("GET", "/entries/abc", RouteKind.CACHED_READ),
    ("HEAD", "/assets/xyz/", RouteKind.CACHED_READ),
    ("GET", "/content_types", RouteKind.CACHED_READ),
    ("GET", "/sync", RouteKind.CACHED_READ),
    ("GET", "/spaces/s1", RouteKind.CACHED_READ),
    ("GET", "/spaces/s1/environments/master/entries/abc", RouteKind.CACHED_READ),
    ("GET", "/unknown/path", RouteKind.NOT_FOUND),
    ("GET", "/entries/abc/extra", RouteKind.NOT_FOUND),
    ("GET", "/", RouteKind.NOT_FOUND),
    ("DELETE", "/entries/abc", RouteKind.INVALIDATE),
    ("DELETE", "/", RouteKind.INVALIDATE),
])
def test_classify(router, method, path, expected):
    assert router.classify(method, path) is expected


def test_cache_key_normalizes_query_order():
    assert cache_key("/entries/abc") == "/entries/abc"
    assert cache_key("/entries", "skip=2&limit=1") == cache_key("/entries", "limit=1&skip=2")
    assert cache_key("/entries", "b=2&a=1&a=0") == "/entries?a=1&a=0&b=2"


@pytest.mark.asyncio
async def test_miss_then_hit_scenario(router, upstream, cache):
    first = await router.handle(get("/entries/abc"))

    assert first.status_code == 200
    assert first.payload == {"id": "abc"}
    assert first.headers[CACHE_STATUS_HEADER] == "MISS"
    assert len(upstream.calls) == 1
    assert cache.get("/entries/abc")[1] is True

    second = await router.handle(get("/entries/abc"))

    assert second.payload == {"id": "abc"}
    assert second.headers[CACHE_STATUS_HEADER] == "HIT"
    assert CACHE_TIME_HEADER in second.headers
    assert len(upstream.calls) == 1


@pytest.mark.asyncio
async def test_invalidate_then_upstream_failure_serves_stale():
    upstream = FakeUpstream(json_response({"id": "abc"}))
    router = build(upstream)
    await router.handle(get("/entries/abc"))

    ack = await router.handle(ProxyRequest(method="DELETE", path="/entries"))
    assert ack.status_code == 200
    assert ack.payload is None and ack.text is None
    assert len(upstream.calls) == 1

    upstream.script = [UpstreamTransportError("down")]
    upstream.calls.clear()
    response = await router.handle(get("/entries/abc"))

    assert len(upstream.calls) == 3
    assert response.status_code == 200
    assert response.payload == {"id": "abc"}
    assert response.headers[CACHE_STATUS_HEADER] == "STALE"


@pytest.mark.asyncio
async def test_invalidated_entry_is_refetched_when_upstream_is_healthy():
    upstream = FakeUpstream(json_response({"id": "abc", "v": 1}), json_response({"id": "abc", "v": 2}))
    router = build(upstream)
    await router.handle(get("/entries/abc"))
    await router.handle(ProxyRequest(method="DELETE", path="/"))

    response = await router.handle(get("/entries/abc"))

    assert len(upstream.calls) == 2
    assert response.headers[CACHE_STATUS_HEADER] == "MISS"
    assert response.payload == {"id": "abc", "v": 2}
    assert router.cache.get("/entries/abc")[0].stale is False


@pytest.mark.asyncio
async def test_hard_policy_leaves_nothing_to_fall_back_on():
    upstream = FakeUpstream(json_response({"id": "abc"}))
    router = build(upstream, policy=InvalidationPolicy.HARD)
    await router.handle(get("/entries/abc"))
    await router.handle(ProxyRequest(method="DELETE", path="/"))

    upstream.script = [UpstreamTransportError("down")]
    response = await router.handle(get("/entries/abc"))

    assert response.status_code == 400
    assert len(router.cache) == 0


@pytest.mark.asyncio
async def test_unknown_path_is_404_without_cache_or_upstream(upstream):
    class SpyCache(CacheStore):
        lookups = 0

        def get(self, key):
            SpyCache.lookups += 1
            return super().get(key)

    cache = SpyCache()
    controller = RetryFallbackController(cache, upstream, ResponseMaterializer(cache))
    router = RequestRouter(cache=cache, controller=controller)

    response = await router.handle(get("/unknown/path"))

    assert response.status_code == 404
    assert response.text == "Not Found"
    assert SpyCache.lookups == 0
    assert upstream.calls == []


@pytest.mark.asyncio
async def test_conditional_headers_are_stripped_and_head_fetches_json(router, upstream):
    await router.handle(ProxyRequest(
        method="HEAD",
        path="/entries/abc",
        headers={"if-none-match": '"etag"', "if-modified-since": "yesterday", "accept": "application/json"},
    ))

    forwarded = upstream.calls[0]
    assert forwarded.method == "GET"
    assert "if-none-match" not in forwarded.headers
    assert "if-modified-since" not in forwarded.headers
    assert forwarded.headers["accept"] == "application/json"


@pytest.mark.asyncio
async def test_query_variants_share_one_entry(router, upstream):
    await router.handle(get("/entries", "content_type=post&limit=5"))
    response = await router.handle(get("/entries", "limit=5&content_type=post"))

    assert response.headers[CACHE_STATUS_HEADER] == "HIT"
    assert len(upstream.calls) == 1
    assert upstream.calls[0].query_string == "content_type=post&limit=5"
