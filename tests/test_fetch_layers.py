"""
缓存与上游获取链路单元测试

覆盖范围：
  - 上游客户端（超时头、空响应、429、非 2xx、网络错误）
  - 重试策略与串行请求队列（FIFO、限流暂停、最大尝试次数）
  - L1 内存缓存与后台清理
  - fetch_with_cache 两级缓存编排（命中顺序、降级、并发合并）
"""

import asyncio
import json
import os
import sys
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

# 确保仓库根目录在 sys.path
ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from gecko_service.errors import (  # noqa: E402
    EmptyResponse,
    RateLimited,
    RetriesExhausted,
    UpstreamUnavailable,
)
from gecko_service.layers.cache import RedisCache  # noqa: E402
from gecko_service.layers.memory import CacheSweeper, MemoryCache  # noqa: E402
from gecko_service.layers.queue import RequestQueue, RetryPolicy  # noqa: E402
from gecko_service.layers.upstream import UpstreamClient, parse_retry_after  # noqa: E402
from gecko_service.services.fetch_service import CachedFetchService  # noqa: E402


# ─────────────────────────────────────────────────────────
# 辅助对象
# ─────────────────────────────────────────────────────────

class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class FakeRedis:
    """按 FakeClock 计算过期的内存版 Redis"""

    def __init__(self, clock=None):
        self.clock = clock or FakeClock()
        self.store = {}
        self.get_calls = 0
        self.setex_calls = []
        self.fail_get = False
        self.fail_set = False

    async def get(self, key):
        self.get_calls += 1
        if self.fail_get:
            raise ConnectionError("redis down")
        item = self.store.get(key)
        if item is None:
            return None
        value, expires = item
        if self.clock() >= expires:
            del self.store[key]
            return None
        return value

    async def setex(self, key, ttl, value):
        if self.fail_set:
            raise ConnectionError("redis down")
        self.setex_calls.append((key, ttl, value))
        self.store[key] = (value, self.clock() + ttl)

    async def delete(self, key):
        self.store.pop(key, None)

    async def dbsize(self):
        return len(self.store)


class FakeUpstream:
    """记录调用次数的上游函数，可按顺序返回结果或抛出异常"""

    def __init__(self, *outcomes, delay: float = 0.0):
        self.outcomes = list(outcomes) or [[{"id": "bitcoin"}]]
        self.delay = delay
        self.calls = []

    async def __call__(self, url):
        self.calls.append(url)
        if self.delay:
            await asyncio.sleep(self.delay)
        outcome = self.outcomes[min(len(self.calls), len(self.outcomes)) - 1]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _build_service(fetch, clock=None, redis=None, coalesce=True):
    clock = clock or FakeClock()
    redis = redis if redis is not None else FakeRedis(clock)
    upstream = MagicMock()
    upstream.aclose = AsyncMock()
    return CachedFetchService(
        upstream=upstream,
        memory=MemoryCache(default_ttl=30, clock=clock),
        l2=RedisCache(lambda: redis),
        queue=RequestQueue(fetch),
        coalesce=coalesce,
        base_url="https://api.coingecko.com/api/v3",
    )


def _mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


# ─────────────────────────────────────────────────────────
# 1. 上游客户端测试
# ─────────────────────────────────────────────────────────

class TestUpstreamClient:
    @pytest.mark.asyncio
    async def test_returns_parsed_json_with_standard_headers(self):
        seen = {}

        def handler(request):
            seen["headers"] = request.headers
            return httpx.Response(200, json=[{"id": "bitcoin"}])

        client = UpstreamClient(http_client=_mock_client(handler), user_agent="ChainXchange/1.0")
        data = await client.get_json("https://api.coingecko.com/api/v3/coins/markets")
        assert data == [{"id": "bitcoin"}]
        assert seen["headers"]["accept"] == "application/json"
        assert seen["headers"]["content-type"] == "application/json"
        assert seen["headers"]["user-agent"] == "ChainXchange/1.0"

    @pytest.mark.asyncio
    async def test_empty_array_is_empty_response(self):
        client = UpstreamClient(http_client=_mock_client(lambda r: httpx.Response(200, json=[])))
        with pytest.raises(EmptyResponse):
            await client.get_json("https://example.test/empty")

    @pytest.mark.asyncio
    async def test_null_body_is_empty_response(self):
        client = UpstreamClient(http_client=_mock_client(lambda r: httpx.Response(200, content=b"null")))
        with pytest.raises(EmptyResponse):
            await client.get_json("https://example.test/null")

    @pytest.mark.asyncio
    async def test_empty_object_is_returned(self):
        client = UpstreamClient(http_client=_mock_client(lambda r: httpx.Response(200, json={})))
        assert await client.get_json("https://example.test/object") == {}

    @pytest.mark.asyncio
    async def test_429_carries_retry_after(self):
        client = UpstreamClient(http_client=_mock_client(
            lambda r: httpx.Response(429, headers={"retry-after": "2"})
        ))
        with pytest.raises(RateLimited) as info:
            await client.get_json("https://example.test/limited")
        assert info.value.retry_after == 2.0

    @pytest.mark.asyncio
    async def test_429_without_header(self):
        client = UpstreamClient(http_client=_mock_client(lambda r: httpx.Response(429)))
        with pytest.raises(RateLimited) as info:
            await client.get_json("https://example.test/limited")
        assert info.value.retry_after is None

    @pytest.mark.asyncio
    async def test_server_error_is_unavailable(self):
        client = UpstreamClient(http_client=_mock_client(lambda r: httpx.Response(503, text="down")))
        with pytest.raises(UpstreamUnavailable) as info:
            await client.get_json("https://example.test/down")
        assert info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_network_error_is_unavailable(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = UpstreamClient(http_client=_mock_client(handler))
        with pytest.raises(UpstreamUnavailable):
            await client.get_json("https://example.test/refused")

    @pytest.mark.asyncio
    async def test_timeout_is_unavailable(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        client = UpstreamClient(http_client=_mock_client(handler))
        with pytest.raises(UpstreamUnavailable):
            await client.get_json("https://example.test/slow")

    def test_parse_retry_after(self):
        assert parse_retry_after("5") == 5.0
        assert parse_retry_after(" 1.5 ") == 1.5
        assert parse_retry_after(None) is None
        assert parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT") is None
        assert parse_retry_after("-3") is None


# ─────────────────────────────────────────────────────────
# 2. 重试策略测试
# ─────────────────────────────────────────────────────────

class TestRetryPolicy:
    def test_only_rate_limit_is_retryable_by_default(self):
        policy = RetryPolicy(max_attempts=3, default_retry_after=10)
        assert policy.next_delay(1, UpstreamUnavailable("boom")) is None
        assert policy.next_delay(1, EmptyResponse("u")) is None

    def test_delay_uses_retry_after(self):
        policy = RetryPolicy(max_attempts=3, default_retry_after=10)
        assert policy.next_delay(1, RateLimited("u", 2)) == 2

    def test_delay_defaults_when_header_missing(self):
        policy = RetryPolicy(max_attempts=3, default_retry_after=10)
        assert policy.next_delay(2, RateLimited("u", None)) == 10

    def test_exhausted_on_last_attempt(self):
        policy = RetryPolicy(max_attempts=3, default_retry_after=10)
        last = RateLimited("u", 1)
        with pytest.raises(RetriesExhausted) as info:
            policy.next_delay(3, last)
        assert info.value.last_error is last
        assert info.value.attempts == 3

    def test_custom_predicate_and_delay(self):
        policy = RetryPolicy(
            max_attempts=2,
            retryable=lambda exc: isinstance(exc, UpstreamUnavailable),
            delay=lambda exc: 0.5,
        )
        assert policy.next_delay(1, UpstreamUnavailable("x")) == 0.5
        assert policy.next_delay(1, RateLimited("u", 3)) is None

    def test_invalid_max_attempts(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=-1)
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)


# ─────────────────────────────────────────────────────────
# 3. 串行请求队列测试
# ─────────────────────────────────────────────────────────

class TestRequestQueue:
    @pytest.mark.asyncio
    async def test_fifo_and_single_flight(self):
        active = 0
        peak = 0
        order = []

        async def fetch(url):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            order.append(url)
            await asyncio.sleep(0.01)
            active -= 1
            return {"url": url}

        queue = RequestQueue(fetch, RetryPolicy(max_attempts=3))
        urls = [f"u{i}" for i in range(5)]
        results = await asyncio.gather(*(queue.submit(u) for u in urls))
        await queue.close()

        assert [r["url"] for r in results] == urls
        assert order == urls
        assert peak == 1

    @pytest.mark.asyncio
    async def test_rate_limit_pauses_whole_queue(self):
        events = []
        first = {"done": False}

        async def fetch(url):
            events.append(("fetch", url))
            if url == "a" and not first["done"]:
                first["done"] = True
                raise RateLimited(url, 2)
            return url

        async def sleep(delay):
            events.append(("sleep", delay))

        queue = RequestQueue(fetch, RetryPolicy(max_attempts=3), sleep=sleep)
        results = await asyncio.gather(queue.submit("a"), queue.submit("b"))
        await queue.close()

        assert results == ["a", "b"]
        assert events == [("fetch", "a"), ("sleep", 2), ("fetch", "a"), ("fetch", "b")]
        assert queue.stats.rate_limited == 1

    @pytest.mark.asyncio
    async def test_rate_limit_waits_real_retry_after(self):
        loop = asyncio.get_running_loop()
        stamps = []

        async def fetch(url):
            stamps.append((url, loop.time()))
            if len(stamps) == 1:
                raise RateLimited(url, 2)
            return url

        queue = RequestQueue(fetch, RetryPolicy(max_attempts=3))
        results = await asyncio.gather(queue.submit("a"), queue.submit("b"))
        await queue.close()

        assert results == ["a", "b"]
        assert [u for u, _ in stamps] == ["a", "a", "b"]
        assert stamps[1][1] - stamps[0][1] >= 1.99

    @pytest.mark.asyncio
    async def test_default_wait_when_header_missing(self):
        delays = []
        fetch = FakeUpstream(RateLimited("u", None), {"ok": True})

        async def sleep(delay):
            delays.append(delay)

        queue = RequestQueue(fetch, RetryPolicy(max_attempts=3, default_retry_after=10), sleep=sleep)
        assert await queue.submit("u") == {"ok": True}
        await queue.close()
        assert delays == [10]

    @pytest.mark.asyncio
    async def test_three_rate_limits_exhaust(self):
        errors = [RateLimited("u", 0) for _ in range(3)]
        fetch = FakeUpstream(*errors, {"never": True})
        queue = RequestQueue(fetch, RetryPolicy(max_attempts=3), sleep=AsyncMock())

        with pytest.raises(RetriesExhausted) as info:
            await queue.submit("u")
        await queue.close()

        assert len(fetch.calls) == 3
        assert info.value.last_error is errors[2]

    @pytest.mark.asyncio
    async def test_final_rate_limit_still_pauses_queue(self):
        events = []

        async def fetch(url):
            events.append(("fetch", url))
            if url == "a":
                raise RateLimited(url, 4)
            return url

        async def sleep(delay):
            events.append(("sleep", delay))

        queue = RequestQueue(fetch, RetryPolicy(max_attempts=3), sleep=sleep)
        results = await asyncio.gather(queue.submit("a"), queue.submit("b"), return_exceptions=True)
        await queue.close()

        assert isinstance(results[0], RetriesExhausted)
        assert results[1] == "b"
        assert events == [
            ("fetch", "a"), ("sleep", 4),
            ("fetch", "a"), ("sleep", 4),
            ("fetch", "a"), ("sleep", 4),
            ("fetch", "b"),
        ]

    @pytest.mark.asyncio
    async def test_next_task_waits_retry_after_following_final_429(self):
        loop = asyncio.get_running_loop()
        stamps = []

        async def fetch(url):
            stamps.append((url, loop.time()))
            if url == "a":
                raise RateLimited(url, 0.5)
            return url

        queue = RequestQueue(fetch, RetryPolicy(max_attempts=3))
        results = await asyncio.gather(queue.submit("a"), queue.submit("b"), return_exceptions=True)
        await queue.close()

        assert isinstance(results[0], RetriesExhausted)
        assert [u for u, _ in stamps] == ["a", "a", "a", "b"]
        assert stamps[3][1] - stamps[2][1] >= 0.49

    @pytest.mark.asyncio
    async def test_caller_gets_error_from_third_attempt(self):
        errors = [UpstreamUnavailable(f"attempt {i}") for i in (1, 2, 3)]
        fetch = FakeUpstream(*errors)
        policy = RetryPolicy(
            max_attempts=3,
            retryable=lambda exc: isinstance(exc, UpstreamUnavailable),
            delay=lambda exc: 0,
        )
        queue = RequestQueue(fetch, policy, sleep=AsyncMock())

        with pytest.raises(RetriesExhausted) as info:
            await queue.submit("u")
        await queue.close()

        assert info.value.last_error is errors[2]
        assert "attempt 3" in str(info.value)

    @pytest.mark.asyncio
    async def test_non_rate_limit_error_fails_immediately(self):
        fetch = FakeUpstream(UpstreamUnavailable("500"), {"ok": True})
        queue = RequestQueue(fetch, RetryPolicy(max_attempts=3), sleep=AsyncMock())

        with pytest.raises(UpstreamUnavailable):
            await queue.submit("u")
        await queue.close()

        assert len(fetch.calls) == 1
        assert queue.stats.failed == 1

    @pytest.mark.asyncio
    async def test_failure_does_not_stop_worker(self):
        fetch = FakeUpstream(EmptyResponse("u"), {"ok": True})
        queue = RequestQueue(fetch, RetryPolicy(max_attempts=3))

        with pytest.raises(EmptyResponse):
            await queue.submit("a")
        assert await queue.submit("b") == {"ok": True}
        await queue.close()

    @pytest.mark.asyncio
    async def test_close_fails_pending_tasks(self):
        gate = asyncio.Event()

        async def fetch(url):
            await gate.wait()
            return url

        queue = RequestQueue(fetch, RetryPolicy(max_attempts=3))
        first = asyncio.create_task(queue.submit("a"))
        second = asyncio.create_task(queue.submit("b"))
        await asyncio.sleep(0.01)
        await queue.close()

        for task in (first, second):
            with pytest.raises(UpstreamUnavailable):
                await task
        assert not queue.running


# ─────────────────────────────────────────────────────────
# 4. L1 内存缓存测试
# ─────────────────────────────────────────────────────────

class TestMemoryCache:
    def test_miss_on_absent_key(self):
        cache = MemoryCache(default_ttl=30, clock=FakeClock())
        assert cache.get("missing") == (False, None)

    def test_hit_before_expiry(self):
        clock = FakeClock()
        cache = MemoryCache(default_ttl=30, clock=clock)
        cache.set("k", {"v": 1})
        clock.now = 29.9
        assert cache.get("k") == (True, {"v": 1})

    def test_expired_entry_is_deleted_on_read(self):
        clock = FakeClock()
        cache = MemoryCache(default_ttl=30, clock=clock)
        cache.set("k", 1)
        clock.now = 30
        assert cache.get("k") == (False, None)
        assert "k" not in cache

    def test_falsy_values_are_hits(self):
        cache = MemoryCache(default_ttl=30, clock=FakeClock())
        cache.set("zero", 0)
        assert cache.get("zero") == (True, 0)

    def test_set_overwrites_and_resets_expiry(self):
        clock = FakeClock()
        cache = MemoryCache(default_ttl=30, clock=clock)
        cache.set("k", 1)
        clock.now = 20
        cache.set("k", 2)
        clock.now = 45
        assert cache.get("k") == (True, 2)

    def test_sweep_purges_without_reads(self):
        clock = FakeClock()
        cache = MemoryCache(default_ttl=30, clock=clock)
        cache.set("old", 1, ttl=10)
        cache.set("fresh", 2, ttl=600)
        clock.now = 300
        assert cache.sweep() == 1
        assert "old" not in cache
        assert "fresh" in cache

    @pytest.mark.asyncio
    async def test_background_sweeper(self):
        cache = MemoryCache(default_ttl=30)
        cache.set("k", 1, ttl=0.001)
        sweeper = CacheSweeper(cache, interval=0.01)
        sweeper.start()
        assert sweeper.running
        await asyncio.sleep(0.05)
        assert "k" not in cache
        await sweeper.stop()
        assert not sweeper.running


# ─────────────────────────────────────────────────────────
# 5. fetch_with_cache 编排测试
# ─────────────────────────────────────────────────────────

class TestFetchWithCache:
    @pytest.mark.asyncio
    async def test_rapid_calls_hit_upstream_once(self):
        fetch = FakeUpstream([{"id": "bitcoin"}])
        svc = _build_service(fetch)
        first = await svc.fetch_with_cache("/coins/markets", "crypto-markets", 300)
        second = await svc.fetch_with_cache("/coins/markets", "crypto-markets", 300)
        await svc.close()

        assert first == second == [{"id": "bitcoin"}]
        assert len(fetch.calls) == 1

    @pytest.mark.asyncio
    async def test_l2_hit_skips_upstream_and_fills_l1(self):
        redis = FakeRedis()
        redis.store["coin-info-bitcoin"] = (json.dumps({"name": "Bitcoin"}), 3600)
        fetch = FakeUpstream()
        svc = _build_service(fetch, redis=redis)

        data = await svc.fetch_with_cache("/coins/bitcoin", "coin-info-bitcoin", 3600)
        await svc.close()

        assert data == {"name": "Bitcoin"}
        assert fetch.calls == []
        assert svc.memory.get("coin-info-bitcoin") == (True, {"name": "Bitcoin"})

    @pytest.mark.asyncio
    async def test_miss_stores_l2_with_caller_ttl(self):
        redis = FakeRedis()
        fetch = FakeUpstream({"prices": [[1, 2.0]]})
        svc = _build_service(fetch, redis=redis)

        await svc.fetch_with_cache("/coins/bitcoin/market_chart?days=1", "chart-bitcoin-1", 300)
        await svc.close()

        key, ttl, value = redis.setex_calls[0]
        assert key == "chart-bitcoin-1"
        assert ttl == 300
        assert json.loads(value) == {"prices": [[1, 2.0]]}
        assert fetch.calls == ["https://api.coingecko.com/api/v3/coins/bitcoin/market_chart?days=1"]
        assert "chart-bitcoin-1" in svc.memory

    @pytest.mark.asyncio
    async def test_l2_get_failure_falls_back_to_upstream(self):
        redis = FakeRedis()
        redis.fail_get = True
        fetch = FakeUpstream([{"id": "eth"}])
        svc = _build_service(fetch, redis=redis)

        assert await svc.fetch_with_cache("/coins/markets", "k", 60) == [{"id": "eth"}]
        await svc.close()
        assert len(fetch.calls) == 1

    @pytest.mark.asyncio
    async def test_l2_set_failure_is_not_fatal(self):
        redis = FakeRedis()
        redis.fail_set = True
        fetch = FakeUpstream([{"id": "eth"}])
        svc = _build_service(fetch, redis=redis)

        assert await svc.fetch_with_cache("/coins/markets", "k", 60) == [{"id": "eth"}]
        await svc.close()
        assert "k" in svc.memory

    @pytest.mark.asyncio
    async def test_corrupt_l2_payload_treated_as_miss(self):
        redis = FakeRedis()
        redis.store["k"] = ("{not json", 3600)
        fetch = FakeUpstream({"ok": True})
        svc = _build_service(fetch, redis=redis)

        assert await svc.fetch_with_cache("/ping", "k", 60) == {"ok": True}
        await svc.close()
        assert len(fetch.calls) == 1

    @pytest.mark.asyncio
    async def test_works_without_redis(self):
        fetch = FakeUpstream({"ok": True})
        upstream = MagicMock()
        upstream.aclose = AsyncMock()
        svc = CachedFetchService(
            upstream=upstream,
            memory=MemoryCache(default_ttl=30, clock=FakeClock()),
            l2=RedisCache(lambda: None),
            queue=RequestQueue(fetch),
        )
        assert await svc.fetch_with_cache("/ping", "k", 60) == {"ok": True}
        assert await svc.fetch_with_cache("/ping", "k", 60) == {"ok": True}
        await svc.close()
        assert len(fetch.calls) == 1

    @pytest.mark.asyncio
    async def test_upstream_failure_propagates_and_is_not_cached(self):
        redis = FakeRedis()
        fetch = FakeUpstream(UpstreamUnavailable("503"))
        svc = _build_service(fetch, redis=redis)

        with pytest.raises(UpstreamUnavailable):
            await svc.fetch_with_cache("/coins/markets", "k", 60)
        await svc.close()

        assert "k" not in svc.memory
        assert redis.store == {}

    @pytest.mark.asyncio
    async def test_concurrent_misses_are_coalesced(self):
        fetch = FakeUpstream({"ok": True}, delay=0.02)
        svc = _build_service(fetch)

        results = await asyncio.gather(
            *(svc.fetch_with_cache("/coins/markets", "same", 60) for _ in range(5))
        )
        await svc.close()

        assert results == [{"ok": True}] * 5
        assert len(fetch.calls) == 1
        assert svc._inflight == {}

    @pytest.mark.asyncio
    async def test_without_coalescing_each_miss_enqueues(self):
        fetch = FakeUpstream({"ok": True}, delay=0.01)
        svc = _build_service(fetch, coalesce=False)

        await asyncio.gather(
            *(svc.fetch_with_cache("/coins/markets", "same", 60) for _ in range(3))
        )
        await svc.close()

        assert len(fetch.calls) == 3

    @pytest.mark.asyncio
    async def test_coalesced_failure_reaches_every_waiter(self):
        fetch = FakeUpstream(UpstreamUnavailable("down"), delay=0.01)
        svc = _build_service(fetch)

        results = await asyncio.gather(
            *(svc.fetch_with_cache("/x", "same", 60) for _ in range(3)),
            return_exceptions=True,
        )
        await svc.close()

        assert all(isinstance(r, UpstreamUnavailable) for r in results)
        assert len(fetch.calls) == 1

    @pytest.mark.asyncio
    async def test_distinct_keys_fetch_separately(self):
        fetch = FakeUpstream({"ok": True})
        svc = _build_service(fetch)
        await svc.fetch_with_cache("/a", "key-a", 60)
        await svc.fetch_with_cache("/b", "key-b", 60)
        await svc.close()
        assert len(fetch.calls) == 2

    @pytest.mark.asyncio
    async def test_markets_scenario_across_tiers(self):
        clock = FakeClock()
        redis = FakeRedis(clock)
        fetch = FakeUpstream([{"id": "bitcoin"}])
        svc = _build_service(fetch, clock=clock, redis=redis)
        endpoint = "/coins/markets?vs_currency=usd"

        await svc.fetch_with_cache(endpoint, "crypto-markets", 300)
        assert len(fetch.calls) == 1
        assert redis.setex_calls[0][1] == 300

        clock.now = 10
        redis_reads = redis.get_calls
        await svc.fetch_with_cache(endpoint, "crypto-markets", 300)
        assert redis.get_calls == redis_reads
        assert len(fetch.calls) == 1

        clock.now = 40
        await svc.fetch_with_cache(endpoint, "crypto-markets", 300)
        assert redis.get_calls == redis_reads + 1
        assert len(fetch.calls) == 1
        assert svc.memory.get("crypto-markets")[0] is True
        await svc.close()

    @pytest.mark.asyncio
    async def test_invalidate_clears_both_tiers(self):
        redis = FakeRedis()
        fetch = FakeUpstream({"ok": True})
        svc = _build_service(fetch, redis=redis)
        await svc.fetch_with_cache("/x", "k", 60)

        await svc.invalidate("k")
        await svc.close()

        assert "k" not in svc.memory
        assert "k" not in redis.store

    @pytest.mark.asyncio
    async def test_stats_and_lifecycle(self):
        svc = _build_service(FakeUpstream({"ok": True}))
        await svc.start()
        assert svc.queue.running
        assert svc.sweeper.running

        await svc.fetch_with_cache("/x", "k", 60)
        stats = await svc.stats()
        assert stats["memory"]["entries"] == 1
        assert stats["redis"] == {"keys": 1, "status": "healthy"}
        assert stats["queue"]["succeeded"] == 1
        assert stats["inflight"] == 0

        await svc.close()
        assert not svc.queue.running
        assert not svc.sweeper.running
        svc.upstream.aclose.assert_awaited_once()

    def test_injected_components_are_kept(self):
        memory = MemoryCache(default_ttl=30, clock=FakeClock())
        l2 = RedisCache(lambda: None)
        queue = RequestQueue(FakeUpstream())
        sweeper = CacheSweeper(memory, interval=1)
        upstream = MagicMock()
        assert len(memory) == 0

        svc = CachedFetchService(
            upstream=upstream, memory=memory, l2=l2, queue=queue, sweeper=sweeper,
        )
        assert svc.upstream is upstream
        assert svc.memory is memory
        assert svc.l2 is l2
        assert svc.queue is queue
        assert svc.sweeper is sweeper

    def test_resolve_url(self):
        svc = _build_service(FakeUpstream())
        assert svc.resolve_url("/coins/bitcoin") == "https://api.coingecko.com/api/v3/coins/bitcoin"
        assert svc.resolve_url("coins/bitcoin") == "https://api.coingecko.com/api/v3/coins/bitcoin"
        assert svc.resolve_url("https://other.test/x") == "https://other.test/x"

    @pytest.mark.asyncio
    async def test_module_entry_point_uses_singleton(self):
        from gecko_service.services import fetch_service
        svc = _build_service(FakeUpstream({"ok": True}))
        with patch.object(fetch_service, "_fetch_service", svc):
            assert fetch_service.get_fetch_service() is svc
            assert await fetch_service.fetch_with_cache("/x", "k", 60) == {"ok": True}
        await svc.close()
