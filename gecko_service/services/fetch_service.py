"""
带缓存的上游数据获取服务
按 L1 内存 → L2 Redis → 串行请求队列 的顺序获取数据，
取到后依次回填 L2 与 L1，是其他业务模块访问 CoinGecko 的唯一入口。
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from gecko_service.config import settings
from gecko_service.errors import CacheBackendError
from gecko_service.layers.cache import RedisCache
from gecko_service.layers.memory import CacheSweeper, MemoryCache
from gecko_service.layers.queue import RequestQueue
from gecko_service.layers.upstream import UpstreamClient

logger = logging.getLogger(__name__)


class CachedFetchService:
    """两级缓存 + 串行队列的组合服务，持有 L1、队列与清理任务的生命周期"""

    def __init__(
        self,
        upstream: Optional[UpstreamClient] = None,
        memory: Optional[MemoryCache] = None,
        l2: Optional[RedisCache] = None,
        queue: Optional[RequestQueue] = None,
        sweeper: Optional[CacheSweeper] = None,
        coalesce: Optional[bool] = None,
        base_url: Optional[str] = None,
    ):
        self.upstream = upstream if upstream is not None else UpstreamClient()
        self.memory = memory if memory is not None else MemoryCache()
        self.l2 = l2 if l2 is not None else RedisCache()
        self.queue = queue if queue is not None else RequestQueue(self.upstream.get_json)
        self.sweeper = sweeper if sweeper is not None else CacheSweeper(self.memory)
        self.coalesce = settings.COALESCE_INFLIGHT if coalesce is None else coalesce
        self.base_url = (base_url or settings.COINGECKO_BASE_URL).rstrip("/")
        self._inflight: Dict[str, asyncio.Future] = {}

    # ── 生命周期 ──────────────────────────────────────────

    async def start(self) -> None:
        self.queue.start()
        self.sweeper.start()

    async def close(self) -> None:
        await self.sweeper.stop()
        await self.queue.close()
        await self.upstream.aclose()

    # ── 对外接口 ──────────────────────────────────────────

    def resolve_url(self, endpoint: str) -> str:
        """相对路径拼接到 CoinGecko 基础地址，完整 URL 原样返回"""
        if endpoint.startswith(("http://", "https://")):
            return endpoint
        return f"{self.base_url}/{endpoint.lstrip('/')}"

    async def fetch_with_cache(self, endpoint: str, cache_key: str, ttl_seconds: int) -> Any:
        """
        获取数据（带两级缓存）

        Args:
            endpoint: 上游接口 URL 或相对路径
            cache_key: 调用方构造的缓存键，需包含所有区分查询的参数
            ttl_seconds: L2 缓存 TTL（秒）

        Raises:
            UpstreamError: 两级缓存均未命中且上游请求最终失败
        """
        # 1. L1 内存缓存
        hit, data = self.memory.get(cache_key)
        if hit:
            logger.debug(f"缓存命中（L1）: {cache_key}")
            return data

        # 2. L2 Redis 缓存，后端异常按未命中处理
        try:
            cached = await self.l2.get(cache_key)
        except CacheBackendError as exc:
            logger.error(f"L2 缓存读取失败，直接请求上游: {exc}")
            cached = None
        if cached is not None:
            logger.debug(f"缓存命中（L2）: {cache_key}")
            self.memory.set(cache_key, cached)
            return cached

        # 3. 两级均未命中，经请求队列获取
        if not self.coalesce:
            return await self._fetch_and_store(endpoint, cache_key, ttl_seconds)

        inflight = self._inflight.get(cache_key)
        if inflight is None:
            # 等待 L2 期间同 key 的请求可能已完成并回填 L1
            hit, data = self.memory.get(cache_key)
            if hit:
                return data
            inflight = asyncio.ensure_future(
                self._fetch_and_store(endpoint, cache_key, ttl_seconds)
            )
            self._inflight[cache_key] = inflight
            inflight.add_done_callback(lambda fut: self._forget(cache_key, fut))
        else:
            logger.debug(f"合并进行中的请求: {cache_key}")
        return await asyncio.shield(inflight)

    async def _fetch_and_store(self, endpoint: str, cache_key: str, ttl_seconds: int) -> Any:
        logger.debug(f"缓存未命中，请求上游: {cache_key}")
        data = await self.queue.submit(self.resolve_url(endpoint))

        try:
            await self.l2.set(cache_key, data, ttl_seconds)
        except CacheBackendError as exc:
            logger.error(f"L2 缓存写入失败: {exc}")

        self.memory.set(cache_key, data)
        return data

    def _forget(self, cache_key: str, fut: asyncio.Future) -> None:
        if self._inflight.get(cache_key) is fut:
            del self._inflight[cache_key]
        # 所有等待方都已超时离开时，避免异常未被读取的告警
        if not fut.cancelled():
            fut.exception()

    async def invalidate(self, cache_key: str) -> None:
        """同时从 L1 与 L2 删除指定键"""
        self.memory.delete(cache_key)
        try:
            await self.l2.delete(cache_key)
        except CacheBackendError as exc:
            logger.error(f"L2 缓存删除失败: {exc}")

    async def stats(self) -> Dict[str, Any]:
        return {
            "memory": {"entries": len(self.memory), "ttl": self.memory.default_ttl},
            "redis": await self.l2.stats(),
            "queue": {
                "pending": self.queue.pending,
                "state": self.queue.state,
                **self.queue.stats.as_dict(),
            },
            "inflight": len(self._inflight),
        }


# ── 模块级别单例 ──────────────────────────────────────────
_fetch_service: Optional[CachedFetchService] = None


def get_fetch_service() -> CachedFetchService:
    global _fetch_service
    if _fetch_service is None:
        _fetch_service = CachedFetchService()
    return _fetch_service


async def shutdown_fetch_service() -> None:
    global _fetch_service
    if _fetch_service is not None:
        await _fetch_service.close()
        _fetch_service = None


async def fetch_with_cache(endpoint: str, cache_key: str, ttl_seconds: int) -> Any:
    """模块级快捷入口，等价于 get_fetch_service().fetch_with_cache(...)"""
    return await get_fetch_service().fetch_with_cache(endpoint, cache_key, ttl_seconds)
