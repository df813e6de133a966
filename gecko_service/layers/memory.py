"""
L1 进程内存缓存
短 TTL，用于合并同一进程内短时间的重复请求；后台定期清理过期条目。
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

from gecko_service.config import settings

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    data: Any
    expiry: float


class MemoryCache:
    """进程内 key → {data, expiry} 映射"""

    def __init__(
        self,
        default_ttl: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.default_ttl = default_ttl if default_ttl is not None else settings.MEMORY_CACHE_TTL
        self._clock = clock
        self._store: Dict[str, CacheEntry] = {}

    def __len__(self) -> int:
        return len(self._store)

    def __contains__(self, key: str) -> bool:
        return key in self._store

    def get(self, key: str) -> Tuple[bool, Any]:
        """返回 (命中, 值)；已过期的条目在读取时删除"""
        entry = self._store.get(key)
        if entry is None:
            return False, None
        if self._clock() < entry.expiry:
            return True, entry.data
        del self._store[key]
        return False, None

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        ttl = self.default_ttl if ttl is None else ttl
        self._store[key] = CacheEntry(data=value, expiry=self._clock() + ttl)

    def delete(self, key: str) -> bool:
        return self._store.pop(key, None) is not None

    def sweep(self) -> int:
        """删除所有已过期条目，返回删除数量"""
        now = self._clock()
        expired = [k for k, entry in self._store.items() if now >= entry.expiry]
        for key in expired:
            del self._store[key]
        return len(expired)


class CacheSweeper:
    """周期性调用 MemoryCache.sweep 的后台任务，随服务生命周期启停"""

    def __init__(self, cache: MemoryCache, interval: Optional[float] = None):
        self._cache = cache
        self.interval = interval if interval is not None else settings.MEMORY_CACHE_SWEEP_INTERVAL
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="l1-cache-sweeper")

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            removed = self._cache.sweep()
            if removed:
                logger.debug(f"L1 缓存清理过期条目 {removed} 个，剩余 {len(self._cache)} 个")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
