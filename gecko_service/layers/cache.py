"""
L2 共享缓存层（Redis）
多进程/多实例共享，TTL 由调用方指定，值以 JSON 字符串存储。
连接不可用时抛出 CacheBackendError，由上层决定降级策略。
"""

import hashlib
import json
import logging
from typing import Any, Callable, Dict, Iterable, Optional

from redis.asyncio import Redis

from gecko_service.db import get_redis
from gecko_service.errors import CacheBackendError

logger = logging.getLogger(__name__)


def make_key(namespace: str, *parts: str) -> str:
    """生成规范化缓存键，超长时以 md5 压缩"""
    raw = "-".join([namespace] + [str(p) for p in parts])
    if len(raw) > 200:
        raw = namespace + "-" + hashlib.md5(raw.encode()).hexdigest()
    return raw


def join_ids(ids: Iterable[str]) -> str:
    """多个币种 ID 去重排序后以逗号连接，保证同一组 ID 生成同一个键"""
    return ",".join(sorted({i.strip().lower() for i in ids if i and i.strip()}))


class RedisCache:
    """L2 缓存：GET / SETEX 两个操作"""

    def __init__(self, redis_getter: Callable[[], Optional[Redis]] = get_redis):
        self._redis_getter = redis_getter

    async def get(self, key: str) -> Optional[Any]:
        """命中返回解析后的值，未命中或 Redis 未启用返回 None"""
        redis = self._redis_getter()
        if redis is None:
            return None
        try:
            raw = await redis.get(key)
        except Exception as exc:
            raise CacheBackendError(f"Redis GET 失败 {key}: {exc}") from exc
        if not raw:
            return None
        try:
            return json.loads(raw)
        except ValueError as exc:
            raise CacheBackendError(f"Redis 缓存内容无法解析 {key}: {exc}") from exc

    async def set(self, key: str, value: Any, ttl: int) -> None:
        redis = self._redis_getter()
        if redis is None:
            return
        serialized = json.dumps(value, ensure_ascii=False, default=str)
        try:
            await redis.setex(key, int(ttl), serialized)
        except Exception as exc:
            raise CacheBackendError(f"Redis SETEX 失败 {key}: {exc}") from exc
        logger.debug(f"缓存写入（Redis）: {key}")

    async def delete(self, key: str) -> None:
        redis = self._redis_getter()
        if redis is None:
            return
        try:
            await redis.delete(key)
        except Exception as exc:
            raise CacheBackendError(f"Redis DELETE 失败 {key}: {exc}") from exc

    async def stats(self) -> Dict[str, Any]:
        redis = self._redis_getter()
        if redis is None:
            return {"status": "disabled"}
        try:
            return {"keys": await redis.dbsize(), "status": "healthy"}
        except Exception as exc:
            return {"status": "error", "error": str(exc)}
