"""
缓存管理路由
GET  /api/cache/stats     - 缓存与请求队列统计
POST /api/cache/clear     - 从 L1 / L2 删除指定缓存键
"""

from typing import List, Optional

from fastapi import APIRouter
from pydantic import BaseModel

from gecko_service.layers.cache import make_key
from gecko_service.models.response import ApiResponse
from gecko_service.services.fetch_service import get_fetch_service

router = APIRouter(prefix="/api/cache", tags=["缓存管理"])


class ClearRequest(BaseModel):
    namespace: str
    key_parts: Optional[List[str]] = None


@router.get("/stats", response_model=ApiResponse)
async def cache_stats():
    """获取 L1 条目数、L2 键数量、队列计数与进行中请求数"""
    stats = await get_fetch_service().stats()
    return ApiResponse.ok(data=stats)


@router.post("/clear", response_model=ApiResponse)
async def clear_cache(body: ClearRequest):
    """清理指定缓存键（namespace 与 key_parts 以 '-' 连接）"""
    key = make_key(body.namespace, *(body.key_parts or []))
    await get_fetch_service().invalidate(key)
    return ApiResponse.ok(data={"key": key}, message=f"缓存已清理: {key}")
