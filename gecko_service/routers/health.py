"""健康检查路由"""

import time

from fastapi import APIRouter

from gecko_service import __version__
from gecko_service.db import check_health
from gecko_service.services.fetch_service import get_fetch_service

router = APIRouter(tags=["健康检查"])


@router.get("/health")
async def health():
    """服务健康检查（含 Redis 状态与请求队列状态）"""
    db_health = await check_health()
    queue = get_fetch_service().queue
    return {
        "success": True,
        "data": {
            "status": "ok",
            "version": __version__,
            "timestamp": int(time.time()),
            "service": "ChainXchange GeckoService",
            "databases": db_health,
            "queue": {"running": queue.running, "pending": queue.pending, "state": queue.state},
        },
        "message": "服务运行正常",
    }


@router.get("/healthz")
async def healthz():
    """Kubernetes liveness probe"""
    return {"status": "ok"}


@router.get("/readyz")
async def readyz():
    """Kubernetes readiness probe：请求队列 worker 已启动"""
    return {"ready": get_fetch_service().queue.running}
