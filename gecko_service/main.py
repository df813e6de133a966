"""
ChainXchange 行情数据服务
独立 FastAPI 应用程序入口

启动方式:
    uvicorn gecko_service.main:app --host 0.0.0.0 --port 8002
    python -m gecko_service.main
"""

import logging
import time
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from gecko_service import __version__
from gecko_service.config import settings
from gecko_service.db import init_redis, close_connections
from gecko_service.errors import UpstreamError
from gecko_service.models.response import ApiResponse
from gecko_service.routers import health, crypto, cache
from gecko_service.services.fetch_service import get_fetch_service, shutdown_fetch_service

# ── 日志配置 ──────────────────────────────────────────────
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


# ── 生命周期管理 ──────────────────────────────────────────
@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用启动/关闭生命周期钩子"""
    logger.info("=" * 60)
    logger.info(f"🚀 ChainXchange GeckoService v{__version__} 启动中")
    logger.info(f"   Upstream  : {settings.COINGECKO_BASE_URL}")
    logger.info(f"   Redis     : {settings.REDIS_HOST}:{settings.REDIS_PORT}")
    logger.info(f"   L1 TTL    : {settings.MEMORY_CACHE_TTL}s")
    logger.info("=" * 60)

    # Redis 失败不阻断启动，降级为仅 L1 内存缓存
    redis_ok = await init_redis()
    if redis_ok:
        logger.info("✅ 两级缓存就绪（内存 + Redis）")
    else:
        logger.warning("⚠️ Redis 不可用，缓存降级为仅内存模式")

    await get_fetch_service().start()
    logger.info("✅ 请求队列与缓存清理任务已启动")

    yield

    logger.info("🔄 行情数据服务正在关闭...")
    await shutdown_fetch_service()
    await close_connections()
    logger.info("✅ 行情数据服务已关闭")


# ── 应用实例 ──────────────────────────────────────────────
app = FastAPI(
    title="ChainXchange 行情数据服务",
    description=(
        "CoinGecko 行情代理服务，提供以下功能：\n"
        "- 📊 市场列表 / 币种详情 / 走势图 / 批量行情\n"
        "- 🗄️ 两级缓存（进程内存 → Redis）\n"
        "- 🚦 串行请求队列，自动处理 429 限流\n\n"
        "**分层架构**\n"
        "```\n"
        "Upstream Layer   ← 单次 HTTP GET\n"
        "Queue Layer      ← 串行队列 + 限流重试\n"
        "Cache Layer      ← L1 内存 / L2 Redis\n"
        "Processing Layer ← 走势数据整理与兜底\n"
        "```"
    ),
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# ── CORS 中间件 ───────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── 请求计时中间件 ─────────────────────────────────────────
@app.middleware("http")
async def add_process_time(request: Request, call_next):
    start = time.time()
    response = await call_next(request)
    response.headers["X-Process-Time"] = f"{(time.time() - start) * 1000:.1f}ms"
    return response


# ── 全局异常处理 ──────────────────────────────────────────
@app.exception_handler(UpstreamError)
async def upstream_exception_handler(request: Request, exc: UpstreamError):
    logger.error(f"上游行情源不可用: {exc}")
    return JSONResponse(
        status_code=502,
        content=ApiResponse.fail(error="上游行情源不可用", message=str(exc)).model_dump(),
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"未处理的异常: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content=ApiResponse.fail(error="内部服务错误", message=str(exc)).model_dump(),
    )


# ── 注册路由 ──────────────────────────────────────────────
app.include_router(health.router)
app.include_router(crypto.router)
app.include_router(cache.router)


# ── 根路由 ───────────────────────────────────────────────
@app.get("/", include_in_schema=False)
async def root():
    return {
        "service": "ChainXchange GeckoService",
        "version": __version__,
        "docs": "/docs",
        "health": "/health",
    }


# ── 直接运行入口 ──────────────────────────────────────────
if __name__ == "__main__":
    uvicorn.run(
        "gecko_service.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower(),
    )
