"""
行情数据服务配置模块
支持从环境变量读取配置，自动检测 Docker 容器环境并启用服务发现
"""

import os
from functools import lru_cache
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _is_docker() -> bool:
    """检测当前是否运行在 Docker 容器内"""
    return (
        os.path.exists("/.dockerenv")
        or os.environ.get("DOCKER_CONTAINER", "").lower() in ("1", "true", "yes")
    )


def _default_redis_host() -> str:
    """Docker 环境使用服务名 'redis'，本地使用 'localhost'"""
    return "redis" if _is_docker() else "localhost"


class GeckoServiceSettings(BaseSettings):
    """行情数据服务配置"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── 基础配置 ──────────────────────────────────────────
    HOST: str = Field(default="0.0.0.0")
    PORT: int = Field(default=8002)
    DEBUG: bool = Field(default=False)
    ALLOWED_ORIGINS: List[str] = Field(
        default_factory=lambda: ["*"]
    )

    # ── Redis 配置（L2 共享缓存，支持服务发现） ─────────────
    REDIS_HOST: str = Field(default_factory=_default_redis_host)
    REDIS_PORT: int = Field(default=6379)
    REDIS_PASSWORD: str = Field(default="")
    REDIS_DB: int = Field(default=0)
    REDIS_ENABLED: bool = Field(default=True)
    REDIS_MAX_CONNECTIONS: int = Field(default=20)

    @property
    def REDIS_URL(self) -> str:
        if self.REDIS_PASSWORD:
            return f"redis://:{self.REDIS_PASSWORD}@{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    # ── 上游行情源配置 ─────────────────────────────────────
    COINGECKO_BASE_URL: str = Field(default="https://api.coingecko.com/api/v3")
    UPSTREAM_TIMEOUT: float = Field(default=30.0)        # 单次上游请求超时（秒）
    UPSTREAM_USER_AGENT: str = Field(default="ChainXchange/1.0")

    # ── 请求队列配置 ──────────────────────────────────────
    QUEUE_MAX_ATTEMPTS: int = Field(default=3)             # 每个任务最多尝试次数
    RATE_LIMIT_DEFAULT_RETRY_AFTER: float = Field(default=10.0)  # 429 无 retry-after 时等待秒数

    # ── 缓存配置 ──────────────────────────────────────────
    MEMORY_CACHE_TTL: float = Field(default=30.0)            # L1 内存缓存 TTL（秒）
    MEMORY_CACHE_SWEEP_INTERVAL: float = Field(default=300.0)  # L1 过期清理周期（秒）
    COALESCE_INFLIGHT: bool = Field(default=True)            # 合并同 key 的并发未命中请求

    MARKETS_CACHE_TTL: int = Field(default=300)          # 市场列表 TTL（秒）
    COIN_DETAIL_CACHE_TTL: int = Field(default=300)      # 币种详情 TTL
    COIN_INFO_CACHE_TTL: int = Field(default=3600)       # 币种基础信息 TTL
    CHART_CACHE_TTL: int = Field(default=300)            # 走势图 TTL
    PORTFOLIO_COINS_CACHE_TTL: int = Field(default=600)  # 持仓批量行情 TTL

    # 调用方对 fetch_with_cache 施加的外层超时（秒）
    REQUEST_TIMEOUT: float = Field(default=30.0)

    # ── 日志配置 ──────────────────────────────────────────
    LOG_LEVEL: str = Field(default="INFO")


@lru_cache
def get_settings() -> GeckoServiceSettings:
    """获取全局配置（单例）"""
    return GeckoServiceSettings()


settings = get_settings()
