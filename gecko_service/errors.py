"""
错误类型定义

上游链路（UpstreamError 及其子类）的错误会一路抛给调用方；
缓存后端错误（CacheBackendError）只记录日志并按未命中处理。
"""

from typing import Optional


class GeckoServiceError(Exception):
    """服务内所有错误的基类"""


class UpstreamError(GeckoServiceError):
    """上游行情源请求失败"""


class EmptyResponse(UpstreamError):
    """上游返回空响应体（空数组 / null），视为失败且不缓存"""

    def __init__(self, url: str):
        super().__init__(f"Empty response from CoinGecko: {url}")
        self.url = url


class RateLimited(UpstreamError):
    """上游返回 HTTP 429，由请求队列内部等待并重试"""

    def __init__(self, url: str, retry_after: Optional[float] = None):
        super().__init__(f"Rate limited by CoinGecko (retry-after={retry_after}): {url}")
        self.url = url
        self.retry_after = retry_after


class UpstreamUnavailable(UpstreamError):
    """网络错误、超时或非 2xx 响应，立即失败不重试"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RetriesExhausted(UpstreamError):
    """达到最大尝试次数，携带最后一次的底层错误"""

    def __init__(self, last_error: Exception, attempts: int):
        super().__init__(f"Upstream request failed after {attempts} attempts: {last_error}")
        self.last_error = last_error
        self.attempts = attempts


class CacheBackendError(GeckoServiceError):
    """L2 缓存后端（Redis）读写失败"""
