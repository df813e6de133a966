"""
上游层 – CoinGecko HTTP 客户端
对给定 URL 发起一次 GET 请求并返回解析后的 JSON。
本层不做任何重试，重试与限流处理由请求队列负责。
"""

import logging
from typing import Any, Dict, Optional

import httpx

from gecko_service.config import settings
from gecko_service.errors import EmptyResponse, RateLimited, UpstreamUnavailable

logger = logging.getLogger(__name__)


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """解析 retry-after 头（秒），缺失或无法解析时返回 None"""
    if value is None:
        return None
    try:
        seconds = float(value.strip())
    except (TypeError, ValueError):
        return None
    return seconds if seconds >= 0 else None


class UpstreamClient:
    """CoinGecko 单次请求客户端"""

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
        user_agent: Optional[str] = None,
    ):
        self._timeout = timeout if timeout is not None else settings.UPSTREAM_TIMEOUT
        self._user_agent = user_agent or settings.UPSTREAM_USER_AGENT
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=httpx.Timeout(self._timeout))

    def _headers(self) -> Dict[str, str]:
        return {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "User-Agent": self._user_agent,
        }

    async def get_json(self, url: str) -> Any:
        """GET 一次并返回 JSON；空响应、429、网络错误与非 2xx 均抛出对应异常"""
        try:
            response = await self._http.get(url, headers=self._headers(), timeout=self._timeout)
        except httpx.TimeoutException as exc:
            raise UpstreamUnavailable(f"CoinGecko request timed out: {url}") from exc
        except httpx.HTTPError as exc:
            raise UpstreamUnavailable(f"CoinGecko request failed: {exc}") from exc

        if response.status_code == 429:
            raise RateLimited(url, parse_retry_after(response.headers.get("retry-after")))
        if response.status_code >= 400:
            raise UpstreamUnavailable(
                f"CoinGecko API error {response.status_code}: {url}",
                status_code=response.status_code,
            )

        if not response.content:
            raise EmptyResponse(url)
        try:
            data = response.json()
        except ValueError as exc:
            raise UpstreamUnavailable(f"CoinGecko returned invalid JSON: {url}") from exc

        if data is None or (isinstance(data, list) and not data):
            raise EmptyResponse(url)
        return data

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()
