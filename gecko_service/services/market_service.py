"""
行情业务服务
构造 CoinGecko 请求与缓存键，经 fetch_with_cache 获取数据；
上游失败或超时时返回兜底数据，保证前端页面始终可渲染。
"""

import asyncio
import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from gecko_service.config import settings
from gecko_service.layers.cache import join_ids, make_key
from gecko_service.layers.processing import get_processing_layer
from gecko_service.services.fetch_service import CachedFetchService, get_fetch_service

logger = logging.getLogger(__name__)

_MARKETS_ENDPOINT = (
    "/coins/markets?vs_currency=usd&order=market_cap_desc"
    "&per_page=100&page=1&sparkline=false&locale=en"
)
_DETAIL_QUERY = "localization=false&tickers=false&community_data=false&developer_data=false"

# 时间范围 → market_chart 查询参数
TIMEFRAMES: Dict[str, Dict[str, str]] = {
    "1h": {"days": "1", "interval": "minute"},
    "24h": {"days": "1"},
    "7d": {"days": "7"},
    "1m": {"days": "30"},
    "3m": {"days": "90"},
    "1y": {"days": "365"},
    "all": {"days": "max"},
}

# 自定义天数：纯数字，可带 d 后缀
_DAYS_PATTERN = re.compile(r"^(\d{1,5})d?$")
_DEFAULT_CHART_DAYS = "7"

# 常见币种参考价，仅用于生成兜底数据
_BASE_PRICES: Dict[str, float] = {
    "bitcoin": 65000,
    "ethereum": 3500,
    "binancecoin": 600,
    "ripple": 0.6,
    "cardano": 0.5,
    "solana": 150,
    "dogecoin": 0.1,
    "matic-network": 1.2,
    "avalanche-2": 35,
    "chainlink": 12,
    "litecoin": 85,
    "bitcoin-cash": 140,
    "stellar": 0.12,
    "vechain": 0.03,
    "filecoin": 6,
    "tron": 0.08,
    "ethereum-classic": 22,
    "monero": 160,
    "algorand": 0.2,
    "cosmos": 8,
}

_FALLBACK_MARKETS: List[Dict[str, Any]] = [
    {"id": "bitcoin", "symbol": "btc", "name": "Bitcoin", "current_price": 45000},
    {"id": "ethereum", "symbol": "eth", "name": "Ethereum", "current_price": 3000},
]

_DEFAULT_IMAGE = "/images/default-coin.svg"


def base_price_for(coin_id: str) -> float:
    return _BASE_PRICES.get(coin_id, 100)


def resolve_timeframe(timeframe: Optional[str]) -> Dict[str, str]:
    """
    时间范围 → market_chart 查询参数

    只接受预定义名称、正整数天数（如 14 或 14d）与 max，其余一律按 7 天处理，
    用户输入不会原样进入上游 URL 或缓存键。
    """
    tf = (timeframe or "24h").strip().lower()
    if tf in TIMEFRAMES:
        return dict(TIMEFRAMES[tf])
    if tf == "max":
        return {"days": "max"}
    match = _DAYS_PATTERN.match(tf)
    if match and int(match.group(1)) > 0:
        return {"days": str(int(match.group(1)))}
    return {"days": _DEFAULT_CHART_DAYS}


def chart_key(coin_id: str, selected: Dict[str, str]) -> str:
    """走势缓存键由解析后的参数构成，等价的时间范围共用同一个键"""
    parts = [selected["days"]]
    if selected.get("interval"):
        parts.append(selected["interval"])
    return make_key("chart", coin_id, *parts)


def _usd(section: Optional[Dict[str, Any]]) -> Any:
    return (section or {}).get("usd")


class MarketService:
    """行情数据业务服务"""

    def __init__(self, fetcher: Optional[CachedFetchService] = None):
        self._fetcher = fetcher
        self._proc = get_processing_layer()

    @property
    def fetcher(self) -> CachedFetchService:
        return self._fetcher or get_fetch_service()

    async def _fetch(self, endpoint: str, cache_key: str, ttl: int) -> Any:
        """fetch_with_cache 外加整体超时"""
        return await asyncio.wait_for(
            self.fetcher.fetch_with_cache(endpoint, cache_key, ttl),
            timeout=settings.REQUEST_TIMEOUT,
        )

    # ── 市场列表 ──────────────────────────────────────────

    async def get_markets(self) -> Dict[str, Any]:
        """市值前 100 的币种列表"""
        try:
            coins = await self._fetch(_MARKETS_ENDPOINT, "crypto-markets", settings.MARKETS_CACHE_TTL)
            return {"coins": coins, "is_fallback": False}
        except Exception as exc:
            logger.error(f"市场列表获取失败，使用兜底数据: {exc!r}")
            return {"coins": list(_FALLBACK_MARKETS), "is_fallback": True}

    # ── 币种信息 ──────────────────────────────────────────

    async def get_coin_info(self, coin_id: str) -> Dict[str, Any]:
        """币种名称 / 符号 / 图标，供交易记录使用"""
        try:
            info = await self._fetch(
                f"/coins/{coin_id}",
                make_key("coin-info", coin_id),
                settings.COIN_INFO_CACHE_TTL,
            )
        except Exception as exc:
            logger.warning(f"币种信息获取失败（{coin_id}），使用默认值: {exc!r}")
            info = {}

        image = info.get("image") or {}
        return {
            "id": coin_id,
            "name": info.get("name") or coin_id[:1].upper() + coin_id[1:],
            "symbol": (info.get("symbol") or coin_id[:4]).upper(),
            "image": image.get("large") or image.get("small") or _DEFAULT_IMAGE,
        }

    async def get_coin_detail(self, coin_id: str) -> Dict[str, Any]:
        """币种详情 + 近 24 小时走势"""
        try:
            coin, chart = await asyncio.gather(
                self._fetch(
                    f"/coins/{coin_id}?{_DETAIL_QUERY}",
                    make_key("coin-detail", coin_id),
                    settings.COIN_DETAIL_CACHE_TTL,
                ),
                self._fetch(
                    f"/coins/{coin_id}/market_chart?vs_currency=usd&days=1",
                    chart_key(coin_id, TIMEFRAMES["24h"]),
                    settings.CHART_CACHE_TTL,
                ),
            )
        except Exception as exc:
            logger.error(f"币种详情获取失败（{coin_id}），使用兜底数据: {exc!r}")
            return self._fallback_detail(coin_id)

        market = coin.get("market_data") or {}
        return {
            "coin": {
                "id": coin.get("id"),
                "name": coin.get("name"),
                "symbol": (coin.get("symbol") or "").upper(),
                "image": (coin.get("image") or {}).get("large"),
                "current_price": _usd(market.get("current_price")),
                "price_change_24h": market.get("price_change_24h"),
                "price_change_percentage_24h": market.get("price_change_percentage_24h"),
                "market_cap": _usd(market.get("market_cap")),
                "market_cap_rank": coin.get("market_cap_rank"),
                "total_volume": _usd(market.get("total_volume")),
                "high_24h": _usd(market.get("high_24h")),
                "low_24h": _usd(market.get("low_24h")),
                "ath": _usd(market.get("ath")),
                "ath_date": _usd(market.get("ath_date")),
                "atl": _usd(market.get("atl")),
                "atl_date": _usd(market.get("atl_date")),
                "circulating_supply": market.get("circulating_supply"),
                "total_supply": market.get("total_supply"),
                "max_supply": market.get("max_supply"),
                "description": (coin.get("description") or {}).get("en"),
                "genesis_date": coin.get("genesis_date"),
            },
            "chart_data": (chart or {}).get("prices") or [],
            "is_fallback": False,
        }

    def _fallback_detail(self, coin_id: str) -> Dict[str, Any]:
        base = base_price_for(coin_id)
        now = datetime.now(tz=timezone.utc).isoformat()
        return {
            "coin": {
                "id": coin_id,
                "name": coin_id[:1].upper() + coin_id[1:],
                "symbol": coin_id[:4].upper(),
                "image": _DEFAULT_IMAGE,
                "current_price": base,
                "price_change_24h": base * 0.025,
                "price_change_percentage_24h": 2.5,
                "market_cap": base * 1_000_000,
                "market_cap_rank": 1,
                "total_volume": base * 50_000,
                "high_24h": base * 1.05,
                "low_24h": base * 0.95,
                "ath": base * 1.2,
                "ath_date": now,
                "atl": base * 0.8,
                "atl_date": now,
                "circulating_supply": 1_000_000,
                "total_supply": 1_000_000,
                "max_supply": 1_000_000,
                "description": "No description available.",
                "genesis_date": None,
            },
            "chart_data": self._proc.mock_series(base, "1")["prices"],
            "is_fallback": True,
        }

    # ── 走势图 ────────────────────────────────────────────

    async def get_chart(self, coin_id: str, timeframe: str = "24h") -> Dict[str, Any]:
        """指定时间范围的价格走势；无法识别的时间范围按 7 天处理"""
        timeframe = (timeframe or "24h").strip().lower()
        selected = resolve_timeframe(timeframe)
        query = f"vs_currency=usd&days={selected['days']}"
        if selected.get("interval"):
            query += f"&interval={selected['interval']}"

        try:
            chart = await self._fetch(
                f"/coins/{coin_id}/market_chart?{query}",
                chart_key(coin_id, selected),
                settings.CHART_CACHE_TTL,
            )
            if not isinstance(chart, dict) or not isinstance(chart.get("prices"), list):
                raise ValueError("Invalid chart data structure")
            is_fallback = False
        except Exception as exc:
            logger.error(f"走势数据获取失败（{coin_id} {timeframe}），使用模拟数据: {exc!r}")
            chart = self._proc.mock_series(base_price_for(coin_id), selected["days"])
            is_fallback = True

        df = self._proc.normalize_prices(chart["prices"])
        return {
            "coin_id": coin_id,
            "timeframe": timeframe,
            "prices": self._proc.to_pairs(df),
            "summary": self._proc.summarize(df),
            "is_fallback": is_fallback,
        }

    # ── 批量行情 ──────────────────────────────────────────

    async def get_coins_by_ids(self, coin_ids: Iterable[str]) -> List[Dict[str, Any]]:
        """按 ID 批量获取行情（持仓估值使用），ID 排序后构造缓存键"""
        ids = join_ids(coin_ids)
        if not ids:
            return []
        try:
            return await self._fetch(
                f"/coins/markets?ids={ids}&vs_currency=usd&order=market_cap_desc&per_page=250&page=1",
                make_key("portfolio-coins", ids),
                settings.PORTFOLIO_COINS_CACHE_TTL,
            )
        except Exception as exc:
            logger.error(f"批量行情获取失败（{ids}）: {exc!r}")
            return []


# ── 模块级别单例 ──────────────────────────────────────────
_market_service: Optional[MarketService] = None


def get_market_service() -> MarketService:
    global _market_service
    if _market_service is None:
        _market_service = MarketService()
    return _market_service
