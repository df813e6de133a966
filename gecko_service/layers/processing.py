"""
处理层 – 走势图数据整理
CoinGecko market_chart 返回 [[毫秒时间戳, 价格], ...]，
这里负责清洗、统计摘要，以及上游不可用时的模拟走势生成。
"""

import logging
import random
import time
from typing import Any, Dict, List, Optional

import pandas as pd

logger = logging.getLogger(__name__)

_HOUR_MS = 60 * 60 * 1000
_DAY_MS = 24 * _HOUR_MS


class ProcessingLayer:
    """走势图数据处理：清洗 + 摘要 + 兜底数据"""

    def normalize_prices(self, pairs: List[List[Any]]) -> pd.DataFrame:
        """
        将 [[timestamp, price], ...] 标准化为 DataFrame

        标准列：timestamp（int 毫秒）, price（float）；按时间排序，重复时间戳保留最后一条
        """
        if not pairs:
            return pd.DataFrame(columns=["timestamp", "price"])

        df = pd.DataFrame([p[:2] for p in pairs if len(p) >= 2], columns=["timestamp", "price"])
        df["timestamp"] = pd.to_numeric(df["timestamp"], errors="coerce")
        df["price"] = pd.to_numeric(df["price"], errors="coerce")
        df = df.dropna(subset=["timestamp", "price"])
        df["timestamp"] = df["timestamp"].astype("int64")

        df = df.drop_duplicates(subset=["timestamp"], keep="last")
        return df.sort_values("timestamp").reset_index(drop=True)

    def to_pairs(self, df: pd.DataFrame) -> List[List[Any]]:
        """DataFrame 转回 [[timestamp, price], ...]"""
        if df.empty:
            return []
        return [[int(ts), float(price)] for ts, price in zip(df["timestamp"], df["price"])]

    def summarize(self, df: pd.DataFrame) -> Dict[str, Optional[float]]:
        """走势摘要：首末价格、最高最低、区间涨跌幅"""
        if df.empty:
            return {"first": None, "last": None, "high": None, "low": None, "change_pct": None}
        first = float(df["price"].iloc[0])
        last = float(df["price"].iloc[-1])
        change_pct = round((last - first) / first * 100, 4) if first else None
        return {
            "first": first,
            "last": last,
            "high": float(df["price"].max()),
            "low": float(df["price"].min()),
            "change_pct": change_pct,
        }

    def mock_series(
        self,
        base_price: float,
        days: Any,
        now_ms: Optional[int] = None,
        rng: Optional[random.Random] = None,
    ) -> Dict[str, List[List[Any]]]:
        """
        生成模拟走势（上游不可用时的兜底数据）

        ≤1 天按小时 24 个点；≤7 天每 6 小时；≤30 天按天；更长按天且最多 365 个点。
        每步随机波动 ±5%，价格不低于基准价的 10%。
        """
        if str(days).lower() == "max":
            day_count = 365
        else:
            try:
                day_count = int(str(days).rstrip("d") or 1)
            except ValueError:
                day_count = 1

        if day_count <= 1:
            points, interval = 24, _HOUR_MS
        elif day_count <= 7:
            points, interval = day_count * 4, 6 * _HOUR_MS
        elif day_count <= 30:
            points, interval = day_count, _DAY_MS
        else:
            points, interval = min(day_count, 365), _DAY_MS

        rng = rng or random.Random()
        now_ms = now_ms if now_ms is not None else int(time.time() * 1000)

        prices = []
        current = float(base_price)
        for i in range(points):
            ts = now_ms - (points - 1 - i) * interval
            current *= 1 + (rng.random() - 0.5) * 0.1
            current = max(current, base_price * 0.1)
            prices.append([ts, round(current, 8)])
        return {"prices": prices}


# ── 模块级别单例 ──────────────────────────────────────────
_processor: Optional[ProcessingLayer] = None


def get_processing_layer() -> ProcessingLayer:
    global _processor
    if _processor is None:
        _processor = ProcessingLayer()
    return _processor
