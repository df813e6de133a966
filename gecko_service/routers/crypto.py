"""
加密货币行情路由
GET /api/crypto/markets                 - 市值前 100 币种
GET /api/crypto/coins?ids=a,b           - 按 ID 批量获取行情
GET /api/crypto/{coin_id}               - 币种详情 + 24 小时走势
GET /api/crypto/{coin_id}/info          - 币种名称 / 符号 / 图标
GET /api/crypto/{coin_id}/chart         - 指定时间范围走势
"""

from typing import Annotated

from fastapi import APIRouter, Path, Query

from gecko_service.models.response import ApiResponse
from gecko_service.services.market_service import get_market_service

router = APIRouter(prefix="/api/crypto", tags=["行情数据"])

CoinId = Annotated[str, Path(pattern=r"^[a-z0-9][a-z0-9-]{0,99}$", description="CoinGecko 币种 ID")]


@router.get("/markets", response_model=ApiResponse)
async def get_markets():
    """获取市场列表，上游不可用时返回兜底数据"""
    result = await get_market_service().get_markets()
    coins = result["coins"]
    return ApiResponse.ok(
        data={"count": len(coins), "coins": coins},
        message="Using fallback data" if result["is_fallback"] else "success",
        is_fallback=result["is_fallback"],
    )


@router.get("/coins", response_model=ApiResponse)
async def get_coins(ids: str = Query(..., description="逗号分隔的币种 ID")):
    """按 ID 批量获取行情"""
    coins = await get_market_service().get_coins_by_ids(ids.split(","))
    return ApiResponse.ok(data={"count": len(coins), "coins": coins})


@router.get("/{coin_id}", response_model=ApiResponse)
async def get_coin_detail(coin_id: CoinId):
    """获取币种详情"""
    detail = await get_market_service().get_coin_detail(coin_id)
    is_fallback = detail.pop("is_fallback")
    return ApiResponse.ok(
        data=detail,
        message="Using fallback data" if is_fallback else "success",
        is_fallback=is_fallback,
    )


@router.get("/{coin_id}/info", response_model=ApiResponse)
async def get_coin_info(coin_id: CoinId):
    """获取币种基础信息"""
    return ApiResponse.ok(data=await get_market_service().get_coin_info(coin_id))


@router.get("/{coin_id}/chart", response_model=ApiResponse)
async def get_chart(
    coin_id: CoinId,
    timeframe: str = Query(default="24h", description="1h / 24h / 7d / 1m / 3m / 1y / all"),
):
    """获取走势数据"""
    chart = await get_market_service().get_chart(coin_id, timeframe)
    is_fallback = chart.pop("is_fallback")
    return ApiResponse.ok(data=chart, is_fallback=is_fallback)
