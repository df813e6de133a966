"""统一 API 响应模型"""

from typing import Any, Optional
from pydantic import BaseModel


class ApiResponse(BaseModel):
    """标准 API 响应封装，is_fallback 标记数据是否为上游不可用时的兜底数据"""
    success: bool = True
    data: Optional[Any] = None
    message: str = ""
    error: Optional[str] = None
    is_fallback: bool = False

    @classmethod
    def ok(cls, data: Any = None, message: str = "success", is_fallback: bool = False) -> "ApiResponse":
        return cls(success=True, data=data, message=message, is_fallback=is_fallback)

    @classmethod
    def fail(cls, error: str, message: str = "failed") -> "ApiResponse":
        return cls(success=False, error=error, message=message)
