"""任務層日誌工具。"""
from __future__ import annotations

from typing import Any

from loguru import logger


def emit_log(stage: str, message: str, *, level: str = "INFO", **payload: Any) -> None:
    """輸出任務相關日誌，便於追蹤。"""

    # 附加資料放進 extra，避免訊息內的大括號被當成格式化欄位
    logger.bind(stage=stage, **payload).log(level, message)
