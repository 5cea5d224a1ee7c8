"""事件相關的 Pydantic Schema。"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict

from pydantic import BaseModel, ConfigDict, Field


class BatchEventResource(BaseModel):
    """描述批次串流中的單筆事件。"""

    model_config = ConfigDict(from_attributes=True)

    sequence: int
    event: str
    payload: Dict[str, Any]
    created_at: datetime = Field(serialization_alias="createdAt")
