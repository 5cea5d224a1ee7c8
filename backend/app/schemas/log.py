"""任務日誌相關的 Pydantic Schema。"""
from __future__ import annotations

from datetime import datetime
from typing import List

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class LogEntry(BaseModel):
    """單筆任務日誌，序列化為一行 JSON。"""

    model_config = ConfigDict(populate_by_name=True)

    timestamp: datetime
    category: str = Field(
        validation_alias=AliasChoices("type", "category"),
        serialization_alias="type",
    )
    message: str


class LogEntryListResponse(BaseModel):
    """任務日誌列表回應。"""

    task_id: str = Field(serialization_alias="taskId")
    data: List[LogEntry]


class LogFolderResponse(BaseModel):
    path: str
