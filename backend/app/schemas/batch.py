"""批次相關的 Pydantic Schema。"""
from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from app.pipeline.models import PipelineShape


class TaskInput(BaseModel):
    """批次中的單一輸入檔。"""

    model_config = ConfigDict(populate_by_name=True)

    task_id: str | None = Field(default=None, validation_alias="taskId")
    file_path: str = Field(validation_alias="filePath", min_length=1)


class BatchCreateRequest(BaseModel):
    """建立批次的請求負載。"""

    model_config = ConfigDict(populate_by_name=True)

    tasks: List[TaskInput]
    output_folder: str = Field(validation_alias="outputFolder", min_length=1)
    target_language: str | None = Field(default=None, validation_alias="targetLanguage")
    shape: PipelineShape = PipelineShape.FULL
    include_language_suffix: bool | None = Field(default=None, validation_alias="includeLanguageSuffix")
    transcription_backend_url: str | None = Field(default=None, validation_alias="transcriptionBackendUrl")
    translation_server_url: str | None = Field(default=None, validation_alias="translationServerUrl")
    api_key: str | None = Field(default=None, validation_alias="apiKey")

    @model_validator(mode="after")
    def validate_payload(self) -> "BatchCreateRequest":
        if not self.tasks:
            raise ValueError("tasks cannot be empty")
        return self


class TaskStateResource(BaseModel):
    """批次內單一任務的目前狀態。"""

    task_id: str = Field(serialization_alias="taskId")
    file_path: str = Field(serialization_alias="filePath")
    state: str
    progress: float | None = None
    output_path: Optional[str] = Field(default=None, serialization_alias="outputPath")
    error: Optional[str] = None
    degraded: bool = False
    warnings: List[str] = Field(default_factory=list)


class BatchResource(BaseModel):
    """API 回傳的批次資源。"""

    id: str
    status: str
    shape: PipelineShape
    output_folder: str = Field(serialization_alias="outputFolder")
    target_language: str = Field(serialization_alias="targetLanguage")
    tasks: List[TaskStateResource]
    created_at: datetime = Field(serialization_alias="createdAt")
    completed_at: Optional[datetime] = Field(default=None, serialization_alias="completedAt")
