"""在 Celery worker 中執行整個批次。"""
from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any
from uuid import uuid4

from app.core.config import get_settings
from app.pipeline.factory import BatchOptions, execute_batch
from app.pipeline.models import Task
from app.pipeline.sink import LoggingEventSink
from app.repositories.task_logs import TaskLogRepository
from app.schemas.batch import BatchCreateRequest
from app.tasks.logging import emit_log


def process_batch(batch_id: str, payload: dict[str, Any]) -> dict[str, Any]:
    """執行批次並回傳統計結果；事件只寫入 worker 日誌。"""

    settings = get_settings()
    request = BatchCreateRequest.model_validate(payload)
    tasks = [Task(id=item.task_id or uuid4().hex, source_path=Path(item.file_path)) for item in request.tasks]
    options = BatchOptions.from_settings(
        settings,
        output_dir=Path(request.output_folder),
        shape=request.shape,
        target_language=request.target_language,
        include_language_suffix=request.include_language_suffix,
        transcription_url=request.transcription_backend_url,
        translation_url=request.translation_server_url,
        api_key=request.api_key,
    )

    emit_log("batch", f"啟動批次 batch={batch_id}", tasks=len(tasks))
    result = asyncio.run(
        execute_batch(
            batch_id,
            tasks,
            options,
            settings=settings,
            repository=TaskLogRepository(settings.logs_dir),
            events=LoggingEventSink(),
        )
    )
    return {
        "batchId": batch_id,
        "total": len(result.outcomes),
        "succeeded": result.succeeded,
        "failed": result.failed,
        "cancelled": result.cancelled,
    }
