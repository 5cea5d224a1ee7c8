"""/v1/tasks API endpoints."""
from __future__ import annotations

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse

from app.schemas.log import LogEntryListResponse
from app.services.batch_service import BatchService, TaskNotFoundError, get_batch_service

router = APIRouter(prefix="/tasks", tags=["tasks"])


@router.get("/{task_id}/logs", response_model=LogEntryListResponse, summary="讀取任務日誌")
async def list_task_logs(
    task_id: str,
    service: BatchService = Depends(get_batch_service),
) -> LogEntryListResponse:
    """依寫入順序回傳任務的全部日誌。"""

    try:
        entries = service.list_task_logs(task_id)
    except TaskNotFoundError:
        return JSONResponse(
            status_code=status.HTTP_404_NOT_FOUND,
            content={"error": {"code": "TASK_LOG_NOT_FOUND", "message": "Task log not found"}},
        )
    return LogEntryListResponse(task_id=task_id, data=entries)
