"""/v1/batches API endpoints."""
from __future__ import annotations

import asyncio
import json
import time
from typing import AsyncGenerator

from fastapi import APIRouter, Depends, Header, Request, status
from fastapi.responses import JSONResponse, StreamingResponse

from app.schemas.batch import BatchCreateRequest, BatchResource, TaskStateResource
from app.schemas.event import BatchEventResource
from app.services.batch_service import (
    BatchEvent,
    BatchNotFoundError,
    BatchRun,
    BatchService,
    InvalidTaskIdError,
    TaskIdConflictError,
    TaskNotCancellableError,
    TaskNotFoundError,
    TaskState,
    get_batch_service,
)

router = APIRouter(prefix="/batches", tags=["batches"])


def _error(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": {"code": code, "message": message}})


def _task_resource(state: TaskState) -> TaskStateResource:
    return TaskStateResource(
        task_id=state.task_id,
        file_path=state.file_path,
        state=state.state,
        progress=state.progress,
        output_path=state.output_path,
        error=state.error,
        degraded=state.degraded,
        warnings=list(state.warnings),
    )


def _batch_resource(run: BatchRun) -> BatchResource:
    return BatchResource(
        id=run.id,
        status=run.status,
        shape=run.shape,
        output_folder=run.output_folder,
        target_language=run.target_language,
        tasks=[_task_resource(state) for state in run.task_states.values()],
        created_at=run.created_at,
        completed_at=run.completed_at,
    )


@router.post(
    "",
    response_model=BatchResource,
    status_code=status.HTTP_201_CREATED,
    summary="建立字幕處理批次",
)
async def create_batch(
    payload: BatchCreateRequest,
    service: BatchService = Depends(get_batch_service),
) -> BatchResource:
    """建立批次並立即開始處理。"""

    try:
        run = await service.create_batch(payload)
    except TaskIdConflictError as exc:
        return _error(status.HTTP_409_CONFLICT, "TASK_ID_CONFLICT", str(exc))
    except InvalidTaskIdError as exc:
        return _error(status.HTTP_422_UNPROCESSABLE_ENTITY, "INVALID_TASK_ID", str(exc))
    return _batch_resource(run)


@router.get("/{batch_id}", response_model=BatchResource, summary="取得批次狀態")
async def retrieve_batch(
    batch_id: str,
    service: BatchService = Depends(get_batch_service),
) -> BatchResource:
    try:
        run = service.get_batch(batch_id)
    except BatchNotFoundError:
        return _error(status.HTTP_404_NOT_FOUND, "BATCH_NOT_FOUND", "Batch not found")
    return _batch_resource(run)


@router.post(
    "/{batch_id}/tasks/{task_id}/cancel",
    response_model=TaskStateResource,
    status_code=status.HTTP_202_ACCEPTED,
    summary="取消批次中的任務",
)
async def cancel_task(
    batch_id: str,
    task_id: str,
    service: BatchService = Depends(get_batch_service),
) -> TaskStateResource:
    """送出取消訊號；任務會在下一個檢查點結束並回報 cancelled。"""

    try:
        state = service.cancel_task(batch_id, task_id)
    except BatchNotFoundError:
        return _error(status.HTTP_404_NOT_FOUND, "BATCH_NOT_FOUND", "Batch not found")
    except TaskNotFoundError:
        return _error(status.HTTP_404_NOT_FOUND, "TASK_NOT_FOUND", "Task not found in batch")
    except TaskNotCancellableError as exc:
        return _error(status.HTTP_409_CONFLICT, "TASK_NOT_CANCELLABLE", exc.reason)
    return _task_resource(state)


@router.get("/{batch_id}/stream", summary="SSE 串流批次事件")
async def stream_batch_events(
    batch_id: str,
    request: Request,
    service: BatchService = Depends(get_batch_service),
    last_event_id: str | None = Header(default=None, alias="Last-Event-ID"),
) -> StreamingResponse:
    """以 SSE 串流批次事件，送出 batch-complete 後結束連線。"""

    try:
        run = service.get_batch(batch_id)
    except BatchNotFoundError:
        return _error(status.HTTP_404_NOT_FOUND, "BATCH_NOT_FOUND", "Batch not found")
    if run.dispatch != "inline":
        # 事件只存在於 worker 日誌
        return _error(status.HTTP_409_CONFLICT, "BATCH_DISPATCHED", "Batch runs on a worker; events are not streamed")

    last_sequence = 0  # 最後一次送出的事件序號
    if last_event_id:
        try:
            last_sequence = int(last_event_id)
        except ValueError:
            return _error(status.HTTP_400_BAD_REQUEST, "INVALID_LAST_EVENT_ID", "Last-Event-ID 必須為整數序號")
        if last_sequence < 0 or last_sequence > run.last_sequence:
            return _error(status.HTTP_400_BAD_REQUEST, "INVALID_LAST_EVENT_ID", "Last-Event-ID 不存在於該批次")

    poll_interval = 0.5
    heartbeat_interval = 30.0
    heartbeat_payload = b":keep-alive\n\n"
    last_sent_monotonic = time.monotonic()

    def serialize_event(event: BatchEvent) -> bytes:
        resource = BatchEventResource.model_validate(event)
        payload = json.dumps(resource.model_dump(by_alias=True, mode="json"), ensure_ascii=False)
        lines = [f"id:{event.sequence}", f"event:{event.event}", f"data:{payload}", "", ""]
        return "\n".join(lines).encode("utf-8")

    async def event_source() -> AsyncGenerator[bytes, None]:
        nonlocal last_sequence, last_sent_monotonic

        while True:
            new_events = run.events_after(last_sequence)
            for event in new_events:
                last_sequence = event.sequence
                last_sent_monotonic = time.monotonic()
                yield serialize_event(event)

            if run.is_complete and last_sequence >= run.last_sequence:
                break
            if await request.is_disconnected():
                break
            if not new_events:
                now = time.monotonic()
                if now - last_sent_monotonic >= heartbeat_interval:
                    last_sent_monotonic = now
                    yield heartbeat_payload

            await asyncio.sleep(poll_interval)

    headers = {
        "Cache-Control": "no-cache",
        "Connection": "keep-alive",
        "X-Accel-Buffering": "no",
    }
    return StreamingResponse(event_source(), media_type="text/event-stream", headers=headers)
