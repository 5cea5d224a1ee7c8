"""批次處理的業務邏輯。"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import lru_cache
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List
from uuid import uuid4

from loguru import logger

from app.core.celery_app import celery_app
from app.core.config import Settings, get_settings
from app.pipeline.factory import BatchOptions, execute_batch
from app.pipeline.models import PipelineShape, PipelineState, Task
from app.pipeline.scheduler import BatchResult, BatchScheduler
from app.repositories.task_logs import TaskLogRepository
from app.schemas.batch import BatchCreateRequest
from app.schemas.log import LogEntry


class BatchNotFoundError(Exception):
    def __init__(self, batch_id: str) -> None:
        super().__init__(f"Batch not found: {batch_id}")
        self.batch_id = batch_id


class TaskNotFoundError(Exception):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class TaskIdConflictError(Exception):
    """任務 ID 重複或已被其他批次使用。"""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task id already in use: {task_id}")
        self.task_id = task_id


class InvalidTaskIdError(Exception):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Invalid task id: {task_id!r}")
        self.task_id = task_id


class TaskNotCancellableError(Exception):
    """任務已結束，或批次交由 worker 執行而無法從 API 取消。"""

    def __init__(self, task_id: str, reason: str) -> None:
        super().__init__(reason)
        self.task_id = task_id
        self.reason = reason


@dataclass
class TaskState:
    task_id: str
    file_path: str
    state: str = PipelineState.PENDING.value
    progress: float | None = None
    output_path: str | None = None
    error: str | None = None
    degraded: bool = False
    warnings: List[str] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.state in {s.value for s in PipelineState if s.is_terminal}


@dataclass(frozen=True)
class BatchEvent:
    sequence: int
    event: str
    payload: Dict[str, Any]
    created_at: datetime


class BatchRun:
    """單一批次的執行紀錄。

    同時作為事件 sink：每筆事件編上遞增序號保存，並折疊成各任務的目前狀態，
    供查詢端點與 SSE 串流讀取。
    """

    def __init__(
        self,
        *,
        batch_id: str,
        tasks: List[Task],
        options: BatchOptions,
        shape: PipelineShape,
        dispatch: str,
    ) -> None:
        self.id = batch_id
        self.tasks = tasks
        self.options = options
        self.shape = shape
        self.dispatch = dispatch
        self.status = "running" if dispatch == "inline" else "dispatched"
        self.created_at = datetime.now(timezone.utc)
        self.completed_at: datetime | None = None
        self.task_states: Dict[str, TaskState] = {
            task.id: TaskState(task_id=task.id, file_path=str(task.source_path)) for task in tasks
        }
        self._events: List[BatchEvent] = []
        self._scheduler: BatchScheduler | None = None
        self._pending_cancels: Dict[str, str | None] = {}
        self._runner: asyncio.Task | None = None

    @property
    def output_folder(self) -> str:
        return str(self.options.output_dir)

    @property
    def target_language(self) -> str:
        return self.options.target_language

    @property
    def is_complete(self) -> bool:
        return self.completed_at is not None

    @property
    def is_settled(self) -> bool:
        """已結束或已交給 worker，本行程不會再有新事件。"""

        return self.is_complete or self.dispatch != "inline"

    def attach_scheduler(self, scheduler: BatchScheduler) -> None:
        self._scheduler = scheduler
        # 排程器建立前收到的取消要求
        for task_id, reason in self._pending_cancels.items():
            scheduler.cancel(task_id, reason)
        self._pending_cancels.clear()

    def attach_runner(self, runner: asyncio.Task) -> None:
        self._runner = runner

    @property
    def runner(self) -> asyncio.Task | None:
        """本行程執行批次的背景工作；交由 worker 時為 None。"""

        return self._runner

    def emit(self, event: str, payload: Dict[str, Any]) -> None:
        record = BatchEvent(
            sequence=len(self._events) + 1,
            event=event,
            payload=dict(payload),
            created_at=datetime.now(timezone.utc),
        )
        self._events.append(record)
        self._reduce(event, payload)

    def events_after(self, sequence: int | None) -> List[BatchEvent]:
        """回傳序號大於 sequence 的事件。"""

        start = sequence or 0
        return self._events[start:]

    @property
    def last_sequence(self) -> int:
        return len(self._events)

    def cancel(self, task_id: str, reason: str | None = None) -> None:
        state = self.task_states.get(task_id)
        if state is None:
            raise TaskNotFoundError(task_id)
        if self.dispatch != "inline":
            raise TaskNotCancellableError(task_id, "Tasks dispatched to a worker cannot be cancelled from the API")
        if state.is_terminal:
            raise TaskNotCancellableError(task_id, f"Task already finished with state {state.state}")
        if self._scheduler is None:
            self._pending_cancels.setdefault(task_id, reason)
            return
        if not self._scheduler.cancel(task_id, reason):
            raise TaskNotCancellableError(task_id, "Task is not running")

    def mark_crashed(self, message: str) -> None:
        """批次執行意外中止時，把尚未結束的任務標記為失敗。"""

        for state in self.task_states.values():
            if not state.is_terminal:
                state.state = PipelineState.FAILED.value
                state.error = message
        self.status = "failed"
        self.completed_at = datetime.now(timezone.utc)

    def _reduce(self, event: str, payload: Dict[str, Any]) -> None:
        if event == "batch-complete":
            self.status = "completed"
            self.completed_at = datetime.now(timezone.utc)
            return

        state = self.task_states.get(payload.get("taskId", ""))
        if state is None:
            return
        if event == "task-progress":
            if "state" in payload:
                state.state = payload["state"]
                state.progress = None
            if "progress" in payload:
                state.progress = payload["progress"]
        elif event == "job-polling" and payload.get("progress") is not None:
            state.progress = payload["progress"]
        elif event == "task-completed":
            state.state = (
                PipelineState.PARTIALLY_FAILED.value if payload.get("degraded") else PipelineState.SUCCEEDED.value
            )
            state.output_path = payload.get("outputPath")
            state.degraded = bool(payload.get("degraded"))
            state.warnings = list(payload.get("warnings") or [])
            state.progress = 100.0
        elif event == "task-failed":
            state.state = PipelineState.CANCELLED.value if payload.get("cancelled") else PipelineState.FAILED.value
            state.error = payload.get("error")


class BatchService:
    """建立、查詢與取消批次。"""

    def __init__(
        self,
        settings: Settings,
        repository: TaskLogRepository,
        *,
        batch_runner: Callable[..., Awaitable[BatchResult]] = execute_batch,
    ) -> None:
        self._settings = settings
        self._repository = repository
        self._batch_runner = batch_runner
        self._runs: Dict[str, BatchRun] = {}
        self._task_index: Dict[str, str] = {}

    @property
    def repository(self) -> TaskLogRepository:
        return self._repository

    async def create_batch(self, payload: BatchCreateRequest) -> BatchRun:
        """建立批次並依設定於本行程或 Celery worker 執行。"""

        tasks = self._build_tasks(payload)
        options = BatchOptions.from_settings(
            self._settings,
            output_dir=Path(payload.output_folder),
            shape=payload.shape,
            target_language=payload.target_language,
            include_language_suffix=payload.include_language_suffix,
            transcription_url=payload.transcription_backend_url,
            translation_url=payload.translation_server_url,
            api_key=payload.api_key,
        )
        dispatch = self._settings.batch_dispatch
        run = BatchRun(
            batch_id=uuid4().hex,
            tasks=tasks,
            options=options,
            shape=payload.shape,
            dispatch=dispatch,
        )
        self._runs[run.id] = run
        for task in tasks:
            self._task_index[task.id] = run.id
        self._prune_settled_runs()

        if dispatch == "celery":
            task_payload = payload.model_dump(mode="json")
            task_payload["tasks"] = [{"task_id": task.id, "file_path": str(task.source_path)} for task in tasks]
            celery_app.send_task("app.tasks.batch.process_batch", args=(run.id, task_payload))
            logger.info("批次已送交 worker batch={} tasks={}", run.id, len(tasks))
        else:
            run.attach_runner(asyncio.get_running_loop().create_task(self._execute(run)))
        return run

    def get_batch(self, batch_id: str) -> BatchRun:
        run = self._runs.get(batch_id)
        if run is None:
            raise BatchNotFoundError(batch_id)
        return run

    def cancel_task(self, batch_id: str, task_id: str, reason: str | None = None) -> TaskState:
        run = self.get_batch(batch_id)
        run.cancel(task_id, reason)
        logger.info("已要求取消任務 batch={} task={}", batch_id, task_id)
        return run.task_states[task_id]

    def list_task_logs(self, task_id: str) -> List[LogEntry]:
        """讀取任務日誌；任務 ID 不合法或日誌不存在時視為找不到。"""

        try:
            entries = self._repository.list_entries(task_id)
        except ValueError as exc:
            raise TaskNotFoundError(task_id) from exc
        if entries is None:
            raise TaskNotFoundError(task_id)
        return entries

    def logs_folder(self) -> Path:
        return self._repository.logs_dir.resolve()

    def _build_tasks(self, payload: BatchCreateRequest) -> List[Task]:
        tasks: List[Task] = []
        seen: set[str] = set()
        for item in payload.tasks:
            task_id = item.task_id or uuid4().hex
            try:
                self._repository.get_log_path(task_id)
            except ValueError as exc:
                raise InvalidTaskIdError(task_id) from exc
            if task_id in seen or task_id in self._task_index:
                raise TaskIdConflictError(task_id)
            seen.add(task_id)
            tasks.append(Task(id=task_id, source_path=Path(item.file_path)))
        return tasks

    async def _execute(self, run: BatchRun) -> None:
        try:
            await self._batch_runner(
                run.id,
                run.tasks,
                run.options,
                settings=self._settings,
                repository=self._repository,
                events=run,
                on_scheduler=run.attach_scheduler,
            )
        except Exception as exc:  # noqa: BLE001 - 背景工作的錯誤只能記錄
            logger.opt(exception=True).error("批次執行中止 batch={}", run.id)
            run.mark_crashed(f"Batch aborted: {exc}")
        finally:
            self._prune_settled_runs()

    def _prune_settled_runs(self) -> None:
        """只保留最近的已結束批次；任務 ID 索引保留以避免重複使用。"""

        settled = [run_id for run_id, run in self._runs.items() if run.is_settled]
        for run_id in settled[: max(0, len(settled) - self._settings.max_retained_batches)]:
            del self._runs[run_id]
            logger.debug("釋放已結束批次 batch={}", run_id)


@lru_cache(maxsize=1)
def get_batch_service() -> BatchService:
    """提供 FastAPI 相依性所需的 BatchService 單例。"""

    settings = get_settings()
    return BatchService(settings, TaskLogRepository(settings.logs_dir))
