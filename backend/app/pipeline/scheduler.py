"""批次排程：在併發上限內執行多條任務管線。"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Callable, Dict, List, Sequence

from loguru import logger

from app.pipeline.cancellation import CancellationToken
from app.pipeline.models import PipelineOutcome, PipelineState, Task
from app.pipeline.pipeline import TaskPipeline
from app.pipeline.sink import EventSink

PipelineFactory = Callable[[Task, CancellationToken], TaskPipeline]


class AdmissionLimiter:
    """計數型資源守衛，限制同時持有許可的管線數量。"""

    def __init__(self, permits: int) -> None:
        if permits < 1:
            raise ValueError("permits must be at least 1")
        self._permits = permits
        self._semaphore = asyncio.Semaphore(permits)
        self._in_use = 0
        self._peak = 0

    @property
    def permits(self) -> int:
        return self._permits

    @property
    def in_use(self) -> int:
        return self._in_use

    @property
    def peak(self) -> int:
        """執行期間同時持有許可的最大數量。"""

        return self._peak

    async def __aenter__(self) -> "AdmissionLimiter":
        await self._semaphore.acquire()
        self._in_use += 1
        self._peak = max(self._peak, self._in_use)
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self._in_use -= 1
        self._semaphore.release()


@dataclass(frozen=True)
class BatchResult:
    """批次內每個任務的最終結果。"""

    batch_id: str
    outcomes: List[PipelineOutcome]

    @property
    def succeeded(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.succeeded)

    @property
    def failed(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.state is PipelineState.FAILED)

    @property
    def cancelled(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.state is PipelineState.CANCELLED)


class BatchScheduler:
    """為每個任務啟動一條管線，全部結束後送出唯一一次 batch-complete。

    排程器本身不重試；單一管線失敗不影響其他管線。
    """

    def __init__(
        self,
        *,
        batch_id: str,
        limiter: AdmissionLimiter,
        pipeline_factory: PipelineFactory,
        events: EventSink,
    ) -> None:
        self._batch_id = batch_id
        self._limiter = limiter
        self._pipeline_factory = pipeline_factory
        self._events = events
        self._tokens: Dict[str, CancellationToken] = {}
        self._pending_cancels: Dict[str, str] = {}
        self._started = False

    @property
    def batch_id(self) -> str:
        return self._batch_id

    @property
    def limiter(self) -> AdmissionLimiter:
        return self._limiter

    def cancel(self, task_id: str, reason: str | None = None) -> bool:
        """觸發指定任務的取消訊號；任務不屬於此批次時回傳 False。"""

        reason = reason or "Task cancelled by request"
        token = self._tokens.get(task_id)
        if token is None:
            if self._started:
                return False
            # 尚未開始執行，於 run 建立 token 時套用
            self._pending_cancels[task_id] = reason
            return True
        token.cancel(reason)
        return True

    async def run(self, tasks: Sequence[Task]) -> BatchResult:
        task_ids = [task.id for task in tasks]
        if len(set(task_ids)) != len(task_ids):
            raise ValueError("Task ids must be unique within a batch")

        self._started = True
        for task in tasks:
            self._tokens[task.id] = CancellationToken(task.id)
        for task_id, reason in self._pending_cancels.items():
            if task_id in self._tokens:
                self._tokens[task_id].cancel(reason)

        logger.info("批次開始 batch={} tasks={} permits={}", self._batch_id, len(tasks), self._limiter.permits)
        outcomes = await asyncio.gather(*(self._run_one(task) for task in tasks))
        result = BatchResult(batch_id=self._batch_id, outcomes=list(outcomes))

        self._events.emit(
            "batch-complete",
            {
                "batchId": self._batch_id,
                "total": len(result.outcomes),
                "succeeded": result.succeeded,
                "failed": result.failed,
                "cancelled": result.cancelled,
            },
        )
        logger.info(
            "批次完成 batch={} succeeded={} failed={} cancelled={}",
            self._batch_id,
            result.succeeded,
            result.failed,
            result.cancelled,
        )
        return result

    async def _run_one(self, task: Task) -> PipelineOutcome:
        token = self._tokens[task.id]
        async with self._limiter:
            try:
                pipeline = self._pipeline_factory(task, token)
                return await pipeline.run()
            except Exception as exc:  # noqa: BLE001 - 單一任務錯誤不得中斷整個批次
                logger.opt(exception=True).error("任務管線發生未預期錯誤 task={}", task.id)
                error = f"Unexpected error: {exc}"
                self._events.emit("task-failed", {"taskId": task.id, "error": error, "cancelled": False})
                return PipelineOutcome(task_id=task.id, state=PipelineState.FAILED, error=error)
