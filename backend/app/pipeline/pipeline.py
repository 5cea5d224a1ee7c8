"""單一任務的階段狀態機。"""
from __future__ import annotations

import asyncio
import shutil
from pathlib import Path
from typing import Sequence

from app.pipeline.cancellation import CancellationToken
from app.pipeline.errors import LocalIOError, TaskCancelledError
from app.pipeline.models import (
    OutputLayout,
    PipelineContext,
    PipelineOutcome,
    PipelineState,
    StageKind,
    Task,
)
from app.pipeline.sink import TaskReporter
from app.pipeline.stages import Stage


class TaskPipeline:
    """依序執行已啟用的階段，最後清理中間產物並回報一次終止結果。"""

    def __init__(
        self,
        *,
        task: Task,
        stages: Sequence[Stage],
        layout: OutputLayout,
        reporter: TaskReporter,
        token: CancellationToken,
    ) -> None:
        if not stages:
            raise ValueError("A pipeline needs at least one stage")
        self._task = task
        self._stages = list(stages)
        self._layout = layout
        self._reporter = reporter
        self._token = token
        self._state = PipelineState.PENDING

    @property
    def task(self) -> Task:
        return self._task

    @property
    def state(self) -> PipelineState:
        return self._state

    async def run(self) -> PipelineOutcome:
        """執行到終止狀態並回傳結果；階段錯誤不會向外拋出。"""

        task = self._task
        reporter = self._reporter
        ctx = PipelineContext(task_id=task.id, original_input_path=Path(task.source_path))

        await reporter.log_sink.init_task(task.id)
        await reporter.notify(
            "task-started",
            "metadata",
            f"Task started: {task.source_path}",
            filePath=str(task.source_path),
            stages=[stage.kind.value for stage in self._stages],
        )

        stage_label = "Task failed"
        try:
            self._token.raise_if_cancelled()
            await asyncio.to_thread(self._layout.output_dir.mkdir, parents=True, exist_ok=True)
            for stage in self._stages:
                stage_label = stage.failure_label
                await self._transition(stage.state)
                try:
                    await stage.run(ctx, reporter, self._token)
                except TaskCancelledError:
                    raise
                except Exception:
                    await stage.on_failure(ctx, reporter)
                    raise
            stage_label = "Publishing output failed"
            await self._publish(ctx)
        except TaskCancelledError as exc:
            await self._cleanup(ctx)
            outcome = PipelineOutcome(
                task_id=task.id,
                state=PipelineState.CANCELLED,
                error=exc.reason or "Task cancelled",
                warnings=tuple(ctx.warnings),
            )
        except Exception as exc:
            await self._cleanup(ctx)
            outcome = PipelineOutcome(
                task_id=task.id,
                state=PipelineState.FAILED,
                error=f"{stage_label}: {exc}",
                warnings=tuple(ctx.warnings),
            )
        else:
            await self._transition(PipelineState.CLEANING_UP)
            await self._cleanup(ctx)
            outcome = PipelineOutcome(
                task_id=task.id,
                state=PipelineState.PARTIALLY_FAILED if ctx.degraded else PipelineState.SUCCEEDED,
                output_path=ctx.final_output_path,
                warnings=tuple(ctx.warnings),
            )

        self._state = outcome.state
        await self._report(outcome)
        return outcome

    async def _transition(self, state: PipelineState) -> None:
        self._state = state
        await self._reporter.notify(
            "task-progress",
            "metadata",
            f"Stage: {state.value}",
            state=state.value,
        )

    async def _publish(self, ctx: PipelineContext) -> None:
        """最後階段不是翻譯時，把最後一個產物移到輸出目錄。"""

        if self._stages[-1].kind is StageKind.TRANSLATION:
            return
        artifact = ctx.current_artifact
        if artifact not in ctx.intermediate_artifact_paths:
            raise LocalIOError(f"No artifact produced for {ctx.original_input_path}")
        target = self._layout.artifact_output_path(ctx.original_input_path, artifact)
        await asyncio.to_thread(shutil.move, str(artifact), str(target))
        ctx.promote(artifact)
        ctx.final_output_path = target
        await self._reporter.log("metadata", f"Output saved to: {target}")

    async def _cleanup(self, ctx: PipelineContext) -> None:
        """刪除中間產物；刪除失敗只記錄警告。"""

        for path in ctx.disposable_artifacts():
            try:
                await asyncio.to_thread(path.unlink, missing_ok=True)
            except OSError as exc:
                await self._reporter.log("warning", f"Warning: Failed to cleanup temp file {path}: {exc}")
            else:
                await self._reporter.log("metadata", f"Temporary file cleaned up: {path}")

    async def _report(self, outcome: PipelineOutcome) -> None:
        reporter = self._reporter
        if outcome.succeeded:
            await reporter.notify(
                "task-completed",
                "warning" if outcome.warnings else "metadata",
                f"Task completed: {outcome.output_path}",
                outputPath=str(outcome.output_path),
                degraded=outcome.state is PipelineState.PARTIALLY_FAILED,
                warnings=list(outcome.warnings),
            )
        elif outcome.state is PipelineState.CANCELLED:
            await reporter.notify(
                "task-failed",
                "warning",
                f"Task cancelled: {outcome.error}",
                error=outcome.error,
                cancelled=True,
            )
        else:
            await reporter.notify(
                "task-failed",
                "error",
                outcome.error or "Task failed",
                error=outcome.error,
                cancelled=False,
            )
