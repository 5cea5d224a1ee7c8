"""任務層取消訊號。"""
from __future__ import annotations

import asyncio
from typing import Awaitable, TypeVar

from app.pipeline.errors import TaskCancelledError

T = TypeVar("T")


class CancellationToken:
    """每個任務一個的協作式取消訊號，於各暫停點檢查。"""

    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        self.reason: str | None = None
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str | None = None) -> None:
        """觸發取消；重複呼叫保留第一次的原因。"""

        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise TaskCancelledError(self.task_id, self.reason)

    async def sleep(self, seconds: float) -> None:
        """等待指定秒數，取消時提前醒來並拋出 TaskCancelledError。"""

        self.raise_if_cancelled()
        if seconds <= 0:
            await asyncio.sleep(0)
        else:
            try:
                await asyncio.wait_for(self._event.wait(), timeout=seconds)
            except asyncio.TimeoutError:
                pass
        self.raise_if_cancelled()

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """等待目前的暫停點完成後再檢查取消訊號。"""

        if self.cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            self.raise_if_cancelled()
        result = await awaitable
        self.raise_if_cancelled()
        return result

    async def wait(self) -> None:
        await self._event.wait()
