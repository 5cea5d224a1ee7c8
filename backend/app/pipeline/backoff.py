"""遠端呼叫的指數退避重試。"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from app.pipeline.cancellation import CancellationToken
from app.pipeline.errors import RemoteServiceError, TaskCancelledError
from app.pipeline.sink import TaskLogSink

T = TypeVar("T")

ErrorClassifier = Callable[[BaseException], bool]


def retry_all(exc: BaseException) -> bool:
    """不區分錯誤種類，全部重試。"""

    return True


def is_transient_error(exc: BaseException) -> bool:
    """4xx（408、429 除外）視為永久錯誤，其餘遠端錯誤可重試。"""

    if isinstance(exc, RemoteServiceError) and exc.status_code is not None:
        if 400 <= exc.status_code < 500:
            return exc.status_code in (408, 429)
    return True


@dataclass(frozen=True)
class RetryPolicy:
    """重試參數：第 n 次失敗後等待 initial_delay_ms * 2**n。"""

    max_attempts: int = 3
    initial_delay_ms: int = 1000
    retryable: ErrorClassifier = retry_all

    def delay_ms(self, attempt: int) -> int:
        return self.initial_delay_ms * 2**attempt


class BackoffExecutor:
    """以固定策略執行可能失敗的非同步操作。"""

    def __init__(self, policy: RetryPolicy, log_sink: TaskLogSink) -> None:
        if policy.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._policy = policy
        self._log_sink = log_sink

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        name: str,
        task_id: str,
        category: str,
        token: CancellationToken | None = None,
    ) -> T:
        """執行 operation，失敗時退避重試；最後一次失敗原樣拋出。"""

        max_attempts = self._policy.max_attempts
        attempt = 0
        while True:
            if token is not None:
                token.raise_if_cancelled()
            try:
                return await operation()
            except TaskCancelledError:
                raise
            except Exception as exc:
                if attempt + 1 >= max_attempts or not self._policy.retryable(exc):
                    raise
                delay = self._policy.delay_ms(attempt)
                await self._log_sink.append(
                    task_id,
                    category,
                    f"{name} failed (attempt {attempt + 1}/{max_attempts}), retrying in {delay}ms...",
                )
                if token is not None:
                    await token.sleep(delay / 1000)
                else:
                    await asyncio.sleep(delay / 1000)
            attempt += 1
