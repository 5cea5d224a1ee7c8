"""任務日誌與事件輸出。

每筆觀察先寫入任務日誌檔，再送出對應事件；事件為盡力而為，失敗只記錄警告。
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Protocol

from loguru import logger

from app.repositories.task_logs import TaskLogRepository
from app.schemas.log import LogEntry
from app.tasks.logging import emit_log

_LEVEL_BY_CATEGORY = {
    "error": "ERROR",
    "warning": "WARNING",
}


class EventSink(Protocol):
    """事件輸出介面。"""

    def emit(self, event: str, payload: Dict[str, Any]) -> None:
        ...


class LoggingEventSink:
    """只把事件寫進 loguru，供 Celery worker 等無前端的環境使用。"""

    def emit(self, event: str, payload: Dict[str, Any]) -> None:
        emit_log("event", event, level="DEBUG", event=event, payload=payload)


class CompositeEventSink:
    """將事件分送給多個 sink，任何一個失敗都不影響呼叫端。"""

    def __init__(self, sinks: Iterable[EventSink]) -> None:
        self._sinks = list(sinks)

    def emit(self, event: str, payload: Dict[str, Any]) -> None:
        for sink in self._sinks:
            try:
                sink.emit(event, payload)
            except Exception:  # noqa: BLE001 - 事件為盡力而為
                logger.opt(exception=True).warning("事件輸出失敗 event={}", event)


class TaskLogSink:
    """附加任務日誌並於寫入完成後送出 task-log 事件。"""

    def __init__(self, repository: TaskLogRepository, events: EventSink) -> None:
        self._repository = repository
        self._events = events

    @property
    def repository(self) -> TaskLogRepository:
        return self._repository

    async def init_task(self, task_id: str) -> None:
        await asyncio.to_thread(self._repository.init_log, task_id)

    async def append(self, task_id: str, category: str, message: str) -> LogEntry:
        """寫入一筆日誌，回傳已持久化的紀錄。"""

        entry = LogEntry(
            timestamp=datetime.now(timezone.utc),
            category=category,
            message=message,
        )
        await asyncio.to_thread(self._repository.append_entry, task_id, entry)

        emit_log(category, message, level=_LEVEL_BY_CATEGORY.get(category, "INFO"), task_id=task_id)
        self._events.emit(
            "task-log",
            {
                "taskId": task_id,
                "timestamp": entry.timestamp.isoformat(),
                "type": category,
                "message": message,
            },
        )
        return entry


class TaskReporter:
    """綁定單一任務的回報器，保證先寫日誌、後送事件。"""

    def __init__(self, task_id: str, log_sink: TaskLogSink, events: EventSink) -> None:
        self.task_id = task_id
        self.log_sink = log_sink
        self._events = events

    async def log(self, category: str, message: str) -> LogEntry:
        return await self.log_sink.append(self.task_id, category, message)

    async def notify(self, event: str, category: str, message: str, **payload: Any) -> None:
        """先持久化描述此觀察的日誌，再送出事件。"""

        await self.log(category, message)
        self._events.emit(event, {"taskId": self.task_id, **payload})
