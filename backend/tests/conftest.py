"""測試共用的 fixture。"""
from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, List, Tuple

import pytest

from app.pipeline.sink import TaskLogSink, TaskReporter
from app.repositories.task_logs import TaskLogRepository
from app.schemas.log import LogEntry


class RecordingEventSink:
    """記錄所有事件；若提供 repository，同時記下送出當下該任務最後一筆日誌。"""

    def __init__(self, repository: TaskLogRepository | None = None) -> None:
        self.events: List[Tuple[str, Dict[str, Any]]] = []
        self.last_log_at_emit: List[str | None] = []
        self._repository = repository

    def emit(self, event: str, payload: Dict[str, Any]) -> None:
        self.events.append((event, dict(payload)))
        task_id = payload.get("taskId")
        last_message = self._last_message(task_id) if self._repository is not None and task_id else None
        self.last_log_at_emit.append(last_message)

    def _last_message(self, task_id: str) -> str | None:
        # 只讀檔尾，避免長時間輪詢的測試反覆解析整個日誌
        path = self._repository.get_log_path(task_id)
        if not path.exists():
            return None
        with path.open("rb") as handle:
            handle.seek(0, os.SEEK_END)
            handle.seek(max(0, handle.tell() - 8192))
            lines = handle.read().splitlines()
        if not lines:
            return None
        return LogEntry.model_validate_json(lines[-1]).message

    def names(self, *, include_logs: bool = False) -> List[str]:
        return [name for name, _ in self.events if include_logs or name != "task-log"]

    def payloads(self, event: str) -> List[Dict[str, Any]]:
        return [payload for name, payload in self.events if name == event]


@pytest.fixture
def repository(tmp_path: Path) -> TaskLogRepository:
    return TaskLogRepository(tmp_path / "logs")


@pytest.fixture
def events(repository: TaskLogRepository) -> RecordingEventSink:
    return RecordingEventSink(repository)


@pytest.fixture
def log_sink(repository: TaskLogRepository, events: RecordingEventSink) -> TaskLogSink:
    return TaskLogSink(repository, events)


@pytest.fixture
def reporter(log_sink: TaskLogSink, events: RecordingEventSink) -> TaskReporter:
    return TaskReporter("task-1", log_sink, events)
