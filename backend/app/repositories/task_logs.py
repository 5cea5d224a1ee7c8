"""任務日誌檔案存取層。"""
from __future__ import annotations

import os
import re
from pathlib import Path
from typing import List

from loguru import logger
from pydantic import ValidationError

from app.schemas.log import LogEntry

_TASK_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-][A-Za-z0-9._-]{0,127}$")


class TaskLogRepository:
    """以每任務一個 JSON Lines 檔案保存日誌，只允許附加寫入。"""

    def __init__(self, logs_dir: Path) -> None:
        self._logs_dir = Path(logs_dir)

    @property
    def logs_dir(self) -> Path:
        """回傳日誌目錄，必要時建立。"""

        self._logs_dir.mkdir(parents=True, exist_ok=True)
        return self._logs_dir

    def get_log_path(self, task_id: str) -> Path:
        """依任務 ID 取得日誌檔路徑，拒絕可能跳脫目錄的 ID。"""

        if not _TASK_ID_PATTERN.match(task_id) or ".." in task_id:
            raise ValueError(f"Invalid task id: {task_id!r}")
        return self.logs_dir / f"{task_id}.log"

    def init_log(self, task_id: str) -> Path:
        """建立空的日誌檔（已存在則保留內容）。"""

        path = self.get_log_path(task_id)
        path.touch(exist_ok=True)
        return path

    def exists(self, task_id: str) -> bool:
        return self.get_log_path(task_id).exists()

    def append_entry(self, task_id: str, entry: LogEntry) -> LogEntry:
        """以單次 write 附加一筆序列化紀錄，確保多任務同時寫入時不會交錯。"""

        line = entry.model_dump_json(by_alias=True) + "\n"
        path = self.get_log_path(task_id)
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o644)
        try:
            os.write(fd, line.encode("utf-8"))
        finally:
            os.close(fd)
        return entry

    def list_entries(self, task_id: str) -> List[LogEntry] | None:
        """讀取任務的全部日誌；日誌不存在時回傳 None。"""

        path = self.get_log_path(task_id)
        if not path.exists():
            return None

        entries: List[LogEntry] = []
        for line in path.read_text(encoding="utf-8").splitlines():
            if not line.strip():
                continue
            try:
                entries.append(LogEntry.model_validate_json(line))
            except ValidationError as exc:
                logger.warning("無法解析日誌行 task={} line={!r}: {}", task_id, line, exc)
        return entries
