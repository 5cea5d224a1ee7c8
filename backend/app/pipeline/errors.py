"""管線錯誤類型定義。"""
from __future__ import annotations


class PipelineError(Exception):
    """管線各階段錯誤的共同基底。"""


class ExtractionError(PipelineError):
    """音訊擷取程序失敗。"""


class LocalIOError(PipelineError):
    """本機檔案讀寫或程序啟動失敗，不進行重試。"""


class RemoteJobError(PipelineError):
    """遠端服務相關錯誤的基底。"""


class RemoteServiceError(RemoteJobError):
    """遠端呼叫失敗（網路錯誤或非 2xx 回應）。"""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RemoteJobFailedError(RemoteJobError):
    """遠端服務回報作業本身失敗。"""

    def __init__(self, message: str, *, job_id: str, detail: str) -> None:
        super().__init__(message)
        self.job_id = job_id
        self.detail = detail


class RemoteJobTimeoutError(RemoteJobError):
    """輪詢次數超過上限仍未到達終止狀態。"""

    def __init__(self, message: str, *, job_id: str, attempts: int) -> None:
        super().__init__(message)
        self.job_id = job_id
        self.attempts = attempts


class FallbackCopyError(PipelineError):
    """翻譯失敗後複製原始字幕亦失敗。"""


class TaskCancelledError(PipelineError):
    """任務收到取消訊號。"""

    def __init__(self, task_id: str, reason: str | None = None) -> None:
        super().__init__(reason or f"Task {task_id} cancelled")
        self.task_id = task_id
        self.reason = reason
