"""遠端作業客戶端：上傳、建立作業、輪詢狀態、下載結果。

同一份實作以設定綁定不同服務（轉錄、翻譯）；每一次網路呼叫都各自經過 BackoffExecutor，
輪詢迴圈本身的次數上限與重試次數無關。
"""
from __future__ import annotations

import asyncio
import json
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, FrozenSet, Mapping, Tuple

import httpx

from app.pipeline.backoff import BackoffExecutor
from app.pipeline.cancellation import CancellationToken
from app.pipeline.errors import (
    LocalIOError,
    RemoteJobFailedError,
    RemoteJobTimeoutError,
    RemoteServiceError,
)
from app.pipeline.sink import TaskReporter


class JobStatus(str, Enum):
    """遠端作業狀態。"""

    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    UNKNOWN = "unknown"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


@dataclass
class RemoteJob:
    """遠端服務指派的作業，只由輪詢回應更新。"""

    job_id: str
    status: JobStatus
    raw_status: str
    error_detail: str | None = None
    progress: int | None = None
    poll_attempts: int = 0


@dataclass(frozen=True)
class RemoteServiceConfig:
    """描述單一遠端服務的端點與回應格式。"""

    name: str
    base_url: str
    submit_path: str
    status_path: str
    result_path: str
    upload_field: str = "file"
    submit_fields: Mapping[str, str] = field(default_factory=dict)
    # 設定後採兩段式送出：先上傳取得 upload_url，再以 JSON 建立作業
    create_path: str | None = None
    upload_url_field: str = "upload_url"
    create_url_field: str = "audio_url"
    create_fields: Mapping[str, Any] = field(default_factory=dict)
    job_id_fields: Tuple[str, ...] = ("job_id", "id")
    api_key: str | None = None
    auth_header: str = "Authorization"
    auth_scheme: str | None = None
    log_category: str = "network"
    poll_interval: float = 3.0
    max_poll_attempts: int = 600
    queued_statuses: FrozenSet[str] = frozenset({"queued"})
    processing_statuses: FrozenSet[str] = frozenset({"processing"})
    completed_statuses: FrozenSet[str] = frozenset({"completed"})
    failed_statuses: FrozenSet[str] = frozenset({"error", "failed"})

    @property
    def display_name(self) -> str:
        return self.name.capitalize()

    def url(self, path: str, **params: str) -> str:
        return f"{self.base_url.rstrip('/')}/{path.format(**params).lstrip('/')}"

    def auth_headers(self) -> Dict[str, str]:
        if not self.api_key:
            return {}
        value = f"{self.auth_scheme} {self.api_key}" if self.auth_scheme else self.api_key
        return {self.auth_header: value}

    def classify(self, raw_status: str) -> JobStatus:
        """將服務回傳的狀態字串對應到 JobStatus，無法辨識時為 UNKNOWN。"""

        value = (raw_status or "").strip().lower()
        if value in self.completed_statuses:
            return JobStatus.COMPLETED
        if value in self.failed_statuses:
            return JobStatus.FAILED
        if value in self.processing_statuses:
            return JobStatus.PROCESSING
        if value in self.queued_statuses:
            return JobStatus.QUEUED
        return JobStatus.UNKNOWN


def parse_api_error(error_text: str, context: str) -> str:
    """盡量從錯誤回應整理出可讀訊息。"""

    try:
        body = json.loads(error_text)
    except ValueError:
        body = None
    if isinstance(body, dict):
        detail = body.get("error") or body.get("message") or body.get("detail")
        if isinstance(detail, dict):
            detail = detail.get("message") or json.dumps(detail, ensure_ascii=False)
        return f"{context}: {detail or 'Unknown error'}"

    if "401" in error_text or "Unauthorized" in error_text:
        return f"{context}: Invalid API key. Please check your API credential."
    if "403" in error_text or "Forbidden" in error_text:
        return f"{context}: Access denied. Please check your API key permissions."
    if "429" in error_text or "Too Many Requests" in error_text:
        return f"{context}: Rate limit exceeded. Please try again later."
    return f"{context}: {error_text}"


class RemoteJobClient:
    """對單一遠端服務執行 submit → poll → fetch。"""

    def __init__(
        self,
        config: RemoteServiceConfig,
        http_client: httpx.AsyncClient,
        executor: BackoffExecutor,
    ) -> None:
        self._config = config
        self._http = http_client
        self._executor = executor

    @property
    def config(self) -> RemoteServiceConfig:
        return self._config

    async def run(
        self,
        reporter: TaskReporter,
        artifact_path: Path,
        result_path: Path,
        *,
        token: CancellationToken | None = None,
        extra_fields: Mapping[str, str] | None = None,
    ) -> RemoteJob:
        """完整執行一次遠端作業，成功時結果已寫入 result_path。"""

        token = token or CancellationToken(reporter.task_id)
        job = await self.submit(reporter, artifact_path, token=token, extra_fields=extra_fields)
        job = await self.poll(reporter, job, token=token)
        await self.fetch(reporter, job, result_path, token=token)
        return job

    async def submit(
        self,
        reporter: TaskReporter,
        artifact_path: Path,
        *,
        token: CancellationToken,
        extra_fields: Mapping[str, str] | None = None,
    ) -> RemoteJob:
        """上傳檔案並建立作業；檔案只讀取一次，重試時重複使用。"""

        config = self._config
        await reporter.log("metadata", f"Uploading {artifact_path.name} to {config.name} service...")

        try:
            content = await token.guard(asyncio.to_thread(Path(artifact_path).read_bytes))
        except OSError as exc:
            raise LocalIOError(f"Failed to read {artifact_path}: {exc}") from exc

        if config.create_path:
            upload_url = await self._executor.run(
                lambda: self._upload_raw(content),
                name="Upload file",
                task_id=reporter.task_id,
                category=config.log_category,
                token=token,
            )
            await reporter.log(config.log_category, f"Upload complete: {upload_url}")
            body = await self._executor.run(
                lambda: self._create_job(upload_url, extra_fields),
                name=f"Create {config.name} job",
                task_id=reporter.task_id,
                category=config.log_category,
                token=token,
            )
        else:
            body = await self._executor.run(
                lambda: self._upload_multipart(artifact_path.name, content, extra_fields),
                name="Upload file",
                task_id=reporter.task_id,
                category=config.log_category,
                token=token,
            )

        job_id = self._extract_job_id(body)
        raw_status = str(body.get("status") or JobStatus.QUEUED.value)
        job = RemoteJob(job_id=job_id, status=config.classify(raw_status), raw_status=raw_status)

        await reporter.notify(
            "job-started",
            config.log_category,
            f"{config.display_name} job created - ID: {job_id} Status: {raw_status}",
            service=config.name,
            jobId=job_id,
            status=raw_status,
        )
        return job

    async def poll(self, reporter: TaskReporter, job: RemoteJob, *, token: CancellationToken) -> RemoteJob:
        """輪詢直到作業完成；作業失敗立即結束，超過次數上限視為逾時。"""

        config = self._config
        while True:
            if job.poll_attempts >= config.max_poll_attempts:
                raise RemoteJobTimeoutError(
                    f"{config.display_name} timeout: exceeded maximum polling attempts "
                    f"({config.max_poll_attempts}) (Job ID: {job.job_id})",
                    job_id=job.job_id,
                    attempts=job.poll_attempts,
                )

            await token.sleep(config.poll_interval)
            job.poll_attempts += 1

            body = await self._executor.run(
                lambda: self._fetch_status(job.job_id),
                name=f"Poll {config.name} status",
                task_id=reporter.task_id,
                category=config.log_category,
                token=token,
            )
            job.raw_status = str(body.get("status") or "")
            job.status = config.classify(job.raw_status)
            error = body.get("error")
            job.error_detail = str(error) if error else None
            progress = body.get("progress")
            job.progress = progress if isinstance(progress, int) else None

            progress_text = f" ({job.progress}%)" if job.progress is not None else ""
            await reporter.notify(
                "job-polling",
                config.log_category,
                f"Poll attempt {job.poll_attempts}: Status = {job.raw_status}{progress_text} (Job ID: {job.job_id})",
                service=config.name,
                jobId=job.job_id,
                status=job.raw_status,
                attempt=job.poll_attempts,
                progress=job.progress,
            )

            if job.status is JobStatus.COMPLETED:
                await reporter.log(
                    config.log_category,
                    f"{config.display_name} completed successfully! (Job ID: {job.job_id})",
                )
                return job
            if job.status is JobStatus.FAILED:
                detail = job.error_detail or "Unknown error"
                raise RemoteJobFailedError(
                    f"{config.display_name} failed (Job ID: {job.job_id}): {detail}",
                    job_id=job.job_id,
                    detail=detail,
                )
            if job.status is JobStatus.UNKNOWN:
                await reporter.log(
                    config.log_category,
                    f"Unknown status: {job.raw_status} (Job ID: {job.job_id})",
                )

    async def fetch(
        self,
        reporter: TaskReporter,
        job: RemoteJob,
        result_path: Path,
        *,
        token: CancellationToken,
    ) -> Path:
        """下載作業結果並寫入本機路徑。"""

        config = self._config
        await reporter.log("metadata", f"Downloading {config.name} result...")

        content = await self._executor.run(
            lambda: self._download_result(job.job_id),
            name=f"Download {config.name} result",
            task_id=reporter.task_id,
            category=config.log_category,
            token=token,
        )
        try:
            await token.guard(asyncio.to_thread(_write_text_atomic, Path(result_path), content))
        except OSError as exc:
            raise LocalIOError(f"Failed to write {result_path}: {exc}") from exc

        await reporter.notify(
            "job-complete",
            config.log_category,
            f"{config.display_name} result saved to: {result_path} (Job ID: {job.job_id})",
            service=config.name,
            jobId=job.job_id,
            resultPath=str(result_path),
        )
        return Path(result_path)

    async def _upload_multipart(
        self,
        file_name: str,
        content: bytes,
        extra_fields: Mapping[str, str] | None,
    ) -> Dict[str, Any]:
        config = self._config
        fields = {**config.submit_fields, **(extra_fields or {})}
        response = await self._send(
            "POST",
            config.url(config.submit_path),
            "upload",
            files={config.upload_field: (file_name, content, "application/octet-stream")},
            data=fields,
        )
        return _json_body(response, "upload")

    async def _upload_raw(self, content: bytes) -> str:
        config = self._config
        response = await self._send(
            "POST",
            config.url(config.submit_path),
            "upload",
            content=content,
            headers={"Content-Type": "application/octet-stream"},
        )
        body = _json_body(response, "upload")
        upload_url = body.get(config.upload_url_field)
        if not upload_url:
            raise RemoteServiceError(f"Upload response missing {config.upload_url_field}")
        return str(upload_url)

    async def _create_job(self, upload_url: str, extra_fields: Mapping[str, str] | None) -> Dict[str, Any]:
        config = self._config
        if config.create_path is None:
            raise ValueError(f"{config.display_name} has no job creation endpoint")
        payload = {config.create_url_field: upload_url, **config.create_fields, **(extra_fields or {})}
        response = await self._send("POST", config.url(config.create_path), "job creation", json=payload)
        return _json_body(response, "job creation")

    async def _fetch_status(self, job_id: str) -> Dict[str, Any]:
        config = self._config
        response = await self._send(
            "GET",
            config.url(config.status_path, job_id=job_id),
            "status polling",
            job_id=job_id,
        )
        return _json_body(response, "status")

    async def _download_result(self, job_id: str) -> str:
        config = self._config
        response = await self._send(
            "GET",
            config.url(config.result_path, job_id=job_id),
            "result download",
            job_id=job_id,
        )
        return response.text

    async def _send(
        self,
        method: str,
        url: str,
        context: str,
        *,
        job_id: str | None = None,
        headers: Dict[str, str] | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """送出請求，將網路錯誤與非 2xx 回應轉為 RemoteServiceError。"""

        request_headers = {**self._config.auth_headers(), **(headers or {})}
        try:
            response = await self._http.request(method, url, headers=request_headers, **kwargs)
        except httpx.HTTPError as exc:
            raise RemoteServiceError(f"Network error during {context}: {exc}") from exc
        except httpx.InvalidURL as exc:
            raise RemoteServiceError(f"Invalid URL for {context}: {exc}") from exc

        if not response.is_success:
            message = parse_api_error(response.text, f"{context.capitalize()} failed")
            suffix = f" (Job ID: {job_id})" if job_id else ""
            raise RemoteServiceError(
                f"[HTTP {response.status_code}] {message}{suffix}",
                status_code=response.status_code,
            )
        return response

    def _extract_job_id(self, body: Mapping[str, Any]) -> str:
        for key in self._config.job_id_fields:
            value = body.get(key)
            if value:
                return str(value)
        raise RemoteServiceError(f"{self._config.display_name} job creation response missing job id")


def _json_body(response: httpx.Response, context: str) -> Dict[str, Any]:
    try:
        body = response.json()
    except ValueError as exc:
        raise RemoteServiceError(f"Failed to parse {context} response") from exc
    if not isinstance(body, dict):
        raise RemoteServiceError(f"Unexpected {context} response: {body!r}")
    return body


def _write_text_atomic(path: Path, content: str) -> None:
    """先寫入暫存檔再取代，避免留下寫到一半的結果。"""

    path.parent.mkdir(parents=True, exist_ok=True)
    partial = path.with_name(path.name + ".part")
    try:
        partial.write_text(content, encoding="utf-8")
        os.replace(partial, path)
    except OSError:
        partial.unlink(missing_ok=True)
        raise
