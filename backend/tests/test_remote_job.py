"""RemoteJobClient 與遠端服務互動測試。"""
from __future__ import annotations

import json
from pathlib import Path
from typing import Callable, Dict, List

import httpx
import pytest

from app.pipeline.backoff import BackoffExecutor, RetryPolicy, is_transient_error
from app.pipeline.errors import (
    LocalIOError,
    RemoteJobFailedError,
    RemoteJobTimeoutError,
    RemoteServiceError,
)
from app.pipeline.remote_job import (
    JobStatus,
    RemoteJobClient,
    RemoteServiceConfig,
    parse_api_error,
)

SRT_TEXT = "1\n00:00:00,000 --> 00:00:01,000\nHello\n"


def _multipart_config(**overrides) -> RemoteServiceConfig:
    values = dict(
        name="transcription",
        base_url="http://svc.test/api",
        submit_path="/transcriptions",
        status_path="/transcriptions/{job_id}",
        result_path="/transcriptions/{job_id}/srt",
        upload_field="audio_file",
        submit_fields={"language_detection": "true"},
        log_category="transcription",
        poll_interval=0,
    )
    values.update(overrides)
    return RemoteServiceConfig(**values)


class FakeService:
    """依路徑回應的假遠端服務，記錄收到的請求。"""

    def __init__(self, statuses: List[Dict[str, object]], *, prefix: str = "/api/transcriptions") -> None:
        self.statuses = list(statuses)
        self.prefix = prefix
        self.requests: List[httpx.Request] = []
        self.submit_failures = 0

    def count(self, predicate: Callable[[httpx.Request], bool]) -> int:
        return sum(1 for request in self.requests if predicate(request))

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if request.method == "POST" and path == self.prefix:
            if self.submit_failures > 0:
                self.submit_failures -= 1
                return httpx.Response(503, text="Service Unavailable")
            return httpx.Response(200, json={"job_id": "job-1", "status": "queued"})
        if path == f"{self.prefix}/job-1":
            body = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
            return httpx.Response(200, json=body)
        if path == f"{self.prefix}/job-1/srt":
            return httpx.Response(200, text=SRT_TEXT)
        return httpx.Response(404, json={"error": "not found"})


def _client(config, service, log_sink, **policy) -> RemoteJobClient:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(service.handler))
    executor = BackoffExecutor(RetryPolicy(initial_delay_ms=0, **policy), log_sink)
    return RemoteJobClient(config, http_client, executor)


@pytest.fixture
def audio_file(tmp_path: Path) -> Path:
    path = tmp_path / "clip.wav"
    path.write_bytes(b"RIFF-fake-audio")
    return path


@pytest.mark.asyncio
async def test_run_polls_until_completed(reporter, events, log_sink, audio_file, tmp_path) -> None:
    service = FakeService([{"status": "queued"}, {"status": "processing", "progress": 40}, {"status": "completed"}])
    client = _client(_multipart_config(), service, log_sink)
    result_path = tmp_path / "out" / "clip.srt"

    job = await client.run(reporter, audio_file, result_path)

    assert job.status is JobStatus.COMPLETED
    assert job.poll_attempts == 3
    assert result_path.read_text(encoding="utf-8") == SRT_TEXT
    assert not result_path.with_name("clip.srt.part").exists()
    assert events.names() == ["job-started", "job-polling", "job-polling", "job-polling", "job-complete"]
    assert [payload["progress"] for payload in events.payloads("job-polling")] == [None, 40, None]


@pytest.mark.asyncio
async def test_submit_sends_file_and_fields(reporter, log_sink, audio_file, tmp_path) -> None:
    service = FakeService([{"status": "completed"}])
    client = _client(_multipart_config(api_key="secret"), service, log_sink)

    await client.run(reporter, audio_file, tmp_path / "clip.srt", extra_fields={"target_language": "German"})

    upload = service.requests[0]
    body = upload.content
    assert upload.headers["Authorization"] == "secret"
    assert b'name="audio_file"; filename="clip.wav"' in body
    assert b"RIFF-fake-audio" in body
    assert b'name="language_detection"' in body
    assert b'name="target_language"' in body
    assert b"German" in body


@pytest.mark.asyncio
async def test_poll_times_out_after_ceiling(reporter, log_sink, audio_file, tmp_path) -> None:
    service = FakeService([{"status": "queued"}])
    client = _client(_multipart_config(max_poll_attempts=600), service, log_sink)
    result_path = tmp_path / "clip.srt"

    with pytest.raises(RemoteJobTimeoutError) as exc_info:
        await client.run(reporter, audio_file, result_path)

    assert exc_info.value.attempts == 600
    assert "job-1" in str(exc_info.value)
    assert service.count(lambda request: request.url.path.endswith("/job-1")) == 600
    assert service.count(lambda request: request.url.path.endswith("/srt")) == 0
    assert not result_path.exists()


@pytest.mark.asyncio
async def test_remote_failure_stops_polling_with_detail(reporter, log_sink, audio_file, tmp_path) -> None:
    service = FakeService([{"status": "processing"}, {"status": "error", "error": "Unsupported codec"}])
    client = _client(_multipart_config(), service, log_sink)

    with pytest.raises(RemoteJobFailedError) as exc_info:
        await client.run(reporter, audio_file, tmp_path / "clip.srt")

    assert exc_info.value.detail == "Unsupported codec"
    assert exc_info.value.job_id == "job-1"
    assert service.count(lambda request: request.url.path.endswith("/job-1")) == 2
    assert service.count(lambda request: request.url.path.endswith("/srt")) == 0


@pytest.mark.asyncio
async def test_unknown_status_keeps_polling(reporter, repository, log_sink, audio_file, tmp_path) -> None:
    service = FakeService([{"status": "transcoding"}, {"status": "completed"}])
    client = _client(_multipart_config(), service, log_sink)

    job = await client.run(reporter, audio_file, tmp_path / "clip.srt")

    assert job.poll_attempts == 2
    messages = [entry.message for entry in repository.list_entries("task-1")]
    assert "Unknown status: transcoding (Job ID: job-1)" in messages


@pytest.mark.asyncio
async def test_submit_retries_reuse_single_file_read(monkeypatch, reporter, log_sink, audio_file, tmp_path) -> None:
    reads = {"count": 0}
    original = Path.read_bytes

    def counting_read(self):
        reads["count"] += 1
        return original(self)

    monkeypatch.setattr(Path, "read_bytes", counting_read)
    service = FakeService([{"status": "completed"}])
    service.submit_failures = 2
    client = _client(_multipart_config(), service, log_sink)

    await client.run(reporter, audio_file, tmp_path / "clip.srt")

    uploads = [request for request in service.requests if request.method == "POST"]
    assert len(uploads) == 3
    assert all(b"RIFF-fake-audio" in request.content for request in uploads)
    assert reads["count"] == 1


@pytest.mark.asyncio
async def test_missing_artifact_is_local_error(reporter, log_sink, tmp_path) -> None:
    service = FakeService([{"status": "completed"}])
    client = _client(_multipart_config(), service, log_sink)

    with pytest.raises(LocalIOError):
        await client.run(reporter, tmp_path / "missing.wav", tmp_path / "clip.srt")

    assert service.requests == []


@pytest.mark.asyncio
async def test_permanent_http_error_is_not_retried(reporter, log_sink, audio_file, tmp_path) -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(401, json={"error": "Invalid API key"})

    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    executor = BackoffExecutor(RetryPolicy(initial_delay_ms=0, retryable=is_transient_error), log_sink)
    client = RemoteJobClient(_multipart_config(), http_client, executor)

    with pytest.raises(RemoteServiceError) as exc_info:
        await client.run(reporter, audio_file, tmp_path / "clip.srt")

    assert len(calls) == 1
    assert exc_info.value.status_code == 401
    assert str(exc_info.value) == "[HTTP 401] Upload failed: Invalid API key"


@pytest.mark.asyncio
async def test_network_errors_are_retried(reporter, log_sink, audio_file, tmp_path) -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        raise httpx.ConnectError("connection refused", request=request)

    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    executor = BackoffExecutor(RetryPolicy(initial_delay_ms=0), log_sink)
    client = RemoteJobClient(_multipart_config(), http_client, executor)

    with pytest.raises(RemoteServiceError, match="Network error during upload"):
        await client.run(reporter, audio_file, tmp_path / "clip.srt")

    assert len(calls) == 3


@pytest.mark.asyncio
async def test_malformed_base_url_is_remote_error(reporter, log_sink, audio_file, tmp_path) -> None:
    service = FakeService([{"status": "completed"}])
    client = _client(_multipart_config(base_url="http://svc.test:notaport/api"), service, log_sink)

    with pytest.raises(RemoteServiceError, match="Invalid URL for upload"):
        await client.run(reporter, audio_file, tmp_path / "clip.srt")

    assert service.requests == []


@pytest.mark.asyncio
async def test_job_creation_requires_create_path(log_sink) -> None:
    service = FakeService([{"status": "completed"}])
    client = _client(_multipart_config(), service, log_sink)

    with pytest.raises(ValueError, match="no job creation endpoint"):
        await client._create_job("https://cdn.test/upload/1", None)

    assert service.requests == []


@pytest.mark.asyncio
async def test_two_phase_submit(reporter, log_sink, audio_file, tmp_path) -> None:
    seen: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        path = request.url.path
        if path == "/v2/upload":
            return httpx.Response(200, json={"upload_url": "https://cdn.test/upload/abc"})
        if path == "/v2/transcript" and request.method == "POST":
            return httpx.Response(200, json={"id": "tr-9", "status": "queued"})
        if path == "/v2/transcript/tr-9":
            return httpx.Response(200, json={"status": "completed"})
        if path == "/v2/transcript/tr-9/srt":
            return httpx.Response(200, text=SRT_TEXT)
        return httpx.Response(404)

    config = RemoteServiceConfig(
        name="transcription",
        base_url="http://svc.test",
        submit_path="/v2/upload",
        create_path="/v2/transcript",
        status_path="/v2/transcript/{job_id}",
        result_path="/v2/transcript/{job_id}/srt",
        api_key="k-123",
        poll_interval=0,
    )
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    client = RemoteJobClient(config, http_client, BackoffExecutor(RetryPolicy(initial_delay_ms=0), log_sink))

    job = await client.run(reporter, audio_file, tmp_path / "clip.srt")

    assert job.job_id == "tr-9"
    assert seen[0].content == b"RIFF-fake-audio"
    assert json.loads(seen[1].content) == {"audio_url": "https://cdn.test/upload/abc"}
    assert all(request.headers["Authorization"] == "k-123" for request in seen)
    assert (tmp_path / "clip.srt").read_text(encoding="utf-8") == SRT_TEXT


def test_classify_statuses() -> None:
    config = _multipart_config()

    assert config.classify("Completed") is JobStatus.COMPLETED
    assert config.classify("error") is JobStatus.FAILED
    assert config.classify("failed") is JobStatus.FAILED
    assert config.classify("processing") is JobStatus.PROCESSING
    assert config.classify("queued") is JobStatus.QUEUED
    assert config.classify("paused") is JobStatus.UNKNOWN


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ('{"error": "Bad audio"}', "Upload failed: Bad audio"),
        ('{"detail": {"message": "Quota"}}', "Upload failed: Quota"),
        ("401 Unauthorized", "Upload failed: Invalid API key. Please check your API credential."),
        ("Forbidden", "Upload failed: Access denied. Please check your API key permissions."),
        ("Too Many Requests", "Upload failed: Rate limit exceeded. Please try again later."),
        ("gateway exploded", "Upload failed: gateway exploded"),
    ],
)
def test_parse_api_error(text: str, expected: str) -> None:
    assert parse_api_error(text, "Upload failed") == expected
