"""依設定組裝批次所需的客戶端、階段與排程器。"""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Sequence, Tuple

import httpx

from app.core.config import Settings
from app.pipeline.backoff import BackoffExecutor, RetryPolicy, is_transient_error, retry_all
from app.pipeline.cancellation import CancellationToken
from app.pipeline.extraction import AudioExtractor, FfmpegExtractor
from app.pipeline.models import (
    OutputLayout,
    PipelineShape,
    StageKind,
    Task,
    validate_stage_order,
)
from app.pipeline.pipeline import TaskPipeline
from app.pipeline.remote_job import RemoteJobClient, RemoteServiceConfig
from app.pipeline.scheduler import AdmissionLimiter, BatchResult, BatchScheduler
from app.pipeline.sink import CompositeEventSink, EventSink, TaskLogSink, TaskReporter
from app.pipeline.stages import ExtractionStage, Stage, TranscriptionStage, TranslationStage
from app.repositories.task_logs import TaskLogRepository


@dataclass(frozen=True)
class BatchOptions:
    """單一批次的設定，建立後不再讀取全域設定。"""

    output_dir: Path
    target_language: str
    stages: Tuple[StageKind, ...]
    include_language_suffix: bool
    transcription_url: str
    translation_url: str
    transcription_api_key: str | None = None
    translation_api_key: str | None = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        output_dir: Path,
        shape: PipelineShape = PipelineShape.FULL,
        target_language: str | None = None,
        include_language_suffix: bool | None = None,
        transcription_url: str | None = None,
        translation_url: str | None = None,
        api_key: str | None = None,
    ) -> "BatchOptions":
        """合併請求參數與系統設定。"""

        if include_language_suffix is None:
            # 字幕翻譯流程輸出檔名附加語言
            include_language_suffix = shape is PipelineShape.TRANSLATE
        return cls(
            output_dir=Path(output_dir),
            target_language=target_language or settings.default_target_language,
            stages=validate_stage_order(shape.stages),
            include_language_suffix=include_language_suffix,
            transcription_url=transcription_url or settings.transcription_backend_url,
            translation_url=translation_url or settings.translation_server_url,
            transcription_api_key=api_key or settings.transcription_api_key,
            translation_api_key=settings.translation_api_key,
        )


def transcription_service_config(settings: Settings, options: BatchOptions) -> RemoteServiceConfig:
    """轉錄服務端點；two_phase 對應先上傳再建立作業的 API。"""

    common = dict(
        name="transcription",
        base_url=options.transcription_url,
        api_key=options.transcription_api_key,
        auth_header=settings.transcription_auth_header,
        log_category="transcription",
        poll_interval=settings.poll_interval_seconds,
        max_poll_attempts=settings.max_poll_attempts,
    )
    if settings.transcription_submit_mode == "two_phase":
        return RemoteServiceConfig(
            submit_path="/v2/upload",
            create_path="/v2/transcript",
            status_path="/v2/transcript/{job_id}",
            result_path="/v2/transcript/{job_id}/srt",
            **common,
        )
    return RemoteServiceConfig(
        submit_path="/transcriptions",
        status_path="/transcriptions/{job_id}",
        result_path="/transcriptions/{job_id}/srt",
        upload_field="audio_file",
        submit_fields={"language_detection": "true", "speaker_labels": "true"},
        **common,
    )


def translation_service_config(settings: Settings, options: BatchOptions) -> RemoteServiceConfig:
    return RemoteServiceConfig(
        name="translation",
        base_url=options.translation_url,
        submit_path="/translations",
        status_path="/translations/{job_id}",
        result_path="/translations/{job_id}/srt",
        upload_field="srt_file",
        api_key=options.translation_api_key,
        log_category="translation",
        poll_interval=settings.poll_interval_seconds,
        max_poll_attempts=settings.max_poll_attempts,
    )


class PipelineBuilder:
    """為每個任務建立 TaskPipeline；各階段物件無狀態，可在任務間共用。"""

    def __init__(
        self,
        *,
        settings: Settings,
        options: BatchOptions,
        log_sink: TaskLogSink,
        events: EventSink,
        http_client: httpx.AsyncClient,
        extractor: AudioExtractor | None = None,
    ) -> None:
        self._options = options
        self._log_sink = log_sink
        self._events = events
        self._layout = OutputLayout(
            output_dir=options.output_dir,
            temp_dir=Path(settings.temp_dir),
            target_language=options.target_language,
            include_language_suffix=options.include_language_suffix,
        )
        policy = RetryPolicy(
            max_attempts=settings.retry_max_attempts,
            initial_delay_ms=settings.retry_initial_delay_ms,
            retryable=is_transient_error if settings.retry_classify_errors else retry_all,
        )
        executor = BackoffExecutor(policy, log_sink)
        self._extractor = extractor or FfmpegExtractor(
            temp_dir=Path(settings.temp_dir),
            ffmpeg_binary=settings.ffmpeg_binary,
            ffprobe_binary=settings.ffprobe_binary,
            sample_rate=settings.audio_sample_rate,
            channels=settings.audio_channels,
        )
        self._transcription = RemoteJobClient(transcription_service_config(settings, options), http_client, executor)
        self._translation = RemoteJobClient(translation_service_config(settings, options), http_client, executor)
        self._stages = self._build_stages()

    @property
    def layout(self) -> OutputLayout:
        return self._layout

    @property
    def stages(self) -> List[Stage]:
        return list(self._stages)

    def _build_stages(self) -> List[Stage]:
        available: dict[StageKind, Callable[[], Stage]] = {
            StageKind.EXTRACTION: lambda: ExtractionStage(self._extractor),
            StageKind.TRANSCRIPTION: lambda: TranscriptionStage(self._transcription, self._layout),
            StageKind.TRANSLATION: lambda: TranslationStage(self._translation, self._layout),
        }
        return [available[kind]() for kind in self._options.stages]

    def __call__(self, task: Task, token: CancellationToken) -> TaskPipeline:
        reporter = TaskReporter(task.id, self._log_sink, self._events)
        return TaskPipeline(
            task=task,
            stages=self._stages,
            layout=self._layout,
            reporter=reporter,
            token=token,
        )


async def execute_batch(
    batch_id: str,
    tasks: Sequence[Task],
    options: BatchOptions,
    *,
    settings: Settings,
    repository: TaskLogRepository,
    events: EventSink,
    on_scheduler: Callable[[BatchScheduler], None] | None = None,
    extractor: AudioExtractor | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> BatchResult:
    """建立本批次專屬的併發限制與排程器並執行到全部任務結束。"""

    safe_events = CompositeEventSink([events])
    log_sink = TaskLogSink(repository, safe_events)
    owns_client = http_client is None
    client = http_client or httpx.AsyncClient(timeout=settings.http_timeout_seconds)
    try:
        builder = PipelineBuilder(
            settings=settings,
            options=options,
            log_sink=log_sink,
            events=safe_events,
            http_client=client,
            extractor=extractor,
        )
        scheduler = BatchScheduler(
            batch_id=batch_id,
            limiter=AdmissionLimiter(settings.max_concurrent_tasks),
            pipeline_factory=builder,
            events=safe_events,
        )
        if on_scheduler is not None:
            on_scheduler(scheduler)
        return await scheduler.run(tasks)
    finally:
        if owns_client:
            await client.aclose()
