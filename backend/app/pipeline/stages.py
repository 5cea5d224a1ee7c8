"""管線各階段實作。"""
from __future__ import annotations

import asyncio
import shutil
from pathlib import Path
from typing import Protocol

from app.pipeline.cancellation import CancellationToken
from app.pipeline.errors import FallbackCopyError, LocalIOError, TaskCancelledError
from app.pipeline.extraction import AudioExtractor
from app.pipeline.models import OutputLayout, PipelineContext, PipelineState, StageKind
from app.pipeline.remote_job import RemoteJobClient
from app.pipeline.sink import TaskReporter


class Stage(Protocol):
    """單一處理階段。"""

    kind: StageKind
    state: PipelineState
    failure_label: str

    async def run(self, ctx: PipelineContext, reporter: TaskReporter, token: CancellationToken) -> None:
        ...

    async def on_failure(self, ctx: PipelineContext, reporter: TaskReporter) -> None:
        ...


class ExtractionStage:
    kind = StageKind.EXTRACTION
    state = PipelineState.EXTRACTING
    failure_label = "Audio extraction failed"

    def __init__(self, extractor: AudioExtractor) -> None:
        self._extractor = extractor

    async def run(self, ctx: PipelineContext, reporter: TaskReporter, token: CancellationToken) -> None:
        audio_path = await self._extractor.extract(reporter, ctx.current_artifact, token=token)
        ctx.add_artifact(audio_path)

    async def on_failure(self, ctx: PipelineContext, reporter: TaskReporter) -> None:
        return None


class TranscriptionStage:
    """送出音訊取得原文字幕，存放於暫存目錄。"""

    kind = StageKind.TRANSCRIPTION
    state = PipelineState.TRANSCRIBING
    failure_label = "Transcription failed"

    def __init__(self, client: RemoteJobClient, layout: OutputLayout) -> None:
        self._client = client
        self._layout = layout

    async def run(self, ctx: PipelineContext, reporter: TaskReporter, token: CancellationToken) -> None:
        audio_path = ctx.current_artifact
        transcript_path = self._layout.transcript_path(ctx.task_id, ctx.original_input_path)

        await reporter.log("metadata", f"Starting transcription for: {audio_path}")
        await self._client.run(reporter, audio_path, transcript_path, token=token)

        if not await asyncio.to_thread(transcript_path.exists):
            raise LocalIOError(f"Transcript file missing after download: {transcript_path}")
        ctx.add_artifact(transcript_path)
        await reporter.log("metadata", "Transcription completed! Original SRT ready for translation.")

    async def on_failure(self, ctx: PipelineContext, reporter: TaskReporter) -> None:
        # 轉錄失敗時保留音訊暫存檔以便排查
        audio_path = ctx.current_artifact
        if audio_path in ctx.intermediate_artifact_paths:
            ctx.retain(audio_path)
            await reporter.log("metadata", f"Keeping temp audio file for debugging: {audio_path}")


class TranslationStage:
    """翻譯字幕；遠端失敗時以原文字幕作為輸出。"""

    kind = StageKind.TRANSLATION
    state = PipelineState.TRANSLATING
    failure_label = "Translation failed"

    def __init__(self, client: RemoteJobClient, layout: OutputLayout) -> None:
        self._client = client
        self._layout = layout

    async def run(self, ctx: PipelineContext, reporter: TaskReporter, token: CancellationToken) -> None:
        source_path = ctx.current_artifact
        output_path = self._layout.subtitle_output_path(ctx.original_input_path)
        language = self._layout.target_language

        await reporter.notify(
            "translation-started",
            "metadata",
            f"Starting translation to {language}...",
            originalSrtPath=str(source_path),
            targetLanguage=language,
        )

        try:
            await self._client.run(
                reporter,
                source_path,
                output_path,
                token=token,
                extra_fields={"target_language": language},
            )
        except (TaskCancelledError, LocalIOError):
            raise
        except Exception as exc:
            # 任何遠端或未預期錯誤都改用原文字幕
            warning = f"Translation failed: {exc}. Falling back to original SRT."
            await reporter.log("warning", warning)
            await self._copy_original(source_path, output_path)
            ctx.mark_degraded(warning)
            ctx.final_output_path = output_path
            await reporter.notify(
                "translation-complete",
                "metadata",
                f"Original SRT saved to: {output_path}",
                translatedSrtPath=str(output_path),
                fallback=True,
            )
            return

        ctx.final_output_path = output_path
        await reporter.notify(
            "translation-complete",
            "translation",
            f"Translation to {language} complete, saved to {output_path}",
            translatedSrtPath=str(output_path),
            fallback=False,
        )

    async def on_failure(self, ctx: PipelineContext, reporter: TaskReporter) -> None:
        return None

    async def _copy_original(self, source_path: Path, output_path: Path) -> None:
        try:
            await asyncio.to_thread(output_path.parent.mkdir, parents=True, exist_ok=True)
            await asyncio.to_thread(shutil.copyfile, source_path, output_path)
        except OSError as exc:
            raise FallbackCopyError(f"Failed to copy original SRT as fallback: {exc}") from exc
