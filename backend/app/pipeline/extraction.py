"""以 ffmpeg 從媒體檔擷取 WAV 音訊。"""
from __future__ import annotations

import asyncio
from collections import deque
from pathlib import Path
from typing import Deque, Protocol

from app.pipeline.cancellation import CancellationToken
from app.pipeline.errors import ExtractionError
from app.pipeline.sink import TaskReporter

_PROGRESS_PREFIX = "out_time_ms="


class AudioExtractor(Protocol):
    """音訊擷取介面：成功回傳可讀取的暫存音訊路徑。"""

    async def extract(self, reporter: TaskReporter, input_path: Path, *, token: CancellationToken) -> Path:
        ...


def parse_progress(line: str, total_duration: float) -> float | None:
    """解析 ffmpeg -progress 輸出的 out_time_ms 行，回傳百分比。"""

    if total_duration <= 0 or not line.startswith(_PROGRESS_PREFIX):
        return None
    try:
        microseconds = int(line[len(_PROGRESS_PREFIX):].strip())
    except ValueError:
        return None
    seconds = microseconds / 1_000_000
    return max(0.0, min(seconds / total_duration * 100.0, 100.0))


class FfmpegExtractor:
    """執行 ffprobe 取得長度，再以 ffmpeg 轉出 WAV 並回報進度。"""

    def __init__(
        self,
        *,
        temp_dir: Path,
        ffmpeg_binary: str = "ffmpeg",
        ffprobe_binary: str = "ffprobe",
        sample_rate: int = 44100,
        channels: int = 2,
    ) -> None:
        self._temp_dir = Path(temp_dir)
        self._ffmpeg = ffmpeg_binary
        self._ffprobe = ffprobe_binary
        self._sample_rate = sample_rate
        self._channels = channels

    def output_path_for(self, task_id: str, input_path: Path) -> Path:
        return self._temp_dir / "audio" / f"{task_id}_{Path(input_path).stem}.wav"

    async def extract(self, reporter: TaskReporter, input_path: Path, *, token: CancellationToken) -> Path:
        """擷取音訊；失敗或取消時刪除未完成的輸出檔。"""

        input_path = Path(input_path)
        await reporter.notify(
            "extraction-started",
            "metadata",
            f"Extracting audio from: {input_path}",
            inputPath=str(input_path),
        )

        output_path = self.output_path_for(reporter.task_id, input_path)
        try:
            await asyncio.to_thread(output_path.parent.mkdir, parents=True, exist_ok=True)
            duration = await self.probe_duration(reporter, input_path)
            await self._transcode(reporter, input_path, output_path, duration, token)
        except BaseException:
            await asyncio.to_thread(output_path.unlink, missing_ok=True)
            raise

        await reporter.log("ffmpeg", f"Audio extracted to: {output_path}")
        return output_path

    async def probe_duration(self, reporter: TaskReporter, input_path: Path) -> float:
        """以 ffprobe 讀取媒體長度（秒）。"""

        args = [
            self._ffprobe,
            "-v",
            "error",
            "-show_entries",
            "format=duration",
            "-of",
            "default=noprint_wrappers=1:nokey=1",
            str(input_path),
        ]
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise ExtractionError(f"Failed to run ffprobe: {exc}") from exc

        stdout, stderr = await process.communicate()
        if process.returncode != 0:
            detail = stderr.decode("utf-8", errors="replace").strip()
            raise ExtractionError(f"ffprobe failed to get media duration: {detail}")

        text = stdout.decode("utf-8", errors="replace").strip()
        try:
            duration = float(text)
        except ValueError as exc:
            raise ExtractionError(f"Failed to parse duration: {text!r}") from exc

        await reporter.log("ffprobe", f"Media duration: {duration:.2f}s")
        return duration

    async def _transcode(
        self,
        reporter: TaskReporter,
        input_path: Path,
        output_path: Path,
        duration: float,
        token: CancellationToken,
    ) -> None:
        args = [
            self._ffmpeg,
            "-i",
            str(input_path),
            "-vn",
            "-acodec",
            "pcm_s16le",
            "-ar",
            str(self._sample_rate),
            "-ac",
            str(self._channels),
            "-y",
            str(output_path),
            "-progress",
            "pipe:2",
            "-nostats",
        ]
        await reporter.log("ffmpeg", "Running: " + " ".join(args))
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise ExtractionError(f"Failed to spawn ffmpeg process: {exc}") from exc

        tail: Deque[str] = deque(maxlen=10)
        reader = asyncio.ensure_future(self._read_progress(reporter, process, duration, tail))
        exited = asyncio.ensure_future(process.wait())
        cancelled = asyncio.ensure_future(token.wait())
        try:
            await asyncio.wait({exited, cancelled}, return_when=asyncio.FIRST_COMPLETED)
            if not exited.done():
                # 只終止本任務自己的子程序
                process.terminate()
                await exited
                token.raise_if_cancelled()
            await reader
        finally:
            cancelled.cancel()
            if process.returncode is None:
                process.kill()
                await process.wait()
            if not reader.done():
                reader.cancel()

        if process.returncode != 0:
            detail = " | ".join(tail)
            raise ExtractionError(f"FFmpeg process failed with exit code {process.returncode}: {detail}")

    async def _read_progress(
        self,
        reporter: TaskReporter,
        process: asyncio.subprocess.Process,
        duration: float,
        tail: Deque[str],
    ) -> None:
        if process.stderr is None:
            raise ExtractionError("FFmpeg stderr pipe is not available")
        last_reported = -1
        async for raw in process.stderr:
            line = raw.decode("utf-8", errors="replace").strip()
            progress = parse_progress(line, duration)
            if progress is None:
                if line and "=" not in line:
                    tail.append(line)
                continue
            if int(progress) == last_reported:
                continue
            last_reported = int(progress)
            await reporter.notify(
                "task-progress",
                "ffmpeg",
                f"Extraction progress: {last_reported}%",
                stage="extraction",
                progress=round(progress, 1),
            )
