"""FfmpegExtractor 測試，以 shell 腳本代替 ffmpeg/ffprobe。"""
from __future__ import annotations

import asyncio
import stat
import sys
from collections import deque
from pathlib import Path
from types import SimpleNamespace

import pytest

from app.pipeline.cancellation import CancellationToken
from app.pipeline.errors import ExtractionError, TaskCancelledError
from app.pipeline.extraction import FfmpegExtractor, parse_progress

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="需要 POSIX shell")

FFPROBE_OK = """#!/bin/sh
echo "10.0"
"""

FFMPEG_OK = """#!/bin/sh
out=""
prev=""
for arg in "$@"; do
  if [ "$arg" = "-progress" ]; then out="$prev"; fi
  prev="$arg"
done
echo "out_time_ms=2500000" >&2
echo "out_time_ms=5000000" >&2
echo "out_time_ms=5000100" >&2
echo "out_time_ms=10000000" >&2
echo "progress=end" >&2
printf 'RIFF' > "$out"
"""

FFMPEG_FAIL = """#!/bin/sh
echo "Invalid data found when processing input" >&2
exit 1
"""

FFMPEG_SLOW = """#!/bin/sh
exec sleep 30
"""


def _script(tmp_path: Path, name: str, body: str) -> str:
    path = tmp_path / "bin" / name
    path.parent.mkdir(exist_ok=True)
    path.write_text(body, encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(path)


def _extractor(tmp_path: Path, *, ffmpeg: str, ffprobe: str) -> FfmpegExtractor:
    return FfmpegExtractor(temp_dir=tmp_path / "temp", ffmpeg_binary=ffmpeg, ffprobe_binary=ffprobe)


@pytest.fixture
def media_file(tmp_path: Path) -> Path:
    path = tmp_path / "talk.mkv"
    path.write_bytes(b"fake-media")
    return path


@pytest.mark.parametrize(
    ("line", "duration", "expected"),
    [
        ("out_time_ms=5000000", 10.0, 50.0),
        ("out_time_ms=20000000", 10.0, 100.0),
        ("out_time_ms=0", 10.0, 0.0),
        ("out_time_ms=5000000", 0.0, None),
        ("out_time_ms=N/A", 10.0, None),
        ("progress=continue", 10.0, None),
    ],
)
def test_parse_progress(line: str, duration: float, expected) -> None:
    assert parse_progress(line, duration) == expected


def test_output_path_uses_task_prefix(tmp_path: Path) -> None:
    extractor = FfmpegExtractor(temp_dir=tmp_path)

    assert extractor.output_path_for("t-1", Path("/media/My Talk.mkv")) == tmp_path / "audio" / "t-1_My Talk.wav"


@pytest.mark.asyncio
async def test_progress_reader_requires_stderr_pipe(reporter, tmp_path: Path) -> None:
    extractor = FfmpegExtractor(temp_dir=tmp_path)
    process = SimpleNamespace(stderr=None)

    with pytest.raises(ExtractionError, match="stderr pipe"):
        await extractor._read_progress(reporter, process, 10.0, deque())


@posix_only
@pytest.mark.asyncio
async def test_extract_reports_progress(reporter, events, repository, media_file, tmp_path) -> None:
    extractor = _extractor(
        tmp_path,
        ffmpeg=_script(tmp_path, "ffmpeg", FFMPEG_OK),
        ffprobe=_script(tmp_path, "ffprobe", FFPROBE_OK),
    )

    output = await extractor.extract(reporter, media_file, token=CancellationToken("task-1"))

    assert output == tmp_path / "temp" / "audio" / "task-1_talk.wav"
    assert output.read_bytes() == b"RIFF"
    assert events.names()[0] == "extraction-started"
    assert [payload["progress"] for payload in events.payloads("task-progress")] == [25.0, 50.0, 100.0]
    messages = [entry.message for entry in repository.list_entries("task-1")]
    assert "Media duration: 10.00s" in messages
    assert f"Audio extracted to: {output}" in messages


@posix_only
@pytest.mark.asyncio
async def test_ffmpeg_failure_raises_and_removes_output(reporter, media_file, tmp_path) -> None:
    extractor = _extractor(
        tmp_path,
        ffmpeg=_script(tmp_path, "ffmpeg", FFMPEG_FAIL),
        ffprobe=_script(tmp_path, "ffprobe", FFPROBE_OK),
    )

    with pytest.raises(ExtractionError) as exc_info:
        await extractor.extract(reporter, media_file, token=CancellationToken("task-1"))

    assert "exit code 1" in str(exc_info.value)
    assert "Invalid data found" in str(exc_info.value)
    assert not extractor.output_path_for("task-1", media_file).exists()


@pytest.mark.asyncio
async def test_missing_ffprobe_binary(reporter, events, media_file, tmp_path) -> None:
    extractor = _extractor(
        tmp_path,
        ffmpeg=str(tmp_path / "missing-ffmpeg"),
        ffprobe=str(tmp_path / "missing-ffprobe"),
    )

    with pytest.raises(ExtractionError, match="Failed to run ffprobe"):
        await extractor.extract(reporter, media_file, token=CancellationToken("task-1"))

    assert events.names() == ["extraction-started"]
    assert not extractor.output_path_for("task-1", media_file).exists()


@posix_only
@pytest.mark.asyncio
async def test_cancel_terminates_ffmpeg(reporter, media_file, tmp_path) -> None:
    extractor = _extractor(
        tmp_path,
        ffmpeg=_script(tmp_path, "ffmpeg", FFMPEG_SLOW),
        ffprobe=_script(tmp_path, "ffprobe", FFPROBE_OK),
    )
    token = CancellationToken("task-1")
    asyncio.get_running_loop().call_later(0.2, token.cancel, "Stopped by user")

    with pytest.raises(TaskCancelledError):
        await asyncio.wait_for(extractor.extract(reporter, media_file, token=token), timeout=10)

    assert not extractor.output_path_for("task-1", media_file).exists()
