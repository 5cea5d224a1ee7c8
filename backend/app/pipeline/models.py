"""管線資料結構。"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Set, Tuple


@dataclass(frozen=True)
class Task:
    """批次中的單一工作：一個輸入檔從頭處理到完成。"""

    id: str
    source_path: Path


class StageKind(str, Enum):
    """可啟用的處理階段，依此順序執行。"""

    EXTRACTION = "extraction"
    TRANSCRIPTION = "transcription"
    TRANSLATION = "translation"


STAGE_ORDER: Tuple[StageKind, ...] = (
    StageKind.EXTRACTION,
    StageKind.TRANSCRIPTION,
    StageKind.TRANSLATION,
)


class PipelineShape(str, Enum):
    """預設的階段組合。"""

    FULL = "full"
    TRANSCRIBE = "transcribe"
    EXTRACT = "extract"
    TRANSLATE = "translate"

    @property
    def stages(self) -> Tuple[StageKind, ...]:
        return _SHAPE_STAGES[self]


_SHAPE_STAGES = {
    PipelineShape.FULL: STAGE_ORDER,
    PipelineShape.TRANSCRIBE: (StageKind.EXTRACTION, StageKind.TRANSCRIPTION),
    PipelineShape.EXTRACT: (StageKind.EXTRACTION,),
    PipelineShape.TRANSLATE: (StageKind.TRANSLATION,),
}


def validate_stage_order(stages: Tuple[StageKind, ...]) -> Tuple[StageKind, ...]:
    """確認階段不為空、不重複且符合固定順序。"""

    if not stages:
        raise ValueError("At least one stage must be enabled")
    positions = [STAGE_ORDER.index(stage) for stage in stages]
    if positions != sorted(set(positions)):
        raise ValueError(f"Stages must be unique and ordered as {[s.value for s in STAGE_ORDER]}")
    return stages


class PipelineState(str, Enum):
    """單一任務的狀態機。"""

    PENDING = "pending"
    EXTRACTING = "extracting"
    TRANSCRIBING = "transcribing"
    TRANSLATING = "translating"
    CLEANING_UP = "cleaning_up"
    SUCCEEDED = "succeeded"
    PARTIALLY_FAILED = "partially_failed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATES


_TERMINAL_STATES = {
    PipelineState.SUCCEEDED,
    PipelineState.PARTIALLY_FAILED,
    PipelineState.FAILED,
    PipelineState.CANCELLED,
}


@dataclass(frozen=True)
class OutputLayout:
    """決定暫存檔與最終輸出檔的位置與命名。"""

    output_dir: Path
    temp_dir: Path
    target_language: str
    include_language_suffix: bool = False

    def transcript_path(self, task_id: str, source_path: Path) -> Path:
        return self.temp_dir / "srt" / f"{task_id}_{Path(source_path).stem}-original.srt"

    def subtitle_output_path(self, source_path: Path) -> Path:
        stem = Path(source_path).stem
        if self.include_language_suffix:
            language = self.target_language.replace(" ", "_")
            return self.output_dir / f"{stem}_{language}.srt"
        return self.output_dir / f"{stem}.srt"

    def artifact_output_path(self, source_path: Path, artifact: Path) -> Path:
        suffix = Path(artifact).suffix
        if suffix == ".srt":
            return self.subtitle_output_path(source_path)
        return self.output_dir / f"{Path(source_path).stem}{suffix}"


@dataclass
class PipelineContext:
    """單一管線執行期間的暫態資料，管線結束即丟棄。"""

    task_id: str
    original_input_path: Path
    intermediate_artifact_paths: List[Path] = field(default_factory=list)
    retained_artifact_paths: Set[Path] = field(default_factory=set)
    final_output_path: Path | None = None
    warnings: List[str] = field(default_factory=list)
    degraded: bool = False

    @property
    def current_artifact(self) -> Path:
        """最近一個完成階段的產出；尚無產出時為原始輸入。"""

        if self.intermediate_artifact_paths:
            return self.intermediate_artifact_paths[-1]
        return self.original_input_path

    def add_artifact(self, path: Path) -> None:
        self.intermediate_artifact_paths.append(Path(path))

    def retain(self, path: Path) -> None:
        """保留暫存檔供除錯，不在清理時刪除。"""

        self.retained_artifact_paths.add(Path(path))

    def promote(self, path: Path) -> None:
        """暫存檔已移為最終輸出，不再視為中間產物。"""

        self.intermediate_artifact_paths = [item for item in self.intermediate_artifact_paths if item != Path(path)]

    def mark_degraded(self, warning: str) -> None:
        self.degraded = True
        self.warnings.append(warning)

    def disposable_artifacts(self) -> List[Path]:
        return [path for path in self.intermediate_artifact_paths if path not in self.retained_artifact_paths]


@dataclass(frozen=True)
class PipelineOutcome:
    """任務的最終結果。"""

    task_id: str
    state: PipelineState
    output_path: Path | None = None
    error: str | None = None
    warnings: Tuple[str, ...] = ()

    @property
    def succeeded(self) -> bool:
        return self.state in (PipelineState.SUCCEEDED, PipelineState.PARTIALLY_FAILED)
