"""核心設定模組。"""
import tempfile
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_temp_dir() -> Path:
    """系統暫存目錄下的專用子目錄。"""

    return Path(tempfile.gettempdir()) / "translation-app"


class Settings(BaseSettings):
    """系統設定載入器，統一管理環境變數。"""

    api_v1_prefix: str = "/v1"
    project_name: str = "Subtitle Pipeline API"
    redis_url: str = "redis://localhost:6379/0"
    celery_broker_url: str | None = None
    celery_result_url: str | None = None
    batch_dispatch: Literal["inline", "celery"] = "inline"
    max_retained_batches: int = Field(default=50, ge=1)

    logs_dir: Path = Path("logs")
    temp_dir: Path = Field(default_factory=_default_temp_dir)

    transcription_backend_url: str = "http://localhost:3000/api"
    transcription_api_key: str | None = None
    transcription_auth_header: str = "Authorization"
    transcription_submit_mode: Literal["multipart", "two_phase"] = "multipart"
    translation_server_url: str = "http://localhost:8000"
    translation_api_key: str | None = None
    default_target_language: str = "English"

    max_concurrent_tasks: int = Field(default=4, ge=1)
    retry_max_attempts: int = Field(default=3, ge=1)
    retry_initial_delay_ms: int = Field(default=1000, ge=0)
    retry_classify_errors: bool = False
    poll_interval_seconds: float = Field(default=3.0, ge=0.0)
    max_poll_attempts: int = Field(default=600, ge=1)
    http_timeout_seconds: float = 60.0

    ffmpeg_binary: str = "ffmpeg"
    ffprobe_binary: str = "ffprobe"
    audio_sample_rate: int = 44100
    audio_channels: int = 2

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """建立單例設定，避免重複解析設定來源。"""

    return Settings()


# settings 物件提供全域使用的設定值
settings: Settings = get_settings()
