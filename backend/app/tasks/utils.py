"""Celery 任務共用工具。"""
from __future__ import annotations

from typing import Any

from celery import Celery
from loguru import logger

from app.tasks import batch


def register_tasks(celery: Celery) -> None:
    """將任務邏輯註冊到 Celery 應用。"""

    # 批次內已有重試與逾時處理，worker 層不再自動重試
    @celery.task(name="app.tasks.batch.process_batch", bind=True, acks_late=True)
    def process_batch_task(self, batch_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        return batch.process_batch(batch_id, payload)

    logger.debug("Registered Celery tasks: {}", list(celery.tasks.keys()))
