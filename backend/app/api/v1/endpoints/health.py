"""系統健康檢查端點。"""
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends

from app.core.config import settings
from app.schemas.log import LogFolderResponse
from app.services.batch_service import BatchService, get_batch_service

# router 專責提供系統層資訊路由
router = APIRouter(prefix="/system", tags=["system"])


@router.get("/health", summary="查詢系統健康狀態")
async def read_health() -> dict[str, Any]:
    """回傳服務健康狀態與版本資訊，供監控使用。"""

    payload: dict[str, Any] = {
        "status": "ok",
        "service": settings.project_name,
        "dispatch": settings.batch_dispatch,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    return payload


@router.get("/logs-folder", response_model=LogFolderResponse, summary="取得任務日誌目錄")
async def read_logs_folder(service: BatchService = Depends(get_batch_service)) -> LogFolderResponse:
    """回傳任務日誌所在的絕對路徑，目錄不存在時會先建立。"""

    return LogFolderResponse(path=str(service.logs_folder()))
