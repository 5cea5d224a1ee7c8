"""應用進入點。"""
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger

from app.api.v1.router import api_router
from app.core.config import settings


async def _validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """請求格式錯誤時沿用統一的錯誤結構。"""

    messages = [
        f"{'.'.join(str(part) for part in error.get('loc', ()))}: {error.get('msg')}" for error in exc.errors()
    ]
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"error": {"code": "VALIDATION_ERROR", "message": "; ".join(messages)}},
    )


def create_app() -> FastAPI:
    """建立 FastAPI 主應用並綁定路由與中介層。"""

    app = FastAPI(title=settings.project_name)

    # 桌面前端與本機工具皆會直接呼叫 API
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(RequestValidationError, _validation_error_handler)
    app.include_router(api_router, prefix=settings.api_v1_prefix)
    logger.info("API 已建立 dispatch={} max_concurrent_tasks={}", settings.batch_dispatch, settings.max_concurrent_tasks)
    return app


# app 供 ASGI 伺服器載入執行
app: FastAPI = create_app()
