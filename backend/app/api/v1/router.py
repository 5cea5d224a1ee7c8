"""API v1 路由設定。"""
from fastapi import APIRouter

from app.api.v1.endpoints import batches, health, tasks

# api_router 負責收攏 v1 版本的所有路由
api_router = APIRouter()
api_router.include_router(health.router)
api_router.include_router(batches.router)
api_router.include_router(tasks.router)
