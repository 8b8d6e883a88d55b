"""API 总路由配置，按业务域注册 tools 与 artifacts 子路由。"""

from __future__ import annotations

from fastapi import APIRouter

from supervisor.api.artifacts import router as artifacts_router
from supervisor.api.tools import router as tools_router

api_router = APIRouter()
api_router.include_router(tools_router, tags=["tools"])
api_router.include_router(artifacts_router, tags=["artifacts"])
