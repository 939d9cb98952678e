"""API 总路由配置，按业务域注册 routing 与 catalog 子路由。"""

from __future__ import annotations

from fastapi import APIRouter

from orchestration_core.api.v1.catalog import router as catalog_router
from orchestration_core.api.v1.routing import router as routing_router
from orchestration_core.config import get_settings

settings = get_settings()

api_router = APIRouter(prefix=settings.api_prefix)
api_router.include_router(routing_router, tags=["routing"])
api_router.include_router(catalog_router, tags=["catalog"])
