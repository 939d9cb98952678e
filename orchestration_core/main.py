"""HTTP 服务入口。"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
import logging
import time
from uuid import uuid4

from fastapi import FastAPI, Request

from orchestration_core.api.router import api_router
from orchestration_core.application.container import get_descriptor_store, shutdown_container_resources
from orchestration_core.config import get_settings
from orchestration_core.infra.logging.context import bind_log_context
from orchestration_core.infra.logging.setup import configure_logging, shutdown_logging

settings = get_settings()
configure_logging(settings, process_role="api")
logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-Id"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    # 描述符目录在启动时加载：引用错误直接让启动失败，环路只告警。
    store = get_descriptor_store()
    report = store.health_report()
    app.state.catalog_healthy = report.healthy
    logger.info(
        "descriptor catalog loaded",
        extra={
            "event": "api.startup.catalog_loaded",
            "payload_preview": {"handlers": report.handler_count, "profiles": report.profile_count},
        },
    )
    if not report.healthy:
        logger.warning(
            "descriptor catalog has problems",
            extra={
                "event": "catalog.health.warning",
                "payload_preview": {
                    "dependency_cycles": report.dependency_cycles,
                    "untriggered_handlers": report.untriggered_handlers,
                },
            },
        )
    try:
        yield
    finally:
        logger.info("releasing runtime resources", extra={"event": "api.shutdown"})
        await shutdown_container_resources()
        shutdown_logging()


app = FastAPI(title=settings.app_name, lifespan=lifespan)


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)


@app.middleware("http")
async def request_context(request: Request, call_next):
    """为每个请求绑定 request_id（沿用调用方传入的值），并记录耗时。"""
    request_id = request.headers.get(REQUEST_ID_HEADER) or uuid4().hex
    op = f"{request.method} {request.url.path}"
    started = time.perf_counter()
    with bind_log_context(request_id=request_id):
        try:
            response = await call_next(request)
        except Exception as exc:
            logger.exception(
                "unhandled error while serving request",
                extra={
                    "event": "http.request.failed",
                    "op": op,
                    "duration_ms": _elapsed_ms(started),
                    "error_type": type(exc).__name__,
                },
            )
            raise
        level = logging.WARNING if response.status_code >= 500 else logging.INFO
        logger.log(
            level,
            "request served",
            extra={
                "event": "http.request.completed",
                "op": op,
                "duration_ms": _elapsed_ms(started),
                "status_code": response.status_code,
            },
        )
    response.headers[REQUEST_ID_HEADER] = request_id
    return response


@app.get("/health")
def health() -> dict[str, object]:
    return {"status": "ok", "catalog_healthy": getattr(app.state, "catalog_healthy", None)}


app.include_router(api_router)
