"""依赖容器模块，负责单例化创建描述符仓库、会话缓存、步骤执行器与编排门面。"""

from __future__ import annotations

import logging
from functools import lru_cache

from orchestration_core.application.executor import LocalStepRunner, StepRunner
from orchestration_core.application.orchestrator import RoutingOrchestrator
from orchestration_core.config import get_settings
from orchestration_core.domain.catalog.store import DescriptorStore, load_catalog
from orchestration_core.domain.routing.session_cache import SessionCacheRegistry
from orchestration_core.infra.db.repository import SessionCacheRepository
from orchestration_core.infra.db.session import create_db_engine, create_session_factory, init_db
from orchestration_core.infra.handlers.client import HttpStepRunner

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_descriptor_store() -> DescriptorStore:
    """获取描述符仓库单例；描述符非法时在此处以 ConfigurationError 失败。"""
    return load_catalog(get_settings().resolved_catalog_dir())


@lru_cache(maxsize=1)
def get_session_cache_repository() -> SessionCacheRepository | None:
    """启用持久化时返回会话缓存仓储，否则为 None。"""
    settings = get_settings()
    if not settings.session_cache_persist:
        return None
    engine = create_db_engine(settings.database_url)
    init_db(engine)
    return SessionCacheRepository(create_session_factory(engine))


@lru_cache(maxsize=1)
def get_session_caches() -> SessionCacheRegistry:
    settings = get_settings()
    return SessionCacheRegistry(
        settings.session_cache_max_entries,
        store=get_session_cache_repository(),
        max_sessions=settings.session_cache_max_sessions,
    )


@lru_cache(maxsize=1)
def get_step_runner() -> StepRunner:
    """配置了处理器服务地址时走 HTTP，否则使用进程内执行器。"""
    settings = get_settings()
    if settings.handler_base_url:
        return HttpStepRunner(settings.handler_base_url, settings.handler_request_timeout_seconds)
    return LocalStepRunner()


@lru_cache(maxsize=1)
def get_orchestrator() -> RoutingOrchestrator:
    return RoutingOrchestrator(
        settings=get_settings(),
        store=get_descriptor_store(),
        runner=get_step_runner(),
        caches=get_session_caches(),
    )


async def shutdown_container_resources() -> None:
    """关闭共享客户端并清理依赖容器缓存。"""
    if get_step_runner.cache_info().currsize:
        runner = get_step_runner()
        if isinstance(runner, HttpStepRunner):
            try:
                await runner.aclose()
            except (OSError, RuntimeError) as exc:
                logger.warning(
                    "handler client close failed",
                    extra={"event": "container.shutdown.failed", "error_type": type(exc).__name__, "error": str(exc)},
                )

    # 按依赖顺序清理缓存，确保后续请求可重新构建全新实例。
    for provider in (
        get_orchestrator,
        get_step_runner,
        get_session_caches,
        get_session_cache_repository,
        get_descriptor_store,
    ):
        provider.cache_clear()
