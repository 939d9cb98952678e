"""会话缓存持久化所用的引擎与会话工厂。"""

from __future__ import annotations

import logging
import time

from sqlalchemy import Engine, create_engine, inspect
from sqlalchemy.orm import Session, sessionmaker

from orchestration_core.infra.db.models import Base

logger = logging.getLogger(__name__)


def create_db_engine(database_url: str) -> Engine:
    # SQLite 连接会被 API 线程池共享。
    connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
    return create_engine(database_url, pool_pre_ping=True, connect_args=connect_args)


def create_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def init_db(engine: Engine) -> list[str]:
    """建表（已存在则跳过），返回当前库中的表名。"""
    started = time.perf_counter()
    try:
        Base.metadata.create_all(bind=engine)
        tables = sorted(inspect(engine).get_table_names())
    except Exception as exc:
        logger.exception(
            "cache tables could not be created",
            extra={
                "event": "db.init.failed",
                "op": "create_all",
                "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                "error_type": type(exc).__name__,
            },
        )
        raise
    logger.info(
        "cache tables ready",
        extra={
            "event": "db.init.succeeded",
            "op": "create_all",
            "duration_ms": round((time.perf_counter() - started) * 1000, 2),
            "tables": tables,
        },
    )
    return tables
