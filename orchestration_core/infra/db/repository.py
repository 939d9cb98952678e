"""仓储实现：会话缓存条目的持久化读写。"""

from __future__ import annotations

from sqlalchemy import delete, select
from sqlalchemy.orm import Session, sessionmaker

from orchestration_core.infra.db.models import SessionCacheEntryORM, utcnow


class SessionCacheRepository:
    """SessionCacheStore 的 SQLAlchemy 实现，每个会话的条目互不可见。"""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def load(self, session_id: str) -> dict[str, tuple[str, ...]]:
        """按写入时间顺序返回会话的全部条目。"""
        with self._session_factory() as db:
            rows = db.execute(
                select(SessionCacheEntryORM)
                .where(SessionCacheEntryORM.session_id == session_id)
                .order_by(SessionCacheEntryORM.updated_at, SessionCacheEntryORM.id)
            ).scalars()
            return {row.fingerprint: tuple(row.profile_ids) for row in rows}

    def save(self, session_id: str, fingerprint: str, profile_ids: tuple[str, ...]) -> None:
        with self._session_factory.begin() as db:
            row = db.execute(
                select(SessionCacheEntryORM).where(
                    SessionCacheEntryORM.session_id == session_id,
                    SessionCacheEntryORM.fingerprint == fingerprint,
                )
            ).scalars().first()
            if row is None:
                db.add(
                    SessionCacheEntryORM(
                        session_id=session_id,
                        fingerprint=fingerprint,
                        profile_ids=list(profile_ids),
                    )
                )
            else:
                row.profile_ids = list(profile_ids)
                row.updated_at = utcnow()

    def delete_session(self, session_id: str) -> None:
        with self._session_factory.begin() as db:
            db.execute(delete(SessionCacheEntryORM).where(SessionCacheEntryORM.session_id == session_id))

    def count(self, session_id: str) -> int:
        with self._session_factory() as db:
            rows = db.execute(
                select(SessionCacheEntryORM.id).where(SessionCacheEntryORM.session_id == session_id)
            ).all()
            return len(rows)
