"""会话级能力配置缓存：指纹 -> 配置 id 列表，按会话隔离。"""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from typing import Protocol

logger = logging.getLogger(__name__)


class SessionCacheStore(Protocol):
    """可选的持久化后端，键值格式为 指纹 -> 配置 id 列表。"""

    def load(self, session_id: str) -> dict[str, tuple[str, ...]]:
        ...

    def save(self, session_id: str, fingerprint: str, profile_ids: tuple[str, ...]) -> None:
        ...

    def delete_session(self, session_id: str) -> None:
        ...


class SessionCache:
    """单会话 LRU 缓存；同一会话内的并发请求通过互斥锁串行化读写。"""

    def __init__(self, session_id: str, max_entries: int = 128, store: SessionCacheStore | None = None) -> None:
        self.session_id = session_id
        self._max_entries = max(1, max_entries)
        self._store = store
        self._entries: OrderedDict[str, tuple[str, ...]] = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0
        if store is not None:
            for fingerprint, profile_ids in store.load(session_id).items():
                self._entries[fingerprint] = tuple(profile_ids)
            self._evict()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get(self, fingerprint: str) -> tuple[str, ...] | None:
        with self._lock:
            value = self._entries.get(fingerprint)
            if value is None:
                self.misses += 1
                return None
            self._entries.move_to_end(fingerprint)
            self.hits += 1
            return value

    def put(self, fingerprint: str, profile_ids: tuple[str, ...]) -> None:
        with self._lock:
            self._entries[fingerprint] = tuple(profile_ids)
            self._entries.move_to_end(fingerprint)
            self._evict()
            if self._store is not None:
                self._store.save(self.session_id, fingerprint, tuple(profile_ids))

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            if self._store is not None:
                self._store.delete_session(self.session_id)
        logger.info(
            "session cache cleared",
            extra={"event": "session_cache.cleared", "session_id": self.session_id},
        )

    def _evict(self) -> None:
        while len(self._entries) > self._max_entries:
            self._entries.popitem(last=False)


class SessionCacheRegistry:
    """按会话 id 管理缓存实例，会话之间不共享；活跃会话数超过上限时淘汰最久未访问者。

    淘汰只释放内存中的缓存，持久化条目保留，会话再次出现时重新加载。
    """

    def __init__(
        self,
        max_entries: int = 128,
        store: SessionCacheStore | None = None,
        max_sessions: int = 1024,
    ) -> None:
        self._max_entries = max_entries
        self._store = store
        self._max_sessions = max(1, max_sessions)
        self._caches: OrderedDict[str, SessionCache] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, session_id: str) -> SessionCache:
        evicted: list[str] = []
        with self._lock:
            cache = self._caches.get(session_id)
            if cache is None:
                cache = SessionCache(session_id, self._max_entries, self._store)
                self._caches[session_id] = cache
            else:
                self._caches.move_to_end(session_id)
            while len(self._caches) > self._max_sessions:
                evicted.append(self._caches.popitem(last=False)[0])
        if evicted:
            logger.info(
                "idle session caches evicted",
                extra={"event": "session_cache.evicted", "payload_preview": {"sessions": evicted}},
            )
        return cache

    def has_session(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._caches

    def end_session(self, session_id: str) -> bool:
        """清理并移除会话缓存，返回该会话此前是否存在。"""
        with self._lock:
            cache = self._caches.pop(session_id, None)
        if cache is not None:
            cache.clear()
        elif self._store is not None:
            self._store.delete_session(session_id)
        logger.info(
            "session ended",
            extra={"event": "session.ended", "session_id": session_id, "payload_preview": {"existed": cache is not None}},
        )
        return cache is not None

    def active_sessions(self) -> list[str]:
        with self._lock:
            return sorted(self._caches)
