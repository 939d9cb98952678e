"""能力配置解析：三层检测、依赖展开、会话缓存与作用域上限。"""

from __future__ import annotations

import hashlib
import logging

from orchestration_core.config import Settings
from orchestration_core.domain.catalog.store import DescriptorStore, find_dependency_cycle
from orchestration_core.domain.enums import ScopeClass
from orchestration_core.domain.errors import DependencyCycleError
from orchestration_core.domain.models import CapabilityProfile, Context
from orchestration_core.domain.routing.matchers import (
    FilePatternMatcher,
    KeywordMatcher,
    ProjectMarkerMatcher,
    keyword_present,
)
from orchestration_core.domain.routing.session_cache import SessionCache

logger = logging.getLogger(__name__)

SCOPE_CEILINGS: dict[ScopeClass, int] = {
    ScopeClass.single_file: 3,
    ScopeClass.feature: 5,
    ScopeClass.multi_module: 7,
    ScopeClass.system_wide: 10,
}

CACHE_BYPASS_PHRASES = (
    "don't use cached rules",
    "do not use cached rules",
    "without cached rules",
    "refresh rules",
)

# 检测层新近度：关键字层最贴近当前请求。
LAYER_RECENCY = {"file": 1, "marker": 2, "keyword": 3}


def context_fingerprint(ctx: Context, vocabulary: frozenset[str]) -> str:
    """领域标签、活动文件与命中的关键字词汇共同决定缓存键。"""
    matched = sorted(kw for kw in vocabulary if keyword_present(kw, ctx.tokens, ctx.normalized_text))
    raw = "|".join(
        (
            ",".join(sorted(ctx.domains)),
            ctx.active_file or "",
            ",".join(matched),
        )
    )
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def wants_cache_bypass(ctx: Context) -> bool:
    text = ctx.normalized_text.replace("’", "'")
    return any(phrase in text for phrase in CACHE_BYPASS_PHRASES)


class ProfileResolver:
    """按上下文解析激活的能力配置列表。"""

    def __init__(self, store: DescriptorStore, settings: Settings) -> None:
        self._store = store
        self._max_iterations = settings.max_dependency_iterations
        self.layer_runs = 0

    def resolve(self, ctx: Context, cache: SessionCache | None = None) -> list[CapabilityProfile]:
        if cache is not None and wants_cache_bypass(ctx):
            cache.clear()

        fingerprint = context_fingerprint(ctx, self._store.keyword_vocabulary)
        if cache is not None:
            cached = cache.get(fingerprint)
            if cached is not None:
                # 同一指纹可能对应不同作用域；缓存按 tier/新近度有序，截断即可。
                cached = cached[: SCOPE_CEILINGS[ctx.scope]]
                logger.debug(
                    "profile cache hit",
                    extra={"event": "profiles.cache.hit", "payload_preview": {"profiles": list(cached)}},
                )
                return [self._store.profile(pid) for pid in cached]

        resolved = self._resolve_uncached(ctx)
        if cache is not None:
            cache.put(fingerprint, tuple(item.profile_id for item in resolved))
        return resolved

    def _resolve_uncached(self, ctx: Context) -> list[CapabilityProfile]:
        self.layer_runs += 1
        recency = self._match_layers(ctx)
        self._expand_dependencies(recency)

        ordered = sorted(
            (self._store.profile(pid) for pid in recency),
            key=lambda item: (-int(item.tier), -recency[item.profile_id], item.profile_id),
        )
        ceiling = SCOPE_CEILINGS[ctx.scope]
        if len(ordered) > ceiling:
            logger.info(
                "profile list truncated to scope ceiling",
                extra={
                    "event": "profiles.truncated",
                    "payload_preview": {
                        "scope": ctx.scope.value,
                        "ceiling": ceiling,
                        "dropped": [item.profile_id for item in ordered[ceiling:]],
                    },
                },
            )
            ordered = ordered[:ceiling]
        logger.debug(
            "profiles resolved",
            extra={"event": "profiles.resolved", "payload_preview": [item.profile_id for item in ordered]},
        )
        return ordered

    def _match_layers(self, ctx: Context) -> dict[str, int]:
        """返回 配置 id -> 最高命中层的新近度。"""
        recency: dict[str, int] = {}
        for profile in self._store.profiles():
            triggers = profile.triggers
            layers = (
                ("file", FilePatternMatcher(triggers.file_patterns)),
                ("marker", ProjectMarkerMatcher(triggers.markers, triggers.contexts)),
                ("keyword", KeywordMatcher(triggers.keywords)),
            )
            for layer, matcher in layers:
                if matcher.match(ctx) > 0:
                    recency[profile.profile_id] = max(recency.get(profile.profile_id, 0), LAYER_RECENCY[layer])
        return recency

    def _expand_dependencies(self, recency: dict[str, int]) -> None:
        """把依赖展开到不动点；依赖继承其依赖方的新近度。"""
        for profile_id in sorted(recency):
            cycle = find_dependency_cycle(profile_id, lambda pid: self._store.profile(pid).dependencies)
            if cycle is not None:
                logger.error(
                    "profile dependency cycle detected",
                    extra={"event": "profiles.cycle", "error_type": "DependencyCycleError", "payload_preview": cycle},
                )
                raise DependencyCycleError(cycle)

        for _ in range(self._max_iterations):
            changed = False
            for profile_id, level in list(recency.items()):
                for dep in self._store.profile(profile_id).dependencies:
                    if recency.get(dep, 0) < level:
                        recency[dep] = level
                        changed = True
            if not changed:
                return
        chain = sorted(recency)
        raise DependencyCycleError(
            chain,
            f"profile dependency expansion did not converge within {self._max_iterations} iterations",
        )
