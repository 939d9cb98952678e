"""处理器打分与排序。"""

from __future__ import annotations

import logging
from collections.abc import Sequence

from orchestration_core.config import Settings
from orchestration_core.domain.catalog.store import DescriptorStore
from orchestration_core.domain.models import CapabilityProfile, Candidate, Context, Handler
from orchestration_core.domain.routing.matchers import handler_matchers

logger = logging.getLogger(__name__)


class HandlerSelector:
    """按加权命中数为处理器打分。

    score = kw * keywordMatches + file * fileMatches + ctx * contextMatches
          + overlap * |handler.profiles ∩ resolved profiles|

    得分为 0 或复杂度不在 [min, max] 内的处理器直接丢弃；
    其余按得分降序、priority 升序、id 升序排列，保证同输入同输出。
    """

    def __init__(self, store: DescriptorStore, settings: Settings) -> None:
        self._store = store
        self._weights = {
            "keyword": settings.keyword_weight,
            "file": settings.file_weight,
            "context": settings.context_weight,
            "overlap": settings.profile_overlap_weight,
        }

    def score(self, handler: Handler, ctx: Context, profile_ids: frozenset[str]) -> Candidate:
        breakdown = {kind: matcher.match(ctx) for kind, matcher in handler_matchers(handler.triggers, handler.exclusions).items()}
        breakdown["overlap"] = len(set(handler.profiles) & profile_ids)
        total = sum(self._weights[kind] * count for kind, count in breakdown.items())
        return Candidate(handler=handler, score=total, breakdown=breakdown)

    def rank(self, ctx: Context, profiles: Sequence[CapabilityProfile]) -> list[Candidate]:
        profile_ids = frozenset(item.profile_id for item in profiles)
        ranked: list[Candidate] = []
        dropped: dict[str, str] = {}
        for handler in self._store.handlers():
            candidate = self.score(handler, ctx, profile_ids)
            if candidate.score <= 0:
                continue
            if not handler.accepts_complexity(ctx.complexity):
                dropped[handler.handler_id] = "complexity_out_of_range"
                continue
            ranked.append(candidate)
        ranked.sort(key=lambda item: (-item.score, item.handler.priority, item.handler_id))
        logger.debug(
            "handlers ranked",
            extra={
                "event": "handlers.ranked",
                "payload_preview": {
                    "ranked": [[item.handler_id, item.score] for item in ranked],
                    "dropped": dropped,
                },
            },
        )
        return ranked
