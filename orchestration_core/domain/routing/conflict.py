"""冲突消解：显式覆盖、领域专精加分、互斥过滤与辅助处理器上限。"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import replace

from orchestration_core.config import Settings
from orchestration_core.domain.catalog.store import DescriptorStore
from orchestration_core.domain.errors import InvalidRequest, NoMatchError
from orchestration_core.domain.models import Candidate, Handler, ResolvedSelection

logger = logging.getLogger(__name__)


def apply_specificity_bonus(candidates: Sequence[Candidate], bonus: float) -> list[Candidate]:
    """领域集合是其他候选严格子集的候选获得一次性加分，随后重新排序。"""
    boosted: list[Candidate] = []
    for candidate in candidates:
        domains = set(candidate.handler.domains)
        specialized = any(
            domains < set(other.handler.domains)
            for other in candidates
            if other.handler_id != candidate.handler_id
        )
        if specialized:
            breakdown = {**candidate.breakdown, "specificity_bonus": 1}
            boosted.append(replace(candidate, score=candidate.score + bonus, breakdown=breakdown))
        else:
            boosted.append(candidate)
    boosted.sort(key=lambda item: (-item.score, item.handler.priority, item.handler_id))
    return boosted


class ConflictResolver:
    def __init__(self, store: DescriptorStore, settings: Settings) -> None:
        self._store = store
        self._bonus = settings.specificity_bonus
        self._max_supporting = settings.max_supporting_handlers

    def resolve(self, candidates: Sequence[Candidate], override: str | None = None) -> ResolvedSelection:
        """返回主处理器与至多 N 个辅助处理器；任意两者不在对方的冲突集合中。"""
        ranked = apply_specificity_bonus(candidates, self._bonus)

        override_handler: Handler | None = None
        if override:
            override_handler = self._store.find_handler_by_label(override)
            if override_handler is None:
                raise InvalidRequest(f"explicit override names unknown handler: {override}")

        if override_handler is not None:
            primary = override_handler
            if all(item.handler_id != primary.handler_id for item in ranked):
                logger.warning(
                    "override handler did not qualify by score or complexity",
                    extra={"event": "selection.override.unqualified", "payload_preview": {"handler": primary.handler_id}},
                )
            remaining = [item for item in ranked if item.handler_id != primary.handler_id]
        else:
            if not ranked:
                raise NoMatchError(dropped=[item.handler_id for item in candidates])
            primary = ranked[0].handler
            remaining = ranked[1:]

        selected: list[Handler] = [primary]
        supporting: list[Handler] = []
        for candidate in remaining:
            if len(supporting) >= self._max_supporting:
                break
            if any(candidate.handler.conflicts(existing) for existing in selected):
                logger.debug(
                    "candidate skipped by mutual exclusion",
                    extra={"event": "selection.conflict.skipped", "payload_preview": {"handler": candidate.handler_id}},
                )
                continue
            supporting.append(candidate.handler)
            selected.append(candidate.handler)

        selection = ResolvedSelection(
            primary=primary,
            supporting=tuple(supporting),
            override_applied=override_handler is not None,
        )
        logger.info(
            "selection resolved",
            extra={
                "event": "selection.resolved",
                "payload_preview": {
                    "primary": primary.handler_id,
                    "supporting": [item.handler_id for item in supporting],
                    "override": selection.override_applied,
                },
            },
        )
        return selection
