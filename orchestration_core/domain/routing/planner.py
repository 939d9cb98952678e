"""流水线规划：把最终选择与上下文转换为步骤 DAG。

决策顺序：
1. 所有处理器都有非空且两两不相交的目标文件集 -> parallel（成员 + merge）；
2. 有目标文件的处理器两两不相交、其余处理器都依赖它们的产出 -> hybrid；
3. 任一辅助处理器的任务依赖主处理器的产出 -> sequential（按依赖表拓扑排序）；
4. 上下文原型命中模板且主处理器类别属于模板角色 -> 实例化模板；
5. 其余情况 -> 主处理器在前、辅助处理器按选择顺序的 sequential。
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass

from orchestration_core.config import Settings
from orchestration_core.domain.catalog.store import DescriptorStore
from orchestration_core.domain.enums import PipelinePattern, StepKind
from orchestration_core.domain.errors import ConfigurationError
from orchestration_core.domain.models import (
    Context,
    Handler,
    Pipeline,
    PipelineStep,
    ResolvedSelection,
    StepCondition,
)
from orchestration_core.domain.routing.matchers import FilePatternMatcher

logger = logging.getLogger(__name__)

# 类别 -> 必须在其之前完成的类别集合。
CATEGORY_DEPENDENCIES: dict[str, frozenset[str]] = {
    "testing": frozenset({"implementation", "debugging", "database", "performance"}),
    "security": frozenset({"implementation", "database"}),
    "deployment": frozenset({"implementation", "testing", "security", "database"}),
    "review": frozenset({"implementation", "debugging", "testing", "database", "performance"}),
    "documentation": frozenset({"implementation", "database", "planning"}),
    "implementation": frozenset({"planning", "database"}),
    "database": frozenset({"planning"}),
    "performance": frozenset({"planning"}),
}


def depends_on(later: Handler, earlier: Handler) -> bool:
    return earlier.category in CATEGORY_DEPENDENCIES.get(later.category, frozenset())


@dataclass(frozen=True, slots=True)
class TemplateStep:
    """模板中的通用步骤，role 为处理器类别占位符。"""
    key: str
    role: str
    label: str
    after: tuple[str, ...] = ()
    critical: bool = False
    fallback_role: str | None = None
    condition: StepCondition | None = None


@dataclass(frozen=True, slots=True)
class PipelineTemplate:
    name: str
    steps: tuple[TemplateStep, ...]

    @property
    def roles(self) -> frozenset[str]:
        return frozenset(step.role for step in self.steps)


DATA_LAYER = StepCondition(expected="data-layer")

TEMPLATES: dict[str, PipelineTemplate] = {
    template.name: template
    for template in (
        PipelineTemplate(
            "new-feature",
            (
                TemplateStep("plan", "planning", "break the feature down"),
                TemplateStep("schema", "database", "prepare the data model", after=("plan",)),
                TemplateStep("build", "implementation", "implement the feature", after=("schema",), critical=True),
                TemplateStep("test", "testing", "cover the feature with tests", after=("build",)),
                TemplateStep("review", "review", "review the change", after=("test",)),
            ),
        ),
        PipelineTemplate(
            "bug-fix",
            (
                TemplateStep(
                    "diagnose", "debugging", "reproduce and isolate the defect", critical=True,
                    fallback_role="implementation",
                ),
                TemplateStep("patch", "implementation", "apply the fix", after=("diagnose",)),
                TemplateStep("verify", "testing", "add a regression test", after=("patch",)),
            ),
        ),
        PipelineTemplate(
            "refactor",
            (
                TemplateStep("assess", "review", "identify refactoring targets"),
                TemplateStep("restructure", "implementation", "restructure the code", after=("assess",), critical=True),
                TemplateStep("verify", "testing", "confirm behaviour is unchanged", after=("restructure",)),
            ),
        ),
        PipelineTemplate(
            "security-audit",
            (
                TemplateStep("audit", "security", "audit for vulnerabilities", critical=True, fallback_role="review"),
                TemplateStep("remediate", "implementation", "remediate findings", after=("audit",)),
                TemplateStep("verify", "testing", "verify the remediation", after=("remediate",)),
            ),
        ),
        PipelineTemplate(
            "database-change",
            (
                TemplateStep(
                    "design", "database", "design the schema change", critical=True,
                    fallback_role="implementation",
                ),
                TemplateStep("apply", "implementation", "update application code", after=("design",)),
                TemplateStep("verify", "testing", "test the migration", after=("apply",)),
            ),
        ),
        PipelineTemplate(
            "deployment",
            (
                TemplateStep("test", "testing", "run the release test suite"),
                TemplateStep("secure", "security", "run the pre-release security check", after=("test",)),
                TemplateStep("deploy", "deployment", "roll out the release", after=("secure",), critical=True),
            ),
        ),
        PipelineTemplate(
            "code-review",
            (
                TemplateStep("review", "review", "review the change", critical=True),
                TemplateStep("secure", "security", "check the change for security issues", after=("review",)),
            ),
        ),
        PipelineTemplate(
            "performance",
            (
                TemplateStep("measure", "performance", "locate the bottleneck", critical=True),
                TemplateStep(
                    "data-layer", "database", "optimise queries and indexes", after=("measure",),
                    condition=DATA_LAYER,
                ),
                TemplateStep(
                    "app-layer", "implementation", "optimise application code", after=("measure",),
                    condition=StepCondition(expected="data-layer", negate=True),
                ),
                TemplateStep("verify", "testing", "confirm the improvement", after=("data-layer", "app-layer")),
            ),
        ),
    )
}


class PipelinePlanner:
    def __init__(self, store: DescriptorStore, settings: Settings) -> None:
        self._store = store
        self._timeout = settings.step_timeout_seconds

    def target_files(self, handler: Handler, ctx: Context) -> tuple[str, ...]:
        """上下文文件中命中处理器文件模式、且未被其排除规则覆盖的部分。"""
        return tuple(FilePatternMatcher(handler.triggers.file_patterns, handler.exclusions).matched_files(ctx.files))

    def plan(self, selection: ResolvedSelection, ctx: Context) -> Pipeline:
        handlers = list(selection.handlers)
        targets = {item.handler_id: self.target_files(item, ctx) for item in handlers}

        pipeline = (
            self._plan_parallel(handlers, targets, ctx)
            or self._plan_hybrid(handlers, targets, ctx)
            or self._plan_dependency_order(selection, ctx)
            or self._plan_template(selection, ctx)
            or self._sequential(handlers, ctx, PipelinePattern.sequential)
        )
        self._check_parallel_groups(pipeline)
        logger.info(
            "pipeline planned",
            extra={
                "event": "pipeline.planned",
                "payload_preview": {
                    "pattern": pipeline.pattern.value,
                    "template": pipeline.template,
                    "steps": [[step.step_id, list(step.predecessors)] for step in pipeline.steps],
                },
            },
        )
        return pipeline

    @staticmethod
    def _disjoint(handlers: Sequence[Handler], targets: dict[str, tuple[str, ...]]) -> bool:
        seen: set[str] = set()
        for handler in handlers:
            files = set(targets[handler.handler_id])
            if not files or files & seen:
                return False
            seen |= files
        return True

    def _task(self, label: str, ctx: Context) -> str:
        return f"{label}: {ctx.request_text.strip()}"

    def _parallel_group(
        self,
        handlers: Sequence[Handler],
        targets: dict[str, tuple[str, ...]],
        ctx: Context,
    ) -> list[PipelineStep]:
        steps = [
            PipelineStep(
                step_id=f"step-{index}-{handler.handler_id}",
                handler_id=handler.handler_id,
                task=self._task(handler.category, ctx),
                kind=StepKind.parallel_member,
                timeout_seconds=self._timeout,
                target_files=targets[handler.handler_id],
                role=handler.category,
            )
            for index, handler in enumerate(handlers, start=1)
        ]
        steps.append(
            PipelineStep(
                step_id=f"step-{len(steps) + 1}-merge",
                handler_id=None,
                task="merge parallel results",
                kind=StepKind.merge,
                predecessors=tuple(step.step_id for step in steps),
                role="merge",
            )
        )
        return steps

    def _plan_parallel(
        self,
        handlers: Sequence[Handler],
        targets: dict[str, tuple[str, ...]],
        ctx: Context,
    ) -> Pipeline | None:
        if len(handlers) < 2 or not self._disjoint(handlers, targets):
            return None
        return Pipeline(
            pattern=PipelinePattern.parallel,
            steps=tuple(self._parallel_group(handlers, targets, ctx)),
            archetype=ctx.archetype,
        )

    def _plan_hybrid(
        self,
        handlers: Sequence[Handler],
        targets: dict[str, tuple[str, ...]],
        ctx: Context,
    ) -> Pipeline | None:
        targeted = [item for item in handlers if targets[item.handler_id]]
        rest = [item for item in handlers if not targets[item.handler_id]]
        if len(targeted) < 2 or not rest or not self._disjoint(targeted, targets):
            return None
        if not all(any(depends_on(later, earlier) for earlier in targeted) for later in rest):
            return None
        steps = self._parallel_group(targeted, targets, ctx)
        previous = steps[-1].step_id
        for handler in self._topological(rest):
            step = PipelineStep(
                step_id=f"step-{len(steps) + 1}-{handler.handler_id}",
                handler_id=handler.handler_id,
                task=self._task(handler.category, ctx),
                kind=StepKind.sequential,
                predecessors=(previous,),
                timeout_seconds=self._timeout,
                role=handler.category,
            )
            steps.append(step)
            previous = step.step_id
        return Pipeline(pattern=PipelinePattern.hybrid, steps=tuple(steps), archetype=ctx.archetype)

    @staticmethod
    def _topological(handlers: Sequence[Handler]) -> list[Handler]:
        """稳定拓扑排序：每轮取选择顺序中第一个依赖已满足的处理器。"""
        remaining = list(handlers)
        ordered: list[Handler] = []
        while remaining:
            for index, handler in enumerate(remaining):
                blocked = any(
                    depends_on(handler, other) for other in remaining if other.handler_id != handler.handler_id
                )
                if not blocked:
                    ordered.append(remaining.pop(index))
                    break
            else:
                # 类别互相依赖时保持剩余处理器的原顺序。
                ordered.extend(remaining)
                break
        return ordered

    def _plan_dependency_order(self, selection: ResolvedSelection, ctx: Context) -> Pipeline | None:
        if not any(depends_on(item, selection.primary) for item in selection.supporting):
            return None
        return self._sequential(self._topological(selection.handlers), ctx, PipelinePattern.sequential)

    def _sequential(self, handlers: Sequence[Handler], ctx: Context, pattern: PipelinePattern) -> Pipeline:
        steps: list[PipelineStep] = []
        for index, handler in enumerate(handlers, start=1):
            steps.append(
                PipelineStep(
                    step_id=f"step-{index}-{handler.handler_id}",
                    handler_id=handler.handler_id,
                    task=self._task(handler.category, ctx),
                    kind=StepKind.sequential,
                    predecessors=(steps[-1].step_id,) if steps else (),
                    critical=index == 1,
                    timeout_seconds=self._timeout,
                    role=handler.category,
                )
            )
        return Pipeline(pattern=pattern, steps=tuple(steps), archetype=ctx.archetype)

    def _resolve_fallback(self, role: str | None, exclude: str, selection: ResolvedSelection) -> str | None:
        """优先在已选处理器中找同角色者，其次取目录中 priority 最小者。"""
        if role is None:
            return None
        for item in selection.handlers:
            if item.category == role and item.handler_id != exclude:
                return item.handler_id
        pool = sorted(
            (item for item in self._store.handlers() if item.category == role and item.handler_id != exclude),
            key=lambda item: (item.priority, item.handler_id),
        )
        return pool[0].handler_id if pool else None

    def _plan_template(self, selection: ResolvedSelection, ctx: Context) -> Pipeline | None:
        template = TEMPLATES.get(ctx.archetype or "")
        if template is None or selection.primary.category not in template.roles:
            return None

        unassigned = list(selection.handlers)
        assigned: dict[str, Handler] = {}
        for tstep in template.steps:
            match = next((item for item in unassigned if item.category == tstep.role), None)
            if match is not None:
                assigned[tstep.key] = match
                unassigned.remove(match)

        # 被丢弃步骤的后继改接到其前驱上。
        resolved_after: dict[str, tuple[str, ...]] = {}
        for tstep in template.steps:
            preds: list[str] = []
            for key in tstep.after:
                for item in ([key] if key in assigned else resolved_after.get(key, ())):
                    if item not in preds:
                        preds.append(item)
            resolved_after[tstep.key] = tuple(preds)

        step_ids: dict[str, str] = {}
        steps: list[PipelineStep] = []
        for tstep in template.steps:
            handler = assigned.get(tstep.key)
            if handler is None:
                continue
            step_id = f"step-{len(steps) + 1}-{handler.handler_id}"
            step_ids[tstep.key] = step_id
            # 条件依据的步骤被丢弃时，分支退化为普通顺序步骤。
            condition = tstep.condition
            if condition is not None and not (tstep.after and tstep.after[0] in assigned):
                condition = None
            steps.append(
                PipelineStep(
                    step_id=step_id,
                    handler_id=handler.handler_id,
                    task=self._task(tstep.label, ctx),
                    kind=StepKind.conditional_branch if condition else StepKind.sequential,
                    predecessors=tuple(step_ids[key] for key in resolved_after[tstep.key]),
                    condition=condition,
                    critical=tstep.critical,
                    fallback_handler_id=self._resolve_fallback(tstep.fallback_role, handler.handler_id, selection),
                    timeout_seconds=self._timeout,
                    role=tstep.role,
                )
            )

        for handler in unassigned:
            step = PipelineStep(
                step_id=f"step-{len(steps) + 1}-{handler.handler_id}",
                handler_id=handler.handler_id,
                task=self._task(handler.category, ctx),
                kind=StepKind.sequential,
                predecessors=(steps[-1].step_id,) if steps else (),
                timeout_seconds=self._timeout,
                role=handler.category,
            )
            steps.append(step)

        has_branches = any(step.kind is StepKind.conditional_branch for step in steps)
        return Pipeline(
            pattern=PipelinePattern.conditional if has_branches else PipelinePattern.sequential,
            steps=tuple(steps),
            archetype=ctx.archetype,
            template=template.name,
        )

    @staticmethod
    def _check_parallel_groups(pipeline: Pipeline) -> None:
        """同一并行组内的步骤不得共享目标文件。"""
        seen: dict[str, str] = {}
        for step in pipeline.steps:
            if step.kind is not StepKind.parallel_member:
                continue
            for path in step.target_files:
                owner = seen.get(path)
                if owner is not None:
                    raise ConfigurationError(
                        f"parallel steps {owner} and {step.step_id} share target file {path}",
                        identifiers=[owner, step.step_id, path],
                    )
                seen[path] = step.step_id
