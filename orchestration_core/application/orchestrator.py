"""路由编排门面：串联上下文分析、配置解析、选择、规划、执行与汇总。"""

from __future__ import annotations

import logging
import threading
from typing import Any
from uuid import uuid4

from orchestration_core.application.executor import PipelineExecutor, StepRunner
from orchestration_core.application.synthesizer import PipelineReport, Synthesizer
from orchestration_core.config import Settings
from orchestration_core.domain.catalog.store import DescriptorStore
from orchestration_core.domain.errors import OrchestrationError
from orchestration_core.domain.models import Context, Pipeline, RouteRequest, RouteResult, RoutingPlan, StepResult
from orchestration_core.domain.routing.analyzer import ContextAnalyzer
from orchestration_core.domain.routing.conflict import ConflictResolver
from orchestration_core.domain.routing.planner import PipelinePlanner
from orchestration_core.domain.routing.profile_resolver import ProfileResolver
from orchestration_core.domain.routing.selector import HandlerSelector
from orchestration_core.domain.routing.session_cache import SessionCacheRegistry
from orchestration_core.infra.logging.context import bind_log_context, get_log_context

logger = logging.getLogger(__name__)


def describe_steps(pipeline: Pipeline, results: dict[str, StepResult] | None = None) -> list[dict[str, Any]]:
    """输出契约中的步骤列表；未执行时状态为 pending。"""
    steps: list[dict[str, Any]] = []
    for step in pipeline.steps:
        result = results.get(step.step_id) if results else None
        steps.append(
            {
                "step_id": step.step_id,
                "handler": (result.handler_id if result else None) or step.handler_id,
                "task": step.task,
                "kind": step.kind.value,
                "predecessors": list(step.predecessors),
                "status": result.status.value if result else "pending",
                "target_files": list(step.target_files),
                "error": result.error if result else None,
            }
        )
    return steps


class RoutingOrchestrator:
    """同步完成路由规划，异步执行流水线；所有错误以类型化异常抛出。"""

    def __init__(
        self,
        *,
        settings: Settings,
        store: DescriptorStore,
        runner: StepRunner,
        caches: SessionCacheRegistry | None = None,
    ) -> None:
        self._settings = settings
        self._store = store
        self._caches = caches or SessionCacheRegistry(
            settings.session_cache_max_entries, max_sessions=settings.session_cache_max_sessions
        )
        self.analyzer = ContextAnalyzer(store, settings.secondary_domain_ratio)
        self.resolver = ProfileResolver(store, settings)
        self.selector = HandlerSelector(store, settings)
        self.conflicts = ConflictResolver(store, settings)
        self.planner = PipelinePlanner(store, settings)
        self.executor = PipelineExecutor(runner)
        self.synthesizer = Synthesizer()
        self._prior: dict[str, Context] = {}
        self._prior_lock = threading.Lock()

    @property
    def store(self) -> DescriptorStore:
        return self._store

    @property
    def caches(self) -> SessionCacheRegistry:
        return self._caches

    def plan(self, request: RouteRequest) -> RoutingPlan:
        request_id = get_log_context().get("request_id") or uuid4().hex
        with bind_log_context(request_id=request_id, session_id=request.session_id):
            try:
                with self._prior_lock:
                    prior = self._prior.get(request.session_id)
                ctx = self.analyzer.analyze(request, prior)
                profiles = self.resolver.resolve(ctx, self._caches.get(request.session_id))
                candidates = self.selector.rank(ctx, profiles)
                selection = self.conflicts.resolve(candidates, ctx.override)
                pipeline = self.planner.plan(selection, ctx)
            except OrchestrationError as exc:
                logger.warning(
                    "routing failed",
                    extra={"event": "route.failed", "error_type": type(exc).__name__, "error": str(exc)},
                )
                raise
            with self._prior_lock:
                self._prior[request.session_id] = ctx
                # 会话缓存被淘汰后，其上一轮上下文一并释放。
                for stale in [sid for sid in self._prior if not self._caches.has_session(sid)]:
                    del self._prior[stale]
            logger.info(
                "route planned",
                extra={
                    "event": "route.planned",
                    "payload_preview": {
                        "primary": selection.primary.handler_id,
                        "supporting": [item.handler_id for item in selection.supporting],
                        "pattern": pipeline.pattern.value,
                        "profiles": [item.profile_id for item in profiles],
                    },
                },
            )
            return RoutingPlan(
                request_id=request_id,
                context=ctx,
                profiles=profiles,
                candidates=candidates,
                selection=selection,
                pipeline=pipeline,
            )

    async def run(self, request: RouteRequest) -> RouteResult:
        plan = self.plan(request)
        with bind_log_context(request_id=plan.request_id, session_id=request.session_id):
            outcome = await self.executor.execute(
                plan.pipeline,
                pipeline_id=plan.request_id,
                context=self._invocation_context(plan.context),
            )
            report = self.synthesizer.synthesize(plan.pipeline, outcome)
        return self._result(plan, report, outcome.results)

    @staticmethod
    def _invocation_context(ctx: Context) -> dict[str, Any]:
        return {
            "request_text": ctx.request_text,
            "primary_domain": ctx.primary_domain,
            "secondary_domains": sorted(ctx.secondary_domains),
            "complexity": ctx.complexity,
            "scope": ctx.scope.value,
            "files": list(ctx.files),
            "stack": sorted(ctx.stack_tags),
        }

    @staticmethod
    def _result(plan: RoutingPlan, report: PipelineReport, results: dict[str, StepResult]) -> RouteResult:
        ctx = plan.context
        return RouteResult(
            request_id=plan.request_id,
            session_id=ctx.session_id,
            primary_handler=plan.selection.primary.handler_id,
            supporting_handlers=[item.handler_id for item in plan.selection.supporting],
            pipeline_pattern=plan.pipeline.pattern.value,
            steps=describe_steps(plan.pipeline, results),
            synthesized_report=report.render(),
            overall_status=report.status.value,
            profiles=[item.profile_id for item in plan.profiles],
            archetype=ctx.archetype,
            scope=ctx.scope.value,
            complexity=ctx.complexity,
        )

    def end_session(self, session_id: str) -> bool:
        with self._prior_lock:
            self._prior.pop(session_id, None)
        return self._caches.end_session(session_id)
