"""路由接口：执行路由流水线、仅规划预览与结束会话。"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException

from orchestration_core.api.v1.schemas import (
    CandidateResponse,
    ErrorDetail,
    RoutePlanResponse,
    RouteRequestBody,
    RouteResponse,
    SessionEndResponse,
    StepResponse,
)
from orchestration_core.application.container import get_orchestrator
from orchestration_core.application.orchestrator import RoutingOrchestrator, describe_steps
from orchestration_core.domain.errors import (
    ConfigurationError,
    DependencyCycleError,
    InvalidRequest,
    NoMatchError,
    OrchestrationError,
)

router = APIRouter()
logger = logging.getLogger(__name__)


def _orchestrator() -> RoutingOrchestrator:
    return get_orchestrator()


def to_http_error(exc: OrchestrationError) -> HTTPException:
    """把领域异常翻译为 HTTP 错误，附带出错的标识符而非堆栈。"""
    identifiers: list[str] = []
    if isinstance(exc, InvalidRequest):
        status_code = 400
    elif isinstance(exc, NoMatchError):
        status_code = 422
        identifiers = list(exc.dropped)
    elif isinstance(exc, DependencyCycleError):
        status_code = 500
        identifiers = list(exc.chain)
    elif isinstance(exc, ConfigurationError):
        status_code = 500
        identifiers = list(exc.identifiers)
    else:
        status_code = 500
    detail = ErrorDetail(error_type=type(exc).__name__, message=str(exc), identifiers=identifiers)
    return HTTPException(status_code=status_code, detail=detail.model_dump())


@router.post("/route", response_model=RouteResponse)
async def route(
    body: RouteRequestBody,
    orchestrator: RoutingOrchestrator = Depends(_orchestrator),
) -> RouteResponse:
    """规划并执行流水线，返回汇总报告。"""
    try:
        result = await orchestrator.run(body.to_domain())
    except OrchestrationError as exc:
        raise to_http_error(exc) from exc
    return RouteResponse(
        request_id=result.request_id,
        session_id=result.session_id,
        primary_handler=result.primary_handler,
        supporting_handlers=result.supporting_handlers,
        pipeline_pattern=result.pipeline_pattern,
        steps=[StepResponse(**item) for item in result.steps],
        synthesized_report=result.synthesized_report,
        overall_status=result.overall_status,
        profiles=result.profiles,
        archetype=result.archetype,
        scope=result.scope,
        complexity=result.complexity,
    )


@router.post("/route/plan", response_model=RoutePlanResponse)
def plan_route(
    body: RouteRequestBody,
    orchestrator: RoutingOrchestrator = Depends(_orchestrator),
) -> RoutePlanResponse:
    """只做分析、选择与规划，不执行步骤。"""
    try:
        plan = orchestrator.plan(body.to_domain())
    except OrchestrationError as exc:
        raise to_http_error(exc) from exc
    ctx = plan.context
    return RoutePlanResponse(
        request_id=plan.request_id,
        session_id=ctx.session_id,
        primary_domain=ctx.primary_domain,
        secondary_domains=sorted(ctx.secondary_domains),
        complexity=ctx.complexity,
        scope=ctx.scope.value,
        stack=sorted(ctx.stack_tags),
        override=ctx.override,
        archetype=ctx.archetype,
        profiles=[item.profile_id for item in plan.profiles],
        candidates=[
            CandidateResponse(handler_id=item.handler_id, score=item.score, breakdown=dict(item.breakdown))
            for item in plan.candidates
        ],
        primary_handler=plan.selection.primary.handler_id,
        supporting_handlers=[item.handler_id for item in plan.selection.supporting],
        pipeline_pattern=plan.pipeline.pattern.value,
        template=plan.pipeline.template,
        steps=[StepResponse(**item) for item in describe_steps(plan.pipeline)],
    )


@router.delete("/sessions/{session_id}", response_model=SessionEndResponse)
def end_session(
    session_id: str,
    orchestrator: RoutingOrchestrator = Depends(_orchestrator),
) -> SessionEndResponse:
    """结束会话并丢弃其能力配置缓存。"""
    existed = orchestrator.end_session(session_id)
    return SessionEndResponse(session_id=session_id, existed=existed)
