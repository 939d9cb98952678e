"""API 请求与响应数据模型定义，约束路由与目录接口的输入输出结构。"""

from __future__ import annotations

from pydantic import BaseModel, Field

from orchestration_core.domain.models import RouteRequest


class RouteRequestBody(BaseModel):
    """路由请求体。"""
    request_text: str
    session_id: str = Field(min_length=1)
    active_file: str | None = None
    open_files: list[str] = Field(default_factory=list)
    project_markers: dict[str, str] = Field(default_factory=dict)
    explicit_override: str | None = None

    def to_domain(self) -> RouteRequest:
        return RouteRequest(
            request_text=self.request_text,
            session_id=self.session_id,
            active_file=self.active_file,
            open_files=list(self.open_files),
            project_markers=dict(self.project_markers),
            explicit_override=self.explicit_override,
        )


class StepResponse(BaseModel):
    step_id: str
    handler: str | None
    task: str
    kind: str
    predecessors: list[str]
    status: str
    target_files: list[str] = Field(default_factory=list)
    error: str | None = None


class RouteResponse(BaseModel):
    """路由执行接口响应模型。"""
    request_id: str
    session_id: str
    primary_handler: str
    supporting_handlers: list[str]
    pipeline_pattern: str
    steps: list[StepResponse]
    synthesized_report: str
    overall_status: str
    profiles: list[str]
    archetype: str | None = None
    scope: str | None = None
    complexity: float | None = None


class CandidateResponse(BaseModel):
    handler_id: str
    score: float
    breakdown: dict[str, int]


class RoutePlanResponse(BaseModel):
    """仅规划不执行的响应模型。"""
    request_id: str
    session_id: str
    primary_domain: str
    secondary_domains: list[str]
    complexity: float
    scope: str
    stack: list[str]
    override: str | None
    archetype: str | None
    profiles: list[str]
    candidates: list[CandidateResponse]
    primary_handler: str
    supporting_handlers: list[str]
    pipeline_pattern: str
    template: str | None
    steps: list[StepResponse]


class SessionEndResponse(BaseModel):
    session_id: str
    existed: bool


class HandlerResponse(BaseModel):
    """处理器元数据接口响应模型。"""
    id: str
    name: str
    category: str
    description: str
    domains: list[str]
    aliases: list[str]
    profiles: list[str]
    works_with: list[str]
    conflicts_with: list[str]
    priority: int
    complexity: tuple[int, int]
    triggers: dict[str, list[str]]


class ProfileResponse(BaseModel):
    id: str
    category: str
    description: str
    tier: str
    dependencies: list[str]
    triggers: dict[str, list[str]]


class CatalogHealthResponse(BaseModel):
    healthy: bool
    profile_count: int
    handler_count: int
    dependency_cycles: list[list[str]]
    unlinked_profiles: list[str]
    untriggered_handlers: list[str]


class ErrorDetail(BaseModel):
    error_type: str
    message: str
    identifiers: list[str] = Field(default_factory=list)
