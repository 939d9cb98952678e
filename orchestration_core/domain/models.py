"""领域数据结构定义：描述符实体、请求上下文、候选者与流水线值对象。"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from orchestration_core.domain.enums import (
    PipelinePattern,
    PipelineStatus,
    PriorityTier,
    ScopeClass,
    StepKind,
    StepStatus,
)

TOKEN_RE = re.compile(r"[a-z0-9][a-z0-9_.+#-]*")


def normalize_text(text: str) -> str:
    """小写并压缩空白，用于多词关键字的子串匹配。"""
    return " ".join(text.lower().split())


def tokenize(text: str) -> frozenset[str]:
    """把请求文本切分为小写词元集合，去掉词尾标点。"""
    return frozenset(token.rstrip(".-") for token in TOKEN_RE.findall(text.lower()) if token.rstrip(".-"))


def normalize_path(path: str) -> str:
    """统一为 POSIX 风格的相对路径表示。"""
    value = path.strip().replace("\\", "/")
    while value.startswith("./"):
        value = value[2:]
    return value


@dataclass(frozen=True, slots=True)
class TriggerSet:
    """触发器集合：关键字、文件通配、情境标签与项目标记文件。"""
    keywords: tuple[str, ...] = ()
    file_patterns: tuple[str, ...] = ()
    contexts: tuple[str, ...] = ()
    markers: tuple[str, ...] = ()

    def is_empty(self) -> bool:
        return not (self.keywords or self.file_patterns or self.contexts or self.markers)


@dataclass(frozen=True, slots=True)
class CapabilityProfile:
    """能力配置：由触发器激活的配置/行为指引集合，加载后不可变。"""
    profile_id: str
    category: str
    triggers: TriggerSet
    dependencies: tuple[str, ...] = ()
    tier: PriorityTier = PriorityTier.medium
    description: str = ""


@dataclass(frozen=True, slots=True)
class Handler:
    """处理器：可产出特定领域交付物的能力提供者，加载后不可变。"""
    handler_id: str
    name: str
    category: str
    domains: tuple[str, ...]
    triggers: TriggerSet
    profiles: tuple[str, ...] = ()
    exclusions: tuple[str, ...] = ()
    works_with: frozenset[str] = frozenset()
    conflicts_with: frozenset[str] = frozenset()
    priority: int = 5
    complexity_range: tuple[int, int] = (1, 10)
    aliases: tuple[str, ...] = ()
    description: str = ""

    @property
    def home_domain(self) -> str:
        return self.domains[0]

    def accepts_complexity(self, complexity: float) -> bool:
        low, high = self.complexity_range
        return low <= complexity <= high

    def conflicts(self, other: Handler) -> bool:
        """任一方在对方的 conflicts_with 集合中即视为冲突。"""
        return other.handler_id in self.conflicts_with or self.handler_id in other.conflicts_with


@dataclass(slots=True)
class RouteRequest:
    """路由请求输入契约。"""
    request_text: str
    session_id: str
    active_file: str | None = None
    open_files: list[str] = field(default_factory=list)
    project_markers: dict[str, str] = field(default_factory=dict)
    explicit_override: str | None = None


@dataclass(slots=True)
class Context:
    """由请求与环境信号派生的结构化上下文，每个请求新建。"""
    session_id: str
    request_text: str
    primary_domain: str
    secondary_domains: frozenset[str]
    complexity: float
    scope: ScopeClass
    active_file: str | None = None
    open_files: tuple[str, ...] = ()
    project_markers: Mapping[str, str] = field(default_factory=dict)
    stack_tags: frozenset[str] = frozenset()
    override: str | None = None
    archetype: str | None = None
    tokens: frozenset[str] = frozenset()
    normalized_text: str = ""

    def __post_init__(self) -> None:
        if not self.tokens:
            self.tokens = tokenize(self.request_text)
        if not self.normalized_text:
            self.normalized_text = normalize_text(self.request_text)

    @property
    def domains(self) -> frozenset[str]:
        return frozenset({self.primary_domain}) | self.secondary_domains

    @property
    def domain_count(self) -> int:
        return len(self.domains)

    @property
    def files(self) -> tuple[str, ...]:
        """活动文件与打开文件的去重并集，保持原有顺序。"""
        ordered: dict[str, None] = {}
        if self.active_file:
            ordered[normalize_path(self.active_file)] = None
        for item in self.open_files:
            ordered[normalize_path(item)] = None
        return tuple(ordered)

    @property
    def tags(self) -> frozenset[str]:
        return self.domains | self.stack_tags


@dataclass(frozen=True, slots=True)
class Candidate:
    """处理器与其得分的组合。"""
    handler: Handler
    score: float
    breakdown: Mapping[str, int] = field(default_factory=dict)

    @property
    def handler_id(self) -> str:
        return self.handler.handler_id


@dataclass(frozen=True, slots=True)
class ResolvedSelection:
    """冲突消解后的最终选择：一个主处理器与至多三个辅助处理器。"""
    primary: Handler
    supporting: tuple[Handler, ...] = ()
    override_applied: bool = False

    @property
    def handlers(self) -> tuple[Handler, ...]:
        return (self.primary, *self.supporting)

    @property
    def handler_ids(self) -> tuple[str, ...]:
        return tuple(item.handler_id for item in self.handlers)


@dataclass(frozen=True, slots=True)
class StepCondition:
    """条件分支谓词，针对前序步骤输出的分类值求值。"""
    expected: str
    negate: bool = False
    field_name: str = "classification"

    def evaluate(self, output: Any) -> bool:
        if isinstance(output, Mapping):
            value = output.get(self.field_name)
        else:
            value = output
        matched = value is not None and str(value).strip().lower() == self.expected.lower()
        return not matched if self.negate else matched


@dataclass(frozen=True, slots=True)
class PipelineStep:
    """流水线步骤定义。merge 步骤没有处理器。"""
    step_id: str
    handler_id: str | None
    task: str
    kind: StepKind
    predecessors: tuple[str, ...] = ()
    condition: StepCondition | None = None
    critical: bool = False
    fallback_handler_id: str | None = None
    timeout_seconds: float | None = None
    target_files: tuple[str, ...] = ()
    role: str | None = None


@dataclass(frozen=True, slots=True)
class Pipeline:
    """步骤 DAG 与声明的执行模式。"""
    pattern: PipelinePattern
    steps: tuple[PipelineStep, ...]
    archetype: str | None = None
    template: str | None = None

    def step(self, step_id: str) -> PipelineStep:
        for item in self.steps:
            if item.step_id == step_id:
                return item
        raise KeyError(f"unknown step_id: {step_id}")

    def successors(self, step_id: str) -> list[PipelineStep]:
        return [item for item in self.steps if step_id in item.predecessors]


@dataclass(slots=True)
class StepResult:
    """单步执行结果。"""
    step_id: str
    handler_id: str | None
    status: StepStatus
    output: Any = None
    error: str | None = None
    error_type: str | None = None
    duration_ms: float | None = None
    fallback_used: bool = False


@dataclass(slots=True)
class ExecutionOutcome:
    """执行器产出：整体状态与按步骤的结果。"""
    pipeline_id: str
    status: PipelineStatus
    results: dict[str, StepResult]


@dataclass(slots=True)
class RoutingPlan:
    """同步规划阶段的产物：上下文、配置、候选、选择与流水线。"""
    request_id: str
    context: Context
    profiles: list[CapabilityProfile]
    candidates: list[Candidate]
    selection: ResolvedSelection
    pipeline: Pipeline


@dataclass(slots=True)
class RouteResult:
    """路由输出契约。"""
    request_id: str
    session_id: str
    primary_handler: str
    supporting_handlers: list[str]
    pipeline_pattern: str
    steps: list[dict[str, Any]]
    synthesized_report: str
    overall_status: str
    profiles: list[str] = field(default_factory=list)
    archetype: str | None = None
    scope: str | None = None
    complexity: float | None = None
