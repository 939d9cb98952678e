"""领域枚举定义：统一作用域、流水线模式、步骤状态与优先级取值。"""

from __future__ import annotations

from enum import Enum, IntEnum


class PriorityTier(IntEnum):
    """能力配置优先级，数值越大冲突时越优先。"""
    low = 1
    medium = 2
    high = 3
    critical = 4


class ScopeClass(str, Enum):
    """请求作用域分类。"""
    single_file = "single-file"
    feature = "feature"
    multi_module = "multi-module"
    system_wide = "system-wide"


class PipelinePattern(str, Enum):
    """流水线执行模式。"""
    sequential = "sequential"
    parallel = "parallel"
    conditional = "conditional"
    hybrid = "hybrid"


class StepKind(str, Enum):
    """流水线步骤类型。"""
    sequential = "sequential"
    parallel_member = "parallel-member"
    conditional_branch = "conditional-branch"
    merge = "merge"


class StepStatus(str, Enum):
    """步骤生命周期状态枚举。"""
    pending = "pending"
    running = "running"
    succeeded = "succeeded"
    failed = "failed"
    skipped = "skipped"


class PipelineStatus(str, Enum):
    """流水线整体状态枚举。"""
    planned = "planned"
    executing = "executing"
    completed = "completed"
    partially_failed = "partially-failed"
    aborted = "aborted"


TERMINAL_STEP_STATUSES = frozenset({StepStatus.succeeded, StepStatus.failed, StepStatus.skipped})
