"""流水线规划测试：并行、混合、依赖排序、模板实例化与并行组校验。"""

from __future__ import annotations

import pytest

from orchestration_core.domain.enums import PipelinePattern, ScopeClass, StepKind
from orchestration_core.domain.errors import ConfigurationError
from orchestration_core.domain.models import Pipeline, PipelineStep, ResolvedSelection
from orchestration_core.domain.routing.planner import PipelinePlanner, depends_on

from conftest import SCENARIO_B_FILES


def _selection(store, primary: str, *supporting: str) -> ResolvedSelection:
    return ResolvedSelection(
        primary=store.handler(primary),
        supporting=tuple(store.handler(item) for item in supporting),
    )


def _shape(pipeline: Pipeline) -> list[tuple[str, tuple[str, ...]]]:
    return [(step.step_id, step.predecessors) for step in pipeline.steps]


def test_category_dependencies(store) -> None:
    """类别依赖表决定先后关系。"""
    assert depends_on(store.handler("test-engineer"), store.handler("debugger"))
    assert depends_on(store.handler("backend-specialist"), store.handler("database-architect"))
    assert not depends_on(store.handler("debugger"), store.handler("test-engineer"))


def test_disjoint_targets_run_in_parallel(store, settings, make_context) -> None:
    """目标文件互不相交时并行执行并追加合并步骤。"""
    ctx = make_context(
        "build full-stack user profile page",
        complexity=7.0,
        scope=ScopeClass.multi_module,
        active_file=SCENARIO_B_FILES[3],
        open_files=tuple(SCENARIO_B_FILES),
        archetype="new-feature",
    )
    pipeline = PipelinePlanner(store, settings).plan(
        _selection(store, "frontend-specialist", "backend-specialist"), ctx
    )
    assert pipeline.pattern is PipelinePattern.parallel
    assert _shape(pipeline) == [
        ("step-1-frontend-specialist", ()),
        ("step-2-backend-specialist", ()),
        ("step-3-merge", ("step-1-frontend-specialist", "step-2-backend-specialist")),
    ]
    frontend, backend, merge = pipeline.steps
    assert set(frontend.target_files) == {
        "frontend/src/pages/ProfilePage.tsx",
        "frontend/src/components/ProfileCard.tsx",
        "frontend/src/hooks/useProfile.ts",
    }
    assert set(backend.target_files) == {
        "backend/api/profile.py",
        "backend/models/user.py",
        "backend/services/profile_service.py",
    }
    assert merge.kind is StepKind.merge
    assert merge.handler_id is None
    assert not any(step.critical for step in pipeline.steps)
    assert pipeline.archetype == "new-feature"


def test_hybrid_runs_dependents_after_merge(store, settings, make_context) -> None:
    """混合模式中无目标文件的处理器在合并后执行。"""
    ctx = make_context("build the profile page", open_files=tuple(SCENARIO_B_FILES))
    pipeline = PipelinePlanner(store, settings).plan(
        _selection(store, "frontend-specialist", "backend-specialist", "test-engineer"), ctx
    )
    assert pipeline.pattern is PipelinePattern.hybrid
    assert _shape(pipeline) == [
        ("step-1-frontend-specialist", ()),
        ("step-2-backend-specialist", ()),
        ("step-3-merge", ("step-1-frontend-specialist", "step-2-backend-specialist")),
        ("step-4-test-engineer", ("step-3-merge",)),
    ]


def test_shared_target_files_prevent_parallel(store, settings, make_context) -> None:
    """共享目标文件时退回顺序执行。"""
    ctx = make_context("cover the app component", active_file="frontend/src/App.test.tsx")
    pipeline = PipelinePlanner(store, settings).plan(_selection(store, "frontend-specialist", "test-engineer"), ctx)
    assert pipeline.pattern is PipelinePattern.sequential
    assert _shape(pipeline) == [
        ("step-1-frontend-specialist", ()),
        ("step-2-test-engineer", ("step-1-frontend-specialist",)),
    ]


def test_dependent_support_runs_after_primary(store, settings, make_context) -> None:
    """依赖主处理器产出的辅助处理器排在其后。"""
    pipeline = PipelinePlanner(store, settings).plan(
        _selection(store, "debugger", "test-engineer"), make_context("fix login crash", archetype="bug-fix")
    )
    assert pipeline.pattern is PipelinePattern.sequential
    assert [step.handler_id for step in pipeline.steps] == ["debugger", "test-engineer"]
    assert pipeline.steps[0].critical is True
    assert pipeline.steps[1].critical is False
    assert pipeline.steps[0].timeout_seconds == settings.step_timeout_seconds


def test_override_pipeline_orders_database_before_backend(store, settings, make_context) -> None:
    """数据库处理器排在后端处理器之前。"""
    ctx = make_context("add an endpoint", active_file="backend/services/user_service.py")
    pipeline = PipelinePlanner(store, settings).plan(
        _selection(store, "database-architect", "backend-specialist"), ctx
    )
    assert _shape(pipeline) == [
        ("step-1-database-architect", ()),
        ("step-2-backend-specialist", ("step-1-database-architect",)),
    ]


def test_topological_order_is_stable(store, settings, make_context) -> None:
    """拓扑排序保持选择顺序稳定。"""
    pipeline = PipelinePlanner(store, settings).plan(
        _selection(store, "frontend-specialist", "devops-engineer", "test-engineer"), make_context("ship it")
    )
    assert [step.handler_id for step in pipeline.steps] == [
        "frontend-specialist",
        "test-engineer",
        "devops-engineer",
    ]


def test_performance_template_builds_conditional_branches(store, settings, make_context) -> None:
    """性能模板生成按分类判定的条件分支。"""
    ctx = make_context("the dashboard is slow", archetype="performance")
    pipeline = PipelinePlanner(store, settings).plan(
        _selection(store, "performance-optimizer", "database-architect", "backend-specialist"), ctx
    )
    assert pipeline.pattern is PipelinePattern.conditional
    assert pipeline.template == "performance"
    assert _shape(pipeline) == [
        ("step-1-performance-optimizer", ()),
        ("step-2-database-architect", ("step-1-performance-optimizer",)),
        ("step-3-backend-specialist", ("step-1-performance-optimizer",)),
    ]
    measure, data_layer, app_layer = pipeline.steps
    assert measure.critical is True
    assert data_layer.kind is StepKind.conditional_branch
    assert data_layer.condition.evaluate({"classification": "data-layer"}) is True
    assert app_layer.condition.evaluate({"classification": "data-layer"}) is False
    assert app_layer.condition.evaluate({"classification": "app-layer"}) is True


def test_branch_without_condition_source_becomes_plain_step(store, settings, make_context) -> None:
    """未选中性能处理器时，应用层分支失去判定来源，退化为普通顺序步骤。"""
    ctx = make_context("the frontend page is slow", archetype="performance")
    pipeline = PipelinePlanner(store, settings).plan(_selection(store, "frontend-specialist"), ctx)
    assert pipeline.template == "performance"
    assert pipeline.pattern is PipelinePattern.sequential
    assert _shape(pipeline) == [("step-1-frontend-specialist", ())]
    assert pipeline.steps[0].kind is StepKind.sequential
    assert pipeline.steps[0].condition is None


def test_template_rewires_dropped_steps(store, settings, make_context) -> None:
    """模板中缺少角色的步骤被丢弃，其后继改接到前驱。"""
    ctx = make_context("refactor the billing module", archetype="refactor")
    pipeline = PipelinePlanner(store, settings).plan(_selection(store, "code-reviewer", "test-engineer"), ctx)
    assert pipeline.template == "refactor"
    assert pipeline.pattern is PipelinePattern.sequential
    assert _shape(pipeline) == [
        ("step-1-code-reviewer", ()),
        ("step-2-test-engineer", ("step-1-code-reviewer",)),
    ]


def test_template_appends_unassigned_handlers_and_resolves_fallback(store, settings, make_context) -> None:
    """未分配到模板角色的处理器追加在末尾，并解析回退处理器。"""
    ctx = make_context("fix the crash and update the docs", archetype="bug-fix")
    pipeline = PipelinePlanner(store, settings).plan(
        _selection(store, "debugger", "backend-specialist", "documentation-writer"), ctx
    )
    assert pipeline.template == "bug-fix"
    assert _shape(pipeline) == [
        ("step-1-debugger", ()),
        ("step-2-backend-specialist", ("step-1-debugger",)),
        ("step-3-documentation-writer", ("step-2-backend-specialist",)),
    ]
    diagnose = pipeline.steps[0]
    assert diagnose.critical is True
    assert diagnose.fallback_handler_id == "backend-specialist"
    assert diagnose.task.startswith("reproduce and isolate the defect: ")


def test_fallback_falls_back_to_catalog(store, settings, make_context) -> None:
    """已选处理器中没有回退角色时从目录中选取。"""
    ctx = make_context("audit the login flow", archetype="security-audit")
    pipeline = PipelinePlanner(store, settings).plan(_selection(store, "security-auditor"), ctx)
    assert pipeline.template == "security-audit"
    assert pipeline.steps[0].fallback_handler_id == "code-reviewer"


def test_default_sequential_without_template(store, settings, make_context) -> None:
    """没有匹配模板时按默认顺序执行。"""
    pipeline = PipelinePlanner(store, settings).plan(
        _selection(store, "documentation-writer", "code-reviewer"), make_context("write the readme")
    )
    assert pipeline.pattern is PipelinePattern.sequential
    assert pipeline.template is None
    assert [step.handler_id for step in pipeline.steps] == ["documentation-writer", "code-reviewer"]


def test_parallel_group_sharing_target_is_rejected() -> None:
    """并行组内共享目标文件时报配置错误。"""
    pipeline = Pipeline(
        pattern=PipelinePattern.parallel,
        steps=(
            PipelineStep("step-1-a", "a", "t", StepKind.parallel_member, target_files=("x.py",)),
            PipelineStep("step-2-b", "b", "t", StepKind.parallel_member, target_files=("x.py",)),
        ),
    )
    with pytest.raises(ConfigurationError) as exc_info:
        PipelinePlanner._check_parallel_groups(pipeline)
    assert exc_info.value.identifiers == ("step-1-a", "step-2-b", "x.py")
