"""结果汇总测试：合并输出、质量门禁、中止诊断与 Markdown 渲染。"""

from __future__ import annotations

from orchestration_core.application.synthesizer import Synthesizer, reports_success, summarize_output
from orchestration_core.domain.enums import PipelinePattern, PipelineStatus, StepKind, StepStatus
from orchestration_core.domain.models import ExecutionOutcome, Pipeline, PipelineStep, StepResult


def _pipeline(archetype: str | None, *roles: str) -> Pipeline:
    steps = []
    for index, role in enumerate(roles, start=1):
        steps.append(
            PipelineStep(
                step_id=f"step-{index}-{role}",
                handler_id=f"{role}-handler",
                task=f"{role} work",
                kind=StepKind.sequential,
                predecessors=(steps[-1].step_id,) if steps else (),
                role=role,
            )
        )
    return Pipeline(pattern=PipelinePattern.sequential, steps=tuple(steps), archetype=archetype)


def _outcome(pipeline: Pipeline, status: PipelineStatus, **overrides: StepResult) -> ExecutionOutcome:
    results = {
        step.step_id: StepResult(
            step_id=step.step_id,
            handler_id=step.handler_id,
            status=StepStatus.succeeded,
            output={"summary": f"{step.role} done"},
        )
        for step in pipeline.steps
    }
    for step_id, result in overrides.items():
        results[step_id] = result
    return ExecutionOutcome(pipeline_id="p-1", status=status, results=results)


def test_reports_success_honours_passed_flag() -> None:
    """输出声明 passed: false 时不算成功。"""
    ok = StepResult("s1", "h", StepStatus.succeeded, output={"passed": True})
    declared_failure = StepResult("s1", "h", StepStatus.succeeded, output={"passed": False})
    failed = StepResult("s1", "h", StepStatus.failed)
    assert reports_success(ok)
    assert not reports_success(declared_failure)
    assert not reports_success(failed)


def test_completed_pipeline_merges_outputs_and_passes_gates() -> None:
    """完成的流水线合并输出且质量门通过。"""
    pipeline = _pipeline("bug-fix", "debugging", "testing")
    report = Synthesizer().synthesize(pipeline, _outcome(pipeline, PipelineStatus.completed))

    assert report.status is PipelineStatus.completed
    assert list(report.merged_outputs) == ["step-1-debugging", "step-2-testing"]
    assert [gate.name for gate in report.gates] == ["tests-must-pass"]
    assert report.failed_gates == []
    assert report.summary == "2/2 steps succeeded, 0 failed, 0 skipped; overall completed."


def test_failing_test_output_fails_gate_and_downgrades_status() -> None:
    """测试失败使质量门不通过并降级状态。"""
    pipeline = _pipeline("bug-fix", "debugging", "testing")
    outcome = _outcome(
        pipeline,
        PipelineStatus.completed,
        **{"step-2-testing": StepResult("step-2-testing", "testing-handler", StepStatus.succeeded, {"passed": False})},
    )
    report = Synthesizer().synthesize(pipeline, outcome)

    assert report.status is PipelineStatus.partially_failed
    assert [gate.name for gate in report.failed_gates] == ["tests-must-pass"]
    assert report.summary.endswith("Failed gates: tests-must-pass.")


def test_deploy_without_security_fails_gate() -> None:
    """部署前没有通过的安全步骤时质量门失败。"""
    pipeline = _pipeline("deployment", "testing", "deployment")
    report = Synthesizer().synthesize(pipeline, _outcome(pipeline, PipelineStatus.completed))

    gates = {gate.name: gate.passed for gate in report.gates}
    assert gates == {"tests-must-pass": True, "security-must-pass": True, "deploy-requires-security": False}
    assert report.status is PipelineStatus.partially_failed


def test_deploy_with_passing_security_passes_gate() -> None:
    """安全步骤通过后部署质量门通过。"""
    pipeline = _pipeline("deployment", "testing", "security", "deployment")
    report = Synthesizer().synthesize(pipeline, _outcome(pipeline, PipelineStatus.completed))
    assert report.failed_gates == []
    assert report.status is PipelineStatus.completed


def test_unknown_archetype_uses_default_gates() -> None:
    """未知原型使用默认质量门。"""
    pipeline = _pipeline(None, "documentation")
    report = Synthesizer().synthesize(pipeline, _outcome(pipeline, PipelineStatus.completed))
    assert [gate.name for gate in report.gates] == [
        "tests-must-pass",
        "security-must-pass",
        "review-must-pass",
        "deploy-requires-security",
    ]
    assert all(gate.passed for gate in report.gates)


def test_aborted_pipeline_keeps_outputs_as_diagnostics_only() -> None:
    """中止的流水线只把输出作为诊断信息保留。"""
    pipeline = _pipeline("bug-fix", "debugging", "testing", "review")
    outcome = _outcome(
        pipeline,
        PipelineStatus.aborted,
        **{
            "step-2-testing": StepResult("step-2-testing", "testing-handler", StepStatus.failed, error="fatal"),
            "step-3-review": StepResult(
                "step-3-review", "review-handler", StepStatus.skipped, error="pipeline aborted", error_type="aborted"
            ),
        },
    )
    report = Synthesizer().synthesize(pipeline, outcome)

    assert report.status is PipelineStatus.aborted
    assert report.merged_outputs == {}
    assert report.gates == []
    assert list(report.diagnostics) == ["step-1-debugging"]
    rendered = report.render()
    assert "## Diagnostics" in rendered
    assert "## Quality gates" not in rendered
    assert "error: fatal" in rendered


def test_render_lists_steps_in_pipeline_order() -> None:
    """渲染结果按流水线顺序列出步骤。"""
    pipeline = _pipeline("refactor", "review", "implementation", "testing")
    report = Synthesizer().synthesize(pipeline, _outcome(pipeline, PipelineStatus.completed))
    rendered = report.render()

    assert rendered.startswith("# Pipeline p-1")
    assert "- Archetype: refactor" in rendered
    first = rendered.index("[succeeded] review-handler")
    second = rendered.index("[succeeded] implementation-handler")
    third = rendered.index("[succeeded] testing-handler")
    assert first < second < third
    assert "- review-must-pass: pass" in rendered


def test_summarize_output_truncates_long_text() -> None:
    """过长输出在摘要中截断。"""
    assert summarize_output(None) == ""
    assert summarize_output({"summary": "short"}) == "short"
    text = summarize_output("x" * 500)
    assert len(text) == 203
    assert text.endswith("...")
