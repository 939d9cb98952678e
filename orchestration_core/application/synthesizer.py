"""结果汇总：按步骤顺序合并执行结果，并按原型执行质量门禁。"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from orchestration_core.domain.enums import PipelineStatus, StepStatus
from orchestration_core.domain.models import ExecutionOutcome, Pipeline, PipelineStep, StepResult

logger = logging.getLogger(__name__)

SUMMARY_PREVIEW_CHARS = 200


def reports_success(result: StepResult) -> bool:
    """状态为成功且输出未声明 passed: false。"""
    if result.status is not StepStatus.succeeded:
        return False
    output = result.output
    return not (isinstance(output, Mapping) and output.get("passed") is False)


@dataclass(slots=True)
class GateResult:
    name: str
    passed: bool
    detail: str = ""


GateCheck = Callable[[Sequence[PipelineStep], Mapping[str, StepResult]], GateResult]


def _role_must_pass(gate: str, role: str) -> GateCheck:
    def check(steps: Sequence[PipelineStep], results: Mapping[str, StepResult]) -> GateResult:
        ran = [step for step in steps if step.role == role and results[step.step_id].status is not StepStatus.skipped]
        failing = [step.step_id for step in ran if not reports_success(results[step.step_id])]
        if failing:
            return GateResult(gate, False, f"{role} steps did not pass: {', '.join(failing)}")
        return GateResult(gate, True, f"{len(ran)} {role} step(s) checked")

    return check


def _deploy_requires_security(steps: Sequence[PipelineStep], results: Mapping[str, StepResult]) -> GateResult:
    deployed = [step for step in steps if step.role == "deployment" and results[step.step_id].status is StepStatus.succeeded]
    if not deployed:
        return GateResult("deploy-requires-security", True, "no deployment step ran")
    secured = any(step.role == "security" and reports_success(results[step.step_id]) for step in steps)
    if not secured:
        return GateResult("deploy-requires-security", False, "deployment ran without a passing security step")
    return GateResult("deploy-requires-security", True, "security step passed before deployment")


GATES: dict[str, GateCheck] = {
    "tests-must-pass": _role_must_pass("tests-must-pass", "testing"),
    "security-must-pass": _role_must_pass("security-must-pass", "security"),
    "review-must-pass": _role_must_pass("review-must-pass", "review"),
    "deploy-requires-security": _deploy_requires_security,
}

DEFAULT_GATES = ("tests-must-pass", "security-must-pass", "review-must-pass", "deploy-requires-security")

ARCHETYPE_GATES: dict[str, tuple[str, ...]] = {
    "new-feature": ("tests-must-pass", "review-must-pass"),
    "bug-fix": ("tests-must-pass",),
    "refactor": ("tests-must-pass", "review-must-pass"),
    "security-audit": ("security-must-pass", "tests-must-pass"),
    "database-change": ("tests-must-pass",),
    "deployment": ("tests-must-pass", "security-must-pass", "deploy-requires-security"),
    "code-review": ("review-must-pass", "security-must-pass"),
    "performance": ("tests-must-pass",),
}


def summarize_output(output: Any) -> str:
    if output is None:
        return ""
    if isinstance(output, Mapping) and output.get("summary"):
        text = str(output["summary"])
    else:
        text = str(output)
    if len(text) > SUMMARY_PREVIEW_CHARS:
        return f"{text[:SUMMARY_PREVIEW_CHARS]}..."
    return text


@dataclass(slots=True)
class ReportEntry:
    step_id: str
    handler_id: str | None
    task: str
    status: StepStatus
    summary: str = ""
    error: str | None = None
    fallback_used: bool = False


@dataclass(slots=True)
class PipelineReport:
    """汇总报告：逐步结果、门禁结论与整体状态。"""
    pipeline_id: str
    pattern: str
    status: PipelineStatus
    archetype: str | None = None
    entries: list[ReportEntry] = field(default_factory=list)
    gates: list[GateResult] = field(default_factory=list)
    merged_outputs: dict[str, Any] = field(default_factory=dict)
    diagnostics: dict[str, Any] = field(default_factory=dict)
    summary: str = ""

    @property
    def failed_gates(self) -> list[GateResult]:
        return [gate for gate in self.gates if not gate.passed]

    def render(self) -> str:
        lines = [
            f"# Pipeline {self.pipeline_id}",
            "",
            f"- Pattern: {self.pattern}",
            f"- Status: {self.status.value}",
        ]
        if self.archetype:
            lines.append(f"- Archetype: {self.archetype}")
        lines += ["", "## Steps", ""]
        for index, entry in enumerate(self.entries, start=1):
            handler = entry.handler_id or "merge"
            line = f"{index}. [{entry.status.value}] {handler}: {entry.task}"
            if entry.fallback_used:
                line += " (fallback)"
            lines.append(line)
            if entry.summary:
                lines.append(f"   - {entry.summary}")
            if entry.error:
                lines.append(f"   - error: {entry.error}")
        if self.gates:
            lines += ["", "## Quality gates", ""]
            for gate in self.gates:
                mark = "pass" if gate.passed else "FAIL"
                lines.append(f"- {gate.name}: {mark} ({gate.detail})")
        if self.diagnostics:
            lines += ["", "## Diagnostics", ""]
            for step_id, output in self.diagnostics.items():
                lines.append(f"- {step_id}: {summarize_output(output)}")
        lines += ["", "## Summary", "", self.summary]
        return "\n".join(lines)


class Synthesizer:
    def synthesize(self, pipeline: Pipeline, outcome: ExecutionOutcome) -> PipelineReport:
        results = outcome.results
        report = PipelineReport(
            pipeline_id=outcome.pipeline_id,
            pattern=pipeline.pattern.value,
            status=outcome.status,
            archetype=pipeline.archetype,
        )
        for step in pipeline.steps:
            result = results[step.step_id]
            report.entries.append(
                ReportEntry(
                    step_id=step.step_id,
                    handler_id=result.handler_id,
                    task=step.task,
                    status=result.status,
                    summary=summarize_output(result.output),
                    error=result.error,
                    fallback_used=result.fallback_used,
                )
            )

        succeeded = {sid: item.output for sid, item in results.items() if item.status is StepStatus.succeeded}
        if outcome.status is PipelineStatus.aborted:
            # 中止时成功步骤的输出只用于诊断，不参与合并。
            report.diagnostics = succeeded
        else:
            report.merged_outputs = succeeded
            gate_names = ARCHETYPE_GATES.get(pipeline.archetype or "", DEFAULT_GATES)
            report.gates = [GATES[name](pipeline.steps, results) for name in gate_names]
            if report.failed_gates and report.status is PipelineStatus.completed:
                report.status = PipelineStatus.partially_failed

        counts = {status: 0 for status in StepStatus}
        for item in results.values():
            counts[item.status] += 1
        report.summary = (
            f"{counts[StepStatus.succeeded]}/{len(results)} steps succeeded, "
            f"{counts[StepStatus.failed]} failed, {counts[StepStatus.skipped]} skipped; "
            f"overall {report.status.value}."
        )
        if report.failed_gates:
            report.summary += " Failed gates: " + ", ".join(gate.name for gate in report.failed_gates) + "."
        logger.info(
            "report synthesized",
            extra={
                "event": "report.synthesized",
                "payload_preview": {
                    "status": report.status.value,
                    "failed_gates": [gate.name for gate in report.failed_gates],
                },
            },
        )
        return report
