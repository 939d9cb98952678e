"""流水线执行器：按 DAG 并发调度步骤，处理超时、回退与关键失败中止。"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

from orchestration_core.domain.enums import PipelineStatus, StepKind, StepStatus, TERMINAL_STEP_STATUSES
from orchestration_core.domain.errors import StepFailure
from orchestration_core.domain.models import ExecutionOutcome, Pipeline, PipelineStep, StepResult
from orchestration_core.infra.logging.context import bind_log_context

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class StepInvocation:
    """交给处理器执行的一次调用：任务、目标文件与前序输出。"""
    pipeline_id: str
    step_id: str
    handler_id: str
    task: str
    target_files: tuple[str, ...] = ()
    inputs: Mapping[str, Any] = field(default_factory=dict)
    context: Mapping[str, Any] = field(default_factory=dict)


class StepRunner(Protocol):
    async def run(self, step: PipelineStep, invocation: StepInvocation) -> Any:
        ...


HandlerCallable = Callable[[StepInvocation], Awaitable[Any]]


class LocalStepRunner:
    """进程内执行：按处理器 id 分派到注册的异步函数，未注册时返回确认结果。"""

    def __init__(self, handlers: Mapping[str, HandlerCallable] | None = None) -> None:
        self._handlers = dict(handlers or {})

    def register(self, handler_id: str, func: HandlerCallable) -> None:
        self._handlers[handler_id] = func

    async def run(self, step: PipelineStep, invocation: StepInvocation) -> Any:
        func = self._handlers.get(invocation.handler_id)
        if func is not None:
            return await func(invocation)
        return {
            "handler_id": invocation.handler_id,
            "task": invocation.task,
            "target_files": list(invocation.target_files),
            "summary": f"{invocation.handler_id} completed: {invocation.task}",
        }


class PipelineExecutor:
    """按 DAG 调度步骤：无前序的步骤立即并发启动，其余在前序全部终结后判定运行或跳过。"""

    def __init__(self, runner: StepRunner) -> None:
        self._runner = runner

    async def execute(
        self,
        pipeline: Pipeline,
        *,
        pipeline_id: str | None = None,
        context: Mapping[str, Any] | None = None,
    ) -> ExecutionOutcome:
        pipeline_id = pipeline_id or uuid.uuid4().hex
        context = dict(context or {})
        results = {
            step.step_id: StepResult(step_id=step.step_id, handler_id=step.handler_id, status=StepStatus.pending)
            for step in pipeline.steps
        }
        running: dict[asyncio.Task[StepResult], PipelineStep] = {}
        aborted = False

        with bind_log_context(pipeline_id=pipeline_id):
            logger.info(
                "pipeline executing",
                extra={
                    "event": "pipeline.executing",
                    "payload_preview": {"pattern": pipeline.pattern.value, "steps": len(pipeline.steps)},
                },
            )
            while True:
                self._schedule_ready(pipeline, results, running, pipeline_id, context)
                if not running:
                    break
                done, _ = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    step = running.pop(task)
                    result = task.result()
                    results[step.step_id] = result
                    if result.status is StepStatus.failed and step.critical:
                        aborted = True
                if aborted:
                    await self._cancel(running, results)
                    break

            if aborted:
                for result in results.values():
                    if result.status is StepStatus.pending:
                        result.status = StepStatus.skipped
                        result.error = "pipeline aborted"
                        result.error_type = "aborted"
                status = PipelineStatus.aborted
            elif any(item.status is StepStatus.failed for item in results.values()):
                status = PipelineStatus.partially_failed
            else:
                status = PipelineStatus.completed

            logger.info(
                "pipeline finished",
                extra={
                    "event": "pipeline.finished",
                    "payload_preview": {
                        "status": status.value,
                        "steps": {sid: item.status.value for sid, item in results.items()},
                    },
                },
            )
        return ExecutionOutcome(pipeline_id=pipeline_id, status=status, results=results)

    @staticmethod
    def _readiness(step: PipelineStep, results: Mapping[str, StepResult]) -> str:
        """返回 run / skip / wait。"""
        if not step.predecessors:
            return "run"
        statuses = [results[pid].status for pid in step.predecessors]
        if any(item not in TERMINAL_STEP_STATUSES for item in statuses):
            return "wait"
        if any(item is StepStatus.failed for item in statuses):
            return "skip" if step.kind is not StepKind.merge else "run"
        if all(item is StepStatus.skipped for item in statuses):
            return "skip"
        return "run"

    def _schedule_ready(
        self,
        pipeline: Pipeline,
        results: dict[str, StepResult],
        running: dict[asyncio.Task[StepResult], PipelineStep],
        pipeline_id: str,
        context: Mapping[str, Any],
    ) -> None:
        progressed = True
        while progressed:
            progressed = False
            for step in pipeline.steps:
                result = results[step.step_id]
                if result.status is not StepStatus.pending:
                    continue
                decision = self._readiness(step, results)
                if decision == "wait":
                    continue
                progressed = True
                if decision == "skip":
                    self._skip(result, "predecessor failed or skipped", "upstream")
                    continue
                if step.condition is not None:
                    upstream = results[step.predecessors[0]] if step.predecessors else None
                    if upstream is None or upstream.status is not StepStatus.succeeded or not step.condition.evaluate(
                        upstream.output
                    ):
                        self._skip(result, "condition not met", "condition")
                        continue
                if step.kind is StepKind.merge:
                    results[step.step_id] = self._merge(step, results)
                    continue
                result.status = StepStatus.running
                invocation = StepInvocation(
                    pipeline_id=pipeline_id,
                    step_id=step.step_id,
                    handler_id=step.handler_id or "",
                    task=step.task,
                    target_files=step.target_files,
                    inputs={
                        pid: results[pid].output
                        for pid in step.predecessors
                        if results[pid].status is StepStatus.succeeded
                    },
                    context=context,
                )
                task = asyncio.create_task(self._run_step(step, invocation))
                running[task] = step

    @staticmethod
    def _skip(result: StepResult, reason: str, error_type: str) -> None:
        result.status = StepStatus.skipped
        result.error = reason
        result.error_type = error_type
        logger.info(
            "step skipped",
            extra={"event": "step.skipped", "step_id": result.step_id, "payload_preview": {"reason": reason}},
        )

    @staticmethod
    def _merge(step: PipelineStep, results: Mapping[str, StepResult]) -> StepResult:
        """merge 步骤在所有成员终结后汇总成功成员的输出。"""
        merged = {pid: results[pid].output for pid in step.predecessors if results[pid].status is StepStatus.succeeded}
        failed = [pid for pid in step.predecessors if results[pid].status is StepStatus.failed]
        logger.info(
            "parallel group merged",
            extra={
                "event": "step.merged",
                "step_id": step.step_id,
                "payload_preview": {"merged": sorted(merged), "failed": failed},
            },
        )
        return StepResult(
            step_id=step.step_id,
            handler_id=None,
            status=StepStatus.succeeded,
            output={"merged": merged, "failed_members": failed},
            duration_ms=0.0,
        )

    async def _run_step(self, step: PipelineStep, invocation: StepInvocation) -> StepResult:
        started = time.perf_counter()
        with bind_log_context(step_id=step.step_id):
            logger.info(
                "step started",
                extra={"event": "step.started", "payload_preview": {"handler": invocation.handler_id}},
            )
            try:
                output = await self._invoke(step, invocation)
                return self._finish(step, invocation.handler_id, started, output=output)
            except StepFailure as exc:
                failure = exc

            if step.critical and step.fallback_handler_id:
                logger.warning(
                    "critical step failed, retrying with fallback handler",
                    extra={
                        "event": "step.fallback",
                        "error": str(failure),
                        "payload_preview": {"fallback": step.fallback_handler_id},
                    },
                )
                fallback = StepInvocation(
                    pipeline_id=invocation.pipeline_id,
                    step_id=invocation.step_id,
                    handler_id=step.fallback_handler_id,
                    task=invocation.task,
                    target_files=invocation.target_files,
                    inputs=invocation.inputs,
                    context=invocation.context,
                )
                try:
                    output = await self._invoke(step, fallback)
                    return self._finish(step, step.fallback_handler_id, started, output=output, fallback_used=True)
                except StepFailure as exc:
                    failure = exc

            return self._finish(step, failure.handler_id or invocation.handler_id, started, failure=failure)

    async def _invoke(self, step: PipelineStep, invocation: StepInvocation) -> Any:
        try:
            if step.timeout_seconds is None:
                return await self._runner.run(step, invocation)
            return await asyncio.wait_for(self._runner.run(step, invocation), timeout=step.timeout_seconds)
        except asyncio.TimeoutError as exc:
            raise StepFailure(
                step.step_id,
                f"step timed out after {step.timeout_seconds}s",
                handler_id=invocation.handler_id,
                timed_out=True,
            ) from exc
        except StepFailure:
            raise
        except Exception as exc:
            raise StepFailure(
                step.step_id,
                str(exc) or type(exc).__name__,
                handler_id=invocation.handler_id,
            ) from exc

    @staticmethod
    def _finish(
        step: PipelineStep,
        handler_id: str,
        started: float,
        *,
        output: Any = None,
        failure: StepFailure | None = None,
        fallback_used: bool = False,
    ) -> StepResult:
        duration_ms = round((time.perf_counter() - started) * 1000, 3)
        if failure is None:
            logger.info(
                "step succeeded",
                extra={"event": "step.succeeded", "duration_ms": duration_ms, "payload_preview": output},
            )
            return StepResult(
                step_id=step.step_id,
                handler_id=handler_id,
                status=StepStatus.succeeded,
                output=output,
                duration_ms=duration_ms,
                fallback_used=fallback_used,
            )
        error_type = "timeout" if failure.timed_out else type(failure.__cause__ or failure).__name__
        logger.error(
            "step failed",
            extra={
                "event": "step.failed",
                "duration_ms": duration_ms,
                "error_type": error_type,
                "error": str(failure),
            },
        )
        return StepResult(
            step_id=step.step_id,
            handler_id=handler_id,
            status=StepStatus.failed,
            error=str(failure),
            error_type=error_type,
            duration_ms=duration_ms,
            fallback_used=step.critical and step.fallback_handler_id is not None,
        )

    @staticmethod
    async def _cancel(
        running: dict[asyncio.Task[StepResult], PipelineStep],
        results: dict[str, StepResult],
    ) -> None:
        for task in running:
            task.cancel()
        await asyncio.gather(*running, return_exceptions=True)
        for step in running.values():
            result = results[step.step_id]
            result.status = StepStatus.skipped
            result.error = "cancelled after critical failure"
            result.error_type = "cancelled"
        running.clear()
