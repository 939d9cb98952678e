"""远程处理器 HTTP 客户端：把流水线步骤提交到处理器服务并返回其输出。"""

from __future__ import annotations

import logging
import time
from typing import Any

import httpx

from orchestration_core.application.executor import StepInvocation
from orchestration_core.domain.errors import StepFailure
from orchestration_core.domain.models import PipelineStep

logger = logging.getLogger(__name__)


class HttpStepRunner:
    """异步 HTTP 步骤执行器，POST {base_url}/handlers/{handler_id}/run。"""

    def __init__(
        self,
        base_url: str,
        timeout_seconds: int = 30,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._closed = False
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=httpx.Timeout(timeout_seconds),
            limits=httpx.Limits(max_connections=100, max_keepalive_connections=20),
            transport=transport,
        )

    def _client_or_raise(self) -> httpx.AsyncClient:
        if self._closed:
            raise RuntimeError("HttpStepRunner is already closed")
        return self._client

    async def aclose(self) -> None:
        """关闭底层连接池。"""
        if self._closed:
            return
        await self._client.aclose()
        self._closed = True

    @staticmethod
    def _body(step: PipelineStep, invocation: StepInvocation) -> dict[str, Any]:
        return {
            "pipeline_id": invocation.pipeline_id,
            "step_id": invocation.step_id,
            "role": step.role,
            "task": invocation.task,
            "target_files": list(invocation.target_files),
            "inputs": dict(invocation.inputs),
            "context": dict(invocation.context),
        }

    async def run(self, step: PipelineStep, invocation: StepInvocation) -> Any:
        path = f"/handlers/{invocation.handler_id}/run"
        started = time.perf_counter()
        try:
            response = await self._client_or_raise().post(path, json=self._body(step, invocation))
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            duration_ms = round((time.perf_counter() - started) * 1000, 2)
            status_code = None
            if isinstance(exc, httpx.HTTPStatusError):
                status_code = exc.response.status_code
            logger.error(
                "handler request failed",
                extra={
                    "event": "handler.request.failed",
                    "op": "handler.run",
                    "duration_ms": duration_ms,
                    "status_code": status_code,
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                    "payload_preview": {"handler": invocation.handler_id, "path": path},
                },
            )
            raise StepFailure(
                invocation.step_id,
                f"handler {invocation.handler_id} request failed: {exc}",
                handler_id=invocation.handler_id,
            ) from exc

        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        logger.info(
            "handler request succeeded",
            extra={
                "event": "handler.request.succeeded",
                "op": "handler.run",
                "duration_ms": duration_ms,
                "status_code": response.status_code,
            },
        )
        if isinstance(payload, dict) and "output" in payload:
            return payload["output"]
        return payload
