"""日志上下文：基于 contextvars 透传 request/session/pipeline/step 标识。"""

from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar, Token
from typing import Any, Iterator

_UNSET = object()

CONTEXT_KEYS = ("request_id", "session_id", "pipeline_id", "step_id")

_request_id_var: ContextVar[str | None] = ContextVar("log_request_id", default=None)
_session_id_var: ContextVar[str | None] = ContextVar("log_session_id", default=None)
_pipeline_id_var: ContextVar[str | None] = ContextVar("log_pipeline_id", default=None)
_step_id_var: ContextVar[str | None] = ContextVar("log_step_id", default=None)

_VARS: dict[str, ContextVar[str | None]] = {
    "request_id": _request_id_var,
    "session_id": _session_id_var,
    "pipeline_id": _pipeline_id_var,
    "step_id": _step_id_var,
}


def get_log_context() -> dict[str, str | None]:
    """返回当前协程/线程下的日志上下文字段。"""
    return {key: var.get() for key, var in _VARS.items()}


@contextmanager
def bind_log_context(
    *,
    request_id: str | None | object = _UNSET,
    session_id: str | None | object = _UNSET,
    pipeline_id: str | None | object = _UNSET,
    step_id: str | None | object = _UNSET,
) -> Iterator[None]:
    """在上下文范围内绑定日志字段，并在退出时自动恢复。"""
    values = {
        "request_id": request_id,
        "session_id": session_id,
        "pipeline_id": pipeline_id,
        "step_id": step_id,
    }
    tokens: list[tuple[ContextVar[Any], Token[Any]]] = []
    for key, value in values.items():
        if value is not _UNSET:
            var = _VARS[key]
            tokens.append((var, var.set(value)))
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)
