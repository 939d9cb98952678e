"""日志组件测试：脱敏、payload 预览截断、DEBUG 放行规则与 JSON 行格式。"""

from __future__ import annotations

import json
import logging
from pathlib import Path

from orchestration_core.config import Settings
from orchestration_core.infra.logging.context import bind_log_context, get_log_context
from orchestration_core.infra.logging.setup import (
    DebugRoutingFilter,
    StructuredJsonFormatter,
    configure_logging,
    redact_text,
    render_payload_preview,
    shutdown_logging,
)


def _record(name: str, level: int, **extra: object) -> logging.LogRecord:
    record = logging.LogRecord(name, level, __file__, 1, "message", None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_redact_text_masks_credentials() -> None:
    """凭据类文本在日志中被遮蔽。"""
    assert redact_text("Authorization: Bearer abc123", "standard") == "Authorization: Bearer ***"
    assert redact_text("password=hunter2, user=bob", "standard") == "password=***, user=bob"
    assert redact_text("token=abc", "off") == "token=abc"
    assert redact_text(None, "standard") is None


def test_payload_preview_is_truncated() -> None:
    """payload 预览超长时截断。"""
    preview = render_payload_preview({"profiles": ["a" * 50]}, max_chars=20, redaction_mode="standard")
    assert preview is not None
    assert preview.endswith("...(truncated)")
    assert render_payload_preview(None, max_chars=20, redaction_mode="standard") is None


def test_debug_filter_allows_listed_modules_and_sessions() -> None:
    """DEBUG 记录仅对指定模块或会话放行。"""
    filt = DebugRoutingFilter(
        min_level=logging.INFO,
        debug_modules={"orchestration_core.domain.routing"},
        debug_session_ids={"s-debug"},
    )
    assert filt.filter(_record("orchestration_core.application.executor", logging.INFO))
    assert filt.filter(_record("orchestration_core.domain.routing.selector", logging.DEBUG))
    assert not filt.filter(_record("orchestration_core.application.executor", logging.DEBUG))
    assert filt.filter(_record("orchestration_core.application.executor", logging.DEBUG, session_id="s-debug"))
    with bind_log_context(session_id="s-debug"):
        assert filt.filter(_record("orchestration_core.api.v1.routing", logging.DEBUG))


def test_bind_log_context_restores_previous_values() -> None:
    """退出上下文后恢复原有日志字段。"""
    with bind_log_context(request_id="r1", session_id="s1"):
        with bind_log_context(step_id="step-1-debugger"):
            assert get_log_context()["step_id"] == "step-1-debugger"
            assert get_log_context()["request_id"] == "r1"
        assert get_log_context()["step_id"] is None
    assert get_log_context()["request_id"] is None


def test_formatter_emits_context_fields() -> None:
    """JSON 行包含上下文标识与事件字段。"""
    formatter = StructuredJsonFormatter(
        service="orchestration-core",
        process_role="test",
        redaction_mode="standard",
        payload_preview_chars=256,
    )
    record = _record(
        "orchestration_core.application.orchestrator",
        logging.INFO,
        event="route.planned",
        payload_preview={"primary": "debugger"},
    )
    with bind_log_context(request_id="r1", session_id="s1", pipeline_id="p1"):
        entry = json.loads(formatter.format(record))

    assert entry["event"] == "route.planned"
    assert entry["request_id"] == "r1"
    assert entry["session_id"] == "s1"
    assert entry["pipeline_id"] == "p1"
    assert json.loads(entry["payload_preview"]) == {"primary": "debugger"}


def test_configure_logging_writes_jsonl(tmp_path: Path) -> None:
    """初始化后日志写入 JSONL 文件。"""
    settings = Settings(_env_file=None, log_dir=tmp_path)
    log_file = configure_logging(settings, process_role="test")
    try:
        logging.getLogger("orchestration_core.tests").info("hello", extra={"event": "test.event"})
    finally:
        shutdown_logging()

    lines = log_file.read_text(encoding="utf-8").splitlines()
    entries = [json.loads(line) for line in lines]
    assert any(item["event"] == "test.event" and item["process_role"] == "test" for item in entries)
