"""日志初始化：JSON 行输出、队列异步写入，以及按模块/会话放行 DEBUG。

所有进程（API、测试、脚本）都通过 ``configure_logging`` 接入同一套格式：
调用方只需在 ``extra`` 中给出 ``event`` 与业务字段，上下文标识由
contextvars 自动补齐，敏感信息在写出前统一脱敏。
"""

from __future__ import annotations

import json
import logging
import logging.config
import re
import sys
from datetime import datetime, timezone
from logging.handlers import QueueHandler, QueueListener, RotatingFileHandler
from pathlib import Path
from queue import SimpleQueue
from typing import Any, Iterable

from orchestration_core.config import Settings
from orchestration_core.infra.logging.context import CONTEXT_KEYS, get_log_context

_listener: QueueListener | None = None

_SECRET_KEYS = r"password|passwd|token|secret|api[_-]?key|x-api-key"
_BEARER_RE = re.compile(r"(?i)(authorization\s*[:=]\s*bearer\s+)[^\s,;]+")
_KEY_VALUE_RE = re.compile(rf"(?i)\b({_SECRET_KEYS})(\s*[:=]\s*)[^\s,;&]+")
_URL_CREDENTIALS_RE = re.compile(r"(?i)(\b[a-z][a-z0-9+.-]*://[^:/@\s]+:)[^@\s]+@")
_STRICT_RE = re.compile(r"(?i)\b([\w-]*(?:auth|pass|token|secret|key)[\w-]*)(\s*[:=]\s*)[^\s,;&}]+")

# LogRecord 自带属性，不进入 fields。
_RESERVED_ATTRS = frozenset(logging.LogRecord("", 0, "", 0, "", None, None).__dict__) | {"message", "asctime"}
# 有独立列的 extra 字段。
_TOP_LEVEL_FIELDS = ("event", "op", "handler", "duration_ms", "error_type", "error", "payload_preview")
_QUIET_LOGGERS = ("uvicorn.access", "httpx", "httpcore", "sqlalchemy.engine")


def redact_text(value: str | None, mode: str) -> str | None:
    """按脱敏模式处理文本：off 原样返回，standard 遮蔽凭据，strict 额外遮蔽所有疑似密钥字段。"""
    if value is None:
        return None
    text = str(value)
    mode = mode.lower()
    if mode == "off":
        return text
    text = _BEARER_RE.sub(r"\1***", text)
    text = _URL_CREDENTIALS_RE.sub(r"\1***@", text)
    text = _KEY_VALUE_RE.sub(r"\1\2***", text)
    if mode == "strict":
        text = _STRICT_RE.sub(r"\1\2***", text)
    return text


def render_payload_preview(payload: Any, *, max_chars: int, redaction_mode: str) -> str | None:
    if payload is None:
        return None
    if isinstance(payload, str):
        serialized = payload
    else:
        try:
            serialized = json.dumps(payload, ensure_ascii=False, sort_keys=True, default=str)
        except (TypeError, ValueError):
            serialized = repr(payload)
    redacted = redact_text(serialized, redaction_mode) or ""
    if len(redacted) > max_chars:
        return f"{redacted[:max_chars]}...(truncated)"
    return redacted


class DebugRoutingFilter(logging.Filter):
    """低于 ``min_level`` 的记录默认丢弃；DEBUG 记录在模块前缀或会话命中时放行。"""

    def __init__(
        self,
        *,
        min_level: int,
        debug_modules: Iterable[str] = (),
        debug_session_ids: Iterable[str] = (),
    ) -> None:
        super().__init__()
        self._min_level = min_level
        self._module_prefixes = tuple(sorted(debug_modules))
        self._session_ids = frozenset(debug_session_ids)

    def filter(self, record: logging.LogRecord) -> bool:
        if record.levelno >= self._min_level:
            return True
        if record.levelno != logging.DEBUG:
            return False
        name = record.name
        if any(name == prefix or name.startswith(prefix + ".") for prefix in self._module_prefixes):
            return True
        session_id = getattr(record, "session_id", None) or get_log_context()["session_id"]
        return session_id in self._session_ids


class ContextInjectionFilter(logging.Filter):
    """入队前把当前 request/session/pipeline/step 标识固化到 record 上。"""

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in get_log_context().items():
            if value is not None and getattr(record, key, None) is None:
                setattr(record, key, value)
        return True


class StructuredJsonFormatter(logging.Formatter):
    """输出一行一个 JSON 对象；未登记的 extra 字段归入 ``fields``。"""

    def __init__(
        self,
        *,
        service: str,
        process_role: str,
        redaction_mode: str,
        payload_preview_chars: int,
    ) -> None:
        super().__init__()
        self._service = service
        self._process_role = process_role
        self._redaction_mode = redaction_mode
        self._payload_preview_chars = payload_preview_chars

    def _redact(self, value: Any) -> str | None:
        return redact_text(None if value is None else str(value), self._redaction_mode)

    def _field_value(self, value: Any) -> Any:
        if value is None or isinstance(value, (bool, int, float)):
            return value
        if isinstance(value, (list, tuple)) and all(isinstance(item, str) for item in value):
            return [self._redact(item) for item in value]
        return self._redact(value)

    def format(self, record: logging.LogRecord) -> str:
        ctx = get_log_context()
        error = getattr(record, "error", None)
        if error is None and record.exc_info:
            error = self.formatException(record.exc_info)

        entry: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "service": self._service,
            "process_role": self._process_role,
            "module": record.name,
            "event": getattr(record, "event", None),
            "message": self._redact(record.getMessage()),
        }
        for key in CONTEXT_KEYS:
            entry[key] = getattr(record, key, None) or ctx[key]
        entry["op"] = getattr(record, "op", None)
        entry["handler"] = getattr(record, "handler", None)
        entry["duration_ms"] = getattr(record, "duration_ms", None)
        entry["error_type"] = getattr(record, "error_type", None)
        entry["error"] = self._redact(error)
        entry["payload_preview"] = render_payload_preview(
            getattr(record, "payload_preview", None),
            max_chars=self._payload_preview_chars,
            redaction_mode=self._redaction_mode,
        )

        fields = {
            key: self._field_value(value)
            for key, value in record.__dict__.items()
            if key not in _RESERVED_ATTRS and key not in _TOP_LEVEL_FIELDS and key not in CONTEXT_KEYS
        }
        if fields:
            entry["fields"] = fields
        return json.dumps(entry, ensure_ascii=False, default=str)


def _parse_level(level_text: str) -> int:
    level = logging.getLevelName(str(level_text).upper())
    return level if isinstance(level, int) else logging.INFO


def configure_logging(settings: Settings, *, process_role: str) -> Path:
    """安装根日志队列并启动写文件的监听线程，返回 JSONL 文件路径。

    重复调用会先停掉上一次的监听器；ERROR 及以上同时写 stderr。
    """
    global _listener
    shutdown_logging()

    log_dir = settings.log_dir if settings.log_dir.is_absolute() else (Path.cwd() / settings.log_dir).resolve()
    log_file = log_dir / process_role / "orchestration.jsonl"
    log_file.parent.mkdir(parents=True, exist_ok=True)

    records: SimpleQueue[logging.LogRecord] = SimpleQueue()
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "filters": {
                "context": {"()": ContextInjectionFilter},
                "debug_routing": {
                    "()": DebugRoutingFilter,
                    "min_level": _parse_level(settings.log_level),
                    "debug_modules": settings.log_debug_modules_list(),
                    "debug_session_ids": settings.log_debug_session_ids_list(),
                },
            },
            "handlers": {
                "queue": {
                    "class": "logging.handlers.QueueHandler",
                    "queue": records,
                    "filters": ["context", "debug_routing"],
                }
            },
            "root": {"level": "DEBUG", "handlers": ["queue"]},
        }
    )
    if not any(isinstance(handler, QueueHandler) for handler in logging.getLogger().handlers):
        raise RuntimeError("queue logging handler is not configured")

    formatter = StructuredJsonFormatter(
        service="orchestration-core",
        process_role=process_role,
        redaction_mode=settings.log_redaction_mode,
        payload_preview_chars=settings.log_payload_preview_chars,
    )
    file_handler = RotatingFileHandler(
        log_file,
        maxBytes=settings.log_max_bytes,
        backupCount=settings.log_backup_count,
        encoding="utf-8",
    )
    file_handler.setFormatter(formatter)
    stderr_handler = logging.StreamHandler(stream=sys.stderr)
    stderr_handler.setLevel(logging.ERROR)
    stderr_handler.setFormatter(formatter)

    _listener = QueueListener(records, file_handler, stderr_handler, respect_handler_level=True)
    _listener.start()

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    return log_file


def shutdown_logging() -> None:
    """停止监听线程，刷新并关闭文件句柄。"""
    global _listener
    listener, _listener = _listener, None
    if listener is None:
        return
    listener.stop()
    for handler in listener.handlers:
        handler.close()
