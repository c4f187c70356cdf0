"""日志初始化：统一 JSON 结构、异步队列写入与 DEBUG 路由开关。"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from logging.handlers import QueueHandler, QueueListener, RotatingFileHandler
from pathlib import Path
from queue import SimpleQueue
from typing import Any

from alec.config import Settings
from alec.infra.logging.context import CONTEXT_KEYS, get_log_context

_listener: QueueListener | None = None


def render_payload_preview(payload: Any, *, max_chars: int) -> str | None:
    """将 payload 转为截断后的预览文本，避免写入大对象。"""
    if payload is None:
        return None
    if isinstance(payload, str):
        serialized = payload
    else:
        try:
            serialized = json.dumps(payload, ensure_ascii=False, sort_keys=True)
        except TypeError:
            serialized = str(payload)
    if len(serialized) <= max_chars:
        return serialized
    return f"{serialized[:max_chars]}...(truncated)"


class DebugRoutingFilter(logging.Filter):
    """控制默认日志级别，并允许指定模块/session_id 放行 DEBUG。"""

    def __init__(self, *, min_level: int, debug_modules: set[str], debug_session_ids: set[str]) -> None:
        super().__init__()
        self._min_level = min_level
        self._debug_modules = debug_modules
        self._debug_session_ids = debug_session_ids

    def _module_debug_enabled(self, logger_name: str) -> bool:
        return any(logger_name == item or logger_name.startswith(f"{item}.") for item in self._debug_modules)

    def filter(self, record: logging.LogRecord) -> bool:
        if record.levelno >= self._min_level:
            return True
        if record.levelno != logging.DEBUG:
            return False
        if self._module_debug_enabled(record.name):
            return True
        session_id = getattr(record, "session_id", None) or get_log_context().get("session_id")
        if session_id and session_id in self._debug_session_ids:
            return True
        return False


class ContextInjectionFilter(logging.Filter):
    """在日志入队前将 contextvars 写入 record，避免跨线程丢失。"""

    def filter(self, record: logging.LogRecord) -> bool:
        ctx = get_log_context()
        for key in CONTEXT_KEYS:
            if getattr(record, key, None) is None and ctx.get(key) is not None:
                setattr(record, key, ctx[key])
        return True


class StructuredJsonFormatter(logging.Formatter):
    """将 LogRecord 规整为统一 JSON 行格式。"""

    def __init__(
        self,
        *,
        service: str,
        process_role: str,
        payload_preview_chars: int,
    ) -> None:
        super().__init__()
        self._service = service
        self._process_role = process_role
        self._payload_preview_chars = payload_preview_chars

    @staticmethod
    def _coerce_number(value: Any) -> int | float | None:
        return value if isinstance(value, (int, float)) and not isinstance(value, bool) else None

    def format(self, record: logging.LogRecord) -> str:
        ctx = get_log_context()
        context_fields = {key: getattr(record, key, None) or ctx.get(key) for key in CONTEXT_KEYS}

        error_text = getattr(record, "error", None)
        if error_text is None and record.exc_info:
            error_text = self.formatException(record.exc_info)

        payload_preview = render_payload_preview(
            getattr(record, "payload_preview", None),
            max_chars=self._payload_preview_chars,
        )
        entry = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "service": self._service,
            "process_role": self._process_role,
            "module": record.name,
            "event": getattr(record, "event", None),
            **context_fields,
            "op": getattr(record, "op", None),
            "status": getattr(record, "status", None),
            "pid": self._coerce_number(getattr(record, "pid", None)),
            "exit_code": self._coerce_number(getattr(record, "exit_code", None)),
            "duration_ms": self._coerce_number(getattr(record, "duration_ms", None)),
            "message": record.getMessage(),
            "error_type": getattr(record, "error_type", None),
            "error": str(error_text) if error_text is not None else None,
            "payload_preview": payload_preview,
        }
        return json.dumps(entry, ensure_ascii=False)


def _parse_level(level_text: str) -> int:
    return getattr(logging, str(level_text).upper(), logging.INFO)


def configure_logging(settings: Settings, *, process_role: str) -> Path | None:
    """初始化全局日志输出：配置了 log_dir 时写 JSONL 文件并将 ERROR 同步到 stderr。"""
    global _listener
    shutdown_logging()

    log_file: Path | None = None
    if settings.log_dir is not None:
        log_root = settings.log_dir
        if not log_root.is_absolute():
            log_root = (Path.cwd() / log_root).resolve()
        role_dir = log_root / process_role
        role_dir.mkdir(parents=True, exist_ok=True)
        log_file = role_dir / "alec.jsonl"

    queue_obj: SimpleQueue[logging.LogRecord] = SimpleQueue()
    root_logger = logging.getLogger()
    # 重复初始化时先摘掉旧的队列句柄，避免日志重复入队。
    for existing in [item for item in root_logger.handlers if isinstance(item, QueueHandler)]:
        root_logger.removeHandler(existing)
    queue_handler = QueueHandler(queue_obj)
    root_logger.addHandler(queue_handler)
    root_logger.setLevel(logging.DEBUG)
    queue_handler.addFilter(ContextInjectionFilter())
    queue_handler.addFilter(
        DebugRoutingFilter(
            min_level=_parse_level(settings.log_level),
            debug_modules=set(settings.log_debug_modules_list()),
            debug_session_ids=set(settings.log_debug_session_ids_list()),
        )
    )

    formatter = StructuredJsonFormatter(
        service="alec-engine",
        process_role=process_role,
        payload_preview_chars=settings.log_payload_preview_chars,
    )
    handlers: list[logging.Handler] = []
    if log_file is not None:
        file_handler = RotatingFileHandler(
            str(log_file),
            maxBytes=settings.log_max_bytes,
            backupCount=settings.log_backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    stderr_handler = logging.StreamHandler(stream=sys.stderr)
    # 未配置日志文件时 stderr 即唯一出口，按配置级别输出。
    stderr_handler.setLevel(logging.ERROR if log_file is not None else logging.DEBUG)
    stderr_handler.setFormatter(formatter)
    handlers.append(stderr_handler)

    _listener = QueueListener(queue_obj, *handlers, respect_handler_level=True)
    _listener.start()
    return log_file


def shutdown_logging() -> None:
    """摘除队列句柄，停止监听器并关闭底层句柄。"""
    global _listener
    if _listener is None:
        return
    root_logger = logging.getLogger()
    for existing in [item for item in root_logger.handlers if isinstance(item, QueueHandler)]:
        root_logger.removeHandler(existing)
    try:
        _listener.stop()
        for handler in _listener.handlers:
            try:
                handler.close()
            except Exception:
                pass
    finally:
        _listener = None
