"""日志上下文：基于 contextvars 透传 session/scan_root/script_path 标识。"""

from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar, Token
from typing import Any, Iterator

_UNSET = object()

_session_id_var: ContextVar[str | None] = ContextVar("log_session_id", default=None)
_scan_root_var: ContextVar[str | None] = ContextVar("log_scan_root", default=None)
_script_path_var: ContextVar[str | None] = ContextVar("log_script_path", default=None)

CONTEXT_KEYS = ("session_id", "scan_root", "script_path")


def get_log_context() -> dict[str, str | None]:
    """返回当前线程下的日志上下文字段。"""
    return {
        "session_id": _session_id_var.get(),
        "scan_root": _scan_root_var.get(),
        "script_path": _script_path_var.get(),
    }


@contextmanager
def bind_log_context(
    *,
    session_id: str | None | object = _UNSET,
    scan_root: str | None | object = _UNSET,
    script_path: str | None | object = _UNSET,
) -> Iterator[None]:
    """在上下文范围内绑定日志字段，并在退出时自动恢复。

    contextvars 不会自动传播到新线程，驱动线程与读流线程需在入口处重新绑定。
    """
    tokens: list[tuple[ContextVar[Any], Token[Any]]] = []
    if session_id is not _UNSET:
        tokens.append((_session_id_var, _session_id_var.set(session_id)))
    if scan_root is not _UNSET:
        tokens.append((_scan_root_var, _scan_root_var.set(scan_root)))
    if script_path is not _UNSET:
        tokens.append((_script_path_var, _script_path_var.set(script_path)))
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)
