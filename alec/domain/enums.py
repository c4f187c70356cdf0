"""领域枚举定义：统一脚本类型、执行状态与输出流取值。"""

from __future__ import annotations

from enum import Enum


class ScriptType(str, Enum):
    """脚本类型枚举，集合封闭，新增类型需同步扩展名映射表。"""
    shell = "shell"
    python = "python"
    node = "node"
    other = "other"


class ExecutionStatus(str, Enum):
    """执行会话生命周期状态枚举。"""
    pending = "pending"
    running = "running"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"
    timed_out = "timed_out"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {
        ExecutionStatus.completed,
        ExecutionStatus.failed,
        ExecutionStatus.cancelled,
        ExecutionStatus.timed_out,
    }
)


class OutputStream(str, Enum):
    """输出来源流枚举。"""
    stdout = "stdout"
    stderr = "stderr"


class CancelReason(str, Enum):
    """取消原因：显式取消或截止时间到达。"""
    cancelled = "cancelled"
    deadline = "deadline"


class ValidationRule(str, Enum):
    """路径/脚本校验失败时命中的规则。"""
    malformed = "malformed"
    traversal = "traversal"
    outside_roots = "outside_roots"
    extension = "extension"
    not_a_file = "not_a_file"
    not_a_directory = "not_a_directory"
    unsupported_type = "unsupported_type"
    unreadable = "unreadable"
