"""领域异常定义：校验、查找、状态与进程启动失败。"""

from __future__ import annotations

from alec.domain.enums import CancelReason, ValidationRule


class AlecError(Exception):
    """引擎异常基类。"""


class ValidationError(AlecError, ValueError):
    """路径或脚本未通过安全策略校验。

    消息只包含候选路径本身，不回显允许根目录等其它文件系统结构。
    """

    def __init__(self, rule: ValidationRule, message: str) -> None:
        super().__init__(message)
        self.rule = rule


class NotFoundError(AlecError, LookupError):
    """会话或文件不存在。"""


class InvalidStateError(AlecError, RuntimeError):
    """会话当前状态不允许该操作。"""


class SpawnError(AlecError, RuntimeError):
    """解释器解析或子进程启动失败。"""


class ScopeCancelledError(AlecError):
    """取消作用域已被取消或已超过截止时间。"""

    def __init__(self, reason: CancelReason) -> None:
        super().__init__(f"scope {reason.value}")
        self.reason = reason
