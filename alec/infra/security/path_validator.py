"""路径校验器：按允许根目录与扩展名对候选路径做纯函数式安全检查。"""

from __future__ import annotations

import os
import re

from alec.domain.enums import ValidationRule
from alec.domain.errors import ValidationError
from alec.domain.models import SecurityPolicy, path_is_within


class PathValidator:
    """路径校验器，规则按顺序执行，首个失败规则决定错误类型。

    不访问文件系统：不解析符号链接，也不检查文件是否存在。
    """

    def clean(self, candidate: str) -> str:
        """只做格式与穿越检查，返回清洗后的绝对路径，不涉及策略。"""
        text = str(candidate)
        if not text or "\x00" in text:
            raise ValidationError(ValidationRule.malformed, "malformed path")

        # 原始输入与清洗结果都不允许出现 .. 段，绝对路径同样适用。
        if self._has_parent_segment(text):
            raise ValidationError(ValidationRule.traversal, f"path traversal detected: {text}")
        cleaned = os.path.normpath(text)
        if self._has_parent_segment(cleaned):
            raise ValidationError(ValidationRule.traversal, f"path traversal detected: {text}")
        return os.path.abspath(cleaned)

    def validate(self, candidate: str, policy: SecurityPolicy, *, is_file: bool = True) -> str:
        """校验候选路径，通过时返回清洗后的绝对路径。

        根目录比较按字面路径进行；调用方需先用 realpath 解析符号链接，
        否则指向根目录外的链接会被放行。
        """
        text = str(candidate)
        absolute = self.clean(text)
        if policy.allowed_roots and not any(path_is_within(absolute, root) for root in policy.allowed_roots):
            raise ValidationError(ValidationRule.outside_roots, f"path not in allowed directories: {text}")

        if is_file and policy.allowed_extensions:
            ext = os.path.splitext(absolute)[1]
            if ext not in policy.allowed_extensions:
                raise ValidationError(ValidationRule.extension, f"file extension not allowed: {ext or '(none)'}")
        return absolute

    def is_allowed(self, candidate: str, policy: SecurityPolicy, *, is_file: bool = True) -> bool:
        try:
            self.validate(candidate, policy, is_file=is_file)
        except ValidationError:
            return False
        return True

    @staticmethod
    def _has_parent_segment(value: str) -> bool:
        segments = value.replace("\\", "/").split("/")
        return ".." in segments


def find_restricted_commands(text: str, policy: SecurityPolicy) -> list[str]:
    """返回脚本文本中出现的受限命令，仅作提示，不阻断执行。"""
    if not text or not policy.restricted_commands:
        return []
    found: list[str] = []
    for command in policy.restricted_commands:
        # 按词边界匹配，避免 rm 命中 format 之类的片段。
        if re.search(rf"(?<![\w.-]){re.escape(command)}(?![\w-])", text):
            found.append(command)
    return found
