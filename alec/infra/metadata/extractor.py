"""脚本元数据提取：解析 shebang、头部注释/文档字符串、标签与预览内容。"""

from __future__ import annotations

import ast
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from alec.domain.enums import ScriptType
from alec.domain.models import ScriptMetadata

_DESCRIPTION_MARKERS = ("description:", "@description", "@desc", "summary:", "@summary")
_TAG_MARKERS = ("tags:", "@tags")
_TAG_SPLIT_RE = re.compile(r"[,\s]+")


class MetadataExtractor(Protocol):
    """元数据提取协议；实现方失败时直接抛异常，由调用方降级处理。"""

    def extract(self, path: str, script_type: ScriptType) -> ScriptMetadata: ...


@dataclass(slots=True, frozen=True)
class ParseConfig:
    """解析参数：预览行数、完整展示阈值与描述长度上限。"""
    max_preview_lines: int = 50
    full_script_threshold: int = 30
    description_max_chars: int = 300
    max_read_bytes: int = 1024 * 1024


def truncate_description(text: str, max_chars: int) -> str:
    """超长描述在最后一个空格处截断并追加省略号。"""
    if len(text) <= max_chars:
        return text
    cut = max_chars - 3
    space = text.rfind(" ", 0, cut)
    if space > 0:
        cut = space
    return text[:cut] + "..."


class CommentMetadataExtractor:
    """基于注释与文档字符串的默认元数据提取器。"""

    def __init__(self, config: ParseConfig | None = None) -> None:
        self._config = config or ParseConfig()

    def extract(self, path: str, script_type: ScriptType) -> ScriptMetadata:
        raw = Path(path).read_bytes()[: self._config.max_read_bytes]
        source = raw.decode("utf-8", errors="replace")
        lines = source.splitlines()

        interpreter: str | None = None
        body = lines
        if lines and lines[0].startswith("#!"):
            interpreter = lines[0][2:].strip() or None
            body = lines[1:]

        comments, marked, tags = self._header_comments(body, script_type)
        description = ""
        if marked:
            description = " ".join(marked)
        elif script_type is ScriptType.python:
            description = self._python_docstring(source) or " ".join(comments)
        else:
            description = " ".join(comments)
        description = truncate_description(" ".join(description.split()), self._config.description_max_chars)

        line_count = len(lines)
        if line_count <= self._config.full_script_threshold:
            preview_lines = lines
        else:
            preview_lines = lines[: self._config.max_preview_lines]
        return ScriptMetadata(
            description=description,
            interpreter=interpreter,
            preview="\n".join(preview_lines),
            line_count=line_count,
            preview_lines=len(preview_lines),
            is_truncated=len(preview_lines) < line_count,
            tags=tuple(tags),
        )

    def _header_comments(self, lines: list[str], script_type: ScriptType) -> tuple[list[str], list[str], list[str]]:
        """收集文件头部连续注释：普通注释、带描述标记的注释与标签。"""
        prefix = "//" if script_type is ScriptType.node else "#"
        comments: list[str] = []
        marked: list[str] = []
        tags: list[str] = []
        in_block = False
        for line in lines:
            stripped = line.strip()
            if not stripped:
                continue
            if script_type is ScriptType.node and (in_block or stripped.startswith("/*")):
                # JS 块注释：/** ... */ 按行剥离星号后视同普通注释。
                in_block = "*/" not in stripped
                text = stripped.removeprefix("/**").removeprefix("/*").removesuffix("*/").lstrip("*").strip()
            elif stripped.startswith(prefix):
                text = stripped[len(prefix):].strip()
            else:
                break
            if not text:
                continue
            lowered = text.lower()
            tag_marker = next((m for m in _TAG_MARKERS if lowered.startswith(m)), None)
            if tag_marker is not None:
                for tag in _TAG_SPLIT_RE.split(text[len(tag_marker):].lower()):
                    if tag and tag not in tags:
                        tags.append(tag)
                continue
            desc_marker = next((m for m in _DESCRIPTION_MARKERS if lowered.startswith(m)), None)
            if desc_marker is not None:
                value = text[len(desc_marker):].strip()
                if value:
                    marked.append(value)
                continue
            comments.append(text)
        return comments, marked, tags

    @staticmethod
    def _python_docstring(source: str) -> str:
        """返回模块文档字符串的首段；语法错误时返回空串。"""
        try:
            module = ast.parse(source)
        except (SyntaxError, ValueError):
            return ""
        docstring = ast.get_docstring(module) or ""
        return docstring.strip().split("\n\n", 1)[0]
