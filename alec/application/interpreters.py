"""解释器解析：扩展名到脚本类型、脚本类型到解释器的显式映射表。"""

from __future__ import annotations

import os
import shlex
import shutil

from alec.domain.enums import ScriptType
from alec.domain.errors import SpawnError
from alec.domain.models import ExecutionConfig, ScriptDescriptor

EXTENSION_TYPES: dict[str, ScriptType] = {
    ".sh": ScriptType.shell,
    ".bash": ScriptType.shell,
    ".zsh": ScriptType.shell,
    ".py": ScriptType.python,
    ".js": ScriptType.node,
    ".mjs": ScriptType.node,
    ".cjs": ScriptType.node,
}

DEFAULT_INTERPRETERS: dict[ScriptType, tuple[str, ...]] = {
    ScriptType.shell: ("bash", "sh"),
    ScriptType.python: ("python3", "python"),
    ScriptType.node: ("node",),
    # other 类型不设默认值，依赖 shebang 或可执行位。
    ScriptType.other: (),
}


def script_type_for(path: str, allowed_extensions: tuple[str, ...] = ()) -> ScriptType | None:
    """按扩展名判定脚本类型；既不在映射表也不在允许列表中时返回 None。"""
    ext = os.path.splitext(path)[1]
    if not ext:
        return None
    if allowed_extensions and ext not in allowed_extensions:
        return None
    mapped = EXTENSION_TYPES.get(ext)
    if mapped is not None:
        return mapped
    if ext in allowed_extensions:
        return ScriptType.other
    return None


def _which(command: str) -> list[str] | None:
    parts = shlex.split(command)
    if not parts:
        return None
    found = shutil.which(parts[0])
    if found is None:
        return None
    return [found, *parts[1:]]


def _candidates(descriptor: ScriptDescriptor, config: ExecutionConfig) -> list[str]:
    override = config.interpreters.get(descriptor.type.value)
    if override:
        return [override]
    if descriptor.type is ScriptType.shell and config.shell:
        return [config.shell]
    candidates = list(DEFAULT_INTERPRETERS[descriptor.type])
    if descriptor.type is ScriptType.other and descriptor.metadata and descriptor.metadata.interpreter:
        candidates.append(descriptor.metadata.interpreter)
    return candidates


def resolve_command(descriptor: ScriptDescriptor, config: ExecutionConfig) -> list[str]:
    """解析执行命令行。

    优先使用类型对应的解释器；找不到解释器时，若文件本身可执行则直接执行，
    否则抛出 SpawnError。
    """
    candidates = _candidates(descriptor, config)
    for candidate in candidates:
        argv = _which(candidate)
        if argv is not None:
            return [*argv, descriptor.path]
    if os.access(descriptor.path, os.X_OK):
        return [descriptor.path]
    tried = ", ".join(candidates) or "none"
    raise SpawnError(
        f"no interpreter available for {descriptor.type.value} script {descriptor.path} (tried: {tried})"
    )
