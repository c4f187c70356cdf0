"""领域数据结构定义：脚本描述、目录树、安全策略与执行快照等核心值对象。"""

from __future__ import annotations

import hashlib
import os
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterator

from alec.domain.enums import ExecutionStatus, OutputStream, ScriptType


def path_is_within(candidate: str, root: str) -> bool:
    """判断 candidate 是否等于 root 或为其严格后代（按分隔符匹配而非裸前缀）。"""
    if candidate == root:
        return True
    prefix = root if root.endswith(os.sep) else root + os.sep
    return candidate.startswith(prefix)


def script_id_for(path: str) -> str:
    """脚本标识由规范路径派生，同一路径多次扫描得到相同 ID。"""
    return "script_" + hashlib.sha256(path.encode("utf-8")).hexdigest()[:16]


@dataclass(slots=True, frozen=True)
class ScriptMetadata:
    """元数据提取结果：描述、解释器、预览文本与标签。"""
    description: str = ""
    interpreter: str | None = None
    preview: str = ""
    line_count: int = 0
    preview_lines: int = 0
    is_truncated: bool = False
    tags: tuple[str, ...] = ()


@dataclass(slots=True, frozen=True)
class ScriptDescriptor:
    """单个已发现脚本的元信息记录，身份由规范绝对路径决定。"""
    id: str
    name: str
    path: str
    type: ScriptType
    size: int
    modified_time: datetime
    is_executable: bool
    description: str = ""
    tags: tuple[str, ...] = ()
    metadata: ScriptMetadata | None = None

    @property
    def directory(self) -> str:
        return os.path.dirname(self.path)

    @property
    def extension(self) -> str:
        return os.path.splitext(self.path)[1]


def _script_sort_key(item: ScriptDescriptor) -> tuple[str, str]:
    return item.name, item.path


@dataclass(slots=True)
class DirectoryNode:
    """目录树节点。

    节点不持有父引用；祖先链总是从根向下查找得到。所有结构性修改都以递归
    方式下发，返回途中自底向上重算 script_count。
    """
    path: str
    name: str
    children: list[DirectoryNode] = field(default_factory=list)
    scripts: list[ScriptDescriptor] = field(default_factory=list)
    script_count: int = 0
    is_root: bool = False
    last_scan: datetime | None = field(default=None, compare=False)

    @classmethod
    def for_path(cls, path: str, *, is_root: bool = False) -> DirectoryNode:
        clean = os.path.normpath(path)
        return cls(
            path=clean,
            name=os.path.basename(clean) or clean,
            is_root=is_root,
            last_scan=datetime.now(),
        )

    def recount(self) -> int:
        self.script_count = len(self.scripts) + sum(child.script_count for child in self.children)
        return self.script_count

    def attach_child(self, child: DirectoryNode) -> None:
        """挂载直接子目录，保持按名称排序并重算计数。"""
        if os.path.dirname(child.path) != self.path:
            raise ValueError(f"directory {child.path} is not a direct child of {self.path}")
        if any(existing.path == child.path for existing in self.children):
            raise ValueError(f"child directory already exists: {child.path}")
        child.is_root = False
        self.children.append(child)
        self.children.sort(key=lambda item: item.name)
        self.recount()

    def add_script(self, descriptor: ScriptDescriptor) -> None:
        """向本目录添加脚本，保持按名称排序并重算计数。"""
        if descriptor.directory != self.path:
            raise ValueError(f"script {descriptor.path} is not in directory {self.path}")
        if any(existing.path == descriptor.path for existing in self.scripts):
            raise ValueError(f"script already exists: {descriptor.path}")
        self.scripts.append(descriptor)
        self.scripts.sort(key=_script_sort_key)
        self.recount()

    def upsert_script(self, descriptor: ScriptDescriptor) -> bool:
        """在所属目录整体替换或插入脚本；所属目录不在树中时返回 False。"""
        if descriptor.directory == self.path:
            self.scripts = [item for item in self.scripts if item.path != descriptor.path]
            self.scripts.append(descriptor)
            self.scripts.sort(key=_script_sort_key)
            self.recount()
            return True
        for child in self.children:
            if path_is_within(descriptor.path, child.path) and child.upsert_script(descriptor):
                self.recount()
                return True
        return False

    def remove_script(self, path: str) -> bool:
        for index, item in enumerate(self.scripts):
            if item.path == path:
                del self.scripts[index]
                self.recount()
                return True
        for child in self.children:
            if path_is_within(path, child.path) and child.remove_script(path):
                self.recount()
                return True
        return False

    def remove_child(self, path: str) -> bool:
        for index, child in enumerate(self.children):
            if child.path == path:
                del self.children[index]
                self.recount()
                return True
        for child in self.children:
            if path_is_within(path, child.path) and child.remove_child(path):
                self.recount()
                return True
        return False

    def ancestors_of(self, path: str) -> list[DirectoryNode]:
        """返回从本节点到包含 path 的最深目录节点的链路；不在本树内返回空列表。"""
        clean = os.path.normpath(path)
        if not path_is_within(clean, self.path):
            return []
        chain: list[DirectoryNode] = [self]
        current = self
        while current.path != clean:
            nxt = next((child for child in current.children if path_is_within(clean, child.path)), None)
            if nxt is None:
                break
            chain.append(nxt)
            current = nxt
        return chain

    def find_directory(self, path: str) -> DirectoryNode | None:
        chain = self.ancestors_of(path)
        if chain and chain[-1].path == os.path.normpath(path):
            return chain[-1]
        return None

    def find_script(self, path: str) -> ScriptDescriptor | None:
        directory = self.find_directory(os.path.dirname(os.path.normpath(path)))
        if directory is None:
            return None
        return next((item for item in directory.scripts if item.path == path), None)

    def breadcrumbs(self, path: str) -> list[str]:
        return [node.name for node in self.ancestors_of(path)]

    def depth_of(self, path: str) -> int | None:
        directory = self.find_directory(path)
        if directory is None:
            return None
        return len(self.ancestors_of(path)) - 1

    def walk(self) -> Iterator[DirectoryNode]:
        """先序遍历目录树。"""
        yield self
        for child in self.children:
            yield from child.walk()

    def all_scripts(self) -> list[ScriptDescriptor]:
        return [script for node in self.walk() for script in node.scripts]


@dataclass(slots=True, frozen=True)
class SecurityPolicy:
    """安全策略：一次扫描/执行周期内不可变，可在线程间自由共享。"""
    allowed_roots: tuple[str, ...] = ()
    allowed_extensions: tuple[str, ...] = ()
    max_execution_time: float = 300.0
    max_output_lines: int = 10000
    restricted_commands: tuple[str, ...] = ()

    @classmethod
    def create(
        cls,
        *,
        allowed_roots: list[str] | tuple[str, ...] = (),
        allowed_extensions: list[str] | tuple[str, ...] = (),
        max_execution_time: float = 300.0,
        max_output_lines: int = 10000,
        restricted_commands: list[str] | tuple[str, ...] = (),
    ) -> SecurityPolicy:
        """规范化根目录（展开 ~ 并解析为绝对真实路径）与扩展名后构造策略。"""
        if max_execution_time <= 0:
            raise ValueError("max_execution_time must be positive")
        if max_output_lines <= 0:
            raise ValueError("max_output_lines must be positive")
        roots: list[str] = []
        for root in allowed_roots:
            canonical = os.path.realpath(os.path.expanduser(str(root)))
            if canonical not in roots:
                roots.append(canonical)
        extensions: list[str] = []
        for ext in allowed_extensions:
            text = str(ext).strip()
            if not text:
                continue
            if not text.startswith("."):
                text = "." + text
            if text not in extensions:
                extensions.append(text)
        return cls(
            allowed_roots=tuple(roots),
            allowed_extensions=tuple(extensions),
            max_execution_time=float(max_execution_time),
            max_output_lines=int(max_output_lines),
            restricted_commands=tuple(cmd.strip() for cmd in restricted_commands if cmd.strip()),
        )


@dataclass(slots=True, frozen=True)
class ExecutionConfig:
    """执行参数：解释器覆盖、工作目录、终止宽限期与保留上限。"""
    shell: str = ""
    interpreters: dict[str, str] = field(default_factory=dict)
    working_dir: str = ""
    kill_grace_seconds: float = 5.0
    history_limit: int = 100
    session_retention: int = 200


@dataclass(slots=True, frozen=True)
class OutputLine:
    """单行输出，seq 在会话内单调递增，用于流式回放定位。"""
    seq: int
    text: str
    stream: OutputStream
    timestamp: datetime

    def render(self) -> str:
        if self.stream is OutputStream.stderr:
            return f"[stderr] {self.text}"
        return self.text


@dataclass(slots=True, frozen=True)
class ExecutionSnapshot:
    """执行会话的只读快照，所有读取方只接触快照。"""
    session_id: str
    script: ScriptDescriptor
    status: ExecutionStatus
    start_time: datetime
    end_time: datetime | None
    pid: int | None
    exit_code: int | None
    lines: tuple[OutputLine, ...]
    error_message: str | None

    @property
    def output(self) -> list[str]:
        return [line.render() for line in self.lines]

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def duration_seconds(self) -> float | None:
        if self.end_time is None:
            return None
        return (self.end_time - self.start_time).total_seconds()


@dataclass(slots=True, frozen=True)
class SkippedRoot:
    """多根扫描中被跳过的根目录及原因。"""
    root: str
    reason: str


@dataclass(slots=True)
class ScanReport:
    """多根扫描结果：成功构建的目录树与被跳过的根目录诊断列表。"""
    trees: list[DirectoryNode] = field(default_factory=list)
    skipped: list[SkippedRoot] = field(default_factory=list)
