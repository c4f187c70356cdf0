"""目录扫描器：在允许根目录内遍历文件系统，构建脚本目录树。"""

from __future__ import annotations

import logging
import os
import stat
from datetime import datetime

from alec.application.cancellation import CancelScope
from alec.application.interpreters import script_type_for
from alec.domain.enums import ScriptType, ValidationRule
from alec.domain.errors import NotFoundError, ValidationError
from alec.domain.models import (
    DirectoryNode,
    ScriptDescriptor,
    ScriptMetadata,
    SecurityPolicy,
    path_is_within,
    script_id_for,
)
from alec.infra.logging.context import bind_log_context
from alec.infra.metadata.extractor import MetadataExtractor
from alec.infra.security.path_validator import PathValidator

logger = logging.getLogger(__name__)


class DirectoryScanner:
    """目录扫描器。

    默认不跟随符号链接：指向目录或文件的链接都会被跳过。开启 follow_symlinks
    后，链接目标必须仍位于某个允许根目录内，并以 (st_dev, st_ino) 去重防止环路。
    """

    def __init__(
        self,
        policy: SecurityPolicy,
        *,
        validator: PathValidator | None = None,
        extractor: MetadataExtractor | None = None,
        follow_symlinks: bool = False,
        show_hidden: bool = False,
    ) -> None:
        self._policy = policy
        self._validator = validator or PathValidator()
        self._extractor = extractor
        self._follow_symlinks = follow_symlinks
        self._show_hidden = show_hidden

    @property
    def policy(self) -> SecurityPolicy:
        return self._policy

    def scan(self, root: str, scope: CancelScope | None = None) -> DirectoryNode:
        """扫描单个根目录；取消时立即抛出 ScopeCancelledError。"""
        scope = scope or CancelScope()
        scope.raise_if_cancelled()
        canonical = os.path.realpath(os.path.expanduser(str(root)))
        self._validator.validate(canonical, self._policy, is_file=False)
        try:
            root_stat = os.stat(canonical)
        except FileNotFoundError as exc:
            raise NotFoundError(f"directory not found: {root}") from exc
        if not stat.S_ISDIR(root_stat.st_mode):
            raise ValidationError(ValidationRule.not_a_directory, f"path is not a directory: {root}")

        node = DirectoryNode.for_path(canonical, is_root=True)
        visited = {(root_stat.st_dev, root_stat.st_ino)}
        with bind_log_context(scan_root=canonical):
            self._walk(node, scope, visited)
            logger.info(
                "directory scan completed",
                extra={"event": "scan.root.completed", "payload_preview": {"scripts": node.script_count}},
            )
        return node

    def _walk(self, node: DirectoryNode, scope: CancelScope, visited: set[tuple[int, int]]) -> None:
        try:
            with os.scandir(node.path) as iterator:
                entries = sorted(iterator, key=lambda item: item.name)
        except OSError as exc:
            logger.warning(
                "directory listing failed",
                extra={"event": "scan.dir.unreadable", "error_type": type(exc).__name__, "error": str(exc)},
            )
            return

        for entry in entries:
            scope.raise_if_cancelled()
            if not self._show_hidden and entry.name.startswith("."):
                continue
            try:
                is_link = entry.is_symlink()
                if is_link and not self._follow_symlinks:
                    continue
                entry_stat = entry.stat(follow_symlinks=self._follow_symlinks)
            except OSError as exc:
                # 权限不足、悬空链接等条目直接跳过。
                logger.debug(
                    "entry stat failed",
                    extra={"event": "scan.entry.skipped", "error_type": type(exc).__name__, "error": str(exc)},
                )
                continue
            if is_link and not self._link_target_allowed(entry.path):
                continue

            if stat.S_ISDIR(entry_stat.st_mode):
                key = (entry_stat.st_dev, entry_stat.st_ino)
                if key in visited:
                    continue
                visited.add(key)
                child = DirectoryNode.for_path(entry.path)
                self._walk(child, scope, visited)
                node.attach_child(child)
            elif stat.S_ISREG(entry_stat.st_mode):
                descriptor = self._try_descriptor(entry.path, entry_stat)
                if descriptor is not None:
                    node.add_script(descriptor)

    def _link_target_allowed(self, path: str) -> bool:
        target = os.path.realpath(path)
        if not self._policy.allowed_roots:
            return True
        return any(path_is_within(target, root) for root in self._policy.allowed_roots)

    def _try_descriptor(self, path: str, entry_stat: os.stat_result) -> ScriptDescriptor | None:
        try:
            self._validator.validate(path, self._policy, is_file=True)
            return self.build_descriptor(path, entry_stat)
        except ValidationError as exc:
            logger.debug(
                "file skipped by policy",
                extra={"event": "scan.file.skipped", "error_type": exc.rule.value, "error": str(exc)},
            )
            return None

    def build_descriptor(self, path: str, entry_stat: os.stat_result) -> ScriptDescriptor:
        """为已通过路径校验的文件构造描述对象；元数据提取失败时降级为空描述。"""
        script_type = script_type_for(path, self._policy.allowed_extensions)
        if script_type is None:
            raise ValidationError(
                ValidationRule.unsupported_type,
                f"unsupported script type: {os.path.splitext(path)[1] or '(none)'}",
            )
        if not os.access(path, os.R_OK):
            raise ValidationError(ValidationRule.unreadable, f"script is not readable: {path}")

        metadata = self._extract(path, script_type)
        return ScriptDescriptor(
            id=script_id_for(path),
            name=os.path.splitext(os.path.basename(path))[0],
            path=path,
            type=script_type,
            size=entry_stat.st_size,
            modified_time=datetime.fromtimestamp(entry_stat.st_mtime),
            is_executable=bool(entry_stat.st_mode & 0o111),
            description=metadata.description if metadata else "",
            tags=metadata.tags if metadata else (),
            metadata=metadata,
        )

    def _extract(self, path: str, script_type: ScriptType) -> ScriptMetadata | None:
        if self._extractor is None:
            return None
        try:
            return self._extractor.extract(path, script_type)
        except Exception as exc:
            logger.warning(
                "metadata extraction failed",
                extra={
                    "event": "scan.metadata.failed",
                    "script_path": path,
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                },
            )
            return None
