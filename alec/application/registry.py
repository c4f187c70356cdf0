"""脚本注册中心：多根目录并发扫描、单脚本校验刷新与过滤查询。"""

from __future__ import annotations

import logging
import os
import stat
import threading
from concurrent.futures import ThreadPoolExecutor
from contextvars import copy_context
from typing import Iterable

from alec.application.cancellation import CancelScope
from alec.application.scanner import DirectoryScanner
from alec.domain.enums import ValidationRule
from alec.domain.errors import NotFoundError, ScopeCancelledError, ValidationError
from alec.domain.models import DirectoryNode, ScanReport, ScriptDescriptor, SkippedRoot
from alec.infra.security.path_validator import PathValidator

logger = logging.getLogger(__name__)


class ScriptRegistry:
    """脚本注册中心。

    持有最近一次扫描得到的目录树；树的替换与单脚本刷新都在锁内完成，读取方
    拿到的是列表拷贝。
    """

    def __init__(
        self,
        scanner: DirectoryScanner,
        *,
        validator: PathValidator | None = None,
        max_workers: int = 4,
    ) -> None:
        self._scanner = scanner
        self._policy = scanner.policy
        self._validator = validator or PathValidator()
        self._max_workers = max(1, max_workers)
        self._lock = threading.Lock()
        self._trees: list[DirectoryNode] = []

    def scan(self, roots: Iterable[str], scope: CancelScope | None = None) -> ScanReport:
        """并发扫描多个根目录，结果按输入顺序汇总。

        单个根目录失败只记录到 skipped；取消会中断整次调用。
        """
        scope = scope or CancelScope()
        root_list = [str(item) for item in roots]
        scope.raise_if_cancelled()
        report = ScanReport()
        if not root_list:
            with self._lock:
                self._trees = []
            return report

        with ThreadPoolExecutor(max_workers=min(self._max_workers, len(root_list))) as pool:
            # 每个任务复制调用方的 contextvars，保持日志上下文字段一致。
            futures = [
                pool.submit(copy_context().run, self._scanner.scan, root, scope) for root in root_list
            ]
            try:
                for root, future in zip(root_list, futures):
                    try:
                        report.trees.append(future.result())
                    except ScopeCancelledError:
                        raise
                    except Exception as exc:
                        report.skipped.append(SkippedRoot(root=root, reason=str(exc)))
                        logger.warning(
                            "scan root skipped",
                            extra={
                                "event": "scan.root.skipped",
                                "scan_root": root,
                                "error_type": type(exc).__name__,
                                "error": str(exc),
                            },
                        )
            except ScopeCancelledError:
                for future in futures:
                    future.cancel()
                logger.info("scan cancelled", extra={"event": "scan.cancelled", "status": "cancelled"})
                raise

        with self._lock:
            self._trees = list(report.trees)
        logger.info(
            "scan finished",
            extra={
                "event": "scan.finished",
                "payload_preview": {"roots": len(report.trees), "skipped": len(report.skipped)},
            },
        )
        return report

    def scan_directories(self, roots: Iterable[str], scope: CancelScope | None = None) -> list[DirectoryNode]:
        return self.scan(roots, scope).trees

    def _canonical(self, path: str) -> str:
        # 先按字面拒绝畸形与穿越，再解析符号链接，根目录校验作用于真实目标。
        return os.path.realpath(self._validator.clean(path))

    def validate_script(self, path: str) -> ScriptDescriptor:
        """校验单个脚本路径并返回最新描述；文件缺失抛 NotFoundError。

        描述中的 path 与 id 取自解析符号链接后的真实路径。
        """
        clean = self._validator.validate(self._canonical(path), self._policy, is_file=True)
        try:
            entry_stat = os.stat(clean)
        except FileNotFoundError as exc:
            raise NotFoundError(f"script not found: {path}") from exc
        if stat.S_ISDIR(entry_stat.st_mode):
            raise ValidationError(ValidationRule.not_a_file, f"path is a directory: {path}")
        if not stat.S_ISREG(entry_stat.st_mode):
            raise ValidationError(ValidationRule.not_a_file, f"path is not a regular file: {path}")
        return self._scanner.build_descriptor(clean, entry_stat)

    def refresh_script(self, path: str) -> ScriptDescriptor:
        """重新读取脚本并整体替换树中的描述；文件已删除时从树中摘除后抛 NotFoundError。"""
        try:
            descriptor = self.validate_script(path)
        except NotFoundError:
            clean = self._canonical(path)
            with self._lock:
                removed = any(tree.remove_script(clean) for tree in self._trees)
            if removed:
                logger.info("script removed from tree", extra={"event": "registry.script.removed", "script_path": clean})
            raise

        with self._lock:
            for tree in self._trees:
                if tree.upsert_script(descriptor):
                    break
        return descriptor

    @staticmethod
    def filter_scripts(descriptors: Iterable[ScriptDescriptor], query: str) -> list[ScriptDescriptor]:
        """按名称、类型或标签做大小写不敏感的子串匹配；空查询原样返回。"""
        items = list(descriptors)
        if not query:
            return items
        needle = query.lower()
        return [
            item
            for item in items
            if needle in item.name.lower()
            or needle in item.type.value
            or any(needle in tag.lower() for tag in item.tags)
        ]

    def trees(self) -> list[DirectoryNode]:
        with self._lock:
            return list(self._trees)

    def all_scripts(self) -> list[ScriptDescriptor]:
        with self._lock:
            return [script for tree in self._trees for script in tree.all_scripts()]
