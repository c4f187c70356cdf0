"""引擎入口：初始化日志与依赖容器，完成首轮扫描并在退出时回收资源。"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator

from alec.application.container import get_registry, get_session_manager, shutdown_container_resources
from alec.application.registry import ScriptRegistry
from alec.application.session_manager import SessionManager
from alec.config import get_settings
from alec.domain.models import ScanReport
from alec.infra.logging.setup import configure_logging, shutdown_logging

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Engine:
    """前端持有的引擎句柄。"""
    registry: ScriptRegistry
    sessions: SessionManager
    initial_scan: ScanReport


@contextmanager
def engine_lifespan(*, process_role: str = "engine", scan_on_start: bool = True) -> Iterator[Engine]:
    """引擎生命周期：启动时配置日志并扫描脚本目录，退出时终止会话并关闭日志。"""
    settings = get_settings()
    configure_logging(settings, process_role=process_role)
    logger.info("engine startup begin", extra={"event": "engine.startup.started"})
    try:
        registry = get_registry()
        report = registry.scan(settings.script_dirs_list()) if scan_on_start else ScanReport()
        logger.info(
            "engine startup ready",
            extra={
                "event": "engine.startup.succeeded",
                "payload_preview": {"roots": len(report.trees), "skipped": len(report.skipped)},
            },
        )
        yield Engine(registry=registry, sessions=get_session_manager(), initial_scan=report)
    finally:
        logger.info("engine shutdown begin", extra={"event": "engine.shutdown.started"})
        shutdown_container_resources()
        shutdown_logging()
