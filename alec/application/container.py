"""依赖容器模块，负责单例化创建校验器、扫描器、注册中心与会话管理器。"""

from __future__ import annotations

from functools import lru_cache

from alec.application.registry import ScriptRegistry
from alec.application.scanner import DirectoryScanner
from alec.application.session_manager import SessionManager, SessionStore
from alec.config import get_settings
from alec.infra.metadata.extractor import CommentMetadataExtractor
from alec.infra.security.path_validator import PathValidator


@lru_cache(maxsize=1)
def get_path_validator() -> PathValidator:
    """获取路径校验器单例。"""
    return PathValidator()


@lru_cache(maxsize=1)
def get_metadata_extractor() -> CommentMetadataExtractor:
    """获取脚本元数据提取器单例。"""
    return CommentMetadataExtractor()


@lru_cache(maxsize=1)
def get_scanner() -> DirectoryScanner:
    """获取目录扫描器单例。"""
    settings = get_settings()
    return DirectoryScanner(
        settings.build_security_policy(),
        validator=get_path_validator(),
        extractor=get_metadata_extractor(),
        follow_symlinks=settings.follow_symlinks,
        show_hidden=settings.show_hidden,
    )


@lru_cache(maxsize=1)
def get_registry() -> ScriptRegistry:
    """获取脚本注册中心单例。"""
    settings = get_settings()
    # 扫描并发度受限于配置，避免大量根目录时线程数失控。
    return ScriptRegistry(get_scanner(), validator=get_path_validator(), max_workers=settings.scan_workers)


@lru_cache(maxsize=1)
def get_session_manager() -> SessionManager:
    """获取会话管理器单例。"""
    settings = get_settings()
    return SessionManager(
        get_scanner().policy,
        settings.build_execution_config(),
        validator=get_path_validator(),
        store=SessionStore(),
    )


def shutdown_container_resources() -> None:
    """终止仍在运行的会话并清理依赖容器缓存。"""
    if get_session_manager.cache_info().currsize:
        get_session_manager().shutdown(timeout=get_settings().kill_grace_seconds + 1.0)

    # 按依赖顺序清理缓存，确保后续调用可重新构建全新实例。
    for provider in (
        get_session_manager,
        get_registry,
        get_scanner,
        get_metadata_extractor,
        get_path_validator,
    ):
        provider.cache_clear()
