"""全局配置加载模块：从环境变量构建运行参数并提供缓存访问。"""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from alec.domain.models import ExecutionConfig, SecurityPolicy


def _csv_to_list(value: str) -> list[str]:
    """将逗号分隔字符串转换为去空白列表。"""
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseSettings):
    """引擎运行配置对象，从 ALEC_* 环境变量读取并提供类型化访问。"""
    model_config = SettingsConfigDict(env_prefix="ALEC_", env_file=".env", env_file_encoding="utf-8", extra="ignore")

    script_dirs: str = "./scripts"
    allowed_extensions: str = ".sh,.bash,.zsh,.py,.js,.rb,.pl"
    restricted_commands: str = "rm,sudo,su,chmod,chown"

    max_execution_time_seconds: float = 300.0
    max_output_lines: int = 10000
    kill_grace_seconds: float = 5.0

    shell: str = ""
    python_interpreter: str = ""
    node_interpreter: str = ""
    # 为空时使用脚本所在目录作为工作目录。
    working_dir: str = ""

    history_limit: int = 100
    session_retention: int = 200
    scan_workers: int = 4
    follow_symlinks: bool = False
    show_hidden: bool = False

    log_level: str = "INFO"
    log_dir: Path | None = Field(default=None)
    log_max_bytes: int = 10 * 1024 * 1024
    log_backup_count: int = 3
    log_payload_preview_chars: int = 512
    log_debug_modules: str = ""
    log_debug_session_ids: str = ""

    @field_validator(
        "max_execution_time_seconds",
        "max_output_lines",
        "history_limit",
        "session_retention",
        "scan_workers",
    )
    @classmethod
    def _must_be_positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("kill_grace_seconds")
    @classmethod
    def _must_not_be_negative(cls, value: float) -> float:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    def script_dirs_list(self) -> list[str]:
        # 相对路径统一按当前工作目录解析，避免不同启动方式下语义漂移。
        return [os.path.abspath(os.path.expanduser(item)) for item in _csv_to_list(self.script_dirs)]

    def allowed_extensions_list(self) -> list[str]:
        return _csv_to_list(self.allowed_extensions)

    def restricted_commands_list(self) -> list[str]:
        return _csv_to_list(self.restricted_commands)

    def log_debug_modules_list(self) -> list[str]:
        return _csv_to_list(self.log_debug_modules)

    def log_debug_session_ids_list(self) -> list[str]:
        return _csv_to_list(self.log_debug_session_ids)

    def build_security_policy(self) -> SecurityPolicy:
        """构造不可变安全策略，允许根目录即配置的脚本目录。"""
        return SecurityPolicy.create(
            allowed_roots=self.script_dirs_list(),
            allowed_extensions=self.allowed_extensions_list(),
            max_execution_time=self.max_execution_time_seconds,
            max_output_lines=self.max_output_lines,
            restricted_commands=self.restricted_commands_list(),
        )

    def build_execution_config(self) -> ExecutionConfig:
        interpreters = {
            key: value
            for key, value in (("python", self.python_interpreter), ("node", self.node_interpreter))
            if value
        }
        return ExecutionConfig(
            shell=self.shell,
            interpreters=interpreters,
            working_dir=self.working_dir,
            kill_grace_seconds=self.kill_grace_seconds,
            history_limit=self.history_limit,
            session_retention=self.session_retention,
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """构建并缓存 Settings。"""
    return Settings()
