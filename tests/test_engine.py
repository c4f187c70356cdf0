"""引擎生命周期测试：验证依赖容器装配、首轮扫描、执行与日志落盘。"""

from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from alec.application import container
from alec.config import get_settings
from alec.domain.enums import ExecutionStatus
from alec.engine import engine_lifespan


@pytest.fixture()
def engine_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    root = Path(os.path.realpath(tmp_path)) / "scripts"
    (root / "ops").mkdir(parents=True)
    (root / "ops" / "greet.sh").write_text("# Tags: demo\necho hello from engine\n", encoding="utf-8")
    monkeypatch.setenv("ALEC_SCRIPT_DIRS", f"{root},{tmp_path / 'missing'}")
    monkeypatch.setenv("ALEC_SHELL", "sh")
    monkeypatch.setenv("ALEC_LOG_DIR", str(tmp_path / "logs"))
    get_settings.cache_clear()
    container.shutdown_container_resources()
    yield root, tmp_path / "logs"
    get_settings.cache_clear()
    container.shutdown_container_resources()


def test_engine_lifespan_scans_runs_and_logs(engine_env) -> None:
    root, log_dir = engine_env
    with engine_lifespan(process_role="test") as engine:
        assert [tree.path for tree in engine.initial_scan.trees] == [str(root)]
        assert len(engine.initial_scan.skipped) == 1
        assert engine.registry is container.get_registry()
        assert engine.sessions is container.get_session_manager()

        scripts = engine.registry.filter_scripts(engine.registry.all_scripts(), "demo")
        assert [item.name for item in scripts] == ["greet"]
        session_id = engine.sessions.execute_script(scripts[0])
        snapshot = engine.sessions.wait_for_session(session_id, 15)
        assert snapshot.status is ExecutionStatus.completed
        assert snapshot.output == ["hello from engine"]

    assert container.get_session_manager.cache_info().currsize == 0
    entries = [
        json.loads(line)
        for line in (log_dir / "test" / "alec.jsonl").read_text(encoding="utf-8").splitlines()
    ]
    events = {item["event"] for item in entries}
    assert {"engine.startup.succeeded", "scan.root.skipped", "session.finished"} <= events
    finished = next(item for item in entries if item["event"] == "session.finished")
    assert finished["session_id"] == session_id
    assert finished["status"] == "completed"
