"""会话管理测试：验证退出码、输出上限、超时/取消终止、并发、历史与流式回放。"""

from __future__ import annotations

import os
import sys
import time
from pathlib import Path

import pytest

from alec.application.cancellation import CancelScope
from alec.application.registry import ScriptRegistry
from alec.application.scanner import DirectoryScanner
from alec.application.session_manager import SessionManager
from alec.domain.enums import ExecutionStatus, OutputStream, ValidationRule
from alec.domain.errors import InvalidStateError, NotFoundError, ValidationError
from alec.domain.models import ExecutionConfig, ScriptDescriptor, SecurityPolicy
from alec.infra.metadata.extractor import CommentMetadataExtractor


class _Harness:
    """测试用组合对象：临时脚本目录 + 注册中心 + 会话管理器。"""

    def __init__(self, tmp_path: Path, *, max_execution_time: float = 30.0, max_output_lines: int = 1000, **config) -> None:
        self.root = Path(os.path.realpath(tmp_path)) / "scripts"
        self.root.mkdir()
        self.policy = SecurityPolicy.create(
            allowed_roots=[str(self.root)],
            allowed_extensions=[".sh", ".py"],
            max_execution_time=max_execution_time,
            max_output_lines=max_output_lines,
            restricted_commands=["sudo"],
        )
        config.setdefault("shell", "sh")
        config.setdefault("kill_grace_seconds", 1.0)
        config.setdefault("interpreters", {"python": sys.executable})
        self.registry = ScriptRegistry(DirectoryScanner(self.policy, extractor=CommentMetadataExtractor()))
        self.manager = SessionManager(self.policy, ExecutionConfig(**config))

    def script(self, name: str, body: str) -> ScriptDescriptor:
        path = self.root / name
        path.write_text(body, encoding="utf-8")
        return self.registry.validate_script(str(path))

    def run(self, name: str, body: str, timeout: float = 15.0):
        session_id = self.manager.execute_script(self.script(name, body))
        return self.manager.wait_for_session(session_id, timeout)


def _wait_until(predicate, timeout: float = 10.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return False


def _process_alive(pid: int) -> bool:
    # 僵尸进程视为已退出：容器内 init 未必及时回收孤儿进程。
    try:
        stat_text = Path(f"/proc/{pid}/stat").read_text()
    except FileNotFoundError:
        return False
    return stat_text.rsplit(")", 1)[1].split()[0] != "Z"


def test_echo_completes_with_output(tmp_path: Path) -> None:
    harness = _Harness(tmp_path)
    snapshot = harness.run("hello.sh", "echo hi\n")
    assert snapshot.status is ExecutionStatus.completed
    assert snapshot.exit_code == 0
    assert snapshot.output == ["hi"]
    assert snapshot.pid is not None
    assert snapshot.end_time is not None


def test_nonzero_exit_is_failed_with_exit_code(tmp_path: Path) -> None:
    harness = _Harness(tmp_path)
    snapshot = harness.run("fail.sh", "echo oops >&2\nexit 3\n")
    assert snapshot.status is ExecutionStatus.failed
    assert snapshot.exit_code == 3
    assert snapshot.output == ["[stderr] oops"]
    assert snapshot.lines[0].stream is OutputStream.stderr
    assert "3" in snapshot.error_message


def test_python_script_runs_with_configured_interpreter(tmp_path: Path) -> None:
    harness = _Harness(tmp_path)
    snapshot = harness.run("calc.py", '"""Add numbers."""\nprint(2 + 3)\n')
    assert snapshot.status is ExecutionStatus.completed
    assert snapshot.output == ["5"]


def test_working_directory_defaults_to_script_directory(tmp_path: Path) -> None:
    harness = _Harness(tmp_path)
    snapshot = harness.run("where.sh", "pwd -P\n")
    assert snapshot.output == [str(harness.root)]


def test_output_is_bounded_to_most_recent_lines(tmp_path: Path) -> None:
    harness = _Harness(tmp_path, max_output_lines=5)
    snapshot = harness.run("many.sh", "i=0\nwhile [ $i -lt 20 ]; do echo line$i; i=$((i+1)); done\n")
    assert snapshot.status is ExecutionStatus.completed
    assert snapshot.output == [f"line{i}" for i in range(15, 20)]
    assert [line.seq for line in snapshot.lines] == list(range(15, 20))


def test_timeout_kills_whole_process_group(tmp_path: Path) -> None:
    """验证超时后会话为 timed_out，且后台子进程不会残留。"""
    harness = _Harness(tmp_path, max_execution_time=0.5, kill_grace_seconds=0.5)
    pid_file = harness.root / "child.pid"
    started = time.monotonic()
    snapshot = harness.run("slow.sh", f"sleep 30 &\necho $! > {pid_file}\nwait\n")
    assert snapshot.status is ExecutionStatus.timed_out
    assert time.monotonic() - started < 10
    child_pid = int(pid_file.read_text().strip())
    assert _wait_until(lambda: not _process_alive(child_pid), timeout=5)


def test_lingering_child_holding_output_times_out(tmp_path: Path) -> None:
    """验证主进程正常退出但后台子进程占住输出直到超时，会话仍记为 timed_out。"""
    harness = _Harness(tmp_path, max_execution_time=1.0, kill_grace_seconds=0.5)
    started = time.monotonic()
    snapshot = harness.run("detach.sh", "echo start\nsleep 30 &\nexit 0\n")
    assert snapshot.status is ExecutionStatus.timed_out
    assert snapshot.output == ["start"]
    assert "exceeded" in snapshot.error_message
    assert time.monotonic() - started < 10


def test_cancel_running_session(tmp_path: Path) -> None:
    harness = _Harness(tmp_path)
    session_id = harness.manager.execute_script(harness.script("long.sh", "echo started\nsleep 30\n"))
    assert _wait_until(lambda: harness.manager.get_execution_status(session_id).output == ["started"])

    started = time.monotonic()
    harness.manager.cancel_execution(session_id)
    snapshot = harness.manager.wait_for_session(session_id, 10)
    assert snapshot.status is ExecutionStatus.cancelled
    assert time.monotonic() - started < 6


def test_cancel_requires_running_session(tmp_path: Path) -> None:
    harness = _Harness(tmp_path)
    snapshot = harness.run("quick.sh", "true\n")
    with pytest.raises(InvalidStateError):
        harness.manager.cancel_execution(snapshot.session_id)
    with pytest.raises(NotFoundError):
        harness.manager.cancel_execution("no-such-session")


def test_concurrent_sessions_keep_their_own_output(tmp_path: Path) -> None:
    harness = _Harness(tmp_path)
    session_ids = [
        harness.manager.execute_script(harness.script(f"job{i}.sh", f"echo job-{i}\nsleep 0.2\necho done-{i}\n"))
        for i in range(5)
    ]
    assert len(set(session_ids)) == 5
    for i, session_id in enumerate(session_ids):
        snapshot = harness.manager.wait_for_session(session_id, 15)
        assert snapshot.status is ExecutionStatus.completed
        assert snapshot.output == [f"job-{i}", f"done-{i}"]


def test_cancelling_one_session_leaves_others_running(tmp_path: Path) -> None:
    harness = _Harness(tmp_path)
    victim = harness.manager.execute_script(harness.script("victim.sh", "echo victim\nsleep 30\n"))
    others = [
        harness.manager.execute_script(harness.script(f"peer{i}.sh", f"echo job-{i}\nsleep 0.5\necho done-{i}\n"))
        for i in range(4)
    ]
    assert _wait_until(lambda: harness.manager.get_execution_status(victim).output == ["victim"])

    harness.manager.cancel_execution(victim)
    snapshot = harness.manager.wait_for_session(victim, 10)
    assert snapshot.status is ExecutionStatus.cancelled
    assert snapshot.output == ["victim"]
    for i, session_id in enumerate(others):
        peer = harness.manager.wait_for_session(session_id, 15)
        assert peer.status is ExecutionStatus.completed
        assert peer.exit_code == 0
        assert peer.output == [f"job-{i}", f"done-{i}"]


def test_cleanup_removes_session(tmp_path: Path) -> None:
    harness = _Harness(tmp_path)
    snapshot = harness.run("a.sh", "echo a\n")
    harness.manager.cleanup_session(snapshot.session_id)
    with pytest.raises(NotFoundError):
        harness.manager.get_execution_status(snapshot.session_id)
    with pytest.raises(NotFoundError):
        harness.manager.cleanup_session(snapshot.session_id)


def test_history_is_bounded_and_most_recent_first(tmp_path: Path) -> None:
    harness = _Harness(tmp_path, history_limit=2)
    finished = [harness.run(f"h{i}.sh", f"echo {i}\n").session_id for i in range(3)]
    history = harness.manager.get_execution_history()
    assert [item.session_id for item in history] == [finished[2], finished[1]]
    assert len(harness.manager.get_execution_history(1)) == 1


def test_live_table_prunes_old_terminal_sessions(tmp_path: Path) -> None:
    harness = _Harness(tmp_path, session_retention=2)
    finished = [harness.run(f"p{i}.sh", "true\n").session_id for i in range(3)]
    with pytest.raises(NotFoundError):
        harness.manager.get_execution_status(finished[0])
    assert harness.manager.get_execution_status(finished[2]).status is ExecutionStatus.completed


def test_stream_output_replays_and_follows(tmp_path: Path) -> None:
    harness = _Harness(tmp_path)
    session_id = harness.manager.execute_script(harness.script("stream.sh", "echo one\nsleep 0.3\necho two\n"))
    live = [line.text for line in harness.manager.stream_output(session_id)]
    assert live == ["one", "two"]
    replay = [line.text for line in harness.manager.stream_output(session_id)]
    assert replay == ["one", "two"]


def test_stream_output_stops_when_consumer_scope_cancelled(tmp_path: Path) -> None:
    harness = _Harness(tmp_path)
    session_id = harness.manager.execute_script(harness.script("idle.sh", "echo ready\nsleep 30\n"))
    scope = CancelScope(timeout=0.5)
    started = time.monotonic()
    lines = list(harness.manager.stream_output(session_id, scope))
    assert time.monotonic() - started < 5
    assert [line.text for line in lines] == ["ready"]
    assert harness.manager.get_execution_status(session_id).status is ExecutionStatus.running
    harness.manager.shutdown(timeout=10)
    assert harness.manager.get_execution_status(session_id).status is ExecutionStatus.cancelled


def test_missing_interpreter_fails_without_pid(tmp_path: Path) -> None:
    harness = _Harness(tmp_path, interpreters={"python": "/nonexistent/python-bin"})
    snapshot = harness.run("x.py", "print(1)\n")
    assert snapshot.status is ExecutionStatus.failed
    assert snapshot.pid is None
    assert "no interpreter available" in snapshot.error_message


def test_invalid_path_creates_no_session(tmp_path: Path) -> None:
    harness = _Harness(tmp_path)
    outside = Path(os.path.realpath(tmp_path)) / "outside.sh"
    outside.write_text("echo no\n", encoding="utf-8")
    allowed = harness.script("ok.sh", "echo ok\n")
    rogue = ScriptDescriptor(
        id="script_rogue",
        name="outside",
        path=str(outside),
        type=allowed.type,
        size=allowed.size,
        modified_time=allowed.modified_time,
        is_executable=False,
    )
    with pytest.raises(ValidationError):
        harness.manager.execute_script(rogue)
    assert len(harness.manager.store) == 0


def test_cancelled_parent_scope_fails_before_start(tmp_path: Path) -> None:
    harness = _Harness(tmp_path)
    scope = CancelScope()
    scope.cancel()
    session_id = harness.manager.execute_script(harness.script("never.sh", "echo never\n"), scope)
    snapshot = harness.manager.wait_for_session(session_id, 10)
    assert snapshot.status is ExecutionStatus.failed
    assert snapshot.pid is None
    assert snapshot.output == []


def test_symlink_escaping_root_creates_no_session(tmp_path: Path) -> None:
    """验证根目录内指向外部文件的链接按真实目标拒绝，不登记会话。"""
    harness = _Harness(tmp_path)
    outside = Path(os.path.realpath(tmp_path)) / "escape.sh"
    outside.write_text("echo escaped\n", encoding="utf-8")
    link = harness.root / "escape.sh"
    link.symlink_to(outside)
    allowed = harness.script("ok.sh", "echo ok\n")
    smuggled = ScriptDescriptor(
        id="script_link",
        name="escape",
        path=str(link),
        type=allowed.type,
        size=allowed.size,
        modified_time=allowed.modified_time,
        is_executable=False,
    )
    with pytest.raises(ValidationError) as exc_info:
        harness.manager.execute_script(smuggled)
    assert exc_info.value.rule is ValidationRule.outside_roots
    assert len(harness.manager.store) == 0
