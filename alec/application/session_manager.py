"""会话管理：脚本子进程的启动、输出采集、超时/取消终止与历史保留。"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
import time
import uuid
from collections import deque
from typing import IO, Iterator

from alec.application.cancellation import CancelScope
from alec.application.interpreters import resolve_command
from alec.application.session import ExecutionSession
from alec.domain.enums import CancelReason, ExecutionStatus, OutputStream
from alec.domain.errors import InvalidStateError, NotFoundError, SpawnError
from alec.domain.models import ExecutionConfig, ExecutionSnapshot, OutputLine, ScriptDescriptor, SecurityPolicy
from alec.infra.logging.context import bind_log_context
from alec.infra.security.path_validator import PathValidator, find_restricted_commands

logger = logging.getLogger(__name__)

_POLL_INTERVAL_SECONDS = 0.05
_STREAM_WAIT_SECONDS = 0.25


class SessionStore:
    """会话表：加锁保护，只插入构造完成的会话。"""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sessions: dict[str, ExecutionSession] = {}

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._sessions

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def add(self, session: ExecutionSession) -> None:
        with self._lock:
            if session.session_id in self._sessions:
                raise ValueError(f"session already exists: {session.session_id}")
            self._sessions[session.session_id] = session

    def get(self, session_id: str) -> ExecutionSession:
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise NotFoundError(f"session not found: {session_id}")
        return session

    def remove(self, session_id: str) -> ExecutionSession | None:
        with self._lock:
            return self._sessions.pop(session_id, None)

    def values(self) -> list[ExecutionSession]:
        with self._lock:
            return list(self._sessions.values())

    def prune(self, retention: int) -> list[str]:
        """保留最近 retention 个已结束会话，其余按结束时间从旧到新移除。"""
        with self._lock:
            finished = [item for item in self._sessions.values() if item.status.is_terminal]
            overflow = len(finished) - retention
            if overflow <= 0:
                return []
            finished.sort(key=lambda item: item.end_time)
            removed = [item.session_id for item in finished[:overflow]]
            for session_id in removed:
                del self._sessions[session_id]
        return removed


class SessionManager:
    """脚本执行会话管理器。

    每个会话由一个驱动线程负责：解析解释器、启动子进程（独立进程组）、轮询
    取消作用域并在超时或取消时按 SIGTERM → SIGKILL 升级终止整个进程组。
    stdout/stderr 各由一个读流线程写入会话缓冲区。会话状态只由驱动线程写入。
    """

    def __init__(
        self,
        policy: SecurityPolicy,
        config: ExecutionConfig | None = None,
        *,
        validator: PathValidator | None = None,
        store: SessionStore | None = None,
    ) -> None:
        self._policy = policy
        self._config = config or ExecutionConfig()
        self._validator = validator or PathValidator()
        self._store = store if store is not None else SessionStore()
        self._history: deque[ExecutionSnapshot] = deque(maxlen=self._config.history_limit)
        self._history_lock = threading.Lock()

    @property
    def store(self) -> SessionStore:
        return self._store

    def execute_script(self, descriptor: ScriptDescriptor, scope: CancelScope | None = None) -> str:
        """校验脚本路径后登记 Pending 会话并异步启动，立即返回会话 ID。

        根目录校验针对解析符号链接后的真实目标，链接逃出根目录时抛 ValidationError。
        """
        target = os.path.realpath(self._validator.clean(descriptor.path))
        self._validator.validate(target, self._policy, is_file=True)

        timeout = self._policy.max_execution_time
        session_scope = scope.child(timeout=timeout) if scope is not None else CancelScope(timeout=timeout)
        while True:
            session_id = str(uuid.uuid4())
            if session_id not in self._store:
                break
        session = ExecutionSession(
            session_id,
            descriptor,
            max_lines=self._policy.max_output_lines,
            scope=session_scope,
        )
        session.driver = threading.Thread(
            target=self._drive,
            args=(session,),
            name=f"alec-session-{session_id[:8]}",
            daemon=True,
        )
        self._store.add(session)
        logger.info(
            "execution session created",
            extra={"event": "session.created", "session_id": session_id, "script_path": descriptor.path},
        )
        session.driver.start()
        return session_id

    def get_execution_status(self, session_id: str) -> ExecutionSnapshot:
        return self._store.get(session_id).snapshot()

    def stream_output(self, session_id: str, scope: CancelScope | None = None) -> Iterator[OutputLine]:
        """先回放缓冲区中的已有输出，再跟随新输出直到会话结束。

        调用方作用域被取消或生成器被关闭时提前结束；会话本身不受影响。
        """
        session = self._store.get(session_id)
        next_seq = 0
        while True:
            lines, finished = session.lines_since(next_seq)
            for line in lines:
                yield line
                next_seq = line.seq + 1
            # 终态在读流线程全部退出后才写入，此时缓冲区已完整。
            if finished:
                return
            if scope is not None and scope.cancelled:
                return
            session.wait_for_change(next_seq, _STREAM_WAIT_SECONDS)

    def cancel_execution(self, session_id: str) -> None:
        """取消运行中的会话；实际终止与状态写入由驱动线程完成。"""
        session = self._store.get(session_id)
        status = session.status
        if status is not ExecutionStatus.running:
            raise InvalidStateError(f"session {session_id} is not running (status: {status.value})")
        session.scope.cancel(CancelReason.cancelled)
        logger.info("execution cancel requested", extra={"event": "session.cancel.requested", "session_id": session_id})

    def wait_for_session(self, session_id: str, timeout: float | None = None) -> ExecutionSnapshot:
        """阻塞等待会话进入终态，超时后返回当时的快照。"""
        session = self._store.get(session_id)
        if session.wait_terminal(timeout) and session.driver is not threading.current_thread():
            # 终态写入后驱动线程还需记录历史，等待其收尾以保证历史可见。
            if session.driver is not None:
                session.driver.join(timeout)
        return session.snapshot()

    def get_execution_history(self, limit: int | None = None) -> list[ExecutionSnapshot]:
        """返回最近结束的会话快照，最新在前。"""
        with self._history_lock:
            items = list(self._history)
        if limit is None:
            return items
        return items[: max(0, limit)]

    def cleanup_session(self, session_id: str) -> None:
        """释放会话作用域并从会话表移除；运行中的会话会先被取消。"""
        session = self._store.get(session_id)
        if not session.status.is_terminal:
            session.scope.cancel(CancelReason.cancelled)
        session.scope.close()
        self._store.remove(session_id)
        logger.debug("execution session removed", extra={"event": "session.removed", "session_id": session_id})

    def active_sessions(self) -> list[str]:
        return [item.session_id for item in self._store.values() if not item.status.is_terminal]

    def shutdown(self, timeout: float | None = None) -> None:
        """取消全部未结束会话并等待驱动线程退出。"""
        sessions = [item for item in self._store.values() if not item.status.is_terminal]
        for session in sessions:
            session.scope.cancel(CancelReason.cancelled)
        for session in sessions:
            if session.driver is not None:
                session.driver.join(timeout)

    def _drive(self, session: ExecutionSession) -> None:
        with bind_log_context(session_id=session.session_id, script_path=session.script.path):
            try:
                self._run(session)
            except Exception as exc:
                logger.exception(
                    "execution driver crashed",
                    extra={"event": "session.driver.failed", "error_type": type(exc).__name__},
                )
                session.finish(ExecutionStatus.failed, error_message=f"internal error: {exc}")
            finally:
                session.scope.close()
            snapshot = session.snapshot()
            with self._history_lock:
                self._history.appendleft(snapshot)
            self._store.prune(self._config.session_retention)
            logger.info(
                "execution session finished",
                extra={
                    "event": "session.finished",
                    "status": snapshot.status.value,
                    "pid": snapshot.pid,
                    "exit_code": snapshot.exit_code,
                    "duration_ms": int((snapshot.duration_seconds or 0.0) * 1000),
                },
            )

    def _run(self, session: ExecutionSession) -> None:
        scope = session.scope
        script = session.script
        if scope.cancelled:
            reason = scope.reason or CancelReason.cancelled
            session.finish(ExecutionStatus.failed, error_message=f"execution aborted before start ({reason.value})")
            return

        if script.metadata is not None:
            restricted = find_restricted_commands(script.metadata.preview, self._policy)
            if restricted:
                logger.warning(
                    "script references restricted commands",
                    extra={"event": "session.restricted_commands", "payload_preview": restricted},
                )

        try:
            argv = resolve_command(script, self._config)
            process = subprocess.Popen(
                argv,
                cwd=self._config.working_dir or script.directory,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                start_new_session=True,
            )
        except (SpawnError, OSError) as exc:
            logger.error(
                "script spawn failed",
                extra={"event": "session.spawn.failed", "error_type": type(exc).__name__, "error": str(exc)},
            )
            session.finish(ExecutionStatus.failed, error_message=f"failed to start script: {exc}")
            return

        session.mark_running(process.pid)
        logger.info("script process started", extra={"event": "session.started", "pid": process.pid, "op": argv[0]})
        drains = [
            self._start_drain(session, process.stdout, OutputStream.stdout),
            self._start_drain(session, process.stderr, OutputStream.stderr),
        ]

        terminated: CancelReason | None = None
        while process.poll() is None:
            if scope.wait(_POLL_INTERVAL_SECONDS):
                terminated = scope.reason or CancelReason.cancelled
                self._terminate(process)
                break

        for drain in drains:
            while drain.is_alive():
                drain.join(_POLL_INTERVAL_SECONDS)
                # 后台子进程可能继承管道，作用域结束时强制清理整个进程组。
                if drain.is_alive() and scope.cancelled:
                    # 主进程已自行退出时，按作用域结束原因归类。
                    if terminated is None:
                        terminated = scope.reason or CancelReason.cancelled
                    self._signal_group(process, signal.SIGKILL)
        process.wait()

        returncode = process.returncode
        if terminated is CancelReason.deadline:
            session.finish(
                ExecutionStatus.timed_out,
                exit_code=returncode,
                error_message=f"execution exceeded {self._policy.max_execution_time:g} seconds",
            )
        elif terminated is CancelReason.cancelled:
            session.finish(ExecutionStatus.cancelled, exit_code=returncode, error_message="execution cancelled")
        elif returncode < 0:
            session.finish(
                ExecutionStatus.failed,
                exit_code=returncode,
                error_message=f"script terminated by signal {-returncode}",
            )
        elif returncode != 0:
            session.finish(
                ExecutionStatus.failed,
                exit_code=returncode,
                error_message=f"script exited with code {returncode}",
            )
        else:
            session.finish(ExecutionStatus.completed, exit_code=0)

    def _start_drain(self, session: ExecutionSession, pipe: IO[bytes] | None, stream: OutputStream) -> threading.Thread:
        thread = threading.Thread(
            target=self._drain,
            args=(session, pipe, stream),
            name=f"alec-{stream.value}-{session.session_id[:8]}",
            daemon=True,
        )
        thread.start()
        return thread

    @staticmethod
    def _drain(session: ExecutionSession, pipe: IO[bytes] | None, stream: OutputStream) -> None:
        if pipe is None:
            return
        with bind_log_context(session_id=session.session_id):
            try:
                for raw in iter(pipe.readline, b""):
                    session.append(raw.decode("utf-8", errors="replace").rstrip("\r\n"), stream)
            except (OSError, ValueError) as exc:
                logger.debug(
                    "output stream closed with error",
                    extra={"event": "session.stream.error", "op": stream.value, "error": str(exc)},
                )
            finally:
                pipe.close()

    def _terminate(self, process: subprocess.Popen[bytes]) -> None:
        """先向进程组发送 SIGTERM，宽限期内未全部退出则 SIGKILL。"""
        self._signal_group(process, signal.SIGTERM)
        deadline = time.monotonic() + self._config.kill_grace_seconds
        while time.monotonic() < deadline:
            process.poll()
            if not self._group_alive(process.pid):
                break
            time.sleep(_POLL_INTERVAL_SECONDS)
        else:
            logger.warning("process group ignored SIGTERM", extra={"event": "session.kill", "pid": process.pid})
            self._signal_group(process, signal.SIGKILL)
        process.wait()

    @staticmethod
    def _signal_group(process: subprocess.Popen[bytes], sig: signal.Signals) -> None:
        # start_new_session 保证进程组 ID 等于子进程 PID。
        try:
            os.killpg(process.pid, sig)
        except ProcessLookupError:
            pass

    @staticmethod
    def _group_alive(pgid: int) -> bool:
        try:
            os.killpg(pgid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        return True
