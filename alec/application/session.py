"""执行会话：单次脚本运行的状态、有界输出缓冲与快照读取。"""

from __future__ import annotations

import threading
from collections import deque
from datetime import datetime

from alec.application.cancellation import CancelScope
from alec.domain.enums import ExecutionStatus, OutputStream
from alec.domain.models import ExecutionSnapshot, OutputLine, ScriptDescriptor


class ExecutionSession:
    """单次执行的可变状态。

    状态、退出码与错误信息只由驱动线程写入；读流线程只追加输出。所有读写
    都经过同一个 Condition，读取方只拿快照。输出缓冲满后淘汰最旧行，seq 仍
    单调递增，便于流式读取方判断是否有行被淘汰。
    """

    def __init__(self, session_id: str, script: ScriptDescriptor, *, max_lines: int, scope: CancelScope) -> None:
        self.session_id = session_id
        self.script = script
        self.scope = scope
        self._cond = threading.Condition()
        self._lines: deque[OutputLine] = deque(maxlen=max_lines)
        self._next_seq = 0
        self._status = ExecutionStatus.pending
        self._start_time = datetime.now()
        self._end_time: datetime | None = None
        self._pid: int | None = None
        self._exit_code: int | None = None
        self._error_message: str | None = None
        self.driver: threading.Thread | None = None

    @property
    def status(self) -> ExecutionStatus:
        with self._cond:
            return self._status

    @property
    def end_time(self) -> datetime | None:
        with self._cond:
            return self._end_time

    def append(self, text: str, stream: OutputStream) -> None:
        with self._cond:
            self._lines.append(
                OutputLine(seq=self._next_seq, text=text, stream=stream, timestamp=datetime.now())
            )
            self._next_seq += 1
            self._cond.notify_all()

    def mark_running(self, pid: int) -> None:
        with self._cond:
            self._status = ExecutionStatus.running
            self._pid = pid
            self._cond.notify_all()

    def finish(
        self,
        status: ExecutionStatus,
        *,
        exit_code: int | None = None,
        error_message: str | None = None,
    ) -> None:
        if not status.is_terminal:
            raise ValueError(f"finish requires a terminal status, got {status.value}")
        with self._cond:
            if self._status.is_terminal:
                return
            self._status = status
            self._exit_code = exit_code
            self._error_message = error_message
            self._end_time = datetime.now()
            self._cond.notify_all()

    def snapshot(self) -> ExecutionSnapshot:
        with self._cond:
            return self._snapshot_locked()

    def _snapshot_locked(self) -> ExecutionSnapshot:
        return ExecutionSnapshot(
            session_id=self.session_id,
            script=self.script,
            status=self._status,
            start_time=self._start_time,
            end_time=self._end_time,
            pid=self._pid,
            exit_code=self._exit_code,
            lines=tuple(self._lines),
            error_message=self._error_message,
        )

    def lines_since(self, seq: int) -> tuple[list[OutputLine], bool]:
        """返回 seq 之后仍在缓冲区中的行，以及会话是否已结束。"""
        with self._cond:
            return [line for line in self._lines if line.seq >= seq], self._status.is_terminal

    def wait_for_change(self, seq: int, timeout: float) -> None:
        """阻塞直到有 seq 及之后的新行、会话结束或超时。"""
        with self._cond:
            self._cond.wait_for(lambda: self._next_seq > seq or self._status.is_terminal, timeout=timeout)

    def wait_terminal(self, timeout: float | None = None) -> bool:
        with self._cond:
            return self._cond.wait_for(lambda: self._status.is_terminal, timeout=timeout)
