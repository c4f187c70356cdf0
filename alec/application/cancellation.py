"""取消作用域：线程安全的嵌套取消与截止时间传播。"""

from __future__ import annotations

import threading
import time

from alec.domain.enums import CancelReason
from alec.domain.errors import ScopeCancelledError


class CancelScope:
    """可嵌套的取消作用域。

    取消父作用域会同步取消所有仍挂载的子作用域；子作用域的截止时间取自身与
    父作用域中更早的那个。截止时间采用惰性检查，在查询 cancelled 或 wait 时
    转换为 deadline 原因的取消。
    """

    def __init__(self, *, timeout: float | None = None, parent: CancelScope | None = None) -> None:
        self._lock = threading.Lock()
        self._event = threading.Event()
        self._reason: CancelReason | None = None
        self._children: list[CancelScope] = []
        self._parent = parent

        deadline = time.monotonic() + timeout if timeout is not None else None
        if parent is not None and parent.deadline is not None:
            deadline = parent.deadline if deadline is None else min(deadline, parent.deadline)
        self._deadline = deadline

        if parent is not None:
            parent._register(self)

    @property
    def deadline(self) -> float | None:
        return self._deadline

    @property
    def reason(self) -> CancelReason | None:
        self._check_deadline()
        return self._reason

    @property
    def cancelled(self) -> bool:
        self._check_deadline()
        return self._event.is_set()

    def remaining(self) -> float | None:
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def child(self, *, timeout: float | None = None) -> CancelScope:
        return CancelScope(timeout=timeout, parent=self)

    def cancel(self, reason: CancelReason = CancelReason.cancelled) -> None:
        with self._lock:
            if self._reason is None:
                self._reason = reason
            children = list(self._children)
            self._event.set()
        for child in children:
            child.cancel(reason)

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise ScopeCancelledError(self._reason or CancelReason.cancelled)

    def wait(self, timeout: float | None = None) -> bool:
        """阻塞至作用域被取消、截止时间到达或 timeout 超时，返回是否已取消。"""
        remaining = self.remaining()
        if remaining is not None:
            timeout = remaining if timeout is None else min(timeout, remaining)
        self._event.wait(timeout)
        return self.cancelled

    def close(self) -> None:
        """从父作用域摘除，释放引用。"""
        parent = self._parent
        if parent is None:
            return
        with parent._lock:
            if self in parent._children:
                parent._children.remove(self)
        self._parent = None

    def __enter__(self) -> CancelScope:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _register(self, child: CancelScope) -> None:
        with self._lock:
            self._children.append(child)
            reason = self._reason
        if reason is not None:
            child.cancel(reason)

    def _check_deadline(self) -> None:
        if self._deadline is not None and self._reason is None and time.monotonic() >= self._deadline:
            self.cancel(CancelReason.deadline)
