"""
Interrupt handling: run the registered cleanup actions in order, then exit 0.

Ctrl-C must still stop the server; the handler always ends the process once the
actions have run.
"""
from __future__ import annotations

import asyncio
import enum
import logging
import signal
import sys
from typing import Callable, List, Optional, Sequence

from tools.logs import _log

Action = Callable[[], None]


class ShutdownState(enum.Enum):
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"
    TERMINATED = "terminated"


class ShutdownCoordinator:
    def __init__(
        self,
        actions: Sequence[Action] = (),
        *,
        exit: Callable[[int], None] = sys.exit,
        sig: int = signal.SIGINT,
    ) -> None:
        self.actions: List[Action] = list(actions)
        self.state = ShutdownState.RUNNING
        self._exit = exit
        self._sig = sig
        self._installed = False

    def install(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        """Install the interrupt handler once; on the running loop when there is one."""
        if self._installed:
            return
        if loop is None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                loop = None
        if loop is not None:
            try:
                loop.add_signal_handler(self._sig, self.handle_signal)
                self._installed = True
                return
            except (NotImplementedError, RuntimeError):
                # Windows event loops have no add_signal_handler
                pass
        signal.signal(self._sig, lambda signum, frame: self.handle_signal())
        self._installed = True

    def handle_signal(self) -> None:
        _log("node", "\n[node] Caught SIGINT; shutting down servers.", logging.ERROR)
        self.state = ShutdownState.SHUTTING_DOWN
        for action in self.actions:
            try:
                action()
            except Exception as e:
                _log("node", f"[node] shutdown action {getattr(action, '__name__', action)!r} failed: {e!r}", logging.ERROR)
        self.state = ShutdownState.TERMINATED
        self._exit(0)

    @property
    def installed(self) -> bool:
        return self._installed


def register_shutdown(actions: Sequence[Action], **kwargs) -> ShutdownCoordinator:
    coordinator = ShutdownCoordinator(actions, **kwargs)
    coordinator.install()
    return coordinator


__all__ = ["ShutdownCoordinator", "ShutdownState", "register_shutdown"]
