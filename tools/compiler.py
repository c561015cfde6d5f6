"""Launch and babysit the external compiler running in watch mode."""
from __future__ import annotations

import asyncio
import logging
import os
import shutil
import signal
from typing import List, Optional, Sequence

from tools.errors import CompilerUnavailable
from tools.logs import _log

DEFAULT_COMPILER = ["tsc"]
# continuous watch, colored output, keep previous output on screen
WATCH_FLAGS = ["--watch", "--pretty", "--preserveWatchOutput"]
# longest output line relayed whole; longer lines are dropped with a warning
LINE_LIMIT = 1024 * 1024


def compiler_available(command: Sequence[str]) -> bool:
    """Return True if the first word of ``command`` resolves to an executable."""
    if not command:
        return False
    return bool(shutil.which(command[0]))


class CompilerSupervisor:
    """
    Owns one compiler process: spawns it, relays its stdout/stderr line by line
    under a ``[tsc]`` tag, and terminates it once on shutdown. Termination does
    not wait for the process to exit.
    """

    def __init__(
        self,
        command: Optional[Sequence[str]] = None,
        *,
        flags: Sequence[str] = WATCH_FLAGS,
        tag: str = "tsc",
        line_limit: int = LINE_LIMIT,
    ) -> None:
        self.command: List[str] = list(command or DEFAULT_COMPILER) + list(flags)
        self.tag = tag
        self.line_limit = line_limit
        self.process: Optional[asyncio.subprocess.Process] = None
        self._relays: List[asyncio.Task] = []
        self._waiter: Optional[asyncio.Task] = None
        self._terminated = False

    async def start(self) -> asyncio.subprocess.Process:
        if self.process is not None:
            return self.process
        try:
            proc = await asyncio.create_subprocess_exec(
                *self.command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=self.line_limit,
                start_new_session=True,
            )
        except (FileNotFoundError, PermissionError) as e:
            raise CompilerUnavailable(f"cannot start {self.command[0]!r}: {e}") from e
        except OSError as e:
            raise CompilerUnavailable(f"cannot start {' '.join(self.command)}: {e}") from e
        self.process = proc
        _log(self.tag, f"[{self.tag}] started pid={proc.pid} cmd={' '.join(self.command)}")
        self._relays = [
            asyncio.ensure_future(self._relay(proc.stdout, logging.INFO)),
            asyncio.ensure_future(self._relay(proc.stderr, logging.ERROR)),
        ]
        self._waiter = asyncio.ensure_future(self._watch_exit(proc))
        return proc

    async def _relay(self, stream: Optional[asyncio.StreamReader], level: int) -> None:
        if stream is None:
            return
        overlong = False
        while True:
            try:
                raw = await stream.readuntil(b"\n")
            except asyncio.LimitOverrunError as e:
                # discard the buffered part and keep skipping to the end of the line
                await stream.read(e.consumed)
                overlong = True
                continue
            except asyncio.IncompleteReadError as e:
                raw = e.partial
            if overlong:
                overlong = False
                _log(self.tag, f"[{self.tag}] output line longer than {self.line_limit} bytes dropped", logging.WARNING)
            elif raw:
                line = raw.decode("utf-8", errors="replace").rstrip()
                _log(self.tag, f"[{self.tag}] {line}", level)
            if not raw.endswith(b"\n"):
                return

    async def _watch_exit(self, proc: asyncio.subprocess.Process) -> None:
        code = await proc.wait()
        if self._terminated:
            _log(self.tag, f"[{self.tag}] stopped code={code}", logging.DEBUG)
        else:
            _log(self.tag, f"[{self.tag}] exited unexpectedly code={code}", logging.WARNING)

    async def wait(self) -> Optional[int]:
        """Wait for the process and its output relays to finish."""
        if self.process is None:
            return None
        code = await self.process.wait()
        if self._relays:
            await asyncio.gather(*self._relays, return_exceptions=True)
        if self._waiter is not None:
            await asyncio.gather(self._waiter, return_exceptions=True)
        return code

    def terminate(self) -> None:
        """Send SIGTERM to the compiler's process group; later calls are no-ops."""
        if self._terminated:
            return
        self._terminated = True
        proc = self.process
        if proc is None or proc.returncode is not None:
            return
        try:
            os.killpg(proc.pid, signal.SIGTERM)
        except (AttributeError, PermissionError, ProcessLookupError):
            try:
                proc.terminate()
            except ProcessLookupError:
                pass

    @property
    def terminated(self) -> bool:
        return self._terminated


__all__ = ["CompilerSupervisor", "compiler_available", "DEFAULT_COMPILER", "WATCH_FLAGS"]
