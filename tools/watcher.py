"""Recursive folder watcher that forwards every change notification."""
from __future__ import annotations

import asyncio
import inspect
import logging
import os
from typing import Any, Awaitable, Callable, Optional, Union

from watchfiles import Change, awatch

from tools.errors import WatcherFault
from tools.logs import _log

# Upper bound (ms) watchfiles waits to group notifications before yielding them.
WATCH_DEBOUNCE_MS = 50
WATCH_STEP_MS = 50


class WatchEvent:
    """A single notification from the watcher.

    ``filename`` is relative to the watched root when the platform reports one;
    consumers should only log its absence. ``action`` is the watchfiles change
    name (added, modified, deleted) for change events; ``error`` is set for
    error events.
    """

    __slots__ = ("kind", "filename", "action", "error")

    def __init__(
        self,
        kind: str,
        filename: Optional[str] = None,
        *,
        action: Optional[str] = None,
        error: Optional[BaseException] = None,
    ) -> None:
        self.kind = kind
        self.filename = filename
        self.action = action
        self.error = error

    def __repr__(self) -> str:
        return f"WatchEvent(kind={self.kind!r}, filename={self.filename!r}, action={self.action!r})"

    def __eq__(self, other: Any) -> bool:
        if not isinstance(other, WatchEvent):
            return NotImplemented
        return (self.kind, self.filename, self.action) == (other.kind, other.filename, other.action)


EventHandler = Callable[[WatchEvent], Union[Awaitable[None], None]]


def _relative(root: str, path: str) -> Optional[str]:
    if not path:
        return None
    try:
        return os.path.relpath(path, os.path.abspath(root))
    except ValueError:
        return path


class ChangeWatcher:
    """
    Watch ``root`` recursively and hand each filesystem notification to
    ``on_event`` as it arrives. Nothing is filtered or deduplicated beyond the
    grouping watchfiles does per batch. A subscription error is logged, passed
    on as an ``error`` event, and ends the watch; it is not restarted.
    """

    def __init__(
        self,
        root: str,
        on_event: EventHandler,
        *,
        debounce: int = WATCH_DEBOUNCE_MS,
        step: int = WATCH_STEP_MS,
    ) -> None:
        self.root = root
        self._on_event = on_event
        self._debounce = debounce
        self._step = step
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self.fault: Optional[WatcherFault] = None

    async def _emit(self, event: WatchEvent) -> None:
        res = self._on_event(event)
        if inspect.isawaitable(res):
            await res

    async def run(self) -> None:
        try:
            async for changes in awatch(
                self.root,
                watch_filter=None,
                recursive=True,
                debounce=self._debounce,
                step=self._step,
                stop_event=self._stop,
            ):
                for change, path in changes:
                    filename = _relative(self.root, path)
                    action = change.name if isinstance(change, Change) else str(change)
                    _log("watcher", f"[watcher] {filename}: {action} event")
                    await self._emit(WatchEvent("change", filename, action=action))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.fault = WatcherFault(str(e))
            self.fault.__cause__ = e
            _log("watcher", f"[watcher] {e!r}", logging.ERROR)
            await self._emit(WatchEvent("error", error=self.fault))

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.ensure_future(self.run())
        return self._task

    def close(self) -> None:
        self._stop.set()

    @property
    def closed(self) -> bool:
        return self._stop.is_set()


def watch(root: str, on_event: EventHandler, **kwargs: Any) -> ChangeWatcher:
    """Create a watcher for ``root`` and start it on the running loop."""
    watcher = ChangeWatcher(root, on_event, **kwargs)
    watcher.start()
    return watcher


__all__ = ["WatchEvent", "ChangeWatcher", "watch"]
