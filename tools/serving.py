from __future__ import annotations

import contextlib
import os
from typing import Any, Iterator, Optional

import uvicorn

from tools.errors import ListenerUnavailable


class ManagedServer(uvicorn.Server):
    """
    uvicorn server that leaves SIGINT alone. Two of these share one loop (HTTP
    and socket listeners), and the shutdown coordinator owns the interrupt.
    """

    def __init__(self, config: uvicorn.Config) -> None:
        super().__init__(config)
        self._stop_requested = False

    @classmethod
    def for_app(cls, app: Any, *, host: str, port: int, **kwargs: Any) -> "ManagedServer":
        kwargs.setdefault("access_log", False)
        kwargs.setdefault("log_level", os.environ.get("UVICORN_LOG_LEVEL", "warning"))
        return cls(uvicorn.Config(app, host=host, port=port, **kwargs))

    def install_signal_handlers(self) -> None:  # uvicorn < 0.29
        pass

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:  # uvicorn >= 0.29
        yield

    async def serve(self, sockets: Optional[list] = None) -> None:
        """
        Serve until stopped. A failed bind surfaces as ``ListenerUnavailable``
        instead of uvicorn's ``sys.exit``, so the caller can clean up.
        """
        try:
            await super().serve(sockets)
        except SystemExit as e:
            raise ListenerUnavailable(f"cannot listen on {self.config.host}:{self.config.port} (exit {e.code})") from e
        if not self.started and not self._stop_requested:
            raise ListenerUnavailable(f"cannot listen on {self.config.host}:{self.config.port}")

    def stop(self) -> None:
        self._stop_requested = True
        self.should_exit = True
