"""WebSocket broadcast hub pushing reload notifications to browser tabs."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional, Set

from fastapi import FastAPI, WebSocket
from pydantic import BaseModel
from starlette.websockets import WebSocketState

from tools.errors import SendFault
from tools.logs import _log
from tools.serving import ManagedServer


class BroadcastMessage(BaseModel):
    """Frame sent to every client; ``shouldReload`` asks the page to refresh."""

    shouldReload: bool
    event: Optional[str] = None
    filename: Optional[str] = None

    def encode(self) -> str:
        # optional fields are left out rather than sent as null
        return self.model_dump_json(exclude_none=True)

    @classmethod
    def decode(cls, text: str) -> "BroadcastMessage":
        return cls.model_validate_json(text)


class ClientConnection:
    """One open socket to a browser tab."""

    def __init__(self, websocket: Any) -> None:
        self.websocket = websocket
        self.closed = False
        self._closing: Optional[asyncio.Future] = None

    async def send(self, payload: str) -> None:
        try:
            await self.websocket.send_text(payload)
        except Exception as e:
            raise SendFault(str(e) or e.__class__.__name__) from e

    def terminate(self) -> None:
        """Close the socket without waiting; calling it again is a no-op."""
        if self.closed:
            return
        self.closed = True
        ws = self.websocket
        if (
            getattr(ws, "client_state", None) == WebSocketState.DISCONNECTED
            or getattr(ws, "application_state", None) == WebSocketState.DISCONNECTED
        ):
            return
        self._closing = asyncio.ensure_future(self._close())

    async def _close(self) -> None:
        try:
            await self.websocket.close(code=1001)
        except Exception as e:
            # already closed by the peer, or the transport went away
            _log("ws", f"[ws] close skipped: {e}", logging.DEBUG)


class BroadcastHub:
    """
    Tracks open client connections and fans out notifications to all of them.

    The connection set is touched only from the event loop thread: connect and
    disconnect mutate it, ``broadcast`` iterates a snapshot.
    """

    def __init__(self) -> None:
        self.clients: Set[ClientConnection] = set()
        self.app = FastAPI(title="Live Reload Socket", docs_url=None, redoc_url=None, openapi_url=None)
        self.app.add_api_websocket_route("/", self._endpoint)
        self.server: Any = None

    def connect(self, conn: ClientConnection) -> None:
        self.clients.add(conn)
        _log("ws", "[ws] Client connected.")

    def disconnect(self, conn: ClientConnection) -> None:
        self.clients.discard(conn)
        _log("ws", "[ws] Client disconnected")
        conn.terminate()

    async def _endpoint(self, websocket: WebSocket) -> None:
        await websocket.accept()
        conn = ClientConnection(websocket)
        self.connect(conn)
        try:
            # clients are not expected to send anything; drain until they leave
            while True:
                msg = await websocket.receive()
                if msg.get("type") == "websocket.disconnect":
                    conn.closed = True
                    break
        finally:
            self.disconnect(conn)

    async def broadcast(self, message: BroadcastMessage) -> int:
        """Send ``message`` to every tracked client. Returns the number of send attempts."""
        payload = message.encode()
        targets = list(self.clients)
        if not targets:
            return 0
        results = await asyncio.gather(*(c.send(payload) for c in targets), return_exceptions=True)
        for res in results:
            if isinstance(res, BaseException):
                _log("ws", f"[ws] send failed: {res}", logging.WARNING)
        return len(targets)

    def terminate_clients(self) -> None:
        for conn in list(self.clients):
            conn.terminate()
        self.clients.clear()

    def close(self) -> None:
        """Terminate every client and stop the socket listener."""
        self.terminate_clients()
        if self.server is not None:
            self.server.stop()

    def open(self, port: int, host: str = "127.0.0.1", **kwargs: Any) -> Any:
        """Create the listener serving this hub on ``port``; await ``.serve()`` to run it."""
        self.server = ManagedServer.for_app(self.app, host=host, port=port, **kwargs)
        return self.server


__all__ = ["BroadcastMessage", "ClientConnection", "BroadcastHub"]
