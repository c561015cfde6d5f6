from __future__ import annotations
import os
import sys
import shlex
import asyncio
import logging
import argparse
from pathlib import Path
from typing import Any, Callable, List, Mapping, Optional, Sequence
from urllib.parse import quote

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from fastapi import APIRouter, FastAPI, Request
from fastapi.staticfiles import StaticFiles
from starlette.concurrency import run_in_threadpool
from starlette.responses import PlainTextResponse, Response

from hub import BroadcastHub, BroadcastMessage
from tools.compiler import CompilerSupervisor, compiler_available
from tools.errors import CompilerUnavailable, FileUnavailable, ListenerUnavailable
from tools.logs import _log, configure_logging
from tools.paths import content_type_for, extension_of, resolve
from tools.serving import ManagedServer
from tools.shutdown import ShutdownCoordinator, ShutdownState
from tools.watcher import ChangeWatcher, WatchEvent

_BASE = Path(__file__).resolve().parent
_STATIC = _BASE / "static"

# Mount point of the browser bootstrap script referenced by the injected snippet
CLIENT_PREFIX = "/__livereload"
CLIENT_SCRIPT = "livereload.js"

READ_ERROR_BODY = "There was an error getting the request file."
ALL_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]
_OFF_VALUES = ("", "0", "off", "none", "false", "no")


# -----------------------------
# Configuration
# -----------------------------
class ServerConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    http_port: int = Field(3000, ge=1, le=65535)
    socket_port: int = Field(3333, ge=1, le=65535)
    root_folder: str = "./public"
    host: str = "127.0.0.1"
    # shell-style compiler command; None disables supervision
    compiler: Optional[str] = "tsc"

    @field_validator("root_folder")
    @classmethod
    def _strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/") or "/"

    def compiler_command(self) -> Optional[List[str]]:
        if not self.compiler:
            return None
        return shlex.split(self.compiler)


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    try:
        v = env.get(name)
        return int(v) if v is not None and str(v).strip() != "" else int(default)
    except Exception:
        return int(default)


def _env_port(env: Mapping[str, str], name: str, default: int) -> int:
    port = _env_int(env, name, default)
    return port if 1 <= port <= 65535 else int(default)


def _compiler_setting(value: Optional[str]) -> Optional[str]:
    if value is None:
        return "tsc"
    if value.strip().lower() in _OFF_VALUES:
        return None
    return value.strip()


def load_config(env: Optional[Mapping[str, str]] = None) -> ServerConfig:
    """
    Build the process configuration from the environment:
    LIVE_HTTP_PORT, LIVE_SOCKET_PORT, LIVE_ROOT, HOST, LIVE_COMPILER.
    """
    env = os.environ if env is None else env
    return ServerConfig(
        http_port=_env_port(env, "LIVE_HTTP_PORT", 3000),
        socket_port=_env_port(env, "LIVE_SOCKET_PORT", 3333),
        root_folder=env.get("LIVE_ROOT") or "./public",
        host=env.get("HOST") or "127.0.0.1",
        compiler=_compiler_setting(env.get("LIVE_COMPILER")),
    )


# -----------------------------
# Static responder
# -----------------------------
def reload_snippet(socket_port: int) -> str:
    return (
        f'\n<script src="{CLIENT_PREFIX}/{CLIENT_SCRIPT}"></script>\n'
        f"<script>activateLiveReload({int(socket_port)});</script>\n"
    )


def inject_reload_snippet(data: bytes, socket_port: int) -> bytes:
    return data + reload_snippet(socket_port).encode("utf-8")


async def read_file(path: str) -> bytes:
    try:
        return await run_in_threadpool(Path(path).read_bytes)
    except OSError as e:
        raise FileUnavailable(path, e) from e


def _request_target(request: Request) -> str:
    # undecoded target, so an escaped "?" stays part of the path
    scope = request.scope
    raw = scope.get("raw_path")
    path = raw.split(b"?", 1)[0].decode("latin-1") if raw else quote(scope["path"])
    query = scope.get("query_string", b"").decode("latin-1")
    return path + (f"?{query}" if query else "")


router = APIRouter()


@router.api_route("/{full_path:path}", methods=ALL_METHODS, include_in_schema=False)
async def serve(request: Request) -> Response:
    config: ServerConfig = request.app.state.config
    target = _request_target(request)
    _log("http", f"[http] {request.method} {target}")

    if target == "/favicon.ico":
        return Response(status_code=404)

    resolved = resolve(target, request.headers.get("referer"), config.root_folder)
    try:
        data = await read_file(resolved.server_path)
    except FileUnavailable as e:
        _log("http", f"[http] {e}", logging.ERROR)
        return PlainTextResponse(READ_ERROR_BODY, status_code=500)

    if extension_of(resolved.server_path) == "html":
        data = inject_reload_snippet(data, config.socket_port)
    return Response(data, headers={"Content-Type": content_type_for(resolved.server_path)})


async def no_cache_middleware(request, call_next):
    resp = await call_next(request)
    resp.headers["Cache-Control"] = "no-store, no-cache, must-revalidate, max-age=0"
    resp.headers["Pragma"] = "no-cache"
    resp.headers["Expires"] = "0"
    return resp


def create_app(config: ServerConfig) -> FastAPI:
    application = FastAPI(title="Live Reload Server", docs_url=None, redoc_url=None, openapi_url=None)
    application.state.config = config
    application.middleware("http")(no_cache_middleware)
    # bootstrap mount goes before the catch-all route
    application.mount(CLIENT_PREFIX, StaticFiles(directory=str(_STATIC)), name="livereload")
    application.include_router(router)
    return application


app = create_app(load_config())


# -----------------------------
# Process state and lifecycle
# -----------------------------
class ServerState:
    """Handles owned by one server run; the shutdown actions are derived from it."""

    def __init__(
        self,
        config: ServerConfig,
        *,
        http_server: Any = None,
        hub: Optional[BroadcastHub] = None,
        watcher: Optional[ChangeWatcher] = None,
        compiler: Optional[CompilerSupervisor] = None,
    ) -> None:
        self.config = config
        self.http_server = http_server
        self.hub = hub
        self.watcher = watcher
        self.compiler = compiler
        self.coordinator: Optional[ShutdownCoordinator] = None
        self._shut_down = False

    def stop_compiler(self) -> None:
        if self.compiler is not None:
            self.compiler.terminate()

    def close_hub(self) -> None:
        if self.hub is not None:
            self.hub.close()

    def close_watcher(self) -> None:
        if self.watcher is not None:
            self.watcher.close()

    def close_http(self) -> None:
        if self.http_server is not None:
            self.http_server.stop()

    def shutdown_actions(self) -> List[Callable[[], None]]:
        # compiler first, then socket clients and listener, then HTTP
        return [self.stop_compiler, self.close_hub, self.close_watcher, self.close_http]

    def shutdown(self) -> None:
        """Run the shutdown actions once, unless the interrupt handler already has."""
        if self._shut_down:
            return
        self._shut_down = True
        if self.coordinator is not None and self.coordinator.state is not ShutdownState.RUNNING:
            return
        for action in self.shutdown_actions():
            try:
                action()
            except Exception as e:
                _log("node", f"[node] shutdown action {action.__name__!r} failed: {e!r}", logging.ERROR)


def reload_on_change(hub: BroadcastHub) -> Callable[[WatchEvent], Any]:
    async def _on_event(event: WatchEvent) -> None:
        if event.kind != "change":
            return
        await hub.broadcast(BroadcastMessage(shouldReload=True, event=event.action, filename=event.filename))

    return _on_event


def build_state(config: ServerConfig) -> ServerState:
    hub = BroadcastHub()
    hub.open(config.socket_port, host=config.host)
    cmd = config.compiler_command()
    return ServerState(
        config,
        http_server=ManagedServer.for_app(create_app(config), host=config.host, port=config.http_port),
        hub=hub,
        watcher=ChangeWatcher(config.root_folder, reload_on_change(hub)),
        compiler=CompilerSupervisor(cmd) if cmd else None,
    )


async def _wait_started(servers: Sequence[Any], tasks: Sequence[asyncio.Future], interval: float = 0.02) -> None:
    """Return once every listener is bound; raise if one of them ends first."""
    while not all(server.started for server in servers):
        for task in tasks:
            if task.done():
                task.result()
                raise ListenerUnavailable("listener stopped during startup")
        await asyncio.sleep(interval)


async def run(config: ServerConfig) -> ServerState:
    """
    Start every subsystem and serve until the interrupt handler ends the process.

    Both listeners are bound before the compiler is spawned. When startup or
    serving fails, the shutdown actions run before the error propagates.
    """
    state = build_state(config)
    servers = [state.http_server, state.hub.server]
    listeners = [asyncio.ensure_future(server.serve()) for server in servers]
    try:
        await _wait_started(servers, listeners)
        _log("http", f"[http] Listening on port {config.http_port}")
        _log("ws", f"[ws] Listening on port {config.socket_port}")
        if state.compiler is not None:
            await state.compiler.start()
        state.coordinator = ShutdownCoordinator(state.shutdown_actions())
        state.coordinator.install()
        _log("watcher", f"[watcher] Watching {config.root_folder}")
        await asyncio.gather(*listeners, state.watcher.run())
    finally:
        state.shutdown()
        await asyncio.gather(*listeners, return_exceptions=True)
    return state


def main(argv: Optional[List[str]] = None) -> int:
    try:
        defaults = load_config()
    except ValidationError as e:
        print(f"[node] Invalid configuration: {e}", file=sys.stderr)
        return 2
    ap = argparse.ArgumentParser(description="Serve a folder with live reload while the compiler watches sources")
    ap.add_argument("--http-port", type=int, default=defaults.http_port, help="HTTP listen port")
    ap.add_argument("--socket-port", type=int, default=defaults.socket_port, help="WebSocket listen port")
    ap.add_argument("--root", default=defaults.root_folder, help="Static asset root")
    ap.add_argument("--host", default=defaults.host, help="Interface to bind")
    ap.add_argument("--compiler", default=defaults.compiler, help="Compiler command run in watch mode")
    ap.add_argument("--no-compiler", action="store_true", help="Do not supervise a compiler")
    args = ap.parse_args(argv)

    compiler = None
    if not args.no_compiler and args.compiler:
        compiler = _compiler_setting(args.compiler)
    try:
        config = ServerConfig(
            http_port=args.http_port,
            socket_port=args.socket_port,
            root_folder=args.root,
            host=args.host,
            compiler=compiler,
        )
    except ValidationError as e:
        print(f"[node] Invalid configuration: {e}", file=sys.stderr)
        return 2
    configure_logging()

    if not Path(config.root_folder).is_dir():
        print(f"[node] Root not found or not a dir: {config.root_folder}", file=sys.stderr)
        return 2
    cmd = config.compiler_command()
    if cmd and not compiler_available(cmd):
        _log("node", f"[node] Compiler not found: {cmd[0]}", logging.ERROR)
        return 1
    try:
        asyncio.run(run(config))
    except (CompilerUnavailable, ListenerUnavailable) as e:
        _log("node", f"[node] {e}", logging.ERROR)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
