import asyncio
import importlib
import json
import logging
import shlex
import signal
import socket
import sys

import pytest
from pydantic import ValidationError

from hub import ClientConnection
from tools.compiler import CompilerSupervisor
from tools.errors import ListenerUnavailable, WatcherFault
from tools.watcher import ChangeWatcher, WatchEvent


class RecordingSocket:
    def __init__(self):
        self.sent = []

    async def send_text(self, text):
        self.sent.append(text)


def test_load_config_defaults(app_module):
    cfg = app_module.load_config({})
    assert cfg.http_port == 3000
    assert cfg.socket_port == 3333
    assert cfg.root_folder == "./public"
    assert cfg.host == "127.0.0.1"
    assert cfg.compiler_command() == ["tsc"]


def test_load_config_from_env(app_module):
    cfg = app_module.load_config(
        {
            "LIVE_HTTP_PORT": "8080",
            "LIVE_SOCKET_PORT": "9090",
            "LIVE_ROOT": "./dist/",
            "HOST": "0.0.0.0",
            "LIVE_COMPILER": "npx tsc -p tsconfig.dev.json",
        }
    )
    assert (cfg.http_port, cfg.socket_port) == (8080, 9090)
    assert cfg.root_folder == "./dist"
    assert cfg.host == "0.0.0.0"
    assert cfg.compiler_command() == ["npx", "tsc", "-p", "tsconfig.dev.json"]


@pytest.mark.parametrize("value", ["", "0", "off", "None", "false"])
def test_compiler_can_be_disabled(app_module, value):
    cfg = app_module.load_config({"LIVE_COMPILER": value})
    assert cfg.compiler is None
    assert cfg.compiler_command() is None


def test_bad_port_falls_back_to_default(app_module):
    assert app_module.load_config({"LIVE_HTTP_PORT": "abc"}).http_port == 3000


def test_out_of_range_env_port_falls_back_to_default(app_module):
    cfg = app_module.load_config({"LIVE_HTTP_PORT": "0", "LIVE_SOCKET_PORT": "70000"})
    assert (cfg.http_port, cfg.socket_port) == (3000, 3333)


def test_module_imports_with_out_of_range_env_port(app_module, monkeypatch):
    monkeypatch.setenv("LIVE_HTTP_PORT", "0")
    module = importlib.reload(app_module)
    assert module.app.state.config.http_port == 3000


def test_config_is_immutable_and_validated(app_module):
    cfg = app_module.ServerConfig()
    with pytest.raises(ValidationError):
        cfg.http_port = 1234
    with pytest.raises(ValidationError):
        app_module.ServerConfig(socket_port=70000)


def test_reload_snippet_is_deterministic(app_module):
    assert app_module.reload_snippet(3333) == app_module.reload_snippet(3333)
    assert app_module.inject_reload_snippet(b"<p>x</p>", 3333).startswith(b"<p>x</p>")
    assert b"activateLiveReload(3333);" in app_module.inject_reload_snippet(b"", 3333)


class Recorder:
    def __init__(self, calls, name):
        self.calls = calls
        self.name = name

    def terminate(self):
        self.calls.append(f"{self.name}.terminate")

    def close(self):
        self.calls.append(f"{self.name}.close")

    def stop(self):
        self.calls.append(f"{self.name}.stop")


def test_shutdown_actions_follow_lifecycle_order(app_module, config):
    calls = []
    state = app_module.ServerState(
        config,
        http_server=Recorder(calls, "http"),
        hub=Recorder(calls, "hub"),
        watcher=Recorder(calls, "watcher"),
        compiler=Recorder(calls, "compiler"),
    )
    for action in state.shutdown_actions():
        action()
    assert calls == ["compiler.terminate", "hub.close", "watcher.close", "http.stop"]


def test_shutdown_actions_tolerate_missing_parts(app_module, config):
    state = app_module.ServerState(config)
    for action in state.shutdown_actions():
        action()


def test_build_state_wires_components(app_module, config):
    state = app_module.build_state(config)
    assert state.http_server.config.port == 3000
    assert state.hub.server.config.port == 4444
    assert isinstance(state.watcher, ChangeWatcher)
    assert state.watcher.root == config.root_folder
    assert state.compiler is None

    with_tsc = app_module.build_state(config.model_copy(update={"compiler": "npx tsc"}))
    assert isinstance(with_tsc.compiler, CompilerSupervisor)
    assert with_tsc.compiler.command[:3] == ["npx", "tsc", "--watch"]


def test_change_events_become_reload_broadcasts(app_module, config):
    state = app_module.build_state(config)
    sock = RecordingSocket()
    state.hub.connect(ClientConnection(sock))
    on_event = app_module.reload_on_change(state.hub)

    async def go():
        await on_event(WatchEvent("change", "css/site.css", action="modified"))
        await on_event(WatchEvent("error"))

    asyncio.run(go())
    assert [json.loads(p) for p in sock.sent] == [
        {"shouldReload": True, "event": "modified", "filename": "css/site.css"}
    ]


def test_main_rejects_missing_root(app_module, tmp_path, monkeypatch):
    monkeypatch.setattr(app_module, "configure_logging", lambda: None)
    assert app_module.main(["--root", str(tmp_path / "absent"), "--no-compiler"]) == 2


def test_main_rejects_bad_port(app_module, site_root, monkeypatch):
    monkeypatch.setattr(app_module, "configure_logging", lambda: None)
    assert app_module.main(["--root", str(site_root), "--http-port", "0", "--no-compiler"]) == 2


def test_main_fails_fast_when_compiler_missing(app_module, site_root, monkeypatch):
    monkeypatch.setattr(app_module, "configure_logging", lambda: None)
    started = []
    monkeypatch.setattr(app_module, "run", lambda cfg: started.append(cfg))
    code = app_module.main(["--root", str(site_root), "--compiler", "definitely-not-a-compiler-7f3a"])
    assert code == 1
    assert started == []


def _free_port():
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


SLEEPING_COMPILER = f"{shlex.quote(sys.executable)} -c 'import time; time.sleep(30)'"


@pytest.fixture()
def built_states(app_module, monkeypatch):
    states = []
    real_build_state = app_module.build_state

    def recording_build_state(cfg):
        state = real_build_state(cfg)
        states.append(state)
        return state

    monkeypatch.setattr(app_module, "build_state", recording_build_state)
    return states


def test_run_never_spawns_compiler_when_http_port_is_taken(app_module, config, built_states, caplog):
    caplog.set_level(logging.DEBUG, logger="livedev")
    held = socket.socket()
    held.bind(("127.0.0.1", 0))
    held.listen(1)
    cfg = config.model_copy(
        update={"http_port": held.getsockname()[1], "socket_port": _free_port(), "compiler": SLEEPING_COMPILER}
    )
    try:
        with pytest.raises(ListenerUnavailable):
            asyncio.run(asyncio.wait_for(app_module.run(cfg), timeout=20))
    finally:
        held.close()

    (state,) = built_states
    assert state.compiler.process is None
    assert state.compiler.terminated
    assert state.hub.server.should_exit
    assert state.coordinator is None
    assert not any("Listening on port" in r.getMessage() for r in caplog.records)


def test_run_terminates_compiler_when_serving_fails(app_module, config, built_states, monkeypatch):
    async def broken_run(self):
        raise WatcherFault("subscription lost")

    monkeypatch.setattr(app_module.ChangeWatcher, "run", broken_run)
    cfg = config.model_copy(
        update={"http_port": _free_port(), "socket_port": _free_port(), "compiler": SLEEPING_COMPILER}
    )

    async def go():
        with pytest.raises(WatcherFault):
            await app_module.run(cfg)
        return await asyncio.wait_for(built_states[0].compiler.wait(), timeout=10)

    assert asyncio.run(go()) == -signal.SIGTERM
    state = built_states[0]
    assert state.compiler.terminated
    assert state.http_server.should_exit
    assert state.hub.server.should_exit


def test_main_reports_taken_port(app_module, site_root, monkeypatch):
    monkeypatch.setattr(app_module, "configure_logging", lambda: None)
    with socket.socket() as held:
        held.bind(("127.0.0.1", 0))
        held.listen(1)
        code = app_module.main(
            [
                "--root", str(site_root),
                "--http-port", str(held.getsockname()[1]),
                "--socket-port", str(_free_port()),
                "--no-compiler",
            ]
        )
    assert code == 1
