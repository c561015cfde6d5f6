import importlib
import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient


@pytest.fixture()
def site_root(tmp_path):
    """A small static site: page, stylesheet, entry script and one module."""
    root = tmp_path / "public"
    (root / "lib").mkdir(parents=True)
    (root / "index.html").write_text("<html><body><h1>home</h1></body></html>")
    (root / "style.css").write_text("body { color: red; }")
    (root / "index.js").write_text("import { add } from './utils';\n")
    (root / "utils.js").write_text("export const add = (a, b) => a + b;\n")
    (root / "lib" / "deep.html").write_text("<p>deep</p>")
    (root / "notes.txt").write_bytes(b"plain notes")
    (root / "data.bin").write_bytes(b"\x00\x01\x02")
    return root


@pytest.fixture()
def app_module(monkeypatch):
    monkeypatch.setenv("LIVE_COMPILER", "off")
    repo_root = Path(__file__).resolve().parents[1]
    if str(repo_root) not in sys.path:
        sys.path.insert(0, str(repo_root))
    if "app" in sys.modules:
        module = importlib.reload(sys.modules["app"])
    else:
        module = importlib.import_module("app")
    yield module


@pytest.fixture()
def config(app_module, site_root):
    return app_module.ServerConfig(http_port=3000, socket_port=4444, root_folder=str(site_root), compiler=None)


@pytest.fixture()
def client(app_module, config):
    with TestClient(app_module.create_app(config)) as test_client:
        yield test_client
