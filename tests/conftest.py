from __future__ import annotations

import io
import tarfile
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from types import SimpleNamespace
from typing import Callable, Dict

import pytest

from hpcbuild.model import Environment
from hpcbuild.ui.console import Console


@pytest.fixture
def build_env(tmp_path: Path) -> Environment:
    """A minimal orchestrator environment rooted in tmp_path."""

    prefix = tmp_path / "install"
    src = tmp_path / "src"
    logs = tmp_path / "logs"
    for d in (prefix, src, logs):
        d.mkdir(parents=True)
    return Environment({
        "PREFIX": str(prefix),
        "SRC_DIR": str(src),
        "LOG_DIR": str(logs),
        "JOBS": "1",
    })


@pytest.fixture
def console() -> Console:
    return Console(debug=True)


@pytest.fixture
def make_tarball(tmp_path: Path) -> Callable[..., Path]:
    """Build a .tar.gz whose members are {relative path: text}."""

    def _make(name: str, files: Dict[str, str], *, where: Path | None = None) -> Path:
        out_dir = where or (tmp_path / "archives")
        out_dir.mkdir(parents=True, exist_ok=True)
        archive = out_dir / name
        with tarfile.open(archive, "w:gz") as tar:
            for rel, text in files.items():
                data = text.encode("utf-8")
                info = tarfile.TarInfo(name=rel)
                info.size = len(data)
                info.mode = 0o755
                tar.addfile(info, io.BytesIO(data))
        return archive

    return _make


@pytest.fixture
def archive_server(monkeypatch):
    """
    Serve archives over local HTTP.

    files[name] = bytes publishes /name; truncate[name] = n sends only the
    first n bytes while still advertising the full Content-Length.
    """
    monkeypatch.setenv("no_proxy", "*")
    files: Dict[str, bytes] = {}
    truncate: Dict[str, int] = {}

    class Handler(BaseHTTPRequestHandler):
        def do_GET(self):
            name = self.path.lstrip("/")
            data = files.get(name)
            if data is None:
                self.send_error(404)
                return
            self.send_response(200)
            self.send_header("Content-Length", str(len(data)))
            self.end_headers()
            self.wfile.write(data[: truncate.get(name, len(data))])

        def log_message(self, format, *args):
            pass

    server = ThreadingHTTPServer(("127.0.0.1", 0), Handler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    host, port = server.server_address[:2]
    yield SimpleNamespace(url=f"http://{host}:{port}", files=files, truncate=truncate)
    server.shutdown()
    server.server_close()
