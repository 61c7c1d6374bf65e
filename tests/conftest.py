from __future__ import annotations

import base64
import plistlib
import shutil
import ssl
import subprocess
import threading
from contextlib import contextmanager
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Tuple

import pytest

PNG = base64.b64decode(
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNkYPhfDwAChwGA60e6kgAAAABJRU5ErkJggg=="
)


class FakeResponse:
    def __init__(self, status_code: int = 200, content: bytes = b"", content_type: str = "application/octet-stream"):
        self.status_code = status_code
        self.content = content
        self.headers = {"Content-Type": content_type}


class FakeSession:
    """Stands in for requests.Session.get; unknown URLs answer 404."""

    def __init__(self, routes: Optional[Dict[str, FakeResponse]] = None, error: Optional[Exception] = None):
        self.routes = dict(routes or {})
        self.error = error
        self.calls: List[str] = []

    def get(self, url: str, timeout: Optional[float] = None) -> FakeResponse:
        self.calls.append(url)
        if self.error is not None:
            raise self.error
        return self.routes.get(url, FakeResponse(404))


@pytest.fixture
def png() -> bytes:
    return PNG


@pytest.fixture
def fake_session() -> Callable[..., FakeSession]:
    return FakeSession


@pytest.fixture
def fake_response() -> Callable[..., FakeResponse]:
    return FakeResponse


@pytest.fixture
def write_webarchive(tmp_path: Path) -> Callable[..., Path]:
    def _write(data: dict, name: str = "page.webarchive", fmt=plistlib.FMT_BINARY) -> Path:
        path = tmp_path / name
        path.write_bytes(plistlib.dumps(data, fmt=fmt))
        return path

    return _write


@contextmanager
def _origin(tls: Optional[ssl.SSLContext] = None) -> Iterator[Tuple[str, Dict[str, int]]]:
    routes: Dict[str, Tuple[str, bytes]] = {
        "/live.css": ("text/css; charset=utf-8", b"body { color: red; }"),
        "/late.png": ("image/png", PNG),
        "/cached.png": ("image/png", b"from-origin"),
    }
    hits: Dict[str, int] = {}

    class Handler(BaseHTTPRequestHandler):
        def do_GET(self) -> None:
            hits[self.path] = hits.get(self.path, 0) + 1
            if self.headers.get("Upgrade"):
                self._shout()
                return
            route = routes.get(self.path)
            if route is None:
                self.send_response(404)
                self.send_header("Content-Length", "0")
                self.end_headers()
                return
            content_type, body = route
            self.send_response(200)
            self.send_header("Content-Type", content_type)
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        def _shout(self) -> None:
            # switches protocols, then upper-cases one 4-byte message
            self.send_response(101)
            self.send_header("Upgrade", self.headers["Upgrade"])
            self.send_header("Connection", "Upgrade")
            self.end_headers()
            self.wfile.flush()
            self.wfile.write(self.rfile.read(4).upper())
            self.wfile.flush()
            self.close_connection = True

        def log_message(self, format: str, *args) -> None:
            pass

    server = ThreadingHTTPServer(("127.0.0.1", 0), Handler)
    scheme = "http"
    if tls is not None:
        server.socket = tls.wrap_socket(server.socket, server_side=True)
        scheme = "https"
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    host, port = server.server_address[:2]
    try:
        yield f"{scheme}://{host}:{port}", hits
    finally:
        server.shutdown()
        server.server_close()


@pytest.fixture
def origin_server() -> Iterator[Tuple[str, Dict[str, int]]]:
    """Local HTTP origin serving a few fixed paths and counting hits."""
    with _origin() as served:
        yield served


@pytest.fixture(scope="session")
def tls_files(tmp_path_factory: pytest.TempPathFactory) -> Tuple[str, str]:
    openssl = shutil.which("openssl")
    if openssl is None:
        pytest.skip("openssl is not installed")
    d = tmp_path_factory.mktemp("tls")
    cert, key = str(d / "cert.pem"), str(d / "key.pem")
    subprocess.run(
        [openssl, "req", "-x509", "-newkey", "rsa:2048", "-nodes",
         "-keyout", key, "-out", cert, "-days", "2", "-subj", "/CN=127.0.0.1"],
        check=True,
        capture_output=True,
    )  # fmt: skip
    return cert, key


@pytest.fixture
def https_origin_server(tls_files: Tuple[str, str]) -> Iterator[Tuple[str, Dict[str, int]]]:
    """Same origin as origin_server, behind a self-signed certificate."""
    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    ctx.load_cert_chain(*tls_files)
    with _origin(ctx) as served:
        yield served
