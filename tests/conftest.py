"""Shared pytest fixtures for edge server tests."""

import socket
import ssl
import subprocess
import sys
from http.server import BaseHTTPRequestHandler
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))


class OkHandler(BaseHTTPRequestHandler):
    """Handler that answers every GET with 200 "ok"."""

    def log_message(self, format, *args):
        pass

    def do_GET(self):
        body = b"ok"
        self.send_response(200)
        self.send_header("Content-Type", "text/plain")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)


def generate_cert(cert_dir: Path, hostname: str = "localhost") -> Path:
    """Write a self-signed privkey.pem + fullchain.pem into cert_dir."""
    cert_dir.mkdir(parents=True, exist_ok=True)
    subprocess.run(
        [
            "openssl", "req",
            "-x509", "-nodes",
            "-newkey", "rsa:2048",
            "-keyout", str(cert_dir / "privkey.pem"),
            "-out", str(cert_dir / "fullchain.pem"),
            "-days", "1",
            "-subj", f"/CN={hostname}",
        ],
        check=True,
        capture_output=True,
    )
    return cert_dir


def free_port() -> int:
    """Ask the OS for a currently unused TCP port."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def insecure_context() -> ssl.SSLContext:
    """Client SSL context that accepts the self-signed test cert."""
    context = ssl.create_default_context()
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    return context


@pytest.fixture(scope="session")
def session_cert_dir(tmp_path_factory):
    """One generated certificate shared by the whole session."""
    return generate_cert(tmp_path_factory.mktemp("certs"))


@pytest.fixture
def cert_dir(tmp_path, session_cert_dir):
    """Per-test copy of the session certificate (safe to modify)."""
    target = tmp_path / "live" / "example.test"
    target.mkdir(parents=True)
    for name in ("privkey.pem", "fullchain.pem"):
        (target / name).write_bytes((session_cert_dir / name).read_bytes())
    return target


@pytest.fixture
def ok_handler():
    return OkHandler
