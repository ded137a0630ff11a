"""Plain HTTP listener that sends every request to HTTPS."""

import logging
from http.server import BaseHTTPRequestHandler
from urllib.parse import urlsplit

from edge_server.listener import DrainableServer

logger = logging.getLogger(__name__)

DEFAULT_REDIRECT_PORT = 80


def _strip_port(host: str) -> str:
    """Drop an explicit port from a Host header value."""
    if host.startswith("["):
        # IPv6 literal, e.g. [2001:db8::1]:80
        end = host.find("]")
        return host[:end + 1] if end != -1 else host
    return host.split(":", 1)[0]


def build_redirect_location(host_header: str | None, path: str, default_host: str) -> str:
    """Build the https:// URL for a plain HTTP request.

    The host comes from the Host header (any port is dropped, the target is
    always 443); default_host is used when the client sent none. Path and
    query string are kept as received.

    Args:
        host_header: Raw Host header value, or None
        path: Request target from the request line
        default_host: Host to use when the header is missing

    Returns:
        Absolute https URL
    """
    host = _strip_port(host_header.strip()) if host_header and host_header.strip() else default_host

    # Absolute-form request targets ("GET http://host/x HTTP/1.1")
    if "://" in path:
        parts = urlsplit(path)
        path = parts.path + (f"?{parts.query}" if parts.query else "")
    if not path.startswith("/"):
        path = "/" + path

    return f"https://{host}{path}"


class RedirectHandler(BaseHTTPRequestHandler):
    """Answers every request with 301 to the https equivalent."""

    def log_message(self, format: str, *args):
        """Override to use Python logging."""
        logger.debug("%s - %s", self.address_string(), format % args)

    def _redirect(self):
        location = build_redirect_location(
            self.headers.get("Host"), self.path, self.server.default_host
        )
        # The body is never read, so the connection cannot be reused
        self.close_connection = True
        self.send_response(301)
        self.send_header("Location", location)
        self.send_header("Content-Length", "0")
        self.send_header("Connection", "close")
        self.end_headers()

    do_GET = _redirect
    do_HEAD = _redirect
    do_POST = _redirect
    do_PUT = _redirect
    do_PATCH = _redirect
    do_DELETE = _redirect
    do_OPTIONS = _redirect


class RedirectServer(DrainableServer):
    """Port 80 listener of a server pair."""

    label = "RedirectServer"

    def __init__(self, host: str, port: int = DEFAULT_REDIRECT_PORT):
        self.default_host = host
        super().__init__((host, port), RedirectHandler)
