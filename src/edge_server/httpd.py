"""HTTPS and plain HTTP listeners for the supplied request handler.

The handler is any http.server.BaseHTTPRequestHandler subclass; these
servers never look at requests themselves.
"""

import logging
import os
import ssl
from typing import Sequence

from edge_server.config import HTTPS_PORT
from edge_server.listener import DrainableServer
from edge_server.tls import create_ssl_context, load_key_material

logger = logging.getLogger(__name__)

DEFAULT_HANDSHAKE_TIMEOUT = 10.0


class TlsServer(DrainableServer):
    """Port 443 listener of a server pair.

    The TLS handshake runs in the per-connection thread rather than the
    accept loop, so a client that stalls mid-handshake cannot block others.
    """

    label = "TlsServer"

    def __init__(
        self,
        server_address,
        RequestHandlerClass,
        ssl_context: ssl.SSLContext,
        handshake_timeout: float = DEFAULT_HANDSHAKE_TIMEOUT,
        fingerprint: str = "",
    ):
        self.ssl_context = ssl_context
        self.handshake_timeout = handshake_timeout
        self.fingerprint = fingerprint
        super().__init__(server_address, RequestHandlerClass)

    def get_request(self):
        sock, addr = super().get_request()
        try:
            tls_sock = self.ssl_context.wrap_socket(
                sock, server_side=True, do_handshake_on_connect=False
            )
        except OSError:
            sock.close()
            raise
        return tls_sock, addr

    def finish_request(self, request, client_address):
        # Handshake can block forever on a bad client; bound it
        request.settimeout(self.handshake_timeout)
        request.do_handshake()
        super().finish_request(request, client_address)


class PlainServer(DrainableServer):
    """Unencrypted listener serving the handler directly (http protocol)."""

    label = "HttpServer"


def create_tls_server(
    host: str,
    cert_dir: Sequence[str | os.PathLike],
    handler_class,
    port: int = HTTPS_PORT,
) -> TlsServer:
    """Load key material and bind a TlsServer.

    Certificates are read before the port is touched, so a missing key never
    leaves a half-configured listener behind.

    Raises:
        CertificateLoadError: If the key or chain cannot be loaded
        BindError: If the port cannot be acquired
    """
    material = load_key_material(cert_dir)
    context = create_ssl_context(material)
    server = TlsServer((host, port), handler_class, context, fingerprint=material.fingerprint)
    logger.info("Certificate fingerprint: %s", material.fingerprint)
    return server
