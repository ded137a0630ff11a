"""Redirect + TLS listener pair, started and stopped as one unit."""

import logging
import os
from concurrent.futures import ThreadPoolExecutor
from typing import Optional, Sequence

from edge_server.config import HTTPS_PORT
from edge_server.errors import ServerStartError
from edge_server.httpd import TlsServer, create_tls_server
from edge_server.redirect import DEFAULT_REDIRECT_PORT, RedirectServer

logger = logging.getLogger(__name__)


class ServerPair:
    """One RedirectServer and one TlsServer for the same host.

    After start() returns both are bound and serving; if it raises, neither
    is. Instances are single use: a restart builds a new pair.
    """

    def __init__(
        self,
        host: str,
        cert_dir: Sequence[str | os.PathLike],
        handler_class,
        https_port: int = HTTPS_PORT,
        http_port: int = DEFAULT_REDIRECT_PORT,
    ):
        self.host = host
        self.cert_dir = cert_dir
        self.handler_class = handler_class
        self.https_port = https_port
        self.http_port = http_port
        self.tls_server: Optional[TlsServer] = None
        self.redirect_server: Optional[RedirectServer] = None

    @property
    def live(self) -> bool:
        return self.tls_server is not None and self.redirect_server is not None

    def start(self):
        """Bind both servers concurrently and start serving.

        Both binds are waited for even when one fails, and whichever one did
        bind is closed again before raising.

        Raises:
            ServerStartError: Wrapping the BindError/CertificateLoadError
                (or anything else) raised by either server
        """
        if self.live:
            raise RuntimeError("Server pair already started")

        with ThreadPoolExecutor(max_workers=2, thread_name_prefix="bind") as pool:
            tls_future = pool.submit(
                create_tls_server, self.host, self.cert_dir, self.handler_class, self.https_port
            )
            redirect_future = pool.submit(RedirectServer, self.host, self.http_port)

        started, errors = [], []
        for future in (tls_future, redirect_future):
            error = future.exception()
            if error is None:
                started.append(future.result())
            else:
                errors.append(error)

        if errors:
            for server in started:
                server.stop()
            raise ServerStartError(errors)

        self.tls_server, self.redirect_server = started
        for server in started:
            server.serve_in_background()

        logger.info(
            "Listening on https://%s:%d (redirect from http port %d)",
            self.host, self.tls_server.port, self.redirect_server.port,
        )

    def stop(self):
        """Drain both servers concurrently and wait until both are closed."""
        servers = [s for s in (self.tls_server, self.redirect_server) if s is not None]
        self.tls_server = self.redirect_server = None
        if not servers:
            return

        with ThreadPoolExecutor(max_workers=2, thread_name_prefix="drain") as pool:
            futures = [pool.submit(server.stop) for server in servers]
        for future in futures:
            error = future.exception()
            if error is not None:
                # Forced termination is expected; anything else is only logged
                logger.warning("Error while draining server: %s", error)
