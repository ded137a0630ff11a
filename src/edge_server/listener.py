"""Drainable HTTP listener.

A ThreadingHTTPServer that remembers every accepted connection so shutdown
can cut them off instead of waiting for keep-alive clients to go away.
"""

import logging
import socket
import sys
import threading
from http.server import ThreadingHTTPServer

from edge_server.errors import BindError

logger = logging.getLogger(__name__)

DEFAULT_IDLE_TIMEOUT = 120.0


class DrainableServer(ThreadingHTTPServer):
    """HTTP server whose stop() forcibly closes live connections.

    Binding happens in the constructor: once it returns the socket is
    listening. Call serve_in_background() to start accepting and stop() to
    tear everything down.
    """

    # Handler threads are joined in server_close()
    daemon_threads = False
    block_on_close = True

    poll_interval = 0.5
    # Seconds a connection may sit without sending before it is dropped
    idle_timeout = DEFAULT_IDLE_TIMEOUT
    label = "DrainableServer"

    def __init__(self, server_address, RequestHandlerClass):
        self._connections: set = set()
        self._connections_lock = threading.Lock()
        self._serve_thread: threading.Thread | None = None

        host, port = server_address[0], server_address[1]
        try:
            super().__init__(server_address, RequestHandlerClass)
        except OSError as e:
            raise BindError(host, port, e.strerror or str(e)) from e

        logger.debug("%s listening on %s:%d", self.label, host, self.port)

    @property
    def port(self) -> int:
        """Port actually bound (useful when 0 was requested)."""
        return self.server_address[1]

    @property
    def connection_count(self) -> int:
        with self._connections_lock:
            return len(self._connections)

    @property
    def serving(self) -> bool:
        return self._serve_thread is not None and self._serve_thread.is_alive()

    def process_request(self, request, client_address):
        # Registered before the handler thread reads a single byte
        with self._connections_lock:
            self._connections.add(request)
        super().process_request(request, client_address)

    def finish_request(self, request, client_address):
        request.settimeout(self.idle_timeout)
        super().finish_request(request, client_address)

    def shutdown_request(self, request):
        with self._connections_lock:
            self._connections.discard(request)
        super().shutdown_request(request)

    def handle_error(self, request, client_address):
        """Log handler errors through logging instead of stderr."""
        exc = sys.exc_info()[1]
        # Disconnects, TLS failures and sockets cut by stop()
        if isinstance(exc, OSError):
            logger.debug("%s: connection from %s dropped: %s",
                         self.label, client_address[0], exc)
        else:
            logger.error("%s: error handling request from %s",
                         self.label, client_address[0], exc_info=True)

    def serve_in_background(self) -> threading.Thread:
        """Run the accept loop in its own thread."""
        if self.serving:
            raise RuntimeError(f"{self.label} already serving")
        self._serve_thread = threading.Thread(
            target=self.serve_forever,
            kwargs={"poll_interval": self.poll_interval},
            name=f"{self.label}:{self.port}",
            daemon=True,
        )
        self._serve_thread.start()
        return self._serve_thread

    def stop(self):
        """Stop accepting, destroy live connections and close the socket.

        Returns once the listening socket is closed and every handler thread
        has finished. Safe to call more than once.
        """
        if self._serve_thread is not None:
            self.shutdown()
            self._serve_thread.join()
            self._serve_thread = None

        with self._connections_lock:
            connections = list(self._connections)

        logger.info("Destroying %d connection(s) for %s", len(connections), self.label)
        for conn in connections:
            _destroy_connection(conn)

        # Joins handler threads; each one removes its own connection
        self.server_close()

        with self._connections_lock:
            self._connections.clear()


def _destroy_connection(conn: socket.socket):
    """Hard-close a connection, waking any thread blocked on it."""
    try:
        # Plain socket shutdown even for SSLSocket: the TLS object must stay
        # usable for the handler thread until it notices EOF.
        socket.socket.shutdown(conn, socket.SHUT_RDWR)
    except OSError:
        # Already closed by the peer
        pass
    conn.close()
