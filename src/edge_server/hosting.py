"""Protocol dispatch: turn an EdgeConfig into running listeners.

- http:  one plain listener on the configured host/port
- https: a ServerPair (redirect on 80, TLS on 443) owned by a
         RenewalSupervisor that keeps the certificate fresh
"""

import logging
import signal
import threading
from typing import Optional

from edge_server.config import ConfigurationError, EdgeConfig, HTTPS_PORT, Protocol
from edge_server.httpd import PlainServer
from edge_server.pair import ServerPair
from edge_server.renewal import RenewalSupervisor

logger = logging.getLogger(__name__)


def build_server_pair(config: EdgeConfig, handler_class, **ports) -> ServerPair:
    """Create (but do not start) the server pair for an https config.

    Extra keyword arguments (https_port, http_port) override the fixed ports;
    they exist for tests that cannot bind privileged ports.

    Raises:
        ConfigurationError: If the config is not a valid https config
    """
    if config.protocol is not Protocol.HTTPS:
        raise ConfigurationError(f"Server pair requires https, got {config.protocol.value}")
    if config.port != HTTPS_PORT:
        raise ConfigurationError(f"Server must use port {HTTPS_PORT} for https")
    if not config.cert_path:
        raise ConfigurationError('Array "cert_path" is required for https server')
    return ServerPair(config.host, config.cert_path, handler_class, **ports)


class Hosting:
    """Base for a started set of listeners that can be waited on and stopped."""

    def __init__(self, config: EdgeConfig, handler_class):
        self.config = config
        self.handler_class = handler_class
        self._stop_requested = threading.Event()

    def start(self):
        raise NotImplementedError

    def stop(self):
        raise NotImplementedError

    def reload(self):
        """SIGHUP hook; nothing to do by default."""

    def request_stop(self):
        self._stop_requested.set()

    def serve_forever(self, install_signals: bool = True):
        """Block until a stop is requested, then stop.

        Must be called from the main thread when install_signals is True.
        """
        if install_signals:
            self._setup_signal_handlers()
        try:
            self._stop_requested.wait()
        except KeyboardInterrupt:
            logger.info("Shutdown requested")
        finally:
            self.stop()

    def _setup_signal_handlers(self):
        """Setup signal handlers for renewal and shutdown."""

        def handle_sighup(signum, frame):
            """Handle SIGHUP by reloading."""
            logger.info("Received SIGHUP")
            self.reload()

        def handle_sigterm(signum, frame):
            """Handle SIGTERM/SIGINT for graceful shutdown."""
            logger.info("Received %s", signal.Signals(signum).name)
            self.request_stop()

        signal.signal(signal.SIGHUP, handle_sighup)
        signal.signal(signal.SIGTERM, handle_sigterm)
        signal.signal(signal.SIGINT, handle_sigterm)


class HttpHosting(Hosting):
    """Plain HTTP: the handler served directly, no redirect, no renewal."""

    def __init__(self, config: EdgeConfig, handler_class):
        super().__init__(config, handler_class)
        self.server: Optional[PlainServer] = None

    def start(self):
        self.server = PlainServer((self.config.host, self.config.port), self.handler_class)
        self.server.serve_in_background()
        logger.info("Listening on %s", self.config.url)

    def stop(self):
        if self.server is not None:
            self.server.stop()
            self.server = None


class HttpsHosting(Hosting):
    """HTTPS with port 80 redirect and periodic certificate renewal."""

    def __init__(self, config: EdgeConfig, handler_class, **ports):
        super().__init__(config, handler_class)
        self.ports = ports
        self.supervisor: Optional[RenewalSupervisor] = None

    def _new_pair(self) -> ServerPair:
        return build_server_pair(self.config, self.handler_class, **self.ports)

    def start(self):
        """Start the pair and hand it to a new renewal supervisor.

        Raises:
            ServerStartError: If either listener fails to start
        """
        pair = self._new_pair()
        pair.start()
        self.supervisor = RenewalSupervisor(
            pair,
            self._new_pair,
            interval=self.config.renewal_interval,
            first_delay=self.config.first_renewal_delay,
            command=self.config.renewal_command,
            command_timeout=self.config.renewal_timeout,
            resume_after_failure=self.config.resume_after_failure,
        )
        self.supervisor.start()
        logger.info("Listening on %s", self.config.url)

    def reload(self):
        if self.supervisor is None:
            return
        if not self.supervisor.running:
            logger.warning("Renewal requested, but the renewal loop has exited; renewal is no longer scheduled")
            return
        logger.info("Renewal requested")
        self.supervisor.trigger()

    def stop(self):
        if self.supervisor is not None:
            self.supervisor.close()
            self.supervisor = None


HOSTINGS = {
    Protocol.HTTP: HttpHosting,
    Protocol.HTTPS: HttpsHosting,
}


def create_hosting(config: EdgeConfig, handler_class) -> Hosting:
    """Create the hosting for the config's protocol (not yet started)."""
    try:
        hosting_class = HOSTINGS[config.protocol]
    except KeyError:
        raise ConfigurationError(f"Invalid protocol: {config.protocol}") from None
    return hosting_class(config, handler_class)
