"""Exceptions raised by the server lifecycle.

Configuration problems live in config.ConfigurationError; everything that can
go wrong once a listener is being built or renewed lives here.
"""

from pathlib import Path
from typing import Optional, Sequence


class EdgeServerError(Exception):
    """Base exception for server lifecycle errors."""


class BindError(EdgeServerError):
    """A listening port could not be acquired."""

    def __init__(self, host: str, port: int, reason: str):
        self.host = host
        self.port = port
        self.reason = reason
        super().__init__(f"Cannot bind {host}:{port}: {reason}")


class CertificateLoadError(EdgeServerError):
    """Key or certificate chain missing, unreadable or unusable."""

    def __init__(self, path: Optional[Path], reason: str):
        self.path = path
        self.reason = reason
        where = f" ({path})" if path else ""
        super().__init__(f"Cannot load TLS material{where}: {reason}")


class ServerStartError(EdgeServerError):
    """One or both servers of a pair failed to start.

    Attributes:
        errors: The underlying failures, TLS server first.
    """

    def __init__(self, errors: Sequence[BaseException]):
        self.errors = tuple(errors)
        detail = "; ".join(f"{type(e).__name__}: {e}" for e in self.errors)
        super().__init__(f"Failed to start servers: {detail}")


class RenewalCommandError(EdgeServerError):
    """The external renewal command did not succeed."""

    def __init__(self, outcome):
        self.outcome = outcome
        super().__init__(f"Certbot process had exit-code {outcome.exit_code}")


class FatalRestartError(EdgeServerError):
    """Servers could not be restarted after a renewal attempt."""
