"""Server package for the TLS edge server.

Serves a supplied request handler over HTTPS on port 443, redirects port 80
to it, and periodically releases both ports so an external ACME client
(certbot) can renew the certificate.
"""

from edge_server.errors import (
    EdgeServerError,
    BindError,
    CertificateLoadError,
    ServerStartError,
    RenewalCommandError,
    FatalRestartError,
)
from edge_server.listener import DrainableServer
from edge_server.redirect import (
    RedirectServer,
    build_redirect_location,
    DEFAULT_REDIRECT_PORT,
)
from edge_server.tls import (
    KeyMaterial,
    load_key_material,
    create_ssl_context,
    get_cert_fingerprint,
)
from edge_server.httpd import (
    TlsServer,
    PlainServer,
    create_tls_server,
)
from edge_server.pair import ServerPair
from edge_server.renewal import (
    RenewalOutcome,
    RenewalState,
    RenewalSupervisor,
    run_renewal,
)
from edge_server.hosting import (
    Hosting,
    HttpHosting,
    HttpsHosting,
    build_server_pair,
    create_hosting,
)

__all__ = [
    # Errors
    "EdgeServerError",
    "BindError",
    "CertificateLoadError",
    "ServerStartError",
    "RenewalCommandError",
    "FatalRestartError",
    # Listeners
    "DrainableServer",
    "RedirectServer",
    "build_redirect_location",
    "DEFAULT_REDIRECT_PORT",
    "TlsServer",
    "PlainServer",
    "create_tls_server",
    # TLS
    "KeyMaterial",
    "load_key_material",
    "create_ssl_context",
    "get_cert_fingerprint",
    # Lifecycle
    "ServerPair",
    "RenewalOutcome",
    "RenewalState",
    "RenewalSupervisor",
    "run_renewal",
    # Hosting
    "Hosting",
    "HttpHosting",
    "HttpsHosting",
    "build_server_pair",
    "create_hosting",
]
