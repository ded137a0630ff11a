"""TLS key material for the HTTPS listener.

Reads the certbot-style certificate directory (privkey.pem + fullchain.pem)
and turns it into an SSLContext. Both files are read fresh on every start so
a renewed certificate is picked up when the servers are rebuilt.
"""

import hashlib
import logging
import os
import re
import ssl
import tempfile
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Sequence

from edge_server.errors import CertificateLoadError

logger = logging.getLogger(__name__)

PRIVKEY_FILE = "privkey.pem"
FULLCHAIN_FILE = "fullchain.pem"

_PEM_CERT_RE = re.compile(
    rb"-----BEGIN CERTIFICATE-----.+?-----END CERTIFICATE-----", re.DOTALL
)


@dataclass(frozen=True)
class KeyMaterial:
    """Raw PEM bytes loaded from a certificate directory."""

    cert_dir: Path
    key: bytes = field(repr=False)
    cert: bytes = field(repr=False)
    fingerprint: str = ""


def cert_dir_path(cert_dir: Sequence[str | os.PathLike]) -> Path:
    """Join certificate directory segments into a path."""
    if isinstance(cert_dir, (str, os.PathLike)):
        return Path(cert_dir)
    if not cert_dir:
        raise CertificateLoadError(None, "certificate directory not configured")
    return Path(*cert_dir)


def _read_pem(path: Path) -> bytes:
    try:
        data = path.read_bytes()
    except OSError as e:
        raise CertificateLoadError(path, e.strerror or str(e)) from e
    if not data.strip():
        raise CertificateLoadError(path, "file is empty")
    return data


def get_cert_fingerprint(chain_pem: bytes) -> str:
    """Get SHA256 fingerprint of the leaf (first) certificate in a chain.

    Args:
        chain_pem: PEM bytes holding one or more certificates

    Returns:
        SHA256 fingerprint as hex string with colons (e.g., "AB:CD:EF:...")

    Raises:
        ValueError: If no certificate block is present
    """
    match = _PEM_CERT_RE.search(chain_pem)
    if not match:
        raise ValueError("no certificate found in chain")
    der = ssl.PEM_cert_to_DER_cert(match.group(0).decode("ascii"))
    digest = hashlib.sha256(der).hexdigest().upper()
    return ":".join(digest[i:i + 2] for i in range(0, len(digest), 2))


def load_key_material(cert_dir: Sequence[str | os.PathLike]) -> KeyMaterial:
    """Read privkey.pem and fullchain.pem concurrently.

    Args:
        cert_dir: Directory path, or its segments (e.g. ["/etc/letsencrypt",
            "live", "example.com"])

    Returns:
        KeyMaterial with the raw bytes and the leaf fingerprint

    Raises:
        CertificateLoadError: If either file is missing, unreadable, empty,
            or the chain holds no certificate
    """
    base = cert_dir_path(cert_dir)

    with ThreadPoolExecutor(max_workers=2, thread_name_prefix="cert-read") as pool:
        key_future = pool.submit(_read_pem, base / PRIVKEY_FILE)
        cert_future = pool.submit(_read_pem, base / FULLCHAIN_FILE)
        key = key_future.result()
        cert = cert_future.result()

    try:
        fingerprint = get_cert_fingerprint(cert)
    except ValueError as e:
        raise CertificateLoadError(base / FULLCHAIN_FILE, str(e)) from e

    return KeyMaterial(cert_dir=base, key=key, cert=cert, fingerprint=fingerprint)


def create_ssl_context(material: KeyMaterial) -> ssl.SSLContext:
    """Build a server SSLContext from in-memory key material.

    SSLContext only loads chains from files, so the PEM bytes are staged in a
    private temporary directory that is removed before returning.

    Raises:
        CertificateLoadError: If the key and chain are invalid or mismatched
    """
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)

    with tempfile.TemporaryDirectory(prefix="edge-tls-") as staging:
        key_path = Path(staging) / PRIVKEY_FILE
        cert_path = Path(staging) / FULLCHAIN_FILE
        # Key file is created 0600 before any bytes are written
        fd = os.open(key_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, "wb") as f:
            f.write(material.key)
        cert_path.write_bytes(material.cert)

        try:
            context.load_cert_chain(certfile=str(cert_path), keyfile=str(key_path))
        except ssl.SSLError as e:
            raise CertificateLoadError(material.cert_dir, f"invalid key or chain: {e}") from e

    return context
