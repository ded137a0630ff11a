"""Default request handler: serves files listed in an asset manifest.

The manifest (asset/assets.json under the asset root) maps request names to
a content type and a relative file path:

    {"": "text/html html/index.html", "app.js": ["text/javascript", "js/app.js"]}

The manifest is parsed with PyYAML, so YAML and JSON both work.
"""

import logging
import os
import shutil
import threading
import time
from http.server import BaseHTTPRequestHandler
from pathlib import Path
from typing import Optional

import yaml

logger = logging.getLogger(__name__)

MANIFEST_PATH = ("asset", "assets.json")
MANIFEST_TTL = 10 * 60.0  # 10min
CACHE_CONTROL = f"max-age={5 * 24 * 60 * 60}"
INVALID_REQUEST_BODY = b"Your request is as invalid as the assertion that chicken is fleishig"


class AssetError(Exception):
    """Request could not be mapped to an asset."""


def _parse_entry(name: str, value) -> tuple[str, tuple[str, ...]]:
    if isinstance(value, str):
        parts = value.split()
    elif isinstance(value, (list, tuple)):
        parts = [str(v) for v in value]
    else:
        raise AssetError(f"Invalid manifest entry for {name!r}: {value!r}")
    if len(parts) != 2:
        raise AssetError(f"Manifest entry for {name!r} must be '<mime> <path>'")
    mime, rel_path = parts
    return mime, tuple(p for p in rel_path.split("/") if p)


class AssetManifest:
    """Thread-safe, periodically reloaded view of the asset manifest."""

    def __init__(self, root: Path, ttl: float = MANIFEST_TTL):
        self.root = Path(root).resolve()
        self.ttl = ttl
        self._entries: Optional[dict] = None
        self._loaded_at = 0.0
        self._lock = threading.Lock()

    @property
    def manifest_file(self) -> Path:
        return self.root.joinpath(*MANIFEST_PATH)

    def _load(self) -> dict:
        try:
            raw = yaml.safe_load(self.manifest_file.read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError) as e:
            raise AssetError(f"Cannot load manifest {self.manifest_file}: {e}") from e
        if not isinstance(raw, dict):
            raise AssetError(f"Manifest {self.manifest_file} must be a mapping")
        return {str(name): _parse_entry(str(name), value) for name, value in raw.items()}

    def entries(self) -> dict:
        with self._lock:
            if self._entries is None or time.monotonic() - self._loaded_at > self.ttl:
                self._entries = self._load()
                self._loaded_at = time.monotonic()
            return self._entries

    def resolve(self, url_path: str) -> tuple[str, Path]:
        """Map a request path to (content type, file path).

        Raises:
            AssetError: If the asset is unknown or escapes the asset root
        """
        name = url_path.split("?", 1)[0][1:]
        entry = self.entries().get(name)
        if entry is None:
            raise AssetError(f"Unknown asset: {url_path}")
        mime, segments = entry
        path = self.root.joinpath(*segments).resolve()
        if self.root not in path.parents:
            raise AssetError(f"Asset outside root: {url_path}")
        return mime, path


class AssetHandler(BaseHTTPRequestHandler):
    """Serves manifest assets; bind a manifest with make_asset_handler()."""

    manifest: Optional[AssetManifest] = None

    def log_message(self, format: str, *args):
        """Request lines are logged by _log_request instead."""

    def _log_request(self, notes: list[str]):
        logger.info("%s <- %s%s", self.client_address[0], self.path, ":" if notes else "")
        for line in notes:
            logger.info("> %s", line)

    def do_GET(self):
        try:
            if self.manifest is None:
                raise AssetError("No asset manifest configured")
            mime, path = self.manifest.resolve(self.path)
            f = open(path, "rb")
        except (AssetError, OSError) as e:
            self._log_request(f"Error occurred: {e}".split("\n"))
            self._send_invalid()
            return

        with f:
            size = os.fstat(f.fileno()).st_size
            self._log_request([])
            self.send_response(200)
            self.send_header("Content-Type", mime)
            self.send_header("Content-Length", str(size))
            self.send_header("Cache-Control", CACHE_CONTROL)
            self.end_headers()
            if self.command != "HEAD":
                shutil.copyfileobj(f, self.wfile)

    do_HEAD = do_GET

    def _send_invalid(self):
        self.send_response(400)
        self.send_header("Content-Type", "text/plain")
        self.send_header("Content-Length", str(len(INVALID_REQUEST_BODY)))
        self.send_header("Cache-Control", CACHE_CONTROL)
        self.end_headers()
        if self.command != "HEAD":
            self.wfile.write(INVALID_REQUEST_BODY)


def make_asset_handler(asset_root: Path) -> type:
    """Return an AssetHandler subclass bound to one asset root."""
    return type("BoundAssetHandler", (AssetHandler,), {"manifest": AssetManifest(asset_root)})
