"""Edge server configuration.

Configuration is merged from (lowest precedence first):
- built-in defaults
- an optional YAML args file (--config, or ./args.json when present;
  JSON is valid YAML)
- the hosting URL (proto://host:port)
- explicit command-line flags

The result is an immutable EdgeConfig, validated before any socket is bound.
"""

import logging
import os
import re
import shlex
import threading
from dataclasses import dataclass, field, fields
from enum import Enum
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml

logger = logging.getLogger(__name__)

HTTPS_PORT = 443
DEFAULT_HOSTING = "http://localhost:80"
DEFAULT_ARGS_FILE = Path("args.json")
DEFAULT_RENEWAL_INTERVAL = 12 * 60 * 60.0  # 12hrs
IMMEDIATE_RENEWAL_DELAY = 0.5
DEFAULT_RENEWAL_COMMAND = ("certbot", "renew")
DEFAULT_RENEWAL_TIMEOUT = 600.0

_HOSTING_RE = re.compile(r"^([^:]+)://([^:]+):([0-9]+)$")
_DURATION_RE = re.compile(r"^\s*([0-9]+(?:\.[0-9]+)?)\s*(ms|s|m|h|d)?\s*$")
_DURATION_UNITS = {"ms": 0.001, "s": 1, "m": 60, "h": 3600, "d": 86400}


class ConfigurationError(Exception):
    """Configuration error."""


class Protocol(str, Enum):
    """Hosting protocols the server knows how to run."""

    HTTP = "http"
    HTTPS = "https"

    @classmethod
    def parse(cls, value) -> "Protocol":
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ConfigurationError(f"Invalid protocol: {value}") from None


def parse_duration(value) -> float:
    """Parse a duration into seconds.

    Accepts plain numbers (seconds) or strings like "500ms", "30s", "15m",
    "12h", "1d".
    """
    if isinstance(value, bool):
        raise ConfigurationError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    match = _DURATION_RE.match(str(value))
    if not match:
        raise ConfigurationError(f"Invalid duration: {value!r}")
    number, unit = match.groups()
    return float(number) * _DURATION_UNITS[unit or "s"]


def parse_hosting(hosting: str) -> dict:
    """Split a hosting URL like https://example.com:443.

    Returns:
        Dict with protocol, host and port keys
    """
    match = _HOSTING_RE.match(hosting.strip())
    if not match:
        raise ConfigurationError(
            f"Invalid hosting {hosting!r}: expected <protocol>://<host>:<port>"
        )
    protocol, host, port = match.groups()
    return {"protocol": protocol, "host": host, "port": int(port)}


def _split_cert_path(value) -> tuple:
    if value is None:
        return ()
    if isinstance(value, (str, os.PathLike)):
        value = str(value).split(",")
    if not isinstance(value, (list, tuple)):
        raise ConfigurationError(f'"cert_path" must be a list or comma-separated string, got {value!r}')
    return tuple(str(segment).strip() for segment in value if str(segment).strip())


def _split_command(value) -> tuple:
    if isinstance(value, str):
        value = shlex.split(value)
    if not isinstance(value, (list, tuple)) or not value:
        raise ConfigurationError(f'"renewal_command" must be a non-empty command, got {value!r}')
    return tuple(str(arg) for arg in value)


def _as_bool(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


@dataclass(frozen=True)
class EdgeConfig:
    """Immutable server configuration.

    Validation happens in __post_init__, so an EdgeConfig that exists is one
    the servers can be built from.
    """

    protocol: Protocol
    host: str
    port: int
    cert_path: tuple = ()
    renewal_interval: float = DEFAULT_RENEWAL_INTERVAL
    renew_immediately: bool = False
    renewal_command: tuple = DEFAULT_RENEWAL_COMMAND
    renewal_timeout: float = DEFAULT_RENEWAL_TIMEOUT
    resume_after_failure: bool = False
    asset_root: Path = field(default_factory=Path.cwd)

    def __post_init__(self):
        if not isinstance(self.protocol, Protocol):
            raise ConfigurationError(f"Invalid protocol: {self.protocol}")
        if not self.host:
            raise ConfigurationError("Host is required")
        if not 0 <= self.port <= 65535:
            raise ConfigurationError(f"Invalid port: {self.port}")
        if self.renewal_interval <= 0:
            raise ConfigurationError(f"Renewal interval must be positive, got {self.renewal_interval}")
        if self.renewal_interval > threading.TIMEOUT_MAX:
            raise ConfigurationError(
                f"Renewal interval too large: {self.renewal_interval}s (max {threading.TIMEOUT_MAX:g}s)"
            )
        if self.renewal_timeout <= 0:
            raise ConfigurationError(f"Renewal timeout must be positive, got {self.renewal_timeout}")

        if self.protocol is Protocol.HTTPS:
            if self.port != HTTPS_PORT:
                raise ConfigurationError(f"Server must use port {HTTPS_PORT} for https")
            if not self.cert_path:
                raise ConfigurationError('Array "cert_path" is required for https server')

    @property
    def cert_dir(self) -> Path:
        return Path(*self.cert_path)

    @property
    def first_renewal_delay(self) -> float:
        """Delay before the first renewal cycle."""
        return IMMEDIATE_RENEWAL_DELAY if self.renew_immediately else self.renewal_interval

    @property
    def url(self) -> str:
        return f"{self.protocol.value}://{self.host}:{self.port}"

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> "EdgeConfig":
        """Build a config from loosely-typed values (YAML, argparse).

        Unknown keys are ignored with a warning.

        Raises:
            ConfigurationError: On missing or invalid values
        """
        known = {f.name for f in fields(cls)}
        for key in sorted(set(values) - known):
            logger.warning("Ignoring unknown config key: %s", key)

        if values.get("protocol") is None:
            raise ConfigurationError("Protocol is required")
        if values.get("port") is None:
            raise ConfigurationError("Port is required")

        kwargs: dict[str, Any] = {
            "protocol": Protocol.parse(values["protocol"]),
            "host": str(values.get("host") or ""),
        }
        try:
            kwargs["port"] = int(values["port"])
        except (TypeError, ValueError):
            raise ConfigurationError(f"Invalid port: {values['port']!r}") from None

        if "cert_path" in values:
            kwargs["cert_path"] = _split_cert_path(values["cert_path"])
        if values.get("renewal_interval") is not None:
            kwargs["renewal_interval"] = parse_duration(values["renewal_interval"])
        if values.get("renewal_timeout") is not None:
            kwargs["renewal_timeout"] = parse_duration(values["renewal_timeout"])
        if values.get("renewal_command") is not None:
            kwargs["renewal_command"] = _split_command(values["renewal_command"])
        for flag in ("renew_immediately", "resume_after_failure"):
            if values.get(flag) is not None:
                kwargs[flag] = _as_bool(values[flag])
        if values.get("asset_root") is not None:
            kwargs["asset_root"] = Path(values["asset_root"])

        return cls(**kwargs)


def load_args_file(path: Path) -> dict:
    """Load a YAML (or JSON) args file.

    Raises:
        ConfigurationError: If the file cannot be read or is not a mapping
    """
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigurationError(f"Cannot read {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"{path} must contain a mapping, got {type(data).__name__}")
    return data


def load_config(
    hosting: Optional[str] = None,
    args_file: Optional[Path] = None,
    overrides: Optional[Mapping[str, Any]] = None,
) -> EdgeConfig:
    """Merge all configuration sources into an EdgeConfig.

    Args:
        hosting: proto://host:port string (default: http://localhost:80)
        args_file: Optional YAML/JSON args file
        overrides: Values from explicit flags; None values are skipped

    Returns:
        Validated EdgeConfig
    """
    values: dict[str, Any] = {}
    if args_file is not None:
        values.update(load_args_file(args_file))
    values.update(parse_hosting(hosting or DEFAULT_HOSTING))
    if overrides:
        values.update({k: v for k, v in overrides.items() if v is not None})

    logger.debug("Params: %s", values)
    return EdgeConfig.from_mapping(values)
