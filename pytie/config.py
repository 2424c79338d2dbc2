"""Endpoints, HTTP settings, and credential loading."""

from __future__ import annotations

import tomllib
from dataclasses import dataclass
from pathlib import Path

from platformdirs import user_config_dir

from .errors import ConfigError

APP_NAME = "pytie"

# TIE endpoints (trailing slash required, paths are appended verbatim)
API_URL = "https://tie.dcso.de/api/v1/"
PINGBACK_URL = "https://tie-fb.xyz/api/v1/"

# Local storage
CONFIG_DIR = Path(user_config_dir(APP_NAME))
CONFIG_PATH = CONFIG_DIR / "config.toml"

# HTTP
USER_AGENT = "pytie/0.1.0 (+https://github.com/DCSO/gotie; threat-intel client)"
REQUEST_TIMEOUT = 30
REQUEST_DELAY = 0.1  # seconds before the first request of a query
IOC_LIMIT = 1000  # IOCs per page
MAX_RETRIES = 3
RETRY_WAIT = 5.0  # seconds, doubled after every failed attempt

# Bloom output
BLOOM_P = 0.001


@dataclass(frozen=True)
class ClientSettings:
    """Everything a query needs to know about the remote service.

    Read-only for the lifetime of a query; build a new instance instead of
    mutating one that is in use.
    """

    auth_token: str = ""
    pingback_token: str = ""
    api_url: str = API_URL
    pingback_url: str = PINGBACK_URL
    limit: int = IOC_LIMIT
    debug: bool = False
    timeout: float = REQUEST_TIMEOUT
    max_retries: int = MAX_RETRIES
    retry_wait: float = RETRY_WAIT
    request_delay: float = REQUEST_DELAY
    bloom_p: float = BLOOM_P


@dataclass(frozen=True)
class Credentials:
    """Tokens read from the config file."""

    tie_token: str = ""
    pingback_token: str = ""


def load_config(path: Path | str | None = None) -> Credentials:
    """Read ``tie_token`` / ``pingback_token`` from a TOML file."""
    path = Path(path) if path is not None else CONFIG_PATH
    try:
        with open(path, "rb") as f:
            data = tomllib.load(f)
    except FileNotFoundError as exc:
        raise ConfigError(f"config file not found: {path}") from exc
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"invalid config file {path}: {exc}") from exc

    return Credentials(
        tie_token=str(data.get("tie_token", "")),
        pingback_token=str(data.get("pingback_token", "")),
    )
