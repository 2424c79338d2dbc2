"""pytie: client library and CLI for the DCSO TIE threat-intelligence API."""

__version__ = "0.1.0"

from .client import TieClient, collect_iocs, iter_iocs_from_json
from .config import ClientSettings, Credentials, load_config
from .errors import (
    ClientError,
    ConfigError,
    DecodeError,
    FormatNotImplemented,
    ServerError,
    TieError,
    TransportError,
    UnsupportedFormat,
)
from .formats import MimeType, resolve
from .models import IOC, IOCParams, IOCQueryResult, IOCResult
from .queries import FeedRequest, IOCRequest, build_filter_args

__all__ = [
    "IOC",
    "ClientError",
    "ClientSettings",
    "ConfigError",
    "Credentials",
    "DecodeError",
    "FeedRequest",
    "FormatNotImplemented",
    "IOCParams",
    "IOCQueryResult",
    "IOCRequest",
    "IOCResult",
    "MimeType",
    "ServerError",
    "TieClient",
    "TieError",
    "TransportError",
    "UnsupportedFormat",
    "build_filter_args",
    "collect_iocs",
    "iter_iocs_from_json",
    "load_config",
    "resolve",
]
