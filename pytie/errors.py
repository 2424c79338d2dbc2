"""Exception hierarchy for TIE queries."""

from __future__ import annotations

from typing import Any


class TieError(Exception):
    """Base class for everything this package raises."""


class ConfigError(TieError):
    """The credentials file is missing or unreadable."""


class TransportError(TieError):
    """Connection or TLS failure; never retried."""


class ServerError(TieError):
    """The API answered with a 5xx status."""

    def __init__(self, status: int, body: str = ""):
        self.status = status
        self.body = body
        text = f"TIE returned status {status}"
        if body:
            text += f": {body}"
        super().__init__(text)


class ClientError(TieError):
    """The API rejected the request (any non-success status below 500)."""

    def __init__(self, status: int, message: str, errors: Any = None):
        self.status = status
        self.message = message
        self.errors = errors
        text = f"TIE returned an error: {message}"
        if errors:
            text += f" {errors}"
        super().__init__(text)


class DecodeError(TieError):
    """A page body could not be decoded."""


class UnsupportedFormat(TieError):
    """Unknown output format name."""

    def __init__(self, name: str, reason: str | None = None):
        self.name = name
        super().__init__(reason or f"Unsupported output format requested: {name}")


class FormatNotImplemented(UnsupportedFormat):
    """The format is known but has no encoder."""

    def __init__(self, name: str):
        super().__init__(name, f"Output format not implemented: {name}")
