"""Request descriptors and filter query-string construction."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from urllib.parse import quote, quote_plus

from .config import ClientSettings

# Accepted input layouts for --*-since / --*-until, tried in order.
_TIME_FORMATS = [
    "%Y-%m-%d",
    "%Y-%m-%d %H:%M",
    "%Y/%m/%d",
    "%Y/%m/%d %H:%M",
    "%a %b %d %H:%M:%S %Y",  # ANSI C
    "%a %b %d %H:%M:%S %Z %Y",  # Unix date
]

# Filters forwarded to the API, in the order they appear in the URL.
FILTER_KEYS = (
    "severity",
    "confidence",
    "category",
    "updated_since",
    "updated_until",
    "created_since",
    "created_until",
    "first_seen_since",
    "first_seen_until",
    "last_seen_since",
    "last_seen_until",
)


def parse_time(text: str) -> datetime:
    """Parse a user-supplied date in any of the supported layouts.

    Accepts plain dates (``2017-01-31``, ``2017/01/31``), dates with
    minutes, ANSI C / Unix ``date`` output, RFC 3339 and RFC 2822.
    Raises ValueError when nothing matches.
    """
    text = text.strip()
    for fmt in _TIME_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        pass
    try:
        return parsedate_to_datetime(text)
    except (TypeError, ValueError):
        pass
    raise ValueError(f"cannot parse time {text!r}")


def format_filter_time(value: datetime) -> str:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%SZ")


def build_filter_args(**filters: str | None) -> str:
    """Render filter options as an escaped ``&key=value`` fragment.

    Empty values are skipped. Date filters (``*_since``/``*_until``) are
    normalised to ``YYYY-MM-DDTHH:MM:SSZ``.

    >>> build_filter_args(severity="2-4", category="malware")
    '&severity=2-4&category=malware'
    """
    unknown = set(filters) - set(FILTER_KEYS)
    if unknown:
        raise TypeError(f"unknown filter(s): {', '.join(sorted(unknown))}")

    pairs = []
    for key in FILTER_KEYS:
        value = filters.get(key)
        if not value:
            continue
        if key.endswith(("_since", "_until")):
            value = format_filter_time(parse_time(value))
        pairs.append(f"{quote_plus(key)}={quote_plus(str(value))}")

    return "".join(f"&{pair}" for pair in pairs)


@dataclass(frozen=True)
class IOCRequest:
    """Search IOCs whose value matches *query* (case-insensitive)."""

    query: str
    data_type: str
    extra_args: str = ""
    output_format: str = "json"

    def build_url(self, settings: ClientSettings, offset: int | None = None) -> str:
        url = (
            f"{settings.api_url}iocs?data_type={self.data_type.lower()}"
            f"&ivalue={quote(self.query, safe='')}"
            f"&limit={settings.limit}"
            f"&date_format=rfc3339{self.extra_args}"
        )
        if offset is not None:
            url += f"&offset={offset}"
        return url


@dataclass(frozen=True)
class FeedRequest:
    """Periodic feed export, e.g. ``daily`` or ``weekly``."""

    period: str
    data_type: str
    extra_args: str = ""
    output_format: str = "json"

    def build_url(self, settings: ClientSettings, offset: int | None = None) -> str:
        url = (
            f"{settings.api_url}iocs/feed/{self.period}"
            f"?data_type={self.data_type.lower()}"
            f"&limit={settings.limit}"
            f"&date_format=rfc3339{self.extra_args}"
        )
        if offset is not None:
            url += f"&offset={offset}"
        return url
