"""Dataclasses for IOC records, query parameters, and result pages."""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import datetime, timedelta
from typing import Any


def parse_rfc3339(value: str | None) -> datetime | None:
    """Parse an RFC 3339 timestamp as sent with ``date_format=rfc3339``."""
    if value is None or value == "":
        return None
    return datetime.fromisoformat(value)


def format_rfc3339(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.utcoffset() == timedelta(0):
        return value.replace(tzinfo=None).isoformat() + "Z"
    return value.isoformat()


def _load(cls, data: dict[str, Any], time_fields: frozenset[str]):
    """Build *cls* from a JSON object, ignoring keys the dataclass lacks."""
    if not isinstance(data, dict):
        raise TypeError(f"expected a JSON object for {cls.__name__}, got {type(data).__name__}")
    kwargs = {}
    for f in fields(cls):
        if f.name not in data:
            continue
        value = data[f.name]
        if f.name in time_fields:
            value = parse_rfc3339(value)
        elif isinstance(value, list):
            value = list(value)
        elif value is None and f.type.startswith("list"):
            value = []
        kwargs[f.name] = value
    return cls(**kwargs)


def _dump(obj, time_fields: frozenset[str], omit_empty: frozenset[str]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for f in fields(obj):
        value = getattr(obj, f.name)
        if f.name in omit_empty and value is None:
            continue
        if f.name in time_fields:
            value = format_rfc3339(value)
        elif isinstance(value, list):
            value = list(value)
        out[f.name] = value
    return out


_IOC_TIMES = frozenset({
    "first_seen",
    "last_seen",
    "enrichment_requested_at",
    "enriched_at",
    "updated_at",
    "created_at",
})
_IOC_OPTIONAL = frozenset({"enrichment_requested_at", "enriched_at"})


@dataclass(frozen=True)
class IOC:
    """A single indicator of compromise as returned by TIE."""

    id: str = ""
    value: str = ""
    data_type: str = ""  # e.g. "DomainName", "IPv4"
    entity_ids: list[str] = field(default_factory=list)
    event_ids: list[str] = field(default_factory=list)
    event_attributes: list[str] = field(default_factory=list)
    categories: list[str] = field(default_factory=list)
    source_pseudonyms: list[str] = field(default_factory=list)
    source_names: list[str] = field(default_factory=list)
    n_occurrences: int = 0
    min_severity: int = 0
    max_severity: int = 0
    first_seen: datetime | None = None
    last_seen: datetime | None = None
    min_confidence: int = 0
    max_confidence: int = 0
    enrich: bool = False
    enrichment_requested_at: datetime | None = None
    enriched_at: datetime | None = None
    updated_at: datetime | None = None
    created_at: datetime | None = None
    observation_attributes: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> IOC:
        return _load(cls, data, _IOC_TIMES)

    def to_dict(self) -> dict[str, Any]:
        return _dump(self, _IOC_TIMES, _IOC_OPTIONAL)


_PARAM_TIMES = frozenset({"first_seen_since", "last_seen_since"})


@dataclass
class IOCParams:
    """Query parameters, both sent to and echoed back by the IOC endpoints.

    ``severity`` and ``confidence`` may hold a single value or a range
    string such as ``"2-4"``.
    """

    no_defaults: bool = False
    direction: str = ""
    order_by: str = ""
    severity: str | int = ""
    confidence: str | int = ""
    ivalue: str = ""
    group_by: list[str] = field(default_factory=list)
    limit: int = 0
    offset: int = 0
    with_compositions: bool = False
    first_seen_since: datetime | None = None
    last_seen_since: datetime | None = None
    date_field: str = ""
    enriched: bool = False
    date_format: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> IOCParams:
        return _load(cls, data, _PARAM_TIMES)

    def to_dict(self) -> dict[str, Any]:
        return _dump(self, _PARAM_TIMES, _PARAM_TIMES)


@dataclass
class IOCQueryResult:
    """One decoded JSON page, or a collected result set."""

    has_more: bool = False
    iocs: list[IOC] = field(default_factory=list)
    params: IOCParams = field(default_factory=IOCParams)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> IOCQueryResult:
        if not isinstance(data, dict):
            raise TypeError(f"expected a JSON object, got {type(data).__name__}")
        return cls(
            has_more=bool(data.get("has_more", False)),
            iocs=[IOC.from_dict(item) for item in data.get("iocs") or []],
            params=IOCParams.from_dict(data.get("params") or {}),
        )


@dataclass(frozen=True)
class IOCResult:
    """One item of a streamed query: either an IOC or the error that ended it."""

    ioc: IOC | None = None
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None
