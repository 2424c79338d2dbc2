"""Output format registry: format name -> Accept header + aggregator."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from .aggregators import (
    BloomPageAggregator,
    JSONPageAggregator,
    PageAggregator,
    RawPageAggregator,
    StixPageAggregator,
)
from .config import BLOOM_P
from .errors import UnsupportedFormat


class MimeType(str, Enum):
    JSON = "application/json"
    CSV = "text/csv"
    BLOOM = "application/bloom"
    STIX = "text/xml"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class OutputFormat:
    """How one user-facing format is fetched and aggregated."""

    name: str
    accept: MimeType  # media type requested from the API
    aggregator_cls: type[PageAggregator]

    def aggregator(self, bloom_p: float = BLOOM_P) -> PageAggregator:
        if self.aggregator_cls is BloomPageAggregator:
            return BloomPageAggregator(p=bloom_p)
        return self.aggregator_cls()


# Bloom filters are built client-side from JSON pages, so "bloom" asks the
# API for application/json rather than application/bloom.
FORMATS: dict[str, OutputFormat] = {
    "bloom": OutputFormat("bloom", MimeType.JSON, BloomPageAggregator),
    "csv": OutputFormat("csv", MimeType.CSV, RawPageAggregator),
    "json": OutputFormat("json", MimeType.JSON, JSONPageAggregator),
    "stix": OutputFormat("stix", MimeType.STIX, StixPageAggregator),
}


def get_format(name: str) -> OutputFormat:
    try:
        return FORMATS[name]
    except KeyError:
        raise UnsupportedFormat(name) from None


def resolve(name: str, bloom_p: float = BLOOM_P) -> tuple[MimeType, PageAggregator]:
    """Return the Accept media type and a fresh aggregator for *name*.

    Names are case-sensitive; anything outside FORMATS raises
    UnsupportedFormat.
    """
    fmt = get_format(name)
    return fmt.accept, fmt.aggregator(bloom_p)
