"""Page aggregators: fold successive response bodies into one output.

Every aggregator is reusable: ``reset()`` returns it to the state of a
freshly constructed instance.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from typing import BinaryIO

from flor import BloomFilter

from .config import BLOOM_P
from .errors import DecodeError, FormatNotImplemented
from .models import IOC, IOCParams, IOCQueryResult

logger = logging.getLogger(__name__)


def decode_page(body: bytes) -> IOCQueryResult:
    """Decode a JSON result page, raising DecodeError on malformed input."""
    try:
        return IOCQueryResult.from_dict(json.loads(body))
    except (ValueError, TypeError, AttributeError) as exc:
        raise DecodeError(f"decode JSON page: {exc}") from exc


class PageAggregator(ABC):
    """Accumulates pages and writes the combined result once."""

    @abstractmethod
    def add_page(self, body: bytes) -> None:
        ...

    @abstractmethod
    def finish(self, dest: BinaryIO) -> None:
        ...

    @abstractmethod
    def reset(self) -> None:
        ...


class RawPageAggregator(PageAggregator):
    """Concatenates page bodies verbatim (CSV)."""

    def __init__(self):
        self._buf = bytearray()

    def add_page(self, body: bytes) -> None:
        self._buf += body

    def finish(self, dest: BinaryIO) -> None:
        dest.write(bytes(self._buf))

    def reset(self) -> None:
        self._buf.clear()


class JSONPageAggregator(PageAggregator):
    """Merges JSON pages into a single ``{"params", "iocs"}`` document.

    The written ``params`` are those of the last page, with ``offset`` set
    to 0 and ``limit`` set to the number of IOCs, so the document reads as
    one complete result rather than an echo of any single page.
    """

    def __init__(self):
        self.iocs: list[IOC] = []
        self.params = IOCParams()

    def add_page(self, body: bytes) -> None:
        page = decode_page(body)
        self.iocs.extend(page.iocs)
        self.params = page.params

    def finish(self, dest: BinaryIO) -> None:
        params = self.params.to_dict()
        params["offset"] = 0
        params["limit"] = len(self.iocs)
        doc = {"params": params, "iocs": [ioc.to_dict() for ioc in self.iocs]}
        dest.write(json.dumps(doc).encode("utf-8") + b"\n")

    def reset(self) -> None:
        self.iocs = []
        self.params = IOCParams()


class BloomPageAggregator(PageAggregator):
    """Builds a Bloom filter from the values of all JSON pages.

    Pages are regular JSON result pages; the filter is created in
    ``finish`` at false-positive rate ``p``. flor refuses inserts once a
    filter holds ``n`` items, so ``n`` is one more than the number of
    distinct values.
    """

    def __init__(self, p: float = BLOOM_P):
        self.p = p
        self.values: list[str] = []

    def add_page(self, body: bytes) -> None:
        page = decode_page(body)
        self.values.extend(ioc.value for ioc in page.iocs)

    def build(self) -> BloomFilter:
        unique = list(dict.fromkeys(self.values))
        bf = BloomFilter(n=len(unique) + 1, p=self.p)
        for value in unique:
            bf.add(value.encode("utf-8"))
        return bf

    def finish(self, dest: BinaryIO) -> None:
        if not self.values:
            logger.debug("Writing empty bloom filter")
        self.build().write(dest)

    def reset(self) -> None:
        self.values = []


class StixPageAggregator(PageAggregator):
    """Placeholder for STIX output, which has no encoder yet."""

    def add_page(self, body: bytes) -> None:
        raise FormatNotImplemented("stix")

    def finish(self, dest: BinaryIO) -> None:
        raise FormatNotImplemented("stix")

    def reset(self) -> None:
        pass
