"""HTTP access to the TIE API: paging, retries, aggregation and streaming.

Two consumption modes are offered:

* aggregator mode (``write``/``write_iocs``/``write_feed``) follows the
  ``Link: <...>; rel="next"`` response header and folds every page into
  the aggregator of the requested output format;
* streaming mode (``iter_iocs``/``stream_iocs``/``get_iocs``) requests
  JSON, follows the ``has_more`` flag by advancing ``offset`` one page at a
  time, and yields one ``IOCResult`` per IOC.

A single client holds no per-query state, so one instance may serve
several queries, including concurrently from different threads as long
as the underlying session is not shared with other code.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterator
from datetime import datetime, timezone
from queue import Full, Queue
from typing import BinaryIO

import requests

from .aggregators import PageAggregator, decode_page
from .config import USER_AGENT, ClientSettings
from .errors import ClientError, ServerError, TieError, TransportError
from .formats import MimeType, resolve
from .models import IOCQueryResult, IOCResult
from .queries import FeedRequest, IOCRequest

logger = logging.getLogger(__name__)

Request = IOCRequest | FeedRequest

# Hand-off queue size for stream_iocs()
STREAM_BUFFER = 1000


def _client_error(resp: requests.Response) -> ClientError:
    """Build a ClientError from the API's error envelope or raw body."""
    logger.debug("resp header: %s", dict(resp.headers))
    content_type = resp.headers.get("Content-Type", "")
    if MimeType.JSON.value in content_type:
        try:
            msg = resp.json()
        except ValueError:
            msg = None
        if isinstance(msg, dict):
            return ClientError(resp.status_code, str(msg.get("message", "")), msg.get("errors"))
    return ClientError(resp.status_code, resp.text)


def _raise_for_status(resp: requests.Response) -> None:
    if 200 <= resp.status_code < 300:
        return
    if resp.status_code >= 500:
        raise ServerError(resp.status_code, resp.text)
    raise _client_error(resp)


class TieClient:
    """Client for the TIE IOC endpoints.

    *sleep* is used for the pacing delay and retry backoff and can be
    replaced in tests.
    """

    def __init__(
        self,
        settings: ClientSettings | None = None,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.settings = settings or ClientSettings()
        if session is None:
            session = requests.Session()
            session.headers.update({"User-Agent": USER_AGENT})
        self.session = session
        self._sleep = sleep

    # -- HTTP ---------------------------------------------------------------

    def _get(self, url: str, accept: MimeType) -> requests.Response:
        """GET *url*, retrying 5xx responses with exponential backoff.

        Transport failures and non-5xx errors are raised immediately.
        """
        headers = {
            "Accept": accept.value,
            "Authorization": f"Bearer {self.settings.auth_token}",
        }
        attempts = max(self.settings.max_retries, 1)
        wait = self.settings.retry_wait
        error: ServerError | None = None

        for attempt in range(1, attempts + 1):
            logger.debug("GET %s", url)
            try:
                resp = self.session.get(url, headers=headers, timeout=self.settings.timeout)
            except requests.RequestException as exc:
                raise TransportError(f"GET {url}: {exc}") from exc

            if self.settings.debug:
                logger.debug("%s %s", resp.status_code, dict(resp.headers))

            if resp.status_code < 500:
                _raise_for_status(resp)
                return resp

            error = ServerError(resp.status_code, resp.text)
            if attempt < attempts:
                logger.warning("Status code %s: retrying in %ss...", resp.status_code, wait)
                self._sleep(wait)
                wait *= 2

        logger.error("Giving up on %s after %d attempts", url, attempts)
        raise error

    def _iter_link_pages(self, url: str, accept: MimeType) -> Iterator[bytes]:
        """Yield page bodies, following ``rel="next"`` links verbatim."""
        self._sleep(self.settings.request_delay)
        while url:
            resp = self._get(url, accept)
            yield resp.content
            url = resp.links.get("next", {}).get("url")

    def _iter_offset_pages(self, request: Request) -> Iterator[IOCQueryResult]:
        """Yield decoded JSON pages while the API reports ``has_more``."""
        self._sleep(self.settings.request_delay)
        offset = 0
        while True:
            url = request.build_url(self.settings, offset=offset)
            logger.debug("Asking API for more IOCs at offset %d", offset)
            page = decode_page(self._get(url, MimeType.JSON).content)
            yield page
            if not page.has_more:
                break
            offset += self.settings.limit

    # -- aggregator mode ----------------------------------------------------

    def write(
        self,
        request: Request,
        dest: BinaryIO,
        aggregator: PageAggregator | None = None,
    ) -> None:
        """Fetch every page of *request* and write the combined output.

        A caller-supplied *aggregator* is reset before use. Nothing is
        written if any page fails.
        """
        accept, default_aggregator = resolve(request.output_format, self.settings.bloom_p)
        if aggregator is None:
            aggregator = default_aggregator
        else:
            aggregator.reset()

        pages = 0
        for body in self._iter_link_pages(request.build_url(self.settings), accept):
            aggregator.add_page(body)
            pages += 1

        logger.debug("Fetched %d page(s), writing %s output", pages, request.output_format)
        aggregator.finish(dest)

    def write_iocs(
        self,
        query: str,
        data_type: str,
        extra_args: str,
        output_format: str,
        dest: BinaryIO,
    ) -> None:
        self.write(IOCRequest(query, data_type, extra_args, output_format), dest)

    def write_feed(
        self,
        period: str,
        data_type: str,
        extra_args: str,
        output_format: str,
        dest: BinaryIO,
    ) -> None:
        self.write(FeedRequest(period, data_type, extra_args, output_format), dest)

    # -- streaming mode -----------------------------------------------------

    def iter_iocs(self, request: Request) -> Iterator[IOCResult]:
        """Yield one IOCResult per IOC in arrival order.

        A failure ends the sequence with a single error item.
        """
        try:
            for page in self._iter_offset_pages(request):
                for ioc in page.iocs:
                    yield IOCResult(ioc=ioc)
        except TieError as exc:
            yield IOCResult(error=exc)

    def stream_iocs(self, request: Request, maxsize: int = STREAM_BUFFER) -> IOCStream:
        """Run iter_iocs() on a background thread."""
        return IOCStream(lambda: self.iter_iocs(request), maxsize=maxsize)

    def get_iocs(self, query: str, data_type: str, extra_args: str = "") -> IOCQueryResult:
        return collect_iocs(self.iter_iocs(IOCRequest(query, data_type, extra_args)))

    def get_feed(self, period: str, data_type: str, extra_args: str = "") -> IOCQueryResult:
        """Collect a periodic feed (``hourly``, ``daily``, ``weekly``, ``monthly``)."""
        return collect_iocs(self.iter_iocs(FeedRequest(period, data_type, extra_args)))

    # -- pingback -----------------------------------------------------------

    def pingback(self, data_type: str, value: str, token: str | None = None) -> requests.Response:
        """Report an observed hit for *value* back to TIE."""
        if token is None:
            token = self.settings.pingback_token
        form = {
            "data_type": data_type,
            "value": value,
            "seen": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
        }
        url = f"{self.settings.pingback_url}submit"
        logger.debug("POST %s %s", url, form)
        try:
            resp = self.session.post(
                url,
                data=form,
                headers={"Authorization": f"Bearer {token}"},
                timeout=self.settings.timeout,
            )
        except requests.RequestException as exc:
            raise TransportError(f"POST {url}: {exc}") from exc
        _raise_for_status(resp)
        return resp


_CLOSED = object()


class IOCStream:
    """Iterator fed by a producer thread through a bounded queue.

    The producer always enqueues an end marker, including when building the
    first request fails. A consumer that stops reading early must call
    ``close()`` (or use the stream as a context manager); otherwise the
    producer keeps waiting for queue space. The end marker alone is given
    up after CLOSE_TIMEOUT seconds so a finished producer always exits.
    """

    CLOSE_TIMEOUT = 5.0

    def __init__(self, produce: Callable[[], Iterator[IOCResult]], maxsize: int = STREAM_BUFFER):
        self._queue: Queue = Queue(maxsize=maxsize)
        self._stop = threading.Event()
        self._done = False
        self._thread = threading.Thread(target=self._run, args=(produce,), daemon=True)
        self._thread.start()

    def _put(self, item, timeout: float | None = None) -> bool:
        deadline = None if timeout is None else time.monotonic() + timeout
        while not self._stop.is_set():
            if deadline is not None and time.monotonic() >= deadline:
                return False
            try:
                self._queue.put(item, timeout=0.1)
                return True
            except Full:
                continue
        return False

    def _run(self, produce: Callable[[], Iterator[IOCResult]]) -> None:
        try:
            for item in produce():
                if not self._put(item):
                    return
        except Exception as exc:
            logger.debug("stream producer failed: %s", exc)
            self._put(IOCResult(error=exc))
        finally:
            self._put(_CLOSED, timeout=self.CLOSE_TIMEOUT)

    def __iter__(self) -> IOCStream:
        return self

    def __next__(self) -> IOCResult:
        if self._done:
            raise StopIteration
        item = self._queue.get()
        if item is _CLOSED:
            self._done = True
            raise StopIteration
        return item

    def close(self) -> None:
        self._stop.set()
        self._done = True

    def __enter__(self) -> IOCStream:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


def collect_iocs(results) -> IOCQueryResult:
    """Drain *results* into an IOCQueryResult.

    Raises the first error item; IOCs received before it are discarded.
    """
    collected = IOCQueryResult()
    for item in results:
        if item.error is not None:
            raise item.error
        collected.iocs.append(item.ioc)
    return collected


def iter_iocs_from_json(stream) -> Iterator[IOCResult]:
    """Replay a saved JSON export (``{"iocs": [...]}``) as IOCResults.

    The whole document is decoded up front, so malformed input raises
    DecodeError before anything is yielded.
    """
    page = decode_page(stream.read())
    return iter([IOCResult(ioc=ioc) for ioc in page.iocs])
