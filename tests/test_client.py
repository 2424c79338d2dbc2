"""Tests for the pagination driver, retries and streaming."""

import io
import json
import re
import threading
from unittest.mock import MagicMock

import pytest
import requests
from requests.structures import CaseInsensitiveDict

from pytie.client import IOCStream, TieClient, collect_iocs, iter_iocs_from_json
from pytie.config import ClientSettings
from pytie.errors import (
    ClientError,
    DecodeError,
    FormatNotImplemented,
    ServerError,
    TransportError,
    UnsupportedFormat,
)
from pytie.models import IOC, IOCResult
from pytie.queries import FeedRequest, IOCRequest

API = "https://tie.example/api/v1/"


def _ioc(value):
    return {
        "id": f"id-{value}",
        "value": value,
        "data_type": "DomainName",
        "first_seen": "2017-03-01T10:00:00Z",
        "last_seen": "2017-03-02T10:00:00Z",
    }


def _page(values, has_more=False, offset=0, limit=2):
    return json.dumps(
        {
            "has_more": has_more,
            "iocs": [_ioc(v) for v in values],
            "params": {"ivalue": "google", "limit": limit, "offset": offset},
        }
    ).encode()


def _mock_response(status=200, body=b"", content_type="application/json", next_url=None):
    """Create a mock requests.Response."""
    resp = MagicMock(spec=requests.Response)
    resp.status_code = status
    resp.reason = "OK" if status < 300 else "Error"
    resp.content = body
    resp.text = body.decode("utf-8", errors="replace")
    resp.headers = CaseInsensitiveDict({"Content-Type": content_type})
    resp.links = {"next": {"url": next_url, "rel": "next"}} if next_url else {}
    resp.json.side_effect = lambda: json.loads(body)
    return resp


@pytest.fixture
def session():
    return MagicMock(spec=requests.Session)


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def client(session, sleeps):
    settings = ClientSettings(auth_token="secret", api_url=API, limit=2)
    return TieClient(settings, session=session, sleep=sleeps.append)


def _requested_urls(session):
    return [c.args[0] for c in session.get.call_args_list]


class TestLinkPagination:
    def test_google_scenario(self, client, session):
        """Two pages joined by a next link yield one 3-IOC document."""
        session.get.side_effect = [
            _mock_response(
                body=_page(["a.google.com", "b.google.com"], has_more=True),
                next_url=f"{API}iocs?cursor=abc",
            ),
            _mock_response(body=_page(["c.google.com"], offset=2)),
        ]
        out = io.BytesIO()

        client.write_iocs("google", "domainname", "", "json", out)

        doc = json.loads(out.getvalue())
        assert len(doc["iocs"]) == 3
        assert doc["params"]["limit"] == 3
        assert doc["params"]["offset"] == 0
        assert session.get.call_count == 2

    def test_follows_next_link_verbatim(self, client, session):
        session.get.side_effect = [
            _mock_response(body=b"a\n", content_type="text/csv", next_url="https://other/p2"),
            _mock_response(body=b"b\n", content_type="text/csv", next_url="https://other/p3"),
            _mock_response(body=b"c\n", content_type="text/csv"),
        ]
        out = io.BytesIO()

        client.write(IOCRequest("google", "DomainName", output_format="csv"), out)

        assert out.getvalue() == b"a\nb\nc\n"
        urls = _requested_urls(session)
        assert urls[0] == (
            f"{API}iocs?data_type=domainname&ivalue=google&limit=2&date_format=rfc3339"
        )
        assert urls[1:] == ["https://other/p2", "https://other/p3"]

    def test_single_page(self, client, session):
        session.get.return_value = _mock_response(body=_page(["a.com"]))
        out = io.BytesIO()
        client.write(FeedRequest("daily", "DomainName"), out)
        assert session.get.call_count == 1
        assert _requested_urls(session)[0].startswith(f"{API}iocs/feed/daily?data_type=domainname")

    def test_headers(self, client, session):
        session.get.return_value = _mock_response(body=b"", content_type="text/csv")
        client.write_iocs("google", "domainname", "", "csv", io.BytesIO())

        headers = session.get.call_args.kwargs["headers"]
        assert headers["Accept"] == "text/csv"
        assert headers["Authorization"] == "Bearer secret"

    def test_bloom_requests_json(self, client, session):
        session.get.return_value = _mock_response(body=_page(["a.com"]))
        client.write_iocs("google", "domainname", "", "bloom", io.BytesIO())
        assert session.get.call_args.kwargs["headers"]["Accept"] == "application/json"

    def test_pacing_delay_once_per_query(self, client, session, sleeps):
        session.get.side_effect = [
            _mock_response(body=_page(["a.com"]), next_url=f"{API}p2"),
            _mock_response(body=_page(["b.com"])),
        ]
        client.write_iocs("x", "domainname", "", "json", io.BytesIO())
        assert sleeps == [client.settings.request_delay]

    def test_unsupported_format_before_network(self, client, session):
        with pytest.raises(UnsupportedFormat):
            client.write_iocs("x", "domainname", "", "xml", io.BytesIO())
        session.get.assert_not_called()

    def test_stix_fails_loudly(self, client, session):
        session.get.return_value = _mock_response(body=b"<stix/>", content_type="text/xml")
        out = io.BytesIO()
        with pytest.raises(FormatNotImplemented):
            client.write_iocs("x", "domainname", "", "stix", out)
        assert out.getvalue() == b""

    def test_reuses_supplied_aggregator(self, client, session):
        from pytie.aggregators import JSONPageAggregator

        agg = JSONPageAggregator()
        agg.add_page(_page(["stale.com"]))
        session.get.return_value = _mock_response(body=_page(["fresh.com"]))
        out = io.BytesIO()

        client.write(IOCRequest("x", "domainname"), out, aggregator=agg)

        values = [i["value"] for i in json.loads(out.getvalue())["iocs"]]
        assert values == ["fresh.com"]

    def test_nothing_written_on_failure(self, client, session):
        session.get.side_effect = [
            _mock_response(body=_page(["a.com"]), next_url=f"{API}p2"),
            _mock_response(status=403, body=b'{"message": "forbidden"}'),
        ]
        out = io.BytesIO()
        with pytest.raises(ClientError):
            client.write_iocs("x", "domainname", "", "json", out)
        assert out.getvalue() == b""


class TestRetry:
    def test_recovers_after_two_server_errors(self, client, session, sleeps):
        session.get.side_effect = [
            _mock_response(status=500, body=b"boom"),
            _mock_response(status=502, body=b"bad gateway"),
            _mock_response(body=_page(["a.com"])),
        ]
        out = io.BytesIO()

        client.write_iocs("x", "domainname", "", "json", out)

        assert session.get.call_count == 3
        retry_waits = sleeps[1:]
        assert retry_waits == [5.0, 10.0]
        assert len(json.loads(out.getvalue())["iocs"]) == 1

    def test_gives_up_after_max_retries(self, client, session, sleeps):
        session.get.side_effect = [
            _mock_response(status=503, body=b"busy"),
            _mock_response(status=503, body=b"busy"),
            _mock_response(status=500, body=b"down"),
            _mock_response(body=_page(["never.com"])),
        ]

        with pytest.raises(ServerError) as excinfo:
            client.write_iocs("x", "domainname", "", "json", io.BytesIO())

        assert excinfo.value.status == 500
        assert session.get.call_count == 3
        assert sleeps[1:] == [5.0, 10.0]

    def test_same_url_retried(self, client, session):
        session.get.side_effect = [
            _mock_response(status=500),
            _mock_response(body=_page([])),
        ]
        client.write_iocs("x", "domainname", "", "json", io.BytesIO())
        urls = _requested_urls(session)
        assert urls[0] == urls[1]

    def test_client_error_not_retried(self, client, session, sleeps):
        session.get.return_value = _mock_response(
            status=400,
            body=b'{"message": "invalid data_type", "errors": {"data_type": ["unknown"]}}',
        )

        with pytest.raises(ClientError) as excinfo:
            client.write_iocs("x", "bogus", "", "json", io.BytesIO())

        assert session.get.call_count == 1
        assert excinfo.value.status == 400
        assert excinfo.value.message == "invalid data_type"
        assert excinfo.value.errors == {"data_type": ["unknown"]}
        assert sleeps == [client.settings.request_delay]

    def test_redirect_status_is_client_error(self, client, session):
        session.get.return_value = _mock_response(status=302, body=b"moved", content_type="text/html")
        with pytest.raises(ClientError):
            client.write_iocs("x", "domainname", "", "csv", io.BytesIO())

    def test_non_json_error_body(self, client, session):
        session.get.return_value = _mock_response(
            status=401, body=b"Unauthorized", content_type="text/plain"
        )
        with pytest.raises(ClientError, match="Unauthorized"):
            client.write_iocs("x", "domainname", "", "csv", io.BytesIO())

    def test_transport_error_not_retried(self, client, session):
        session.get.side_effect = requests.ConnectionError("connection refused")
        with pytest.raises(TransportError):
            client.write_iocs("x", "domainname", "", "csv", io.BytesIO())
        assert session.get.call_count == 1


class TestOffsetPagination:
    def test_pages_until_has_more_false(self, client, session):
        session.get.side_effect = [
            _mock_response(body=_page(["a.com", "b.com"], has_more=True)),
            _mock_response(body=_page(["c.com", "d.com"], has_more=True, offset=2)),
            _mock_response(body=_page(["e.com"], offset=4)),
        ]

        values = [r.ioc.value for r in client.iter_iocs(IOCRequest("x", "domainname"))]

        assert values == ["a.com", "b.com", "c.com", "d.com", "e.com"]
        assert session.get.call_count == 3
        offsets = [re.search(r"&offset=(\d+)$", u).group(1) for u in _requested_urls(session)]
        assert offsets == ["0", "2", "4"]

    def test_ignores_link_header(self, client, session):
        session.get.side_effect = [
            _mock_response(body=_page(["a.com"]), next_url="https://elsewhere/p2"),
        ]
        results = list(client.iter_iocs(IOCRequest("x", "domainname")))
        assert len(results) == 1
        assert session.get.call_count == 1

    def test_always_requests_json(self, client, session):
        session.get.return_value = _mock_response(body=_page([]))
        list(client.iter_iocs(FeedRequest("daily", "ipv4")))
        assert session.get.call_args.kwargs["headers"]["Accept"] == "application/json"

    def test_error_ends_sequence(self, client, session):
        session.get.side_effect = [
            _mock_response(body=_page(["a.com"], has_more=True)),
            _mock_response(status=404, body=b'{"message": "gone"}'),
        ]

        results = list(client.iter_iocs(IOCRequest("x", "domainname")))

        assert [r.ok for r in results] == [True, False]
        assert isinstance(results[-1].error, ClientError)

    def test_malformed_page(self, client, session):
        session.get.return_value = _mock_response(body=b"{oops")
        results = list(client.iter_iocs(IOCRequest("x", "domainname")))
        assert len(results) == 1
        assert isinstance(results[0].error, DecodeError)

    def test_get_iocs(self, client, session):
        session.get.side_effect = [
            _mock_response(body=_page(["a.google.com", "b.google.com"], has_more=True)),
            _mock_response(body=_page(["c.google.com"], offset=2)),
        ]
        result = client.get_iocs("google", "domainname")
        assert [i.value for i in result.iocs] == ["a.google.com", "b.google.com", "c.google.com"]

    def test_get_feed_raises(self, client, session):
        session.get.return_value = _mock_response(status=400, body=b'{"message": "bad period"}')
        with pytest.raises(ClientError, match="bad period"):
            client.get_feed("yearly", "domainname")


class TestStreaming:
    def test_stream_yields_in_order(self, client, session):
        session.get.side_effect = [
            _mock_response(body=_page(["a.com", "b.com"], has_more=True)),
            _mock_response(body=_page(["c.com"], offset=2)),
        ]

        with client.stream_iocs(IOCRequest("x", "domainname")) as stream:
            values = [r.ioc.value for r in stream]

        assert values == ["a.com", "b.com", "c.com"]

    def test_stream_is_single_pass(self, client, session):
        session.get.return_value = _mock_response(body=_page(["a.com"]))
        stream = client.stream_iocs(IOCRequest("x", "domainname"))
        assert len(list(stream)) == 1
        assert list(stream) == []

    def test_producer_failure_closes_stream(self):
        def produce():
            raise RuntimeError("cannot build request")

        results = list(IOCStream(produce))

        assert len(results) == 1
        assert isinstance(results[0].error, RuntimeError)

    def test_close_stops_producer(self):
        produced = threading.Event()

        def produce():
            while True:
                produced.set()
                yield IOCResult(ioc=IOC(value="a.com"))

        stream = IOCStream(produce, maxsize=1)
        assert next(stream).ioc.value == "a.com"
        stream.close()
        stream._thread.join(timeout=5)

        assert produced.is_set()
        assert not stream._thread.is_alive()
        assert list(stream) == []

    def test_unread_stream_releases_finished_producer(self, monkeypatch):
        monkeypatch.setattr(IOCStream, "CLOSE_TIMEOUT", 0.2)

        def produce():
            yield IOCResult(ioc=IOC(value="a.com"))

        # queue holds the only item, so the end marker never fits
        stream = IOCStream(produce, maxsize=1)
        stream._thread.join(timeout=5)

        assert not stream._thread.is_alive()
        assert next(stream).ioc.value == "a.com"


class TestCollect:
    def test_collects(self):
        results = [IOCResult(ioc=IOC(value="a.com")), IOCResult(ioc=IOC(value="b.com"))]
        assert [i.value for i in collect_iocs(results).iocs] == ["a.com", "b.com"]

    def test_raises_first_error(self):
        err = ServerError(500)
        results = [
            IOCResult(ioc=IOC(value="a.com")),
            IOCResult(error=err),
            IOCResult(error=ClientError(400, "later")),
        ]
        with pytest.raises(ServerError) as excinfo:
            collect_iocs(results)
        assert excinfo.value is err


class TestJSONInput:
    def test_replays_export(self):
        doc = io.BytesIO(_page(["a.com", "b.com"]))
        values = [r.ioc.value for r in iter_iocs_from_json(doc)]
        assert values == ["a.com", "b.com"]

    def test_text_stream(self):
        doc = io.StringIO(_page(["a.com"]).decode())
        assert len(list(iter_iocs_from_json(doc))) == 1

    def test_malformed(self):
        with pytest.raises(DecodeError):
            iter_iocs_from_json(io.BytesIO(b"not json"))


class TestPingback:
    def test_posts_form(self, session):
        settings = ClientSettings(pingback_url="https://fb.example/api/v1/", pingback_token="pb")
        session.post.return_value = _mock_response(status=201, body=b"created", content_type="text/plain")
        client = TieClient(settings, session=session)

        resp = client.pingback("domainname", "evil.example.com")

        assert resp.status_code == 201
        args, kwargs = session.post.call_args
        assert args[0] == "https://fb.example/api/v1/submit"
        assert kwargs["headers"]["Authorization"] == "Bearer pb"
        form = kwargs["data"]
        assert form["data_type"] == "domainname"
        assert form["value"] == "evil.example.com"
        assert re.fullmatch(r"\d{4}-\d\d-\d\dT\d\d:\d\d:\d\dZ", form["seen"])

    def test_explicit_token(self, session):
        session.post.return_value = _mock_response(status=200)
        TieClient(ClientSettings(), session=session).pingback("ipv4", "1.2.3.4", token="other")
        assert session.post.call_args.kwargs["headers"]["Authorization"] == "Bearer other"

    def test_error_status(self, session):
        session.post.return_value = _mock_response(status=403, body=b'{"message": "denied"}')
        with pytest.raises(ClientError, match="denied"):
            TieClient(ClientSettings(), session=session).pingback("ipv4", "1.2.3.4")
