from __future__ import annotations

from datetime import datetime, timezone
from urllib.error import HTTPError

import pytest

from calfeed.connectors.webcal import WebCalClient, normalize_webcal_url
from calfeed.errors import RemoteFetchError, WebCalNotFoundError

FEED_TEXT = """BEGIN:VCALENDAR
VERSION:2.0
X-WR-CALNAME:Public Holidays
BEGIN:VEVENT
UID:new-year
DTSTART;VALUE=DATE:20240101
SUMMARY:New Year
END:VEVENT
END:VCALENDAR
"""


class _ResponseStub:
    def __init__(self, payload: bytes, headers: dict[str, str]):
        self.payload = payload
        self.headers = headers
        self.status = 200

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def read(self) -> bytes:
        return self.payload


def test_normalize_webcal_url_rewrites_scheme() -> None:
    assert normalize_webcal_url("webcal://example.com/holidays.ics") == "https://example.com/holidays.ics"
    assert normalize_webcal_url(" https://example.com/a.ics ") == "https://example.com/a.ics"


def test_fetch_document_reads_calendar_name_and_etag(monkeypatch) -> None:
    seen = []

    def _urlopen(request, timeout):
        seen.append(request.full_url)
        return _ResponseStub(
            FEED_TEXT.encode("utf-8"),
            {"Content-Type": "text/calendar; charset=utf-8", "ETag": '"v1"'},
        )

    monkeypatch.setattr("calfeed.connectors.webcal.urlopen", _urlopen)

    document = WebCalClient(url="webcal://example.com/holidays.ics").fetch_document()

    assert seen == ["https://example.com/holidays.ics"]
    assert document.name == "Public Holidays"
    assert document.etag == '"v1"'
    assert "UID:new-year" in document.text


def test_fetch_calendar_objects_uses_etag_as_sync_token(monkeypatch) -> None:
    monkeypatch.setattr(
        "calfeed.connectors.webcal.urlopen",
        lambda request, timeout: _ResponseStub(
            FEED_TEXT.encode("utf-8"),
            {"Content-Type": "text/calendar", "ETag": '"v2"'},
        ),
    )

    batch = WebCalClient(url="https://example.com/holidays.ics").fetch_calendar_objects(
        datetime(2023, 1, 1, tzinfo=timezone.utc),
        datetime(2025, 12, 31, tzinfo=timezone.utc),
    )

    assert len(batch.objects) == 1
    assert batch.sync_token == '"v2"'


def test_non_calendar_content_type_is_not_found(monkeypatch) -> None:
    monkeypatch.setattr(
        "calfeed.connectors.webcal.urlopen",
        lambda request, timeout: _ResponseStub(b"<html></html>", {"Content-Type": "text/html"}),
    )

    with pytest.raises(WebCalNotFoundError) as exc_info:
        WebCalClient(url="https://example.com/page").fetch_document()
    assert exc_info.value.status_code == 404
    assert str(exc_info.value) == "WebCal not found"


def test_http_error_keeps_status_code(monkeypatch) -> None:
    def _raise_503(request, timeout):
        raise HTTPError(request.full_url, 503, "unavailable", hdrs=None, fp=None)

    monkeypatch.setattr("calfeed.connectors.webcal.urlopen", _raise_503)

    client = WebCalClient(url="https://example.com/holidays.ics")
    with pytest.raises(RemoteFetchError) as exc_info:
        client.fetch_document()
    assert exc_info.value.status_code == 503
    assert client.test_connection() is False


def test_client_rejects_unknown_scheme() -> None:
    with pytest.raises(RemoteFetchError, match="scheme"):
        WebCalClient(url="ftp://example.com/holidays.ics")
