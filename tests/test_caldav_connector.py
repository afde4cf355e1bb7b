from __future__ import annotations

import base64
from datetime import datetime, timezone
from urllib.error import HTTPError, URLError

import pytest

from calfeed.connectors.caldav import CalDavClient
from calfeed.errors import AccountConfigurationError, RemoteFetchError
from calfeed.models import ConnectedAccount, FeedType

WINDOW_START = datetime(2023, 1, 1, tzinfo=timezone.utc)
WINDOW_END = datetime(2025, 12, 31, 23, 59, 59, tzinfo=timezone.utc)

REPORT_PAYLOAD = b"""<?xml version="1.0" encoding="utf-8"?>
<d:multistatus xmlns:d="DAV:" xmlns:c="urn:ietf:params:xml:ns:caldav">
  <d:response>
    <d:href>/calendars/alice/work/standup.ics</d:href>
    <d:propstat>
      <d:prop>
        <d:getetag>"etag-1"</d:getetag>
        <c:calendar-data>BEGIN:VCALENDAR
VERSION:2.0
BEGIN:VEVENT
UID:standup
DTSTART:20240101T090000Z
RRULE:FREQ=DAILY;COUNT=5
END:VEVENT
END:VCALENDAR</c:calendar-data>
      </d:prop>
      <d:status>HTTP/1.1 200 OK</d:status>
    </d:propstat>
  </d:response>
  <d:response>
    <d:href>/calendars/alice/work/missing.ics</d:href>
    <d:propstat>
      <d:prop><c:calendar-data /></d:prop>
      <d:status>HTTP/1.1 404 Not Found</d:status>
    </d:propstat>
  </d:response>
</d:multistatus>
"""

PROPS_PAYLOAD = b"""<?xml version="1.0" encoding="utf-8"?>
<d:multistatus xmlns:d="DAV:" xmlns:cs="http://calendarserver.org/ns/">
  <d:response>
    <d:href>/calendars/alice/work/</d:href>
    <d:propstat>
      <d:prop>
        <cs:getctag>ctag-7</cs:getctag>
        <d:sync-token>https://example.com/sync/42</d:sync-token>
      </d:prop>
      <d:status>HTTP/1.1 200 OK</d:status>
    </d:propstat>
  </d:response>
</d:multistatus>
"""


class _ResponseStub:
    def __init__(self, payload: bytes, *, status: int = 207, headers: dict[str, str] | None = None):
        self.payload = payload
        self.status = status
        self.headers = headers or {}

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def read(self) -> bytes:
        return self.payload


def _client(**overrides) -> CalDavClient:
    fields = dict(
        base_url="https://caldav.example.com/",
        username="alice@example.com",
        password="secret",
        calendar_url="https://caldav.example.com/calendars/alice/work/",
    )
    fields.update(overrides)
    return CalDavClient(**fields)


def test_fetch_calendar_objects_sends_time_bounded_report(monkeypatch) -> None:
    requests = []

    def _urlopen(request, timeout):
        requests.append(request)
        if request.get_method() == "REPORT":
            return _ResponseStub(REPORT_PAYLOAD)
        return _ResponseStub(PROPS_PAYLOAD)

    monkeypatch.setattr("calfeed.connectors.caldav.urlopen", _urlopen)

    batch = _client().fetch_calendar_objects(WINDOW_START, WINDOW_END)

    report = requests[0]
    body = report.data.decode("utf-8")
    assert report.get_method() == "REPORT"
    assert report.full_url == "https://caldav.example.com/calendars/alice/work/"
    assert report.get_header("Depth") == "1"
    expected_auth = base64.b64encode(b"alice@example.com:secret").decode("ascii")
    assert report.get_header("Authorization") == f"Basic {expected_auth}"
    assert '<c:comp-filter name="VEVENT">' in body
    assert 'start="20230101T000000Z"' in body
    assert 'end="20251231T235959Z"' in body

    assert len(batch.objects) == 1
    assert batch.objects[0].href == "https://caldav.example.com/calendars/alice/work/standup.ics"
    assert batch.objects[0].etag == '"etag-1"'
    assert "UID:standup" in batch.objects[0].data
    assert batch.sync_token == "https://example.com/sync/42"


def test_fetch_calendar_objects_raises_with_status_code_on_server_error(monkeypatch) -> None:
    def _raise_500(request, timeout):
        raise HTTPError(request.full_url, 500, "server error", hdrs=None, fp=None)

    monkeypatch.setattr("calfeed.connectors.caldav.urlopen", _raise_500)

    with pytest.raises(RemoteFetchError, match="HTTP 500") as exc_info:
        _client().fetch_calendar_objects(WINDOW_START, WINDOW_END)
    assert exc_info.value.status_code == 500


def test_fetch_calendar_objects_keeps_report_when_sync_token_is_forbidden(monkeypatch) -> None:
    def _urlopen(request, timeout):
        if request.get_method() == "REPORT":
            return _ResponseStub(REPORT_PAYLOAD)
        raise HTTPError(request.full_url, 403, "forbidden", hdrs=None, fp=None)

    monkeypatch.setattr("calfeed.connectors.caldav.urlopen", _urlopen)

    batch = _client().fetch_calendar_objects(WINDOW_START, WINDOW_END)

    assert [item.href for item in batch.objects] == ["https://caldav.example.com/calendars/alice/work/standup.ics"]
    assert batch.sync_token is None


def test_request_maps_transport_failures(monkeypatch) -> None:
    client = _client()

    def _raise_401(request, timeout):
        raise HTTPError(request.full_url, 401, "unauthorized", hdrs=None, fp=None)

    monkeypatch.setattr("calfeed.connectors.caldav.urlopen", _raise_401)
    with pytest.raises(RemoteFetchError, match="authentication failed"):
        client.request(client.base_url, method="PROPFIND", depth="0", body="<x/>")

    monkeypatch.setattr(
        "calfeed.connectors.caldav.urlopen",
        lambda request, timeout: (_ for _ in ()).throw(URLError("down")),
    )
    with pytest.raises(RemoteFetchError, match="unreachable"):
        client.request(client.base_url, method="PROPFIND", depth="0", body="<x/>")

    monkeypatch.setattr(
        "calfeed.connectors.caldav.urlopen",
        lambda request, timeout: (_ for _ in ()).throw(TimeoutError()),
    )
    with pytest.raises(RemoteFetchError, match="timed out"):
        client.request(client.base_url, method="PROPFIND", depth="0", body="<x/>")


def test_invalid_xml_response_is_reported(monkeypatch) -> None:
    monkeypatch.setattr("calfeed.connectors.caldav.urlopen", lambda request, timeout: _ResponseStub(b"not xml"))

    with pytest.raises(RemoteFetchError, match="invalid"):
        _client().fetch_calendar_objects(WINDOW_START, WINDOW_END)


def test_client_rejects_plain_http() -> None:
    with pytest.raises(AccountConfigurationError, match="https"):
        _client(base_url="http://caldav.example.com/")


def test_object_url_joins_collection_and_uid() -> None:
    assert _client().object_url("abc-123") == "https://caldav.example.com/calendars/alice/work/abc-123.ics"


def test_from_account_prefers_caldav_username_and_stored_token() -> None:
    account = ConnectedAccount(
        id=1,
        user_id="local",
        provider=FeedType.CALDAV,
        email="alice@example.com",
        caldav_url="https://caldav.example.com/",
        caldav_username="alice",
        access_token="app-password",
    )

    client = CalDavClient.from_account(account, calendar_path="/calendars/alice/work/")

    assert client.username == "alice"
    assert client.password == "app-password"
    assert client.calendar_url == "https://caldav.example.com/calendars/alice/work/"


def test_from_account_requires_credentials(monkeypatch) -> None:
    monkeypatch.delenv("CALFEED_CALDAV_PASSWORD", raising=False)
    monkeypatch.setattr("calfeed.secret_store.keychain_password_lookup", lambda **kwargs: None)
    account = ConnectedAccount(
        id=2,
        user_id="local",
        provider=FeedType.CALDAV,
        email="bob@example.com",
        caldav_url="https://caldav.example.com/",
    )

    with pytest.raises(AccountConfigurationError, match="no CalDAV credentials"):
        CalDavClient.from_account(account)


def test_from_account_reads_password_from_env(monkeypatch) -> None:
    monkeypatch.setenv("CALFEED_CALDAV_PASSWORD", "env-secret")
    account = ConnectedAccount(
        id=3,
        user_id="local",
        provider=FeedType.CALDAV,
        email="bob@example.com",
        caldav_url="https://caldav.example.com/",
    )

    client = CalDavClient.from_account(account)

    assert client.username == "bob@example.com"
    assert client.password == "env-secret"


def test_discover_calendars_follows_principal_and_prefers_vevent_collections(monkeypatch) -> None:
    root_payload = b"""<?xml version="1.0" encoding="utf-8"?>
<d:multistatus xmlns:d="DAV:">
  <d:response>
    <d:href>/</d:href>
    <d:propstat>
      <d:prop>
        <d:current-user-principal><d:href>/principals/alice/</d:href></d:current-user-principal>
      </d:prop>
      <d:status>HTTP/1.1 200 OK</d:status>
    </d:propstat>
  </d:response>
</d:multistatus>
"""
    principal_payload = b"""<?xml version="1.0" encoding="utf-8"?>
<d:multistatus xmlns:d="DAV:" xmlns:c="urn:ietf:params:xml:ns:caldav">
  <d:response>
    <d:href>/principals/alice/</d:href>
    <d:propstat>
      <d:prop>
        <c:calendar-home-set><d:href>/calendars/alice/</d:href></c:calendar-home-set>
      </d:prop>
      <d:status>HTTP/1.1 200 OK</d:status>
    </d:propstat>
  </d:response>
</d:multistatus>
"""
    collections_payload = b"""<?xml version="1.0" encoding="utf-8"?>
<d:multistatus xmlns:d="DAV:" xmlns:c="urn:ietf:params:xml:ns:caldav" xmlns:a="http://apple.com/ns/ical/">
  <d:response>
    <d:href>/calendars/alice/</d:href>
    <d:propstat>
      <d:prop><d:resourcetype><d:collection /></d:resourcetype></d:prop>
      <d:status>HTTP/1.1 200 OK</d:status>
    </d:propstat>
  </d:response>
  <d:response>
    <d:href>/calendars/alice/tasks/</d:href>
    <d:propstat>
      <d:prop>
        <d:resourcetype><d:collection /><c:calendar /></d:resourcetype>
        <d:displayname>Tasks</d:displayname>
        <c:supported-calendar-component-set><c:comp name="VTODO" /></c:supported-calendar-component-set>
      </d:prop>
      <d:status>HTTP/1.1 200 OK</d:status>
    </d:propstat>
  </d:response>
  <d:response>
    <d:href>/calendars/alice/work/</d:href>
    <d:propstat>
      <d:prop>
        <d:resourcetype><d:collection /><c:calendar /></d:resourcetype>
        <d:displayname>Work</d:displayname>
        <a:calendar-color>#5E81ACFF</a:calendar-color>
        <c:supported-calendar-component-set><c:comp name="VEVENT" /></c:supported-calendar-component-set>
      </d:prop>
      <d:status>HTTP/1.1 200 OK</d:status>
    </d:propstat>
  </d:response>
</d:multistatus>
"""
    payloads = {
        "https://caldav.example.com/": root_payload,
        "https://caldav.example.com/principals/alice/": principal_payload,
        "https://caldav.example.com/calendars/alice/": collections_payload,
    }
    monkeypatch.setattr(
        "calfeed.connectors.caldav.urlopen",
        lambda request, timeout: _ResponseStub(payloads[request.full_url]),
    )

    calendars = _client(calendar_url=None).discover_calendars()

    assert [item.display_name for item in calendars] == ["Work", "Tasks"]
    assert calendars[0].url == "https://caldav.example.com/calendars/alice/work/"
    assert calendars[0].color == "#5E81AC"
    assert calendars[0].supports_vevent is True
    assert calendars[1].supports_vevent is False


def test_connection_check_returns_false_on_auth_failure(monkeypatch) -> None:
    def _raise_403(request, timeout):
        raise HTTPError(request.full_url, 403, "forbidden", hdrs=None, fp=None)

    monkeypatch.setattr("calfeed.connectors.caldav.urlopen", _raise_403)

    assert _client().test_connection() is False


def test_connection_check_returns_true_on_success(monkeypatch) -> None:
    monkeypatch.setattr("calfeed.connectors.caldav.urlopen", lambda request, timeout: _ResponseStub(b"<ok/>"))

    assert _client().test_connection() is True
