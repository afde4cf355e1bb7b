from __future__ import annotations

import base64
import logging
from dataclasses import dataclass, field
from datetime import datetime
from urllib.error import HTTPError, URLError
from urllib.parse import urljoin, urlparse
from urllib.request import Request, urlopen
import xml.etree.ElementTree as ET

from calfeed.connectors.base import CalendarObject, FetchBatch
from calfeed.errors import AccountConfigurationError, RemoteFetchError
from calfeed.models import ConnectedAccount
from calfeed.secret_store import resolve_caldav_password
from calfeed.timeutil import format_caldav_time

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SEC = 30.0

_NS_DAV = "DAV:"
_NS_CALDAV = "urn:ietf:params:xml:ns:caldav"
_NS_APPLE = "http://apple.com/ns/ical/"

_CALENDAR_QUERY_TEMPLATE = """<?xml version="1.0" encoding="utf-8"?>
<c:calendar-query xmlns:d="DAV:" xmlns:c="urn:ietf:params:xml:ns:caldav">
  <d:prop>
    <d:getetag />
    <c:calendar-data />
  </d:prop>
  <c:filter>
    <c:comp-filter name="VCALENDAR">
      <c:comp-filter name="VEVENT">
        <c:time-range start="{start}" end="{end}" />
      </c:comp-filter>
    </c:comp-filter>
  </c:filter>
</c:calendar-query>
"""

_COLLECTION_PROPS_BODY = """<?xml version="1.0" encoding="utf-8"?>
<d:propfind xmlns:d="DAV:" xmlns:cs="http://calendarserver.org/ns/">
  <d:prop>
    <cs:getctag />
    <d:sync-token />
  </d:prop>
</d:propfind>
"""

_PRINCIPAL_BODY = """<?xml version="1.0" encoding="utf-8"?>
<d:propfind xmlns:d="DAV:" xmlns:c="urn:ietf:params:xml:ns:caldav">
  <d:prop>
    <d:current-user-principal />
    <c:calendar-home-set />
  </d:prop>
</d:propfind>
"""

_COLLECTIONS_BODY = """<?xml version="1.0" encoding="utf-8"?>
<d:propfind xmlns:d="DAV:" xmlns:c="urn:ietf:params:xml:ns:caldav" xmlns:a="http://apple.com/ns/ical/">
  <d:prop>
    <d:resourcetype />
    <d:displayname />
    <a:calendar-color />
    <c:supported-calendar-component-set />
  </d:prop>
</d:propfind>
"""


@dataclass(frozen=True)
class DiscoveredCalendar:
    url: str
    display_name: str
    color: str | None = None
    supports_vevent: bool = True


@dataclass(frozen=True)
class HttpResponse:
    status: int
    body: bytes
    headers: dict[str, str] = field(default_factory=dict)

    def header(self, name: str) -> str | None:
        return self.headers.get(name.lower())


@dataclass(frozen=True)
class CalDavClient:
    """Synchronous CalDAV client over ``urllib`` with Basic auth.

    ``base_url`` is the server or principal URL used for discovery;
    ``calendar_url`` is the collection events are read from and written to.
    """

    base_url: str
    username: str
    password: str
    calendar_url: str | None = None
    timeout_sec: float = DEFAULT_TIMEOUT_SEC

    def __post_init__(self) -> None:
        parsed = urlparse(self.base_url)
        if parsed.scheme.lower() != "https":
            raise AccountConfigurationError("CalDAV URL must use https://")

    @classmethod
    def from_account(
        cls,
        account: ConnectedAccount,
        *,
        calendar_path: str | None = None,
        timeout_sec: float = DEFAULT_TIMEOUT_SEC,
    ) -> CalDavClient:
        base_url = (account.caldav_url or "").strip()
        username = (account.caldav_username or account.email or "").strip()
        if not base_url:
            raise AccountConfigurationError(f"Account {account.id} has no CalDAV URL configured.")
        password = resolve_caldav_password(account=username, stored_token=account.access_token)
        if not username or not password:
            raise AccountConfigurationError(
                f"Account {account.id} has no CalDAV credentials. Store a password with "
                "'calfeed account add --password' or set CALFEED_CALDAV_PASSWORD."
            )
        calendar_url = urljoin(base_url, calendar_path) if calendar_path else None
        return cls(
            base_url=base_url,
            username=username,
            password=password,
            calendar_url=calendar_url,
            timeout_sec=timeout_sec,
        )

    @property
    def collection_url(self) -> str:
        return self.calendar_url or self.base_url

    def object_url(self, external_event_id: str) -> str:
        return f"{self.collection_url.rstrip('/')}/{external_event_id}.ics"

    def resolve(self, href: str) -> str:
        return urljoin(self.collection_url, href)

    def fetch_calendar_objects(self, start: datetime, end: datetime) -> FetchBatch:
        body = _CALENDAR_QUERY_TEMPLATE.format(start=format_caldav_time(start), end=format_caldav_time(end))
        response = self.request(self.collection_url, method="REPORT", depth="1", body=body)
        root = _parse_xml(response.body)

        objects: list[CalendarObject] = []
        for item in root.findall(f".//{{{_NS_DAV}}}response"):
            href = (item.findtext(f"{{{_NS_DAV}}}href") or "").strip()
            etag, calendar_data = _extract_event_payload(item)
            if calendar_data is None:
                continue
            objects.append(CalendarObject(href=self.resolve(href), data=calendar_data, etag=etag))

        try:
            props = self.fetch_collection_props()
        except RemoteFetchError as exc:
            logger.warning(
                "caldav_sync_token_unavailable collection=%s status=%s",
                urlparse(self.collection_url).path,
                exc.status_code,
            )
            props = {}
        sync_token = props.get("sync_token") or props.get("ctag")
        logger.info(
            "caldav_fetch_completed collection=%s objects=%s",
            urlparse(self.collection_url).path,
            len(objects),
        )
        return FetchBatch(objects=objects, sync_token=sync_token)

    def fetch_collection_props(self) -> dict[str, str]:
        response = self.request(self.collection_url, method="PROPFIND", depth="0", body=_COLLECTION_PROPS_BODY)
        root = _parse_xml(response.body)

        result: dict[str, str] = {}
        for prop in root.findall(f".//{{{_NS_DAV}}}prop"):
            for node in list(prop):
                local_name = node.tag.split("}", maxsplit=1)[-1]
                value = (node.text or "").strip()
                if not value:
                    continue
                if local_name == "getctag":
                    result["ctag"] = value
                elif local_name == "sync-token":
                    result["sync_token"] = value
        return result

    def discover_calendars(self) -> list[DiscoveredCalendar]:
        calendar_home_url = self._discover_calendar_home_url()
        if calendar_home_url is None:
            raise RemoteFetchError("CalDAV calendar-home-set discovery failed. Check the account URL.")

        response = self.request(calendar_home_url, method="PROPFIND", depth="1", body=_COLLECTIONS_BODY)
        root = _parse_xml(response.body)

        candidates: list[DiscoveredCalendar] = []
        for item in root.findall(f".//{{{_NS_DAV}}}response"):
            href = (item.findtext(f"{{{_NS_DAV}}}href") or "").strip()
            if not href:
                continue

            is_calendar = False
            supports_vevent = False
            display_name = ""
            color: str | None = None
            for propstat in item.findall(f"{{{_NS_DAV}}}propstat"):
                status = (propstat.findtext(f"{{{_NS_DAV}}}status") or "").strip()
                if "200" not in status:
                    continue
                prop = propstat.find(f"{{{_NS_DAV}}}prop")
                if prop is None:
                    continue

                resource_type = prop.find(f"{{{_NS_DAV}}}resourcetype")
                if resource_type is not None and resource_type.find(f"{{{_NS_CALDAV}}}calendar") is not None:
                    is_calendar = True
                if not display_name:
                    display_name = (prop.findtext(f"{{{_NS_DAV}}}displayname") or "").strip()
                if color is None:
                    color = _normalize_color(prop.findtext(f"{{{_NS_APPLE}}}calendar-color"))
                supported = prop.find(f"{{{_NS_CALDAV}}}supported-calendar-component-set")
                if supported is None:
                    supports_vevent = True
                    continue
                for comp in supported.findall(f"{{{_NS_CALDAV}}}comp"):
                    if (comp.attrib.get("name") or "").upper() == "VEVENT":
                        supports_vevent = True

            if not is_calendar:
                continue
            url = urljoin(calendar_home_url, href)
            candidates.append(
                DiscoveredCalendar(
                    url=url,
                    display_name=display_name or urlparse(url).path.rstrip("/").rsplit("/", 1)[-1],
                    color=color,
                    supports_vevent=supports_vevent,
                )
            )

        def _rank(item: DiscoveredCalendar) -> tuple[int, int, str]:
            prefer_vevent = 0 if item.supports_vevent else 1
            prefer_primary_name = 0 if item.display_name.strip().lower() in {"primary", "default", "main"} else 1
            return (prefer_vevent, prefer_primary_name, urlparse(item.url).path.lower())

        return sorted(candidates, key=_rank)

    def test_connection(self) -> bool:
        try:
            self.request(self.base_url, method="PROPFIND", depth="0", body=_PRINCIPAL_BODY)
        except RemoteFetchError as exc:
            logger.warning("caldav_connection_test_failed status=%s", exc.status_code)
            return False
        return True

    def _discover_calendar_home_url(self) -> str | None:
        response = self.request(self.base_url, method="PROPFIND", depth="0", body=_PRINCIPAL_BODY)
        root = _parse_xml(response.body)

        calendar_home_href = _extract_first_href(root, f"{{{_NS_CALDAV}}}calendar-home-set/{{{_NS_DAV}}}href")
        if calendar_home_href:
            return urljoin(self.base_url, calendar_home_href)

        principal_href = _extract_first_href(root, f"{{{_NS_DAV}}}current-user-principal/{{{_NS_DAV}}}href")
        if not principal_href:
            return None

        principal_url = urljoin(self.base_url, principal_href)
        principal_response = self.request(principal_url, method="PROPFIND", depth="0", body=_PRINCIPAL_BODY)
        principal_root = _parse_xml(principal_response.body)
        home_href = _extract_first_href(
            principal_root, f"{{{_NS_CALDAV}}}calendar-home-set/{{{_NS_DAV}}}href"
        )
        if not home_href:
            return None
        return urljoin(principal_url, home_href)

    def request(
        self,
        url: str,
        *,
        method: str,
        body: str | None = None,
        depth: str | None = None,
        content_type: str = "application/xml; charset=utf-8",
        extra_headers: dict[str, str] | None = None,
    ) -> HttpResponse:
        """Send one authenticated request; non-2xx raises :class:`RemoteFetchError`."""
        auth = base64.b64encode(f"{self.username}:{self.password}".encode("utf-8")).decode("ascii")
        headers = {"Authorization": f"Basic {auth}"}
        if body is not None:
            headers["Content-Type"] = content_type
        if depth is not None:
            headers["Depth"] = depth
        if extra_headers:
            headers.update(extra_headers)

        request = Request(
            url,
            data=body.encode("utf-8") if body is not None else None,
            method=method,
            headers=headers,
        )

        try:
            with urlopen(request, timeout=self.timeout_sec) as response:
                status = getattr(response, "status", 200)
                response_headers = {key.lower(): value for key, value in response.headers.items()}
                return HttpResponse(status=status, body=response.read(), headers=response_headers)
        except HTTPError as exc:
            if exc.code in (401, 403):
                logger.warning("caldav_auth_failed method=%s status=%s", method, exc.code)
                raise RemoteFetchError("CalDAV authentication failed.", status_code=exc.code) from None
            logger.warning("caldav_request_failed method=%s status=%s", method, exc.code)
            raise RemoteFetchError(
                f"CalDAV {method} failed with HTTP {exc.code}.", status_code=exc.code
            ) from None
        except URLError:
            raise RemoteFetchError("CalDAV endpoint is unreachable.") from None
        except TimeoutError:
            raise RemoteFetchError("CalDAV request timed out.") from None


def _parse_xml(payload: bytes) -> ET.Element:
    try:
        return ET.fromstring(payload)
    except ET.ParseError:
        raise RemoteFetchError("CalDAV response is invalid.") from None


def _extract_first_href(root: ET.Element, path: str) -> str | None:
    for prop in root.findall(f".//{{{_NS_DAV}}}prop"):
        href = (prop.findtext(path) or "").strip()
        if href:
            return href
    return None


def _extract_event_payload(response: ET.Element) -> tuple[str | None, str | None]:
    etag: str | None = None
    calendar_data: str | None = None
    for propstat in response.findall(f"{{{_NS_DAV}}}propstat"):
        status = (propstat.findtext(f"{{{_NS_DAV}}}status") or "").strip()
        if "200" not in status:
            continue

        prop = propstat.find(f"{{{_NS_DAV}}}prop")
        if prop is None:
            continue
        etag = (prop.findtext(f"{{{_NS_DAV}}}getetag") or "").strip() or etag
        calendar_data = (prop.findtext(f"{{{_NS_CALDAV}}}calendar-data") or "").strip() or calendar_data

    return etag, calendar_data


def _normalize_color(value: str | None) -> str | None:
    text = (value or "").strip()
    if not text.startswith("#"):
        return None
    # Apple servers append an alpha channel (#RRGGBBAA).
    return text[:7]
