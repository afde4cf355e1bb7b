from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from urllib.error import HTTPError, URLError
from urllib.parse import urlparse
from urllib.request import Request, urlopen

from calfeed.connectors.base import CalendarObject, FetchBatch
from calfeed.errors import RemoteFetchError, WebCalNotFoundError
from calfeed.ical import calendar_name

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SEC = 30.0
_CALENDAR_CONTENT_TYPE = "text/calendar"


def normalize_webcal_url(url: str) -> str:
    """Rewrite ``webcal://`` subscriptions to ``https://``."""
    value = url.strip()
    if value.lower().startswith("webcal://"):
        return "https://" + value[len("webcal://"):]
    return value


@dataclass(frozen=True)
class WebCalDocument:
    url: str
    text: str
    etag: str | None = None
    name: str | None = None


@dataclass(frozen=True)
class WebCalClient:
    url: str
    timeout_sec: float = DEFAULT_TIMEOUT_SEC

    def __post_init__(self) -> None:
        scheme = urlparse(normalize_webcal_url(self.url)).scheme.lower()
        if scheme not in {"http", "https"}:
            raise RemoteFetchError(f"Unsupported WebCal URL scheme: {scheme or '<none>'}.")

    @property
    def fetch_url(self) -> str:
        return normalize_webcal_url(self.url)

    def fetch_calendar_objects(self, start: datetime, end: datetime) -> FetchBatch:
        # Published feeds are served whole; the window only bounds expansion.
        del start, end
        document = self.fetch_document()
        return FetchBatch(
            objects=[CalendarObject(href=document.url, data=document.text, etag=document.etag)],
            sync_token=document.etag,
        )

    def fetch_document(self) -> WebCalDocument:
        url = self.fetch_url
        request = Request(url, method="GET", headers={"Accept": "text/calendar"})
        try:
            with urlopen(request, timeout=self.timeout_sec) as response:
                content_type = (response.headers.get("Content-Type") or "").strip().lower()
                if not content_type.startswith(_CALENDAR_CONTENT_TYPE):
                    logger.warning(
                        "webcal_unexpected_content_type url_host=%s content_type=%s",
                        urlparse(url).hostname,
                        content_type or "<none>",
                    )
                    raise WebCalNotFoundError()
                etag = response.headers.get("ETag")
                payload = response.read()
        except HTTPError as exc:
            logger.warning("webcal_request_failed url_host=%s status=%s", urlparse(url).hostname, exc.code)
            raise RemoteFetchError(f"WebCal request failed with HTTP {exc.code}.", status_code=exc.code) from None
        except URLError:
            raise RemoteFetchError("WebCal endpoint is unreachable.") from None
        except TimeoutError:
            raise RemoteFetchError("WebCal request timed out.") from None

        text = payload.decode("utf-8", errors="replace")
        return WebCalDocument(url=url, text=text, etag=etag, name=calendar_name(text))

    def test_connection(self) -> bool:
        try:
            self.fetch_document()
        except RemoteFetchError as exc:
            logger.warning("webcal_connection_test_failed status=%s", exc.status_code)
            return False
        return True
