from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Protocol
import logging

from sqlmodel import Session

from calfeed.config import get_float_setting
from calfeed.connectors.base import FetchBatch
from calfeed.connectors.caldav import CalDavClient
from calfeed.connectors.caldav_writer import CalDavEventWriter
from calfeed.connectors.webcal import WebCalClient
from calfeed.errors import AccountConfigurationError, UnsupportedProviderError
from calfeed.ical import EventInput, add_exdate, add_override, build_event_calendar, replace_master
from calfeed.models import CalendarFeed, ConnectedAccount, FeedType

logger = logging.getLogger(__name__)


class CalendarProvider(Protocol):
    def fetch(self, start: datetime, end: datetime) -> FetchBatch: ...

    def create(self, event_input: EventInput, *, uid: str) -> None: ...

    def update(
        self,
        event_input: EventInput,
        *,
        uid: str,
        occurrence_start: datetime | None = None,
    ) -> None: ...

    def delete(self, *, uid: str, occurrence_start: datetime | None = None) -> None: ...

    def test_connection(self) -> bool: ...


@dataclass(frozen=True)
class CalDavProvider:
    client: CalDavClient
    writer: CalDavEventWriter

    @classmethod
    def from_client(cls, client: CalDavClient) -> CalDavProvider:
        return cls(client=client, writer=CalDavEventWriter(client=client))

    def fetch(self, start: datetime, end: datetime) -> FetchBatch:
        return self.client.fetch_calendar_objects(start, end)

    def create(self, event_input: EventInput, *, uid: str) -> None:
        self.writer.put_event(uid, build_event_calendar(event_input, uid=uid), create=True)

    def update(
        self,
        event_input: EventInput,
        *,
        uid: str,
        occurrence_start: datetime | None = None,
    ) -> None:
        raw = self.writer.get_event(uid)
        if occurrence_start is None:
            patched = replace_master(raw, uid=uid, event_input=event_input)
        else:
            patched = add_override(raw, uid=uid, occurrence_start=occurrence_start, event_input=event_input)
        self.writer.put_event(uid, patched, create=False)

    def delete(self, *, uid: str, occurrence_start: datetime | None = None) -> None:
        if occurrence_start is None:
            self.writer.delete_event(uid)
            return
        raw = self.writer.get_event(uid)
        self.writer.put_event(uid, add_exdate(raw, uid=uid, occurrence_start=occurrence_start), create=False)

    def test_connection(self) -> bool:
        return self.client.test_connection()


@dataclass(frozen=True)
class WebCalProvider:
    client: WebCalClient

    def fetch(self, start: datetime, end: datetime) -> FetchBatch:
        return self.client.fetch_calendar_objects(start, end)

    def create(self, event_input: EventInput, *, uid: str) -> None:
        raise UnsupportedProviderError("WebCal feeds are read-only.")

    def update(
        self,
        event_input: EventInput,
        *,
        uid: str,
        occurrence_start: datetime | None = None,
    ) -> None:
        raise UnsupportedProviderError("WebCal feeds are read-only.")

    def delete(self, *, uid: str, occurrence_start: datetime | None = None) -> None:
        raise UnsupportedProviderError("WebCal feeds are read-only.")

    def test_connection(self) -> bool:
        return self.client.test_connection()


def provider_for_feed(session: Session, feed: CalendarFeed) -> CalendarProvider:
    """Build a fresh provider for one sync or mutation of ``feed``."""
    timeout_sec = get_float_setting(session, "http_timeout_sec")

    if feed.type == FeedType.WEBCAL:
        if not feed.url:
            raise AccountConfigurationError(f"WebCal feed {feed.id} has no URL.")
        return WebCalProvider(client=WebCalClient(url=feed.url, timeout_sec=timeout_sec))

    if feed.type == FeedType.CALDAV:
        account = session.get(ConnectedAccount, feed.account_id) if feed.account_id is not None else None
        if account is None:
            raise AccountConfigurationError(f"CalDAV feed {feed.id} is not linked to a connected account.")
        client = CalDavClient.from_account(account, calendar_path=feed.remote_path, timeout_sec=timeout_sec)
        return CalDavProvider.from_client(client)

    logger.warning("provider_unsupported feed_id=%s type=%s", feed.id, feed.type)
    raise UnsupportedProviderError(
        f"Feed type {feed.type} is synchronized by an external OAuth integration, not by calfeed."
    )
