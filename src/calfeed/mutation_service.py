from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from enum import StrEnum
import logging
import uuid

from sqlmodel import Session

from calfeed.config import get_setting
from calfeed.errors import EventNotFoundError, FeedNotFoundError
from calfeed.ical import EventInput
from calfeed.models import CalendarEvent, CalendarFeed, EventKind
from calfeed.normalizer import series_uid
from calfeed.providers import CalendarProvider, provider_for_feed
from calfeed.sync_service import FeedSyncResult, sync_feed_by_id
from calfeed.timeutil import db_to_dt, resolve_timezone

logger = logging.getLogger(__name__)


class MutationMode(StrEnum):
    SINGLE = "single"
    SERIES = "series"


@dataclass(frozen=True)
class MutationResult:
    feed_id: int
    uid: str
    occurrence_start: datetime | None
    sync: FeedSyncResult


@dataclass(frozen=True)
class _Target:
    feed: CalendarFeed
    uid: str
    occurrence_start: datetime | None
    master: CalendarEvent | None


def create_event(
    session: Session,
    *,
    feed_id: int,
    event_input: EventInput,
    provider: CalendarProvider | None = None,
    now: datetime | None = None,
) -> MutationResult:
    feed = session.get(CalendarFeed, feed_id)
    if feed is None:
        raise FeedNotFoundError(f"Feed {feed_id} not found.")
    _validate_input(event_input)

    active_provider = provider or provider_for_feed(session, feed)
    uid = str(uuid.uuid4())
    active_provider.create(event_input, uid=uid)
    logger.info("event_created feed_id=%s uid=%s recurring=%s", feed_id, uid, event_input.is_recurring)

    sync = sync_feed_by_id(session, feed_id, provider=active_provider, now=now)
    return MutationResult(feed_id=feed_id, uid=uid, occurrence_start=None, sync=sync)


def update_event(
    session: Session,
    *,
    event_id: int,
    event_input: EventInput,
    mode: MutationMode = MutationMode.SERIES,
    provider: CalendarProvider | None = None,
    now: datetime | None = None,
) -> MutationResult:
    """Push an edit of ``event_id`` to the remote calendar, then resync the feed.

    In ``single`` mode on a recurring occurrence only that occurrence is
    overridden; the series itself is left untouched.
    """
    _validate_input(event_input)
    target = _resolve_target(session, event_id, mode)

    remote_input = event_input
    if target.occurrence_start is None and target.master is not None and not event_input.recurrence_rule:
        remote_input = replace(event_input, recurrence_rule=target.master.recurrence_rule)

    active_provider = provider or provider_for_feed(session, target.feed)
    active_provider.update(remote_input, uid=target.uid, occurrence_start=target.occurrence_start)
    logger.info(
        "event_updated feed_id=%s uid=%s mode=%s",
        target.feed.id,
        target.uid,
        "single" if target.occurrence_start is not None else "series",
    )

    sync = sync_feed_by_id(session, target.feed.id, provider=active_provider, now=now)
    return MutationResult(
        feed_id=target.feed.id,
        uid=target.uid,
        occurrence_start=target.occurrence_start,
        sync=sync,
    )


def delete_event(
    session: Session,
    *,
    event_id: int,
    mode: MutationMode = MutationMode.SERIES,
    provider: CalendarProvider | None = None,
    now: datetime | None = None,
) -> MutationResult:
    target = _resolve_target(session, event_id, mode)

    active_provider = provider or provider_for_feed(session, target.feed)
    active_provider.delete(uid=target.uid, occurrence_start=target.occurrence_start)
    logger.info(
        "event_deleted feed_id=%s uid=%s mode=%s",
        target.feed.id,
        target.uid,
        "single" if target.occurrence_start is not None else "series",
    )

    sync = sync_feed_by_id(session, target.feed.id, provider=active_provider, now=now)
    return MutationResult(
        feed_id=target.feed.id,
        uid=target.uid,
        occurrence_start=target.occurrence_start,
        sync=sync,
    )


def _validate_input(event_input: EventInput) -> None:
    if not event_input.title.strip():
        raise ValueError("Event title must not be empty.")
    if event_input.start.tzinfo is None or event_input.end.tzinfo is None:
        raise ValueError("Event start and end must be timezone-aware.")
    if event_input.end < event_input.start:
        raise ValueError("Event end must not be before its start.")


def _resolve_target(session: Session, event_id: int, mode: MutationMode) -> _Target:
    event = session.get(CalendarEvent, event_id)
    if event is None:
        raise EventNotFoundError(f"Event {event_id} not found.")
    feed = session.get(CalendarFeed, event.feed_id)
    if feed is None:
        raise FeedNotFoundError(f"Feed {event.feed_id} not found.")

    kind = event.kind
    if kind == EventKind.MASTER:
        # Single mode on a master row addresses the first occurrence (DTSTART).
        occurrence_start = _occurrence_start(session, event, event.start_dt) if mode == MutationMode.SINGLE else None
        return _Target(feed=feed, uid=event.external_event_id, occurrence_start=occurrence_start, master=event)
    if kind == EventKind.STANDALONE:
        return _Target(feed=feed, uid=event.external_event_id, occurrence_start=None, master=None)

    uid = event.master_uid or series_uid(event.recurring_event_id)
    master = session.get(CalendarEvent, event.master_event_id) if event.master_event_id is not None else None
    if mode == MutationMode.SERIES:
        return _Target(feed=feed, uid=uid, occurrence_start=None, master=master)

    occurrence_start = _occurrence_start(session, event, event.occurrence_start or event.start_dt)
    return _Target(feed=feed, uid=uid, occurrence_start=occurrence_start, master=master)


def _occurrence_start(session: Session, event: CalendarEvent, value: str) -> datetime:
    # All-day rows hold local midnight in UTC; the date is only right in the configured zone.
    occurrence_start = db_to_dt(value)
    if event.all_day:
        return occurrence_start.astimezone(resolve_timezone(get_setting(session, "timezone")))
    return occurrence_start
