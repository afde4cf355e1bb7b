from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
from enum import StrEnum
import json
import logging

from sqlmodel import Session, delete, select

from calfeed.config import get_int_setting, get_setting
from calfeed.connectors.base import FetchBatch
from calfeed.errors import FeedNotFoundError, MissingStartTimeError, ParseError
from calfeed.ical import parse_vevents
from calfeed.models import CalendarEvent, CalendarFeed, FeedType
from calfeed.normalizer import ParsedEvent, normalize_vevent
from calfeed.providers import CalendarProvider, provider_for_feed
from calfeed.recurrence import build_sync_window, expand_master
from calfeed.sync_lock import feed_sync_lock
from calfeed.timeutil import dt_to_db, resolve_timezone, utc_now

logger = logging.getLogger(__name__)


class SyncStage(StrEnum):
    IDLE = "idle"
    FETCHING = "fetching"
    PARSING = "parsing"
    EXPANDING = "expanding"
    RECONCILING = "reconciling"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class FeedSyncResult:
    feed_id: int
    objects: int
    masters: int
    instances: int
    standalones: int
    skipped_objects: int
    dropped_events: int
    sync_token: str | None

    @property
    def total_events(self) -> int:
        return self.masters + self.instances + self.standalones


@dataclass(frozen=True)
class FeedSyncOutcome:
    feed_id: int
    feed_name: str
    result: FeedSyncResult | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class _ParsedBatch:
    events: list[ParsedEvent]
    skipped_objects: int
    dropped_events: int


def find_feed(
    session: Session,
    *,
    feed_id: int,
    url: str | None,
    feed_type: FeedType,
    user_id: str,
) -> CalendarFeed:
    feed = session.exec(
        select(CalendarFeed)
        .where(CalendarFeed.id == feed_id)
        .where(CalendarFeed.type == feed_type)
        .where(CalendarFeed.user_id == user_id)
    ).first()
    if feed is None or (url is not None and feed.url != url):
        raise FeedNotFoundError(f"Feed {feed_id} ({feed_type}) not found for user {user_id}.")
    return feed


def delete_feed_events(session: Session, feed_id: int) -> None:
    # Instances reference masters; clear them first so SQLite FK checks never see a dangling link.
    # SQLite reuses deleted ids; "fetch" evicts the rows from the identity map.
    session.exec(
        delete(CalendarEvent)
        .where(CalendarEvent.feed_id == feed_id)
        .where(CalendarEvent.is_master == False)  # noqa: E712
        .execution_options(synchronize_session="fetch")
    )
    session.exec(
        delete(CalendarEvent)
        .where(CalendarEvent.feed_id == feed_id)
        .execution_options(synchronize_session="fetch")
    )


def update_feed(session: Session, feed: CalendarFeed, **changes: object) -> CalendarFeed:
    """Apply bookkeeping changes to ``feed``; the caller owns the commit."""
    for key, value in changes.items():
        if not hasattr(CalendarFeed, key):
            raise ValueError(f"Unknown feed field: {key}.")
        setattr(feed, key, value)
    session.add(feed)
    return feed


def sync_feed(
    session: Session,
    *,
    feed_id: int,
    url: str | None,
    feed_type: FeedType,
    user_id: str,
    provider: CalendarProvider | None = None,
    now: datetime | None = None,
) -> FeedSyncResult:
    """Replace the feed's stored events with the set derived from one fresh fetch.

    Fetching, parsing and expansion all happen before the store is touched.
    The delete, the inserts and the feed bookkeeping then commit together, so
    a failure at any point leaves the previous events in place. The failure
    message is recorded on ``feed.error`` and the exception is re-raised.
    """
    feed = find_feed(session, feed_id=feed_id, url=url, feed_type=feed_type, user_id=user_id)
    with feed_sync_lock(session, feed.id):
        return _run_sync(session, feed, provider=provider, now=now)


def sync_feed_by_id(
    session: Session,
    feed_id: int,
    *,
    provider: CalendarProvider | None = None,
    now: datetime | None = None,
) -> FeedSyncResult:
    feed = session.get(CalendarFeed, feed_id)
    if feed is None:
        raise FeedNotFoundError(f"Feed {feed_id} not found.")
    return sync_feed(
        session,
        feed_id=feed.id,
        url=feed.url,
        feed_type=feed.type,
        user_id=feed.user_id,
        provider=provider,
        now=now,
    )


def sync_all_feeds(
    session: Session,
    *,
    user_id: str | None = None,
    now: datetime | None = None,
) -> list[FeedSyncOutcome]:
    """Sync every enabled feed; one feed failing never stops the others."""
    statement = select(CalendarFeed).where(CalendarFeed.enabled == True)  # noqa: E712
    if user_id is not None:
        statement = statement.where(CalendarFeed.user_id == user_id)
    feeds = [(feed.id, feed.name) for feed in session.exec(statement.order_by(CalendarFeed.id)).all()]

    outcomes: list[FeedSyncOutcome] = []
    for feed_id, feed_name in feeds:
        try:
            result = sync_feed_by_id(session, feed_id, now=now)
        except Exception as exc:
            outcomes.append(FeedSyncOutcome(feed_id=feed_id, feed_name=feed_name, error=str(exc)))
            continue
        outcomes.append(FeedSyncOutcome(feed_id=feed_id, feed_name=feed_name, result=result))

    failed = sum(1 for outcome in outcomes if not outcome.ok)
    logger.info("feed_sync_all_completed feeds=%s failed=%s", len(outcomes), failed)
    return outcomes


def _run_sync(
    session: Session,
    feed: CalendarFeed,
    *,
    provider: CalendarProvider | None,
    now: datetime | None,
) -> FeedSyncResult:
    feed_id = feed.id
    stage = SyncStage.IDLE
    logger.info("feed_sync_started feed_id=%s type=%s", feed_id, feed.type)

    try:
        stage = SyncStage.FETCHING
        active_provider = provider or provider_for_feed(session, feed)
        window_start, window_end = build_sync_window(now)
        batch = active_provider.fetch(window_start, window_end)

        stage = SyncStage.PARSING
        default_timezone = resolve_timezone(get_setting(session, "timezone"))
        parsed = _parse_batch(batch, default_timezone=default_timezone)

        stage = SyncStage.EXPANDING
        masters = [event for event in parsed.events if event.is_master]
        others = [event for event in parsed.events if not event.is_master]
        overridden: dict[str, list[datetime]] = {}
        for event in others:
            if event.master_uid and event.occurrence_start is not None:
                overridden.setdefault(event.master_uid, []).append(event.occurrence_start)

        max_occurrences = get_int_setting(session, "max_occurrences_per_master")
        expanded: list[ParsedEvent] = []
        for master in masters:
            expanded.extend(
                expand_master(
                    master,
                    window_start,
                    window_end,
                    overridden=overridden.get(master.uid, ()),
                    max_occurrences=max_occurrences,
                )
            )

        stage = SyncStage.RECONCILING
        instances = [event for event in others if event.recurring_event_id is not None] + expanded
        standalones = [event for event in others if event.recurring_event_id is None]

        delete_feed_events(session, feed_id)
        master_ids = _persist_masters(session, feed_id, masters)
        for event in standalones:
            session.add(_to_row(feed_id, event))
        for event in instances:
            session.add(_to_row(feed_id, event, master_event_id=master_ids.get(event.recurring_event_id)))

        update_feed(session, feed, last_sync=dt_to_db(now or utc_now()), sync_token=batch.sync_token, error=None)
        session.commit()
        stage = SyncStage.DONE
    except Exception as exc:
        session.rollback()
        _record_failure(session, feed_id, exc)
        logger.error(
            "feed_sync_failed feed_id=%s state=%s failed_stage=%s error=%s",
            feed_id,
            SyncStage.FAILED,
            stage,
            type(exc).__name__,
        )
        raise

    result = FeedSyncResult(
        feed_id=feed_id,
        objects=len(batch.objects),
        masters=len(masters),
        instances=len(instances),
        standalones=len(standalones),
        skipped_objects=parsed.skipped_objects,
        dropped_events=parsed.dropped_events,
        sync_token=batch.sync_token,
    )
    logger.info(
        "feed_sync_completed feed_id=%s stage=%s objects=%s masters=%s instances=%s standalones=%s skipped=%s dropped=%s",
        feed_id,
        stage,
        result.objects,
        result.masters,
        result.instances,
        result.standalones,
        result.skipped_objects,
        result.dropped_events,
    )
    return result


def _parse_batch(batch: FetchBatch, *, default_timezone) -> _ParsedBatch:
    events: list[ParsedEvent] = []
    skipped_objects = 0
    dropped_events = 0
    for calendar_object in batch.objects:
        try:
            vevents = parse_vevents(calendar_object.data)
        except ParseError as exc:
            skipped_objects += 1
            logger.warning("calendar_object_parse_failed href=%s error=%s", calendar_object.href, exc)
            continue

        for vevent in vevents:
            try:
                events.append(normalize_vevent(vevent, default_timezone=default_timezone))
            except MissingStartTimeError as exc:
                dropped_events += 1
                logger.warning("event_dropped href=%s reason=%s", calendar_object.href, exc)
    return _ParsedBatch(events=events, skipped_objects=skipped_objects, dropped_events=dropped_events)


def _persist_masters(session: Session, feed_id: int, masters: list[ParsedEvent]) -> dict[str, int]:
    rows: list[tuple[str, CalendarEvent]] = []
    for master in masters:
        row = _to_row(feed_id, master)
        session.add(row)
        rows.append((master.external_event_id, row))
    session.flush()
    return {external_event_id: row.id for external_event_id, row in rows}


def _to_row(feed_id: int, event: ParsedEvent, *, master_event_id: int | None = None) -> CalendarEvent:
    return CalendarEvent(
        feed_id=feed_id,
        external_event_id=event.external_event_id,
        title=event.title,
        description=event.description,
        location=event.location,
        start_dt=dt_to_db(event.start),
        end_dt=dt_to_db(event.end),
        all_day=event.all_day,
        is_recurring=event.is_recurring,
        recurrence_rule=event.recurrence_rule if event.is_master else None,
        is_master=event.is_master,
        master_event_id=None if event.is_master else master_event_id,
        recurring_event_id=event.recurring_event_id,
        master_uid=event.master_uid,
        occurrence_start=dt_to_db(event.occurrence_start) if event.occurrence_start is not None else None,
        status=event.status,
        sequence=event.sequence,
        organizer_json=json.dumps(asdict(event.organizer)) if event.organizer is not None else None,
        attendees_json=json.dumps([asdict(item) for item in event.attendees]) if event.attendees else None,
        created_at_remote=dt_to_db(event.created_remote) if event.created_remote is not None else None,
        last_modified_remote=(
            dt_to_db(event.last_modified_remote) if event.last_modified_remote is not None else None
        ),
    )


def _record_failure(session: Session, feed_id: int, exc: Exception) -> None:
    feed = session.get(CalendarFeed, feed_id)
    if feed is None:
        return
    update_feed(session, feed, error=str(exc) or type(exc).__name__)
    session.commit()
