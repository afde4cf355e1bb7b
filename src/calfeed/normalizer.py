from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
import logging
import uuid

from icalendar import Event
from zoneinfo import ZoneInfo

from calfeed.errors import MissingStartTimeError
from calfeed.models import EventKind
from calfeed.timeutil import as_aware_datetime, utc_now

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "Untitled Event"
FALLBACK_TITLE = "Error parsing event"


@dataclass(frozen=True)
class Attendee:
    email: str
    name: str | None = None
    status: str | None = None


@dataclass(frozen=True)
class Organizer:
    email: str
    name: str | None = None


@dataclass(frozen=True)
class ParsedEvent:
    uid: str
    external_event_id: str
    title: str
    start: datetime
    end: datetime
    all_day: bool = False
    description: str | None = None
    location: str | None = None
    is_master: bool = False
    is_recurring: bool = False
    recurrence_rule: str | None = None
    recurring_event_id: str | None = None
    master_uid: str | None = None
    occurrence_start: datetime | None = None
    status: str | None = None
    sequence: int | None = None
    organizer: Organizer | None = None
    attendees: tuple[Attendee, ...] = ()
    created_remote: datetime | None = None
    last_modified_remote: datetime | None = None
    exdates: frozenset[datetime] = field(default_factory=frozenset)
    is_fallback: bool = False

    @property
    def kind(self) -> EventKind:
        if self.is_master:
            return EventKind.MASTER
        if self.recurring_event_id is not None:
            return EventKind.INSTANCE
        return EventKind.STANDALONE

    @property
    def duration(self) -> timedelta:
        return self.end - self.start


def normalize_vevent(vevent: Event, *, default_timezone: ZoneInfo | timezone) -> ParsedEvent:
    """Convert one VEVENT into a classified :class:`ParsedEvent`.

    A VEVENT without DTSTART raises :class:`MissingStartTimeError` and must be
    dropped by the caller. Any other failure yields a placeholder event titled
    ``"Error parsing event"`` so one bad component never fails a whole batch.
    """
    try:
        return _normalize(vevent, default_timezone=default_timezone)
    except MissingStartTimeError:
        raise
    except Exception as exc:
        logger.error("event_normalize_failed error=%s", exc)
        return build_fallback_event()


def build_fallback_event(now: datetime | None = None) -> ParsedEvent:
    now_value = now or utc_now()
    fallback_id = str(uuid.uuid4())
    return ParsedEvent(
        uid=fallback_id,
        external_event_id=fallback_id,
        title=FALLBACK_TITLE,
        start=now_value,
        end=now_value,
        is_fallback=True,
    )


def _normalize(vevent: Event, *, default_timezone: ZoneInfo | timezone) -> ParsedEvent:
    uid = _text(vevent.get("UID"))
    if not uid:
        uid = str(uuid.uuid4())
        logger.warning("event_missing_uid generated_uid=%s", uid)

    dtstart_prop = vevent.get("DTSTART")
    if dtstart_prop is None or getattr(dtstart_prop, "dt", None) is None:
        raise MissingStartTimeError(f"Event {uid} has no DTSTART.")

    start_raw = dtstart_prop.dt
    start = as_aware_datetime(start_raw, default_timezone)
    duration = _duration(vevent)
    end = _resolve_end(vevent, start=start, start_is_date=_is_date_value(start_raw), duration=duration)
    all_day = _is_all_day(dtstart_prop, duration)

    rrule_prop = vevent.get("RRULE")
    recurrence_id_prop = vevent.get("RECURRENCE-ID")

    base = dict(
        uid=uid,
        title=_text(vevent.get("SUMMARY")) or DEFAULT_TITLE,
        start=start,
        end=end,
        all_day=all_day,
        description=_text(vevent.get("DESCRIPTION")),
        location=_text(vevent.get("LOCATION")),
        status=_text(vevent.get("STATUS")),
        sequence=_int_or_none(vevent.get("SEQUENCE")),
        organizer=_organizer(vevent.get("ORGANIZER")),
        attendees=_attendees(vevent.get("ATTENDEE")),
        created_remote=_optional_dt(vevent.get("CREATED"), default_timezone),
        last_modified_remote=_optional_dt(vevent.get("LAST-MODIFIED"), default_timezone),
    )

    if rrule_prop is not None and recurrence_id_prop is None:
        return ParsedEvent(
            external_event_id=uid,
            is_master=True,
            is_recurring=True,
            recurrence_rule=_rrule_text(rrule_prop),
            exdates=_exdates(vevent.get("EXDATE"), default_timezone),
            **base,
        )

    if recurrence_id_prop is not None:
        master_uid = series_uid(uid)
        occurrence = as_aware_datetime(recurrence_id_prop.dt, default_timezone)
        return ParsedEvent(
            external_event_id=f"{master_uid}_{start.date().isoformat()}",
            recurring_event_id=master_uid,
            master_uid=master_uid,
            occurrence_start=occurrence,
            **base,
        )

    return ParsedEvent(external_event_id=uid, **base)


def series_uid(uid: str) -> str:
    """Series UID of an exception component.

    Exceptions share their master's UID. Identifiers written in the older
    ``masterUid_YYYY-MM-DD`` form are unwrapped; any other underscore is part
    of the UID.
    """
    prefix, sep, suffix = uid.partition("_")
    if not sep or not prefix:
        return uid
    try:
        date.fromisoformat(suffix)
    except ValueError:
        return uid
    return prefix


def _text(value) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _int_or_none(value) -> int | None:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _is_date_value(value) -> bool:
    return isinstance(value, date) and not isinstance(value, datetime)


def _duration(vevent: Event) -> timedelta | None:
    prop = vevent.get("DURATION")
    if prop is None:
        return None
    value = getattr(prop, "dt", None)
    return value if isinstance(value, timedelta) else None


def _resolve_end(
    vevent: Event,
    *,
    start: datetime,
    start_is_date: bool,
    duration: timedelta | None,
) -> datetime:
    dtend_prop = vevent.get("DTEND")
    if dtend_prop is not None and getattr(dtend_prop, "dt", None) is not None:
        return as_aware_datetime(dtend_prop.dt, start.tzinfo)
    if duration is not None:
        return start + duration
    if start_is_date:
        return start + timedelta(days=1)
    return start + timedelta(hours=1)


def _is_all_day(dtstart_prop, duration: timedelta | None) -> bool:
    params = getattr(dtstart_prop, "params", {}) or {}
    if str(params.get("VALUE", "")).upper() == "DATE":
        return True
    if _is_date_value(dtstart_prop.dt):
        return True
    return duration == timedelta(days=1)


def _rrule_text(rrule_prop) -> str:
    if isinstance(rrule_prop, list):
        rrule_prop = rrule_prop[0]
    return rrule_prop.to_ical().decode("utf-8")


def _exdates(exdate_prop, default_timezone: ZoneInfo | timezone) -> frozenset[datetime]:
    if exdate_prop is None:
        return frozenset()
    groups = exdate_prop if isinstance(exdate_prop, list) else [exdate_prop]
    values: set[datetime] = set()
    for group in groups:
        for item in getattr(group, "dts", []):
            values.add(as_aware_datetime(item.dt, default_timezone).astimezone(timezone.utc))
    return frozenset(values)


def _optional_dt(prop, default_timezone: ZoneInfo | timezone) -> datetime | None:
    if prop is None or getattr(prop, "dt", None) is None:
        return None
    return as_aware_datetime(prop.dt, default_timezone)


def _address(value) -> str:
    text = str(value).strip()
    if text.lower().startswith("mailto:"):
        return text[len("mailto:"):]
    return text


def _organizer(value) -> Organizer | None:
    if value is None:
        return None
    email = _address(value)
    if not email:
        return None
    params = getattr(value, "params", {}) or {}
    return Organizer(email=email, name=_text(params.get("CN")))


def _attendees(value) -> tuple[Attendee, ...]:
    if value is None:
        return ()
    items = value if isinstance(value, list) else [value]
    attendees: list[Attendee] = []
    for item in items:
        email = _address(item)
        if not email:
            continue
        params = getattr(item, "params", {}) or {}
        attendees.append(
            Attendee(
                email=email,
                name=_text(params.get("CN")),
                status=_text(params.get("PARTSTAT")),
            )
        )
    return tuple(attendees)
