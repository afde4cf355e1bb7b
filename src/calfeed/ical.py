"""iCalendar adapter built on the ``icalendar`` package.

Reading: :func:`parse_vevents` turns raw ``.ics`` text into VEVENT
components. Writing: :func:`build_event_calendar` serializes an
:class:`EventInput` for remote PUTs. :func:`add_exdate` and
:func:`add_override` patch a master's calendar object for single-occurrence
mutations, and :func:`replace_master` rewrites a series in place.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timezone
import logging

from icalendar import Calendar, Event
from icalendar.prop import vRecur

from calfeed.errors import ParseError

logger = logging.getLogger(__name__)

PRODID = "-//calfeed//EN"


@dataclass(frozen=True)
class EventInput:
    title: str
    start: datetime
    end: datetime
    description: str | None = None
    location: str | None = None
    all_day: bool = False
    recurrence_rule: str | None = None

    @property
    def is_recurring(self) -> bool:
        return bool(self.recurrence_rule)


def parse_calendar(raw_text: str | bytes) -> Calendar:
    if isinstance(raw_text, bytes):
        raw_text = raw_text.decode("utf-8", errors="replace")
    if not raw_text or not raw_text.strip():
        raise ParseError("Calendar data is empty.")
    try:
        return Calendar.from_ical(raw_text)
    except Exception as exc:
        raise ParseError(f"Invalid iCalendar data: {exc}") from exc


def parse_vevents(raw_text: str | bytes) -> list[Event]:
    calendar = parse_calendar(raw_text)
    return [component for component in calendar.walk("VEVENT")]


def calendar_name(raw_text: str | bytes) -> str | None:
    """X-WR-CALNAME of a calendar, or None when absent or unparseable."""
    try:
        calendar = parse_calendar(raw_text)
    except ParseError:
        return None
    value = calendar.get("X-WR-CALNAME")
    name = str(value).strip() if value is not None else ""
    return name or None


def build_event_calendar(event_input: EventInput, *, uid: str) -> str:
    calendar = Calendar()
    calendar.add("prodid", PRODID)
    calendar.add("version", "2.0")
    calendar.add_component(_build_vevent(event_input, uid=uid))
    return calendar.to_ical().decode("utf-8")


def _build_vevent(
    event_input: EventInput,
    *,
    uid: str,
    recurrence_id: date | datetime | None = None,
) -> Event:
    vevent = Event()
    vevent.add("uid", uid)
    vevent.add("dtstamp", datetime.now(timezone.utc))
    vevent.add("summary", event_input.title)
    if event_input.description:
        vevent.add("description", event_input.description)
    if event_input.location:
        vevent.add("location", event_input.location)

    if event_input.all_day:
        vevent.add("dtstart", event_input.start.date())
        vevent.add("dtend", event_input.end.date())
    else:
        vevent.add("dtstart", event_input.start.astimezone(timezone.utc))
        vevent.add("dtend", event_input.end.astimezone(timezone.utc))

    if recurrence_id is not None:
        vevent.add("recurrence-id", recurrence_id)
    elif event_input.recurrence_rule:
        vevent.add("rrule", vRecur.from_ical(_strip_rrule_prefix(event_input.recurrence_rule)))
    return vevent


def _strip_rrule_prefix(rule: str) -> str:
    value = rule.strip()
    if value.upper().startswith("RRULE:"):
        return value[len("RRULE:"):]
    return value


def _first_vevent(calendar: Calendar, uid: str) -> Event:
    for component in calendar.walk("VEVENT"):
        if "RECURRENCE-ID" in component:
            continue
        if str(component.get("UID", "")) == uid or not uid:
            return component
    raise ParseError(f"Master VEVENT {uid} not found in calendar object.")


def _occurrence_value(master: Event, occurrence_start: datetime) -> date | datetime:
    """EXDATE/RECURRENCE-ID value in the same value type as the master's DTSTART."""
    dtstart = master.get("DTSTART")
    if dtstart is not None and not isinstance(dtstart.dt, datetime):
        return occurrence_start.date()
    return occurrence_start.astimezone(timezone.utc)


def add_exdate(raw_text: str | bytes, *, uid: str, occurrence_start: datetime) -> str:
    """Exclude one occurrence from the master series identified by ``uid``."""
    calendar = parse_calendar(raw_text)
    master = _first_vevent(calendar, uid)
    master.add("exdate", _occurrence_value(master, occurrence_start))
    return calendar.to_ical().decode("utf-8")


def add_override(
    raw_text: str | bytes,
    *,
    uid: str,
    occurrence_start: datetime,
    event_input: EventInput,
) -> str:
    """Add (or replace) a RECURRENCE-ID override for one occurrence of ``uid``."""
    calendar = parse_calendar(raw_text)
    master = _first_vevent(calendar, uid)
    recurrence_id = _occurrence_value(master, occurrence_start)

    stale = [
        component
        for component in calendar.subcomponents
        if component.name == "VEVENT"
        and "RECURRENCE-ID" in component
        and str(component.get("UID", "")) == uid
        and _recurrence_id_value(component) == recurrence_id
    ]
    for component in stale:
        calendar.subcomponents.remove(component)
    if stale:
        logger.info("ical_override_replaced uid=%s occurrence=%s", uid, recurrence_id.isoformat())

    override_input = EventInput(
        title=event_input.title,
        start=event_input.start,
        end=event_input.end,
        description=event_input.description,
        location=event_input.location,
        all_day=event_input.all_day,
    )
    calendar.add_component(_build_vevent(override_input, uid=uid, recurrence_id=recurrence_id))
    return calendar.to_ical().decode("utf-8")


def replace_master(raw_text: str | bytes, *, uid: str, event_input: EventInput) -> str:
    """Rewrite the master VEVENT of ``uid`` from ``event_input``.

    EXDATEs and RECURRENCE-ID overrides already on the object survive while
    the event stays recurring; a non-recurring rewrite drops both.
    """
    calendar = parse_calendar(raw_text)
    master = _first_vevent(calendar, uid)
    replacement = _build_vevent(event_input, uid=uid)

    if event_input.is_recurring:
        exdates = master.get("EXDATE")
        if exdates is not None:
            replacement["EXDATE"] = exdates
    else:
        overrides = [
            component
            for component in calendar.subcomponents
            if component.name == "VEVENT" and "RECURRENCE-ID" in component
        ]
        for component in overrides:
            calendar.subcomponents.remove(component)

    index = next(position for position, component in enumerate(calendar.subcomponents) if component is master)
    calendar.subcomponents[index] = replacement
    return calendar.to_ical().decode("utf-8")


def _recurrence_id_value(component: Event) -> date | datetime | None:
    value = component.get("RECURRENCE-ID")
    if value is None:
        return None
    dt = value.dt
    if not isinstance(dt, datetime):
        return dt
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)
