from __future__ import annotations

from dataclasses import replace
from datetime import date, datetime, timezone

import pytest
from icalendar import Calendar

from calfeed.errors import ParseError
from calfeed.ical import (
    EventInput,
    add_exdate,
    add_override,
    build_event_calendar,
    calendar_name,
    parse_vevents,
    replace_master,
)

TWO_EVENTS = """BEGIN:VCALENDAR
VERSION:2.0
PRODID:-//Test//EN
X-WR-CALNAME:Team Calendar
BEGIN:VEVENT
UID:first@example.com
DTSTART:20240101T090000Z
DTEND:20240101T100000Z
SUMMARY:First
END:VEVENT
BEGIN:VEVENT
UID:second@example.com
DTSTART:20240102T090000Z
DTEND:20240102T100000Z
SUMMARY:Second
END:VEVENT
END:VCALENDAR
"""

WEEKLY_MASTER = """BEGIN:VCALENDAR
VERSION:2.0
PRODID:-//Test//EN
BEGIN:VEVENT
UID:weekly@example.com
DTSTART:20240101T090000Z
DTEND:20240101T100000Z
RRULE:FREQ=WEEKLY;COUNT=4
SUMMARY:Weekly
END:VEVENT
END:VCALENDAR
"""


def test_parse_vevents_returns_every_vevent() -> None:
    vevents = parse_vevents(TWO_EVENTS)

    assert [str(item["UID"]) for item in vevents] == ["first@example.com", "second@example.com"]


def test_parse_vevents_accepts_bytes() -> None:
    assert len(parse_vevents(TWO_EVENTS.encode("utf-8"))) == 2


@pytest.mark.parametrize("raw", ["", "   ", "this is not an icalendar document"])
def test_parse_vevents_raises_parse_error_for_invalid_text(raw: str) -> None:
    with pytest.raises(ParseError):
        parse_vevents(raw)


def test_calendar_name_reads_x_wr_calname() -> None:
    assert calendar_name(TWO_EVENTS) == "Team Calendar"
    assert calendar_name(WEEKLY_MASTER) is None
    assert calendar_name("garbage") is None


def test_build_event_calendar_uses_date_values_for_all_day_events() -> None:
    text = build_event_calendar(
        EventInput(
            title="Holiday",
            start=datetime(2024, 12, 25, tzinfo=timezone.utc),
            end=datetime(2024, 12, 26, tzinfo=timezone.utc),
            all_day=True,
        ),
        uid="holiday-1",
    )

    assert "PRODID:-//calfeed//EN" in text
    assert "DTSTART;VALUE=DATE:20241225" in text
    assert "DTEND;VALUE=DATE:20241226" in text
    assert "UID:holiday-1" in text


def test_build_event_calendar_serializes_rrule() -> None:
    text = build_event_calendar(
        EventInput(
            title="Standup",
            start=datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc),
            end=datetime(2024, 1, 1, 9, 15, tzinfo=timezone.utc),
            description="Daily sync",
            location="Room 4",
            recurrence_rule="RRULE:FREQ=DAILY;COUNT=3",
        ),
        uid="standup-1",
    )

    vevent = parse_vevents(text)[0]
    assert str(vevent["SUMMARY"]) == "Standup"
    assert str(vevent["LOCATION"]) == "Room 4"
    assert vevent["DTSTART"].dt == datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)
    assert "FREQ=DAILY" in vevent["RRULE"].to_ical().decode()


def test_add_exdate_excludes_occurrence_on_master() -> None:
    patched = add_exdate(
        WEEKLY_MASTER,
        uid="weekly@example.com",
        occurrence_start=datetime(2024, 1, 8, 9, 0, tzinfo=timezone.utc),
    )

    master = Calendar.from_ical(patched).walk("VEVENT")[0]
    assert "EXDATE" in master
    assert "RRULE" in master


def test_add_override_appends_recurrence_id_component() -> None:
    occurrence = datetime(2024, 1, 8, 9, 0, tzinfo=timezone.utc)
    override = EventInput(
        title="Weekly (moved)",
        start=datetime(2024, 1, 8, 11, 0, tzinfo=timezone.utc),
        end=datetime(2024, 1, 8, 12, 0, tzinfo=timezone.utc),
    )

    once = add_override(WEEKLY_MASTER, uid="weekly@example.com", occurrence_start=occurrence, event_input=override)
    twice = add_override(once, uid="weekly@example.com", occurrence_start=occurrence, event_input=override)

    vevents = Calendar.from_ical(twice).walk("VEVENT")
    assert len(vevents) == 2
    master, exception = vevents
    assert "RRULE" in master
    assert "RRULE" not in exception
    assert exception["RECURRENCE-ID"].dt == occurrence
    assert str(exception["SUMMARY"]) == "Weekly (moved)"


def test_add_exdate_raises_when_master_is_missing() -> None:
    with pytest.raises(ParseError, match="not found"):
        add_exdate(
            WEEKLY_MASTER,
            uid="other@example.com",
            occurrence_start=datetime(2024, 1, 8, 9, 0, tzinfo=timezone.utc),
        )


ALL_DAY_MASTER = """BEGIN:VCALENDAR
VERSION:2.0
PRODID:-//Test//EN
BEGIN:VEVENT
UID:holiday
DTSTART;VALUE=DATE:20240101
DTEND;VALUE=DATE:20240102
RRULE:FREQ=DAILY;COUNT=3
SUMMARY:Holiday
END:VEVENT
END:VCALENDAR
"""


def test_all_day_master_gets_date_valued_exdate_and_recurrence_id() -> None:
    occurrence = datetime(2024, 1, 2, 0, 0, tzinfo=timezone.utc)

    excluded = add_exdate(ALL_DAY_MASTER, uid="holiday", occurrence_start=occurrence)
    assert "EXDATE;VALUE=DATE:20240102" in excluded
    assert "EXDATE:20240102T000000Z" not in excluded

    moved = add_override(
        ALL_DAY_MASTER,
        uid="holiday",
        occurrence_start=occurrence,
        event_input=EventInput(
            title="Holiday (observed)",
            start=datetime(2024, 1, 5, tzinfo=timezone.utc),
            end=datetime(2024, 1, 6, tzinfo=timezone.utc),
            all_day=True,
        ),
    )
    exception = Calendar.from_ical(moved).walk("VEVENT")[1]
    assert exception["RECURRENCE-ID"].dt == date(2024, 1, 2)


def test_replace_master_keeps_exdates_and_overrides() -> None:
    occurrence = datetime(2024, 1, 8, 9, 0, tzinfo=timezone.utc)
    patched = add_exdate(WEEKLY_MASTER, uid="weekly@example.com", occurrence_start=occurrence)
    patched = add_override(
        patched,
        uid="weekly@example.com",
        occurrence_start=datetime(2024, 1, 15, 9, 0, tzinfo=timezone.utc),
        event_input=EventInput(
            title="Weekly (moved)",
            start=datetime(2024, 1, 15, 11, 0, tzinfo=timezone.utc),
            end=datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc),
        ),
    )
    renamed = EventInput(
        title="Weekly review",
        start=datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc),
        end=datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc),
        recurrence_rule="FREQ=WEEKLY;COUNT=4",
    )

    rewritten = replace_master(patched, uid="weekly@example.com", event_input=renamed)

    master, exception = Calendar.from_ical(rewritten).walk("VEVENT")
    assert str(master["SUMMARY"]) == "Weekly review"
    assert "EXDATE:20240108T090000Z" in rewritten
    assert str(exception["SUMMARY"]) == "Weekly (moved)"

    flattened = replace_master(patched, uid="weekly@example.com", event_input=replace(renamed, recurrence_rule=None))
    assert len(Calendar.from_ical(flattened).walk("VEVENT")) == 1
    assert "EXDATE" not in flattened
