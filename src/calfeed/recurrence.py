from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone
from typing import Iterable
import logging
import re

from dateutil.rrule import rrulestr

from calfeed.normalizer import ParsedEvent

logger = logging.getLogger(__name__)

MAX_OCCURRENCES_PER_MASTER = 5000

_UNTIL_PATTERN = re.compile(r"UNTIL=([0-9TZ]+)", re.IGNORECASE)


def build_sync_window(now: datetime | None = None) -> tuple[datetime, datetime]:
    """Jan 1 of last year through Dec 31 of next year, in UTC, inclusive."""
    now_utc = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
    window_start = datetime(now_utc.year - 1, 1, 1, tzinfo=timezone.utc)
    window_end = datetime(now_utc.year + 1, 12, 31, 23, 59, 59, tzinfo=timezone.utc)
    return window_start, window_end


def expand_master(
    master: ParsedEvent,
    window_start: datetime,
    window_end: datetime,
    *,
    overridden: Iterable[datetime] = (),
    max_occurrences: int = MAX_OCCURRENCES_PER_MASTER,
) -> list[ParsedEvent]:
    """Materialize the occurrences of ``master`` that start inside the window.

    Occurrences excluded by EXDATE or replaced by a RECURRENCE-ID exception
    from the same fetch are skipped. A rule that cannot be parsed yields no
    instances.
    """
    if not master.is_master or not master.recurrence_rule:
        return []

    try:
        rule = rrulestr(_normalize_until(master.recurrence_rule, master.start), dtstart=master.start)
    except (ValueError, TypeError, OverflowError) as exc:
        logger.error(
            "recurrence_expand_failed uid=%s rule=%s error=%s",
            master.uid,
            master.recurrence_rule,
            exc,
        )
        return []

    skipped = {_utc_key(value) for value in master.exdates}
    skipped.update(_utc_key(value) for value in overridden)
    duration = master.duration

    instances: list[ParsedEvent] = []
    try:
        for occurrence in rule.xafter(window_start, inc=True):
            if occurrence > window_end:
                break
            if _utc_key(occurrence) in skipped:
                continue
            if len(instances) >= max_occurrences:
                logger.warning(
                    "recurrence_expand_capped uid=%s max_occurrences=%s",
                    master.uid,
                    max_occurrences,
                )
                break
            instances.append(
                replace(
                    master,
                    start=occurrence,
                    end=occurrence + duration,
                    is_master=False,
                    recurrence_rule=None,
                    recurring_event_id=master.external_event_id,
                    master_uid=master.uid,
                    occurrence_start=occurrence,
                    exdates=frozenset(),
                )
            )
    except (ValueError, TypeError, OverflowError) as exc:
        logger.error(
            "recurrence_expand_failed uid=%s rule=%s error=%s",
            master.uid,
            master.recurrence_rule,
            exc,
        )
        return []

    return instances


def _utc_key(value: datetime) -> datetime:
    return value.astimezone(timezone.utc).replace(microsecond=0)


def _normalize_until(rule_text: str, dtstart: datetime) -> str:
    """Rewrite a floating or DATE-only UNTIL as UTC.

    dateutil rejects a non-UTC UNTIL when DTSTART is timezone-aware.
    """
    if dtstart.tzinfo is None:
        return rule_text

    def _rewrite(match: re.Match[str]) -> str:
        value = match.group(1).upper()
        if value.endswith("Z"):
            return f"UNTIL={value}"
        if "T" not in value:
            return f"UNTIL={value}T235959Z"
        local = datetime.strptime(value, "%Y%m%dT%H%M%S").replace(tzinfo=dtstart.tzinfo)
        return "UNTIL=" + local.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%SZ")

    return _UNTIL_PATTERN.sub(_rewrite, rule_text)
