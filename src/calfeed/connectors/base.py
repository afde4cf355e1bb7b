from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Protocol


@dataclass(frozen=True)
class CalendarObject:
    """One raw calendar resource as served by the remote source."""

    href: str
    data: str
    etag: str | None = None


@dataclass(frozen=True)
class FetchBatch:
    objects: list[CalendarObject]
    sync_token: str | None = None


class RemoteFetcher(Protocol):
    def fetch_calendar_objects(self, start: datetime, end: datetime) -> FetchBatch: ...
