from __future__ import annotations

from datetime import datetime, timezone
from enum import StrEnum

from sqlalchemy import CheckConstraint, Column, Enum as SQLEnum, Index, UniqueConstraint
from sqlmodel import Field, SQLModel


class FeedType(StrEnum):
    GOOGLE = "GOOGLE"
    OUTLOOK = "OUTLOOK"
    CALDAV = "CALDAV"
    WEBCAL = "WEBCAL"


class EventKind(StrEnum):
    MASTER = "master"
    INSTANCE = "instance"
    STANDALONE = "standalone"


class SyncDirection(StrEnum):
    INCOMING = "incoming"
    OUTGOING = "outgoing"
    BIDIRECTIONAL = "bidirectional"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class Settings(SQLModel, table=True):
    __tablename__ = "settings"

    key: str = Field(primary_key=True)
    value: str


class ConnectedAccount(SQLModel, table=True):
    __tablename__ = "connected_accounts"
    __table_args__ = (
        UniqueConstraint("user_id", "provider", "email", name="uq_connected_accounts_user_provider_email"),
    )

    id: int | None = Field(default=None, primary_key=True)
    user_id: str = Field(index=True)
    provider: FeedType = Field(
        sa_column=Column(
            SQLEnum(FeedType, name="account_provider", native_enum=False, create_constraint=True),
            nullable=False,
        )
    )
    email: str
    caldav_url: str | None = None
    caldav_username: str | None = None
    access_token: str = Field(default="")
    created_at: str = Field(default_factory=_now_iso)


class CalendarFeed(SQLModel, table=True):
    __tablename__ = "calendar_feeds"

    id: int | None = Field(default=None, primary_key=True)
    user_id: str = Field(index=True)
    account_id: int | None = Field(
        default=None, foreign_key="connected_accounts.id", ondelete="CASCADE", index=True
    )
    type: FeedType = Field(
        sa_column=Column(
            SQLEnum(FeedType, name="feed_type", native_enum=False, create_constraint=True),
            nullable=False,
        )
    )
    url: str | None = None
    name: str
    color: str | None = None
    enabled: bool = Field(default=True)
    last_sync: str | None = None
    error: str | None = None
    sync_token: str | None = None
    caldav_path: str | None = None
    created_at: str = Field(default_factory=_now_iso)

    @property
    def remote_path(self) -> str | None:
        """CalDAV collection location used for object URLs.

        An absolute feed URL wins over ``caldav_path``: discovered collections
        may live on a different host than the account URL.
        """
        if self.url and "://" in self.url:
            return self.url
        return self.caldav_path or self.url


class CalendarEvent(SQLModel, table=True):
    __tablename__ = "calendar_events"
    __table_args__ = (
        CheckConstraint(
            "NOT (is_master AND master_event_id IS NOT NULL)",
            name="ck_calendar_events_master_has_no_master",
        ),
        Index("ix_calendar_events_feed_start", "feed_id", "start_dt"),
        Index("ix_calendar_events_feed_external_id", "feed_id", "external_event_id"),
    )

    id: int | None = Field(default=None, primary_key=True)
    feed_id: int = Field(foreign_key="calendar_feeds.id", ondelete="CASCADE")
    external_event_id: str | None = None
    title: str
    description: str | None = None
    location: str | None = None
    start_dt: str
    end_dt: str
    all_day: bool = Field(default=False)
    is_recurring: bool = Field(default=False)
    recurrence_rule: str | None = None
    is_master: bool = Field(default=False)
    master_event_id: int | None = Field(default=None, foreign_key="calendar_events.id", ondelete="SET NULL")
    recurring_event_id: str | None = None
    master_uid: str | None = None
    occurrence_start: str | None = None
    status: str | None = None
    sequence: int | None = None
    organizer_json: str | None = None
    attendees_json: str | None = None
    created_at_remote: str | None = None
    last_modified_remote: str | None = None
    created_at: str = Field(default_factory=_now_iso)

    @property
    def kind(self) -> EventKind:
        if self.is_master:
            return EventKind.MASTER
        if self.master_event_id is not None or self.recurring_event_id is not None:
            return EventKind.INSTANCE
        return EventKind.STANDALONE


class SyncLock(SQLModel, table=True):
    __tablename__ = "feed_sync_locks"

    feed_id: int = Field(primary_key=True, foreign_key="calendar_feeds.id", ondelete="CASCADE")
    owner: str
    acquired_at: str


class TaskListMapping(SQLModel, table=True):
    __tablename__ = "task_list_mappings"
    __table_args__ = (
        UniqueConstraint("provider", "external_list_id", name="uq_task_list_mappings_provider_list"),
    )

    id: int | None = Field(default=None, primary_key=True)
    user_id: str = Field(index=True)
    provider: str
    external_list_id: str
    project_id: str
    direction: SyncDirection = Field(
        sa_column=Column(
            SQLEnum(SyncDirection, name="sync_direction", native_enum=False, create_constraint=True),
            nullable=False,
        )
    )
    last_synced_at: str | None = None
