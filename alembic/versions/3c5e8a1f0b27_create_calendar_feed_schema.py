"""create calendar feed schema

Revision ID: 3c5e8a1f0b27
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "3c5e8a1f0b27"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

_FEED_TYPES = ("GOOGLE", "OUTLOOK", "CALDAV", "WEBCAL")


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        "settings",
        sa.Column("key", sa.Text(), primary_key=True),
        sa.Column("value", sa.Text(), nullable=False),
    )

    op.create_table(
        "connected_accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Text(), nullable=False),
        sa.Column(
            "provider",
            sa.Enum(*_FEED_TYPES, name="account_provider", native_enum=False, create_constraint=True),
            nullable=False,
        ),
        sa.Column("email", sa.Text(), nullable=False),
        sa.Column("caldav_url", sa.Text(), nullable=True),
        sa.Column("caldav_username", sa.Text(), nullable=True),
        sa.Column("access_token", sa.Text(), nullable=False, server_default=sa.text("''")),
        sa.Column("created_at", sa.Text(), nullable=False),
        sa.UniqueConstraint("user_id", "provider", "email", name="uq_connected_accounts_user_provider_email"),
    )
    op.create_index("ix_connected_accounts_user_id", "connected_accounts", ["user_id"])

    op.create_table(
        "calendar_feeds",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Text(), nullable=False),
        sa.Column(
            "account_id",
            sa.Integer(),
            sa.ForeignKey("connected_accounts.id", ondelete="CASCADE"),
            nullable=True,
        ),
        sa.Column(
            "type",
            sa.Enum(*_FEED_TYPES, name="feed_type", native_enum=False, create_constraint=True),
            nullable=False,
        ),
        sa.Column("url", sa.Text(), nullable=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("color", sa.Text(), nullable=True),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column("last_sync", sa.Text(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("sync_token", sa.Text(), nullable=True),
        sa.Column("caldav_path", sa.Text(), nullable=True),
        sa.Column("created_at", sa.Text(), nullable=False),
    )
    op.create_index("ix_calendar_feeds_user_id", "calendar_feeds", ["user_id"])
    op.create_index("ix_calendar_feeds_account_id", "calendar_feeds", ["account_id"])

    op.create_table(
        "calendar_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "feed_id",
            sa.Integer(),
            sa.ForeignKey("calendar_feeds.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("external_event_id", sa.Text(), nullable=True),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("location", sa.Text(), nullable=True),
        sa.Column("start_dt", sa.Text(), nullable=False),
        sa.Column("end_dt", sa.Text(), nullable=False),
        sa.Column("all_day", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("is_recurring", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("recurrence_rule", sa.Text(), nullable=True),
        sa.Column("is_master", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column(
            "master_event_id",
            sa.Integer(),
            sa.ForeignKey("calendar_events.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("recurring_event_id", sa.Text(), nullable=True),
        sa.Column("master_uid", sa.Text(), nullable=True),
        sa.Column("occurrence_start", sa.Text(), nullable=True),
        sa.Column("status", sa.Text(), nullable=True),
        sa.Column("sequence", sa.Integer(), nullable=True),
        sa.Column("organizer_json", sa.Text(), nullable=True),
        sa.Column("attendees_json", sa.Text(), nullable=True),
        sa.Column("created_at_remote", sa.Text(), nullable=True),
        sa.Column("last_modified_remote", sa.Text(), nullable=True),
        sa.Column("created_at", sa.Text(), nullable=False),
        sa.CheckConstraint(
            "NOT (is_master AND master_event_id IS NOT NULL)",
            name="ck_calendar_events_master_has_no_master",
        ),
    )
    op.create_index("ix_calendar_events_feed_start", "calendar_events", ["feed_id", "start_dt"])
    op.create_index("ix_calendar_events_feed_external_id", "calendar_events", ["feed_id", "external_event_id"])

    op.create_table(
        "feed_sync_locks",
        sa.Column(
            "feed_id",
            sa.Integer(),
            sa.ForeignKey("calendar_feeds.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("owner", sa.Text(), nullable=False),
        sa.Column("acquired_at", sa.Text(), nullable=False),
    )

    op.create_table(
        "task_list_mappings",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Text(), nullable=False),
        sa.Column("provider", sa.Text(), nullable=False),
        sa.Column("external_list_id", sa.Text(), nullable=False),
        sa.Column("project_id", sa.Text(), nullable=False),
        sa.Column(
            "direction",
            sa.Enum(
                "INCOMING",
                "OUTGOING",
                "BIDIRECTIONAL",
                name="sync_direction",
                native_enum=False,
                create_constraint=True,
            ),
            nullable=False,
        ),
        sa.Column("last_synced_at", sa.Text(), nullable=True),
        sa.UniqueConstraint("provider", "external_list_id", name="uq_task_list_mappings_provider_list"),
    )
    op.create_index("ix_task_list_mappings_user_id", "task_list_mappings", ["user_id"])


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index("ix_task_list_mappings_user_id", table_name="task_list_mappings")
    op.drop_table("task_list_mappings")
    op.drop_table("feed_sync_locks")
    op.drop_index("ix_calendar_events_feed_external_id", table_name="calendar_events")
    op.drop_index("ix_calendar_events_feed_start", table_name="calendar_events")
    op.drop_table("calendar_events")
    op.drop_index("ix_calendar_feeds_account_id", table_name="calendar_feeds")
    op.drop_index("ix_calendar_feeds_user_id", table_name="calendar_feeds")
    op.drop_table("calendar_feeds")
    op.drop_index("ix_connected_accounts_user_id", table_name="connected_accounts")
    op.drop_table("connected_accounts")
    op.drop_table("settings")
