from __future__ import annotations

from datetime import datetime
import logging

import typer
from rich import print
from sqlmodel import Session, select

from calfeed.config import get_setting, get_user_id, list_settings, upsert_setting
from calfeed.db import get_engine, initialize_database
from calfeed.errors import CalendarSyncError, WebCalNotFoundError
from calfeed.feed_service import (
    add_caldav_account,
    add_caldav_feed,
    add_webcal_feed,
    check_account_connection,
    delete_feed,
    discover_account_calendars,
    list_accounts,
    list_feeds,
    set_feed_enabled,
)
from calfeed.ical import EventInput
from calfeed.models import CalendarEvent, EventKind
from calfeed.mutation_service import MutationMode, create_event, delete_event, update_event
from calfeed.secret_store import SecretStoreError
from calfeed.sync_runner import run_feed_batch
from calfeed.sync_service import sync_feed_by_id
from calfeed.timeutil import db_to_dt, dt_to_db, parse_cli_dt, resolve_timezone

app = typer.Typer(
    name="calfeed",
    help="Calendar feed sync for CalDAV and WebCal sources.",
    no_args_is_help=True,
)
account_app = typer.Typer(help="Manage connected CalDAV accounts.")
feed_app = typer.Typer(help="Manage calendar feeds.")
sync_app = typer.Typer(help="Sync feeds from their remote sources.")
event_app = typer.Typer(help="List and edit synced events.")
config_app = typer.Typer(help="Manage calfeed settings.")
app.add_typer(account_app, name="account")
app.add_typer(feed_app, name="feed")
app.add_typer(sync_app, name="sync")
app.add_typer(event_app, name="event")
app.add_typer(config_app, name="config")

_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR"}


def _fail(prefix: str, exc: Exception) -> typer.Exit:
    print(f"[red]{prefix}:[/red] {exc}")
    return typer.Exit(code=1)


def _parse_dt(session: Session, value: str, option: str) -> datetime:
    tz = resolve_timezone(get_setting(session, "timezone"))
    try:
        return parse_cli_dt(value, tz)
    except ValueError as exc:
        raise typer.BadParameter(f"Invalid --{option}: {exc}") from exc


def _parse_mode(value: str) -> MutationMode:
    try:
        return MutationMode(value.strip().lower())
    except ValueError as exc:
        raise typer.BadParameter("Invalid --mode. Expected 'single' or 'series'.") from exc


@app.callback()
def root(
    log_level: str = typer.Option("WARNING", "--log-level", help="DEBUG, INFO, WARNING or ERROR."),
) -> None:
    """calfeed CLI entrypoint."""
    level = log_level.strip().upper()
    if level not in _LOG_LEVELS:
        raise typer.BadParameter(f"Invalid --log-level. Expected one of {', '.join(sorted(_LOG_LEVELS))}.")
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s %(message)s")


@app.command()
def init() -> None:
    """Initialize DB, run migrations, and seed defaults."""
    db_path = initialize_database()
    print(f"[green]Initialized database:[/green] {db_path}")


@account_app.command("add")
def account_add(
    email: str = typer.Option(..., "--email", help="Account email (default CalDAV username)."),
    url: str = typer.Option(..., "--url", help="CalDAV server or principal URL (https://)."),
    username: str | None = typer.Option(None, "--username", help="CalDAV username if not the email."),
    password: str | None = typer.Option(None, "--password", help="Password or app password."),
    keychain: bool = typer.Option(False, "--keychain", help="Store the password in macOS Keychain."),
) -> None:
    """Register a CalDAV account."""
    with Session(get_engine(ensure_directory=True)) as session:
        try:
            account = add_caldav_account(
                session,
                user_id=get_user_id(),
                email=email,
                caldav_url=url,
                caldav_username=username,
                password=password,
                store_in_keychain=keychain,
            )
        except ValueError as exc:
            raise typer.BadParameter(str(exc)) from exc
        except SecretStoreError as exc:
            raise _fail("Keychain error", exc) from exc
        account_id = account.id

    print(f"[green]Account added:[/green] id={account_id} email={email}")


@account_app.command("list")
def account_list() -> None:
    """List connected accounts."""
    with Session(get_engine(ensure_directory=True)) as session:
        accounts = list_accounts(session, user_id=get_user_id())
        rows = [
            f"{account.id}\t{account.provider}\t{account.email}\t{account.caldav_url or '-'}"
            for account in accounts
        ]

    if not rows:
        typer.echo("No accounts.")
        return
    for row in rows:
        typer.echo(row)


@account_app.command("calendars")
def account_calendars(account_id: int = typer.Argument(..., help="Connected account id.")) -> None:
    """Discover the calendar collections of an account."""
    with Session(get_engine(ensure_directory=True)) as session:
        try:
            calendars = discover_account_calendars(session, account_id)
        except CalendarSyncError as exc:
            raise _fail("Calendar discovery failed", exc) from exc

    if not calendars:
        typer.echo("No calendars found.")
        return
    for calendar in calendars:
        typer.echo(f"{calendar.display_name}\t{calendar.url}\t{calendar.color or '-'}")


@account_app.command("test")
def account_test(account_id: int = typer.Argument(..., help="Connected account id.")) -> None:
    """Check that the account credentials are accepted."""
    with Session(get_engine(ensure_directory=True)) as session:
        try:
            ok = check_account_connection(session, account_id)
        except CalendarSyncError as exc:
            raise _fail("Connection test failed", exc) from exc

    if not ok:
        print("[red]Connection test failed.[/red]")
        raise typer.Exit(code=1)
    print("[green]Connection OK.[/green]")


@feed_app.command("add-caldav")
def feed_add_caldav(
    account_id: int = typer.Option(..., "--account-id", help="Connected account id."),
    calendar_url: str = typer.Option(..., "--calendar-url", help="Calendar collection URL."),
    name: str | None = typer.Option(None, "--name", help="Display name."),
    color: str | None = typer.Option(None, "--color", help="Color as #RRGGBB."),
    no_sync: bool = typer.Option(False, "--no-sync", help="Skip the initial sync."),
) -> None:
    """Add a CalDAV calendar of a connected account as a feed."""
    with Session(get_engine(ensure_directory=True)) as session:
        try:
            feed = add_caldav_feed(
                session,
                user_id=get_user_id(),
                account_id=account_id,
                calendar_url=calendar_url,
                name=name,
                color=color,
                initial_sync=not no_sync,
            )
        except CalendarSyncError as exc:
            raise _fail("Feed add failed", exc) from exc
        summary = f"id={feed.id} name={feed.name} error={feed.error or '-'}"

    print(f"[green]Feed added:[/green] {summary}")


@feed_app.command("add-webcal")
def feed_add_webcal(
    url: str = typer.Argument(..., help="webcal:// or https:// URL of a published calendar."),
    name: str | None = typer.Option(None, "--name", help="Display name (defaults to X-WR-CALNAME)."),
    color: str | None = typer.Option(None, "--color", help="Color as #RRGGBB."),
    no_sync: bool = typer.Option(False, "--no-sync", help="Skip the initial sync."),
) -> None:
    """Subscribe to a WebCal feed."""
    with Session(get_engine(ensure_directory=True)) as session:
        try:
            feed = add_webcal_feed(
                session,
                user_id=get_user_id(),
                url=url,
                name=name,
                color=color,
                initial_sync=not no_sync,
            )
        except WebCalNotFoundError as exc:
            raise _fail("WebCal not found", exc) from exc
        except CalendarSyncError as exc:
            raise _fail("WebCal subscribe failed", exc) from exc
        summary = f"id={feed.id} name={feed.name} error={feed.error or '-'}"

    print(f"[green]Feed added:[/green] {summary}")


@feed_app.command("list")
def feed_list() -> None:
    """List feeds with their last sync status."""
    with Session(get_engine(ensure_directory=True)) as session:
        rows = [
            "\t".join(
                [
                    str(feed.id),
                    str(feed.type),
                    feed.name,
                    "enabled" if feed.enabled else "disabled",
                    feed.last_sync or "never",
                    feed.error or "-",
                ]
            )
            for feed in list_feeds(session, user_id=get_user_id())
        ]

    if not rows:
        typer.echo("No feeds.")
        return
    for row in rows:
        typer.echo(row)


@feed_app.command("remove")
def feed_remove(feed_id: int = typer.Argument(..., help="Feed id.")) -> None:
    """Delete a feed and all of its events."""
    with Session(get_engine(ensure_directory=True)) as session:
        try:
            delete_feed(session, feed_id)
        except CalendarSyncError as exc:
            raise _fail("Feed remove failed", exc) from exc

    print(f"[green]Feed removed:[/green] id={feed_id}")


def _set_enabled(feed_id: int, enabled: bool) -> None:
    with Session(get_engine(ensure_directory=True)) as session:
        try:
            set_feed_enabled(session, feed_id, enabled=enabled)
        except CalendarSyncError as exc:
            raise _fail("Feed update failed", exc) from exc
    state = "enabled" if enabled else "disabled"
    print(f"[green]Feed {state}:[/green] id={feed_id}")


@feed_app.command("enable")
def feed_enable(feed_id: int = typer.Argument(..., help="Feed id.")) -> None:
    """Include a feed in 'sync all'."""
    _set_enabled(feed_id, True)


@feed_app.command("disable")
def feed_disable(feed_id: int = typer.Argument(..., help="Feed id.")) -> None:
    """Exclude a feed from 'sync all'."""
    _set_enabled(feed_id, False)


@sync_app.command("feed")
def sync_feed_command(feed_id: int = typer.Argument(..., help="Feed id.")) -> None:
    """Replace a feed's events with a fresh fetch."""
    with Session(get_engine(ensure_directory=True)) as session:
        try:
            result = sync_feed_by_id(session, feed_id)
        except CalendarSyncError as exc:
            raise _fail("Feed sync failed", exc) from exc

    print(
        "[green]Feed sync complete.[/green] "
        f"feed_id={result.feed_id} objects={result.objects} masters={result.masters} "
        f"instances={result.instances} standalones={result.standalones} "
        f"skipped={result.skipped_objects} dropped={result.dropped_events}"
    )


@sync_app.command("all")
def sync_all_command(
    retries: int = typer.Option(2, "--retries", help="Retries per feed for transient failures."),
    backoff_sec: int = typer.Option(5, "--backoff-sec", help="Initial backoff; doubles per retry."),
    workers: int = typer.Option(4, "--workers", help="Feeds synced in parallel."),
) -> None:
    """Sync every enabled feed. Exit code 0 = all ok, 2 = partial, 1 = all failed."""
    engine = get_engine(ensure_directory=True)
    with Session(engine) as session:
        feed_ids = [feed.id for feed in list_feeds(session, user_id=get_user_id()) if feed.enabled]

    def _sync_one(feed_id: int) -> object:
        with Session(engine) as worker_session:
            return sync_feed_by_id(worker_session, feed_id)

    try:
        outcome = run_feed_batch(
            feed_ids,
            sync_one=_sync_one,
            retries=retries,
            backoff_sec=backoff_sec,
            max_workers=workers,
        )
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc

    for feed_outcome in outcome.feeds:
        if feed_outcome.success:
            typer.echo(f"feed={feed_outcome.feed_id} status=ok attempts={feed_outcome.attempts}")
        else:
            typer.echo(
                f"feed={feed_outcome.feed_id} status=failed attempts={feed_outcome.attempts} "
                f"reason={feed_outcome.reason}"
            )
    typer.echo(f"feeds={len(outcome.feeds)} failed={len(outcome.failed)} elapsed_sec={outcome.elapsed_sec:.2f}")
    if outcome.exit_code != 0:
        raise typer.Exit(code=outcome.exit_code)


@event_app.command("list")
def event_list(
    feed_id: int | None = typer.Option(None, "--feed-id", help="Only events of this feed."),
    from_value: str | None = typer.Option(None, "--from", help="Start bound: YYYY-MM-DD[ HH:MM]."),
    to_value: str | None = typer.Option(None, "--to", help="End bound: YYYY-MM-DD[ HH:MM]."),
    kind: str | None = typer.Option(None, "--kind", help="master, instance or standalone."),
) -> None:
    """List stored events ordered by start."""
    kind_filter: EventKind | None = None
    if kind is not None:
        try:
            kind_filter = EventKind(kind.strip().lower())
        except ValueError as exc:
            raise typer.BadParameter("Invalid --kind. Expected master, instance or standalone.") from exc

    with Session(get_engine(ensure_directory=True)) as session:
        statement = select(CalendarEvent)
        if feed_id is not None:
            statement = statement.where(CalendarEvent.feed_id == feed_id)
        if from_value is not None:
            statement = statement.where(CalendarEvent.start_dt >= dt_to_db(_parse_dt(session, from_value, "from")))
        if to_value is not None:
            statement = statement.where(CalendarEvent.start_dt < dt_to_db(_parse_dt(session, to_value, "to")))
        events = session.exec(statement.order_by(CalendarEvent.start_dt, CalendarEvent.id)).all()
        rows = [
            f"{event.id}\t{event.feed_id}\t{event.kind}\t{event.start_dt}\t{event.end_dt}\t{event.title}"
            for event in events
            if kind_filter is None or event.kind == kind_filter
        ]

    if not rows:
        typer.echo("No events.")
        return
    for row in rows:
        typer.echo(row)


@event_app.command("create")
def event_create(
    feed_id: int = typer.Option(..., "--feed-id", help="CalDAV feed to create the event in."),
    title: str = typer.Option(..., "--title"),
    start: str = typer.Option(..., "--start", help="YYYY-MM-DD HH:MM or YYYY-MM-DD (settings timezone)."),
    end: str = typer.Option(..., "--end", help="YYYY-MM-DD HH:MM or YYYY-MM-DD (settings timezone)."),
    all_day: bool = typer.Option(False, "--all-day"),
    description: str | None = typer.Option(None, "--description"),
    location: str | None = typer.Option(None, "--location"),
    rrule: str | None = typer.Option(None, "--rrule", help="Recurrence rule, e.g. FREQ=WEEKLY;COUNT=4."),
) -> None:
    """Create an event on the remote calendar, then resync the feed."""
    with Session(get_engine(ensure_directory=True)) as session:
        event_input = EventInput(
            title=title,
            start=_parse_dt(session, start, "start"),
            end=_parse_dt(session, end, "end"),
            description=description,
            location=location,
            all_day=all_day,
            recurrence_rule=rrule,
        )
        try:
            result = create_event(session, feed_id=feed_id, event_input=event_input)
        except ValueError as exc:
            raise typer.BadParameter(str(exc)) from exc
        except CalendarSyncError as exc:
            raise _fail("Event create failed", exc) from exc

    print(f"[green]Event created:[/green] uid={result.uid} feed_events={result.sync.total_events}")


@event_app.command("update")
def event_update(
    event_id: int = typer.Argument(..., help="Local event id."),
    title: str | None = typer.Option(None, "--title"),
    start: str | None = typer.Option(None, "--start"),
    end: str | None = typer.Option(None, "--end"),
    description: str | None = typer.Option(None, "--description"),
    location: str | None = typer.Option(None, "--location"),
    mode: str = typer.Option("series", "--mode", help="single (this occurrence) or series."),
) -> None:
    """Update an event; unspecified fields keep their stored values."""
    mutation_mode = _parse_mode(mode)
    with Session(get_engine(ensure_directory=True)) as session:
        existing = session.get(CalendarEvent, event_id)
        if existing is None:
            raise typer.BadParameter(f"Event {event_id} not found.")
        event_input = EventInput(
            title=title if title is not None else existing.title,
            start=_parse_dt(session, start, "start") if start is not None else db_to_dt(existing.start_dt),
            end=_parse_dt(session, end, "end") if end is not None else db_to_dt(existing.end_dt),
            description=description if description is not None else existing.description,
            location=location if location is not None else existing.location,
            all_day=existing.all_day,
        )
        try:
            result = update_event(session, event_id=event_id, event_input=event_input, mode=mutation_mode)
        except ValueError as exc:
            raise typer.BadParameter(str(exc)) from exc
        except CalendarSyncError as exc:
            raise _fail("Event update failed", exc) from exc

    print(f"[green]Event updated:[/green] uid={result.uid} mode={mutation_mode}")


@event_app.command("delete")
def event_delete(
    event_id: int = typer.Argument(..., help="Local event id."),
    mode: str = typer.Option("series", "--mode", help="single (this occurrence) or series."),
) -> None:
    """Delete an event, or one occurrence of a recurring event."""
    mutation_mode = _parse_mode(mode)
    with Session(get_engine(ensure_directory=True)) as session:
        try:
            result = delete_event(session, event_id=event_id, mode=mutation_mode)
        except CalendarSyncError as exc:
            raise _fail("Event delete failed", exc) from exc

    print(f"[green]Event deleted:[/green] uid={result.uid} mode={mutation_mode}")


@config_app.command("show")
def config_show() -> None:
    """Print all settings as key=value, sorted by key."""
    with Session(get_engine(ensure_directory=True)) as session:
        settings = list_settings(session)

    for setting in settings:
        typer.echo(f"{setting.key}={setting.value}")


@config_app.command("set")
def config_set(key: str, value: str) -> None:
    """Validate and upsert a setting."""
    with Session(get_engine(ensure_directory=True)) as session:
        try:
            setting = upsert_setting(session, key=key, value=value)
        except ValueError as exc:
            raise typer.BadParameter(str(exc)) from exc

    typer.echo(f"{setting.key}={setting.value}")


def main() -> None:
    app()
