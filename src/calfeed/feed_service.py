from __future__ import annotations

from datetime import datetime
from urllib.parse import urlparse
import logging

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, delete, select

from calfeed.config import get_float_setting, get_setting
from calfeed.connectors.caldav import CalDavClient, DiscoveredCalendar
from calfeed.connectors.webcal import WebCalClient, normalize_webcal_url
from calfeed.errors import (
    AccountConfigurationError,
    CalendarSyncError,
    FeedNotFoundError,
)
from calfeed.models import CalendarFeed, ConnectedAccount, FeedType, SyncLock
from calfeed.providers import CalendarProvider, CalDavProvider, WebCalProvider
from calfeed.secret_store import store_caldav_password
from calfeed.sync_service import delete_feed_events, sync_feed_by_id, update_feed

logger = logging.getLogger(__name__)


def add_caldav_account(
    session: Session,
    *,
    user_id: str,
    email: str,
    caldav_url: str,
    caldav_username: str | None = None,
    password: str | None = None,
    store_in_keychain: bool = False,
) -> ConnectedAccount:
    """Register CalDAV credentials.

    With ``store_in_keychain`` the password goes to the macOS Keychain and the
    account row keeps an empty token; otherwise the token is stored on the row.
    """
    email_value = email.strip()
    url_value = caldav_url.strip()
    if not email_value:
        raise ValueError("Account email must not be empty.")
    if urlparse(url_value).scheme.lower() != "https":
        raise ValueError("CalDAV URL must use https://")

    access_token = password or ""
    if store_in_keychain and password:
        store_caldav_password(account=(caldav_username or email_value).strip(), password=password)
        access_token = ""

    account = ConnectedAccount(
        user_id=user_id,
        provider=FeedType.CALDAV,
        email=email_value,
        caldav_url=url_value,
        caldav_username=(caldav_username or "").strip() or None,
        access_token=access_token,
    )
    session.add(account)
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        raise ValueError(f"A CalDAV account for {email_value} already exists.") from None
    session.refresh(account)
    logger.info("account_added account_id=%s provider=%s", account.id, account.provider)
    return account


def list_accounts(session: Session, *, user_id: str | None = None) -> list[ConnectedAccount]:
    statement = select(ConnectedAccount)
    if user_id is not None:
        statement = statement.where(ConnectedAccount.user_id == user_id)
    return session.exec(statement.order_by(ConnectedAccount.id)).all()


def get_account(session: Session, account_id: int) -> ConnectedAccount:
    account = session.get(ConnectedAccount, account_id)
    if account is None:
        raise AccountConfigurationError(f"Account {account_id} not found.")
    return account


def caldav_client_for_account(session: Session, account_id: int) -> CalDavClient:
    account = get_account(session, account_id)
    return CalDavClient.from_account(account, timeout_sec=get_float_setting(session, "http_timeout_sec"))


def discover_account_calendars(session: Session, account_id: int) -> list[DiscoveredCalendar]:
    return caldav_client_for_account(session, account_id).discover_calendars()


def check_account_connection(session: Session, account_id: int) -> bool:
    return caldav_client_for_account(session, account_id).test_connection()


def add_caldav_feed(
    session: Session,
    *,
    user_id: str,
    account_id: int,
    calendar_url: str,
    name: str | None = None,
    color: str | None = None,
    initial_sync: bool = True,
    provider: CalendarProvider | None = None,
    now: datetime | None = None,
) -> CalendarFeed:
    account = get_account(session, account_id)
    if account.user_id != user_id:
        raise AccountConfigurationError(f"Account {account_id} does not belong to user {user_id}.")

    path = urlparse(calendar_url).path or calendar_url
    feed = CalendarFeed(
        user_id=user_id,
        account_id=account.id,
        type=FeedType.CALDAV,
        url=calendar_url,
        name=(name or "").strip() or path.rstrip("/").rsplit("/", 1)[-1] or account.email,
        color=color or get_setting(session, "default_feed_color"),
        caldav_path=path,
    )
    _save_feed(session, feed)

    if initial_sync:
        if provider is None:
            client = CalDavClient.from_account(
                account,
                calendar_path=calendar_url,
                timeout_sec=get_float_setting(session, "http_timeout_sec"),
            )
            provider = CalDavProvider.from_client(client)
        _initial_sync(session, feed.id, provider=provider, now=now)
    return feed


def add_webcal_feed(
    session: Session,
    *,
    user_id: str,
    url: str,
    name: str | None = None,
    color: str | None = None,
    client: WebCalClient | None = None,
    initial_sync: bool = True,
    now: datetime | None = None,
) -> CalendarFeed:
    """Subscribe to a published calendar.

    The URL is fetched once up front; a response that is not ``text/calendar``
    raises :class:`WebCalNotFoundError` and no feed is created.
    """
    feed_url = normalize_webcal_url(url)
    active_client = client or WebCalClient(url=feed_url, timeout_sec=get_float_setting(session, "http_timeout_sec"))
    document = active_client.fetch_document()

    feed = CalendarFeed(
        user_id=user_id,
        type=FeedType.WEBCAL,
        url=feed_url,
        name=(name or "").strip() or document.name or urlparse(feed_url).hostname or feed_url,
        color=color or get_setting(session, "default_feed_color"),
    )
    _save_feed(session, feed)

    if initial_sync:
        _initial_sync(session, feed.id, provider=WebCalProvider(client=active_client), now=now)
    return feed


def list_feeds(session: Session, *, user_id: str | None = None) -> list[CalendarFeed]:
    statement = select(CalendarFeed)
    if user_id is not None:
        statement = statement.where(CalendarFeed.user_id == user_id)
    return session.exec(statement.order_by(CalendarFeed.id)).all()


def get_feed(session: Session, feed_id: int) -> CalendarFeed:
    feed = session.get(CalendarFeed, feed_id)
    if feed is None:
        raise FeedNotFoundError(f"Feed {feed_id} not found.")
    return feed


def set_feed_enabled(session: Session, feed_id: int, *, enabled: bool) -> CalendarFeed:
    feed = get_feed(session, feed_id)
    update_feed(session, feed, enabled=enabled)
    session.commit()
    session.refresh(feed)
    logger.info("feed_enabled_changed feed_id=%s enabled=%s", feed_id, enabled)
    return feed


def delete_feed(session: Session, feed_id: int) -> None:
    """Delete a feed together with its events and any lock row."""
    feed = get_feed(session, feed_id)
    try:
        delete_feed_events(session, feed_id)
        session.exec(delete(SyncLock).where(SyncLock.feed_id == feed_id))
        session.delete(feed)
        session.commit()
    except Exception:
        session.rollback()
        logger.error("feed_delete_failed feed_id=%s", feed_id)
        raise
    logger.info("feed_deleted feed_id=%s", feed_id)


def _save_feed(session: Session, feed: CalendarFeed) -> None:
    session.add(feed)
    session.commit()
    session.refresh(feed)
    logger.info("feed_added feed_id=%s type=%s", feed.id, feed.type)


def _initial_sync(
    session: Session,
    feed_id: int,
    *,
    provider: CalendarProvider,
    now: datetime | None,
) -> None:
    try:
        sync_feed_by_id(session, feed_id, provider=provider, now=now)
    except CalendarSyncError as exc:
        # The failure is already stored on feed.error; the subscription stays.
        logger.warning("feed_initial_sync_failed feed_id=%s error=%s", feed_id, type(exc).__name__)
