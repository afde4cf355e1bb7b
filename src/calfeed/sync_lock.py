from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Iterator
import logging
import os
import threading
import uuid

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session

from calfeed.config import get_int_setting
from calfeed.errors import FeedSyncInProgressError
from calfeed.models import SyncLock
from calfeed.timeutil import db_to_dt, dt_to_db, utc_now

logger = logging.getLogger(__name__)


def _default_owner() -> str:
    return f"{os.getpid()}:{threading.get_ident()}:{uuid.uuid4().hex[:8]}"


def acquire_feed_lock(
    session: Session,
    feed_id: int,
    *,
    owner: str | None = None,
    now: datetime | None = None,
    ttl_sec: int | None = None,
) -> str:
    """Insert the lock row for ``feed_id`` and commit it.

    A lock older than ``ttl_sec`` is treated as abandoned and taken over.
    """
    owner_value = owner or _default_owner()
    now_value = now or utc_now()
    ttl = ttl_sec if ttl_sec is not None else get_int_setting(session, "sync_lock_ttl_sec")

    existing = session.get(SyncLock, feed_id)
    if existing is not None:
        acquired_at = db_to_dt(existing.acquired_at)
        if now_value - acquired_at < timedelta(seconds=ttl):
            raise FeedSyncInProgressError(f"Feed {feed_id} is already syncing (owner {existing.owner}).")
        logger.warning(
            "feed_sync_lock_stale feed_id=%s previous_owner=%s acquired_at=%s",
            feed_id,
            existing.owner,
            existing.acquired_at,
        )
        existing.owner = owner_value
        existing.acquired_at = dt_to_db(now_value)
        session.add(existing)
    else:
        session.add(SyncLock(feed_id=feed_id, owner=owner_value, acquired_at=dt_to_db(now_value)))

    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        raise FeedSyncInProgressError(f"Feed {feed_id} is already syncing.") from None
    return owner_value


def release_feed_lock(session: Session, feed_id: int, *, owner: str) -> None:
    lock = session.get(SyncLock, feed_id)
    if lock is None or lock.owner != owner:
        return
    session.delete(lock)
    session.commit()


@contextmanager
def feed_sync_lock(session: Session, feed_id: int, *, now: datetime | None = None) -> Iterator[str]:
    owner = acquire_feed_lock(session, feed_id, now=now)
    try:
        yield owner
    finally:
        session.rollback()
        release_feed_lock(session, feed_id, owner=owner)
