from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from collections.abc import Callable, Sequence
from dataclasses import dataclass
import logging
import time

from calfeed.errors import (
    AccountConfigurationError,
    FeedNotFoundError,
    FeedSyncInProgressError,
    RemoteFetchError,
    UnsupportedProviderError,
)

logger = logging.getLogger(__name__)

FeedOperation = Callable[[int], object]
SleepFn = Callable[[float], None]

# Retrying cannot fix these; the feed is reported failed after one attempt.
_PERMANENT_ERRORS: tuple[type[Exception], ...] = (
    AccountConfigurationError,
    FeedNotFoundError,
    FeedSyncInProgressError,
    UnsupportedProviderError,
)


@dataclass(frozen=True)
class FeedRunOutcome:
    feed_id: int
    success: bool
    attempts: int
    reason: str | None = None
    elapsed_sec: float = 0.0


@dataclass(frozen=True)
class BatchSyncOutcome:
    feeds: list[FeedRunOutcome]
    elapsed_sec: float = 0.0

    @property
    def failed(self) -> list[FeedRunOutcome]:
        return [outcome for outcome in self.feeds if not outcome.success]

    @property
    def exit_code(self) -> int:
        if not self.failed:
            return 0
        if len(self.failed) < len(self.feeds):
            return 2
        return 1


def run_feed_batch(
    feed_ids: Sequence[int],
    *,
    sync_one: FeedOperation,
    retries: int = 2,
    backoff_sec: int = 5,
    sleep_fn: SleepFn = time.sleep,
    max_workers: int = 4,
) -> BatchSyncOutcome:
    """Sync several feeds, retrying transient failures with exponential backoff.

    ``sync_one`` must open its own database session; with ``max_workers > 1``
    it runs on worker threads.
    """
    if retries < 0:
        raise ValueError("--retries must be >= 0.")
    if backoff_sec < 0:
        raise ValueError("--backoff-sec must be >= 0.")
    if max_workers < 1:
        raise ValueError("--workers must be >= 1.")

    started_at = time.perf_counter()
    if max_workers > 1 and len(feed_ids) > 1:
        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="calfeed-sync") as pool:
            futures = [
                pool.submit(
                    _run_feed,
                    feed_id=feed_id,
                    operation=sync_one,
                    retries=retries,
                    backoff_sec=backoff_sec,
                    sleep_fn=sleep_fn,
                )
                for feed_id in feed_ids
            ]
            outcomes = [future.result() for future in futures]
    else:
        outcomes = [
            _run_feed(
                feed_id=feed_id,
                operation=sync_one,
                retries=retries,
                backoff_sec=backoff_sec,
                sleep_fn=sleep_fn,
            )
            for feed_id in feed_ids
        ]
    return BatchSyncOutcome(feeds=outcomes, elapsed_sec=time.perf_counter() - started_at)


def _run_feed(
    *,
    feed_id: int,
    operation: FeedOperation,
    retries: int,
    backoff_sec: int,
    sleep_fn: SleepFn,
) -> FeedRunOutcome:
    started_at = time.perf_counter()
    last_error: Exception | None = None
    attempts = 0
    for attempt in range(retries + 1):
        attempts = attempt + 1
        try:
            operation(feed_id)
            return FeedRunOutcome(
                feed_id=feed_id,
                success=True,
                attempts=attempts,
                elapsed_sec=time.perf_counter() - started_at,
            )
        except Exception as exc:
            last_error = exc
            logger.warning(
                "feed_batch_attempt_failed feed_id=%s attempt=%s retries=%s error_type=%s",
                feed_id,
                attempts,
                retries,
                exc.__class__.__name__,
            )
            if attempt == retries or isinstance(exc, _PERMANENT_ERRORS):
                break
            delay_sec = backoff_sec * (2**attempt)
            logger.info(
                "feed_batch_retrying feed_id=%s next_attempt=%s backoff_sec=%s",
                feed_id,
                attempt + 2,
                delay_sec,
            )
            sleep_fn(float(delay_sec))

    assert last_error is not None
    return FeedRunOutcome(
        feed_id=feed_id,
        success=False,
        attempts=attempts,
        reason=_sanitize_reason(last_error),
        elapsed_sec=time.perf_counter() - started_at,
    )


def _sanitize_reason(error: Exception) -> str:
    if isinstance(error, FeedSyncInProgressError):
        return "sync already in progress"
    if isinstance(error, UnsupportedProviderError):
        return "unsupported provider"
    if isinstance(error, AccountConfigurationError):
        return "account not configured"
    if isinstance(error, FeedNotFoundError):
        return "feed not found"
    if isinstance(error, RemoteFetchError):
        if error.status_code is not None:
            return f"remote unavailable (HTTP {error.status_code})"
        return "remote unavailable"
    if isinstance(error, ValueError):
        return "validation failed"
    return f"unexpected {error.__class__.__name__}"
