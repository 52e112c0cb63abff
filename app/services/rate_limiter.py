"""Per-user fixed-window rate limiting.

Two variants share the same result type:

* ``check_rate_limit`` persists the window in the ``rate_limits`` table so the
  limit holds across instances. Read-then-write without locking; two
  concurrent events for one user may both start a window, which at worst
  under-counts by one.
* ``InProcessRateLimiter`` keeps windows in a dict. Approximate: every
  instance has its own counts and they vanish on restart.
"""

import math
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.models import RateLimit
from app.services.errors import StorageError
from app.services.time_utils import as_utc, utc_now

logger = get_logger("rate_limiter")

DEFAULT_MAX_REQUESTS = 30
DEFAULT_WINDOW_MS = 60_000
CLEANUP_AFTER = timedelta(minutes=5)
CLEANUP_WINDOW_MULTIPLE = 2


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: datetime
    retry_after_seconds: Optional[int] = None


def _retry_after_seconds(window_end: datetime, now: datetime) -> int:
    remaining_ms = (window_end - now).total_seconds() * 1000
    return max(1, math.ceil(remaining_ms / 1000))


def check_rate_limit(
    db: Session,
    user_id: int,
    max_requests: int = DEFAULT_MAX_REQUESTS,
    window_ms: int = DEFAULT_WINDOW_MS,
    now: Optional[datetime] = None,
) -> RateLimitResult:
    """Count one request for ``user_id`` against the durable window.

    Fails open when the record cannot be read. A failed write raises
    StorageError so the caller decides what to do with the event.
    """
    now = now or utc_now()
    window = timedelta(milliseconds=window_ms)

    try:
        record = db.get(RateLimit, user_id)
    except SQLAlchemyError as e:
        logger.warning(
            "Rate limit store unreachable, allowing request",
            extra={"context": {"user_id": user_id, "error": str(e)}},
        )
        db.rollback()
        return RateLimitResult(allowed=True, remaining=max_requests, reset_at=now + window)

    window_start = as_utc(record.window_start) if record else None

    try:
        if record is None or now - window_start >= window:
            if record is None:
                record = RateLimit(user_id=user_id)
                db.add(record)
            record.request_count = 1
            record.window_start = now
            record.updated_at = now
            db.commit()
            return RateLimitResult(allowed=True, remaining=max_requests - 1, reset_at=now + window)

        window_end = window_start + window
        if record.request_count >= max_requests:
            return RateLimitResult(
                allowed=False,
                remaining=0,
                reset_at=window_end,
                retry_after_seconds=_retry_after_seconds(window_end, now),
            )

        record.request_count += 1
        record.updated_at = now
        db.commit()
        return RateLimitResult(
            allowed=True,
            remaining=max_requests - record.request_count,
            reset_at=window_end,
        )
    except SQLAlchemyError as e:
        db.rollback()
        raise StorageError(f"Failed to persist rate limit for user {user_id}: {e}") from e


def cleanup_rate_limits(
    db: Session,
    window_ms: int = DEFAULT_WINDOW_MS,
    min_age: timedelta = CLEANUP_AFTER,
    now: Optional[datetime] = None,
) -> int:
    """Delete windows nobody has touched recently. Returns the number of rows removed.

    A row is only removed once it is older than ``min_age`` and older than
    ``CLEANUP_WINDOW_MULTIPLE`` windows, so a window still in force is never
    dropped early.
    """
    older_than = max(min_age, CLEANUP_WINDOW_MULTIPLE * timedelta(milliseconds=window_ms))
    cutoff = (now or utc_now()) - older_than
    deleted = db.query(RateLimit).filter(RateLimit.updated_at < cutoff).delete(synchronize_session=False)
    db.commit()
    if deleted:
        logger.info(f"Removed {deleted} stale rate limit records")
    return deleted


@dataclass
class _Window:
    count: int
    started_at: float


class InProcessRateLimiter:
    """Fast-path limiter for call sites that cannot afford a database round trip."""

    def __init__(
        self,
        max_requests: int = DEFAULT_MAX_REQUESTS,
        window_seconds: float = DEFAULT_WINDOW_MS / 1000,
        clock: Callable[[], float] = time.time,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._windows: dict[int, _Window] = {}

    def _reset_at(self, started_at: float) -> datetime:
        return datetime.fromtimestamp(started_at + self.window_seconds, tz=timezone.utc)

    def check(self, user_id: int) -> RateLimitResult:
        now = self._clock()
        window = self._windows.get(user_id)

        if window is None or now - window.started_at >= self.window_seconds:
            window = _Window(count=1, started_at=now)
            self._windows[user_id] = window
            return RateLimitResult(
                allowed=True,
                remaining=self.max_requests - 1,
                reset_at=self._reset_at(now),
            )

        if window.count >= self.max_requests:
            remaining = window.started_at + self.window_seconds - now
            return RateLimitResult(
                allowed=False,
                remaining=0,
                reset_at=self._reset_at(window.started_at),
                retry_after_seconds=max(1, math.ceil(remaining)),
            )

        window.count += 1
        return RateLimitResult(
            allowed=True,
            remaining=self.max_requests - window.count,
            reset_at=self._reset_at(window.started_at),
        )

    def cleanup(self) -> int:
        now = self._clock()
        expired = [uid for uid, w in self._windows.items() if now - w.started_at >= self.window_seconds]
        for uid in expired:
            del self._windows[uid]
        return len(expired)
