"""Hourly and daily per-user request quotas.

Admission is a single conditional UPDATE: the window resets and the increment
happen in the same statement, guarded by the ceilings, so two concurrent
requests can never both pass a counter that only had room for one.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import case, update
from sqlalchemy.exc import IntegrityError

from coach.database.database import get_record, transaction
from coach.database.models import RateLimit
from coach.errors import PersistenceError
from coach.records import RateLimitRecord


@dataclass
class RateLimitDecision:
    allowed: bool
    retry_after_ms: int = 0
    record: Optional[RateLimitRecord] = None


def hour_start(now: datetime) -> datetime:
    return now.replace(minute=0, second=0, microsecond=0)


def day_start(now: datetime) -> datetime:
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def _ms_until(boundary: datetime, now: datetime) -> int:
    return max(1, int((boundary - now).total_seconds() * 1000))


def _admit(user_id: str, now: datetime, hourly_limit: int, daily_limit: int) -> bool:
    hour = hour_start(now)
    day = day_start(now)
    hourly = case((RateLimit.window_start == hour, RateLimit.hourly_count), else_=0)
    daily = case((RateLimit.day_start == day, RateLimit.daily_count), else_=0)
    statement = (
        update(RateLimit)
        .where(
            RateLimit.user_id == user_id,
            RateLimit.is_blocked.is_(False),
            hourly < hourly_limit,
            daily < daily_limit,
        )
        .values(hourly_count=hourly + 1, daily_count=daily + 1, window_start=hour, day_start=day)
        .execution_options(synchronize_session=False)
    )
    with transaction() as db:
        return db.execute(statement).rowcount == 1


def _create_record(user_id: str, now: datetime) -> None:
    try:
        with transaction() as db:
            db.add(RateLimit(
                user_id=user_id,
                hourly_count=0,
                daily_count=0,
                window_start=hour_start(now),
                day_start=day_start(now),
                is_blocked=False,
            ))
    except PersistenceError as e:
        # Another request created it first
        if not isinstance(e.__cause__, IntegrityError):
            raise


def get_rate_limit(user_id: str) -> Optional[RateLimitRecord]:
    return RateLimitRecord.parse(get_record(RateLimit, user_id))


def retry_after_ms(record: RateLimitRecord, now: datetime, hourly_limit: int, daily_limit: int) -> int:
    """Milliseconds until the window that is blocking this user rolls over.

    A full hourly window waits for the next hour, even when the daily quota is
    spent too. Only the daily ceiling alone, or an explicit block, waits for
    the next day.
    """
    hourly = record.hourly_count if record.window_start == hour_start(now) else 0
    if not record.is_blocked and hourly >= hourly_limit:
        return _ms_until(hour_start(now) + timedelta(hours=1), now)
    return _ms_until(day_start(now) + timedelta(days=1), now)


def check_rate_limit(user_id: str, now: datetime, hourly_limit: int, daily_limit: int) -> RateLimitDecision:
    if _admit(user_id, now, hourly_limit, daily_limit):
        return RateLimitDecision(allowed=True)

    record = get_rate_limit(user_id)
    if record is None:
        _create_record(user_id, now)
        if _admit(user_id, now, hourly_limit, daily_limit):
            return RateLimitDecision(allowed=True)
        record = get_rate_limit(user_id)

    if record is None:
        return RateLimitDecision(allowed=False, retry_after_ms=_ms_until(hour_start(now) + timedelta(hours=1), now))

    wait_ms = retry_after_ms(record, now, hourly_limit, daily_limit)
    logging.warning(f"Rate limit reached for user {user_id}, retry in {wait_ms} ms")
    return RateLimitDecision(allowed=False, retry_after_ms=wait_ms, record=record)


def set_blocked(user_id: str, now: datetime, blocked: bool = True) -> None:
    """Explicitly block or unblock a user regardless of their counters."""
    if get_rate_limit(user_id) is None:
        _create_record(user_id, now)
    with transaction() as db:
        db.execute(
            update(RateLimit)
            .where(RateLimit.user_id == user_id)
            .values(is_blocked=blocked)
            .execution_options(synchronize_session=False)
        )
