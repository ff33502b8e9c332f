import logging
from datetime import date, datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError

from coach.database.database import get_record, transaction
from coach.database.models import AnalyticsUser, DailyAnalytics, OutOfScopeLog
from coach.errors import PersistenceError
from coach.records import AnalyticsDailyRecord


def _merge_exchange(day: date, user_id: str, response_time_ms: int, tokens_used: Optional[int],
                    reached_completion: bool, used_fallback: bool, had_error: bool) -> AnalyticsDailyRecord:
    with transaction() as db:
        record = db.get(DailyAnalytics, day, with_for_update=True)
        if record is None:
            record = DailyAnalytics(date=day, total_messages=0, unique_users=0, avg_response_time_ms=0,
                                    completion_calls=0, fallback_count=0, error_count=0, total_tokens=0)
            db.add(record)

        if db.get(AnalyticsUser, (day, user_id)) is None:
            db.add(AnalyticsUser(date=day, user_id=user_id))
            record.unique_users = (record.unique_users or 0) + 1

        previous_total = record.total_messages or 0
        previous_avg = record.avg_response_time_ms or 0
        record.total_messages = previous_total + 1
        record.avg_response_time_ms = (previous_avg * previous_total + response_time_ms) / record.total_messages
        record.completion_calls = (record.completion_calls or 0) + (1 if reached_completion else 0)
        record.fallback_count = (record.fallback_count or 0) + (1 if used_fallback else 0)
        record.error_count = (record.error_count or 0) + (1 if had_error else 0)
        record.total_tokens = (record.total_tokens or 0) + (tokens_used or 0)
        db.flush()
        return AnalyticsDailyRecord.parse(record)


def update_analytics(user_id: str, now: datetime, response_time_ms: int, tokens_used: Optional[int] = None,
                     reached_completion: bool = False, used_fallback: bool = False,
                     had_error: bool = False) -> AnalyticsDailyRecord:
    """Merge one exchange into the day's aggregate inside a single transaction.

    The first exchanges of a day can race to insert the day's row (or the
    user's row). The loser retries once, and by then it finds the row to update.
    """
    day = now.date()
    args = (day, user_id, response_time_ms, tokens_used, reached_completion, used_fallback, had_error)
    try:
        snapshot = _merge_exchange(*args)
    except PersistenceError as e:
        if not isinstance(e.__cause__, IntegrityError):
            raise
        logging.info(f"Analytics row for {day} created concurrently, retrying")
        snapshot = _merge_exchange(*args)

    logging.debug(f"Analytics for {day}: {snapshot}")
    return snapshot


def get_daily_analytics(day: date) -> Optional[AnalyticsDailyRecord]:
    return AnalyticsDailyRecord.parse(get_record(DailyAnalytics, day))


def record_out_of_scope(user_id: str, message: str, reason: Optional[str], confidence: float,
                        now: datetime) -> None:
    """Keep rejected messages so the keyword lists can be tuned later."""
    with transaction() as db:
        db.add(OutOfScopeLog(user_id=user_id, message=message, reason=reason,
                             confidence=confidence, created_at=now))
