"""Summarized view of a user's recent activity, cached by data version.

Cache entries are keyed by (user_id, fingerprint), where the fingerprint is the
calendar day plus the latest update time across profile, meals and workouts.
Any upstream change, or midnight, produces a new key, so nothing ever has to
invalidate an entry explicitly.
Concurrent writers of one key store equivalent data, so writes need no lock.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List

from sqlalchemy import func

from coach.config import CACHE_TTL_MINUTES, DEFAULT_TARGET_CALORIES
from coach.database.database import get_record, get_user, query_records, transaction
from coach.database.models import ContextCache, Meal, PersonalInsightsDoc, UserProfile, Workout
from coach.errors import PersistenceError
from coach.history import finalized_workouts_since, meals_between
from coach.records import (
    ContextCacheEntry,
    LastMeal,
    LastWorkout,
    PersonalInsight,
    UserContextSummary,
    WeeklyStats,
    parse_insights,
)

EMPTY_FINGERPRINT = "empty"
WEEK_DAYS = 7


@dataclass
class ContextResult:
    summary: UserContextSummary
    was_from_cache: bool
    fingerprint: str


def compute_fingerprint(user_id: str, now: datetime) -> str:
    """Data version of the user's rows, scoped to the current day."""
    with transaction() as db:
        stamps = [
            db.query(func.max(UserProfile.updated_at)).filter(UserProfile.user_id == user_id).scalar(),
            db.query(func.max(Meal.created_at)).filter(Meal.user_id == user_id).scalar(),
            db.query(func.max(Workout.created_at)).filter(Workout.user_id == user_id).scalar(),
            db.query(func.max(Workout.completed_at)).filter(Workout.user_id == user_id).scalar(),
        ]
    stamps = [stamp for stamp in stamps if stamp is not None]
    if not stamps:
        return EMPTY_FINGERPRINT
    return f"{now.date().isoformat()}|{max(stamps).isoformat()}"


def load_personal_insights(user_id: str) -> List[PersonalInsight]:
    """Read the insight job's output; a failure here never blocks the chat."""
    try:
        doc = get_record(PersonalInsightsDoc, user_id)
    except PersistenceError as e:
        logging.error(f"Error loading personal insights for {user_id}: {e}")
        return []
    if doc is None:
        return []
    return parse_insights(doc.insights)


def compute_summary(user_id: str, now: datetime, default_target_calories: int = DEFAULT_TARGET_CALORIES) -> UserContextSummary:
    today = now.date()
    meals_today = query_records(
        Meal, Meal.user_id == user_id, Meal.date == today, order_by=Meal.created_at.desc()
    )
    last_meal = None
    if meals_today:
        meal = meals_today[0]
        when = meal.created_at.isoformat() if meal.created_at else meal.date.isoformat()
        last_meal = LastMeal(name=meal.name or "Comida", calories=meal.calories or 0, when=when)

    latest_workouts = query_records(
        Workout, Workout.user_id == user_id, order_by=Workout.created_at.desc(), limit=1
    )
    last_workout = None
    if latest_workouts:
        workout = latest_workouts[0]
        when = workout.completed_at or workout.created_at
        last_workout = LastWorkout(
            name=workout.name or "Entrenamiento",
            duration=workout.duration or 0,
            when=when.isoformat() if when else now.isoformat(),
            performance_score=workout.performance_score,
        )

    week_meals = meals_between(user_id, today - timedelta(days=WEEK_DAYS - 1), today)
    week_workouts = finalized_workouts_since(user_id, now - timedelta(days=WEEK_DAYS), now)

    profile = get_user(user_id)
    target = profile.target_calories if profile is not None and profile.target_calories else default_target_calories

    return UserContextSummary(
        total_calories_today=float(sum(meal.calories or 0 for meal in meals_today)),
        target_calories=target,
        last_meal=last_meal,
        last_workout=last_workout,
        weekly_stats=WeeklyStats(
            workout_count=len(week_workouts),
            total_calories=float(sum(meal.calories or 0 for meal in week_meals)),
        ),
        personal_insights=load_personal_insights(user_id),
    )


def write_cache_entry(user_id: str, fingerprint: str, summary: UserContextSummary, now: datetime,
                      ttl_minutes: int) -> None:
    with transaction() as db:
        db.query(ContextCache).filter(
            ContextCache.user_id == user_id, ContextCache.expires_at <= now
        ).delete(synchronize_session=False)
        db.merge(ContextCache(
            user_id=user_id,
            fingerprint=fingerprint,
            last_updated=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
            summary=summary.to_dict(),
        ))


def build_user_context(user_id: str, now: datetime, ttl_minutes: int = CACHE_TTL_MINUTES,
                       default_target_calories: int = DEFAULT_TARGET_CALORIES) -> ContextResult:
    fingerprint = compute_fingerprint(user_id, now)
    entry = ContextCacheEntry.parse(get_record(ContextCache, (user_id, fingerprint)))
    if entry is not None and not entry.is_expired(now):
        return ContextResult(summary=entry.summary, was_from_cache=True, fingerprint=fingerprint)

    summary = compute_summary(user_id, now, default_target_calories)
    # A user without history recomputes every time; that costs almost nothing
    if not summary.is_empty():
        try:
            write_cache_entry(user_id, fingerprint, summary, now, ttl_minutes)
        except PersistenceError as e:
            logging.error(f"Error writing context cache for {user_id}: {e}")
    return ContextResult(summary=summary, was_from_cache=False, fingerprint=fingerprint)
