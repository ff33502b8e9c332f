import logging
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import or_

from coach.database.database import query_records
from coach.database.models import Meal, Workout
from coach.records import HistoryUsageSummary

MEAL_WINDOW_DAYS = 7
WORKOUT_WINDOW_DAYS = 14


def is_finalized(workout: Workout) -> bool:
    """A workout counts once it is marked completed.

    Legacy rows have no marker at all; for those a completion timestamp is enough.
    """
    if workout.completed is None:
        return workout.completed_at is not None
    return bool(workout.completed)


def effective_time(workout: Workout) -> Optional[datetime]:
    return workout.completed_at or workout.created_at


def finalized_workouts_since(user_id: str, since: datetime, now: datetime) -> List[Workout]:
    candidates = query_records(
        Workout,
        Workout.user_id == user_id,
        or_(Workout.completed_at >= since, Workout.created_at >= since),
    )
    finalized = []
    for workout in candidates:
        when = effective_time(workout)
        if is_finalized(workout) and when is not None and since <= when <= now:
            finalized.append(workout)
    return finalized


def meals_between(user_id: str, first_day, last_day) -> List[Meal]:
    return query_records(Meal, Meal.user_id == user_id, Meal.date >= first_day, Meal.date <= last_day)


def compute_history_summary(user_id: str, now: datetime) -> HistoryUsageSummary:
    today = now.date()
    meals = meals_between(user_id, today - timedelta(days=MEAL_WINDOW_DAYS - 1), today)
    workouts = finalized_workouts_since(user_id, now - timedelta(days=WORKOUT_WINDOW_DAYS), now)

    summary = HistoryUsageSummary(
        meal_days_7d=len({meal.date for meal in meals if meal.date is not None}),
        meals_7d=len(meals),
        workout_days_14d=len({effective_time(w).date() for w in workouts}),
        workouts_14d=len(workouts),
    )
    logging.debug(f"History summary for {user_id}: {summary}")
    return summary
