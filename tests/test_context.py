# tests/test_context.py
from datetime import datetime, timedelta
from unittest.mock import patch

from coach.context import EMPTY_FINGERPRINT, build_user_context, compute_fingerprint
from coach.database.database import get_record, query_records
from coach.database.models import ContextCache, Meal, PersonalInsightsDoc, UserProfile, Workout
from coach.errors import PersistenceError


def seed_history(add_rows, user_id, now):
    add_rows(
        UserProfile(user_id=user_id, target_calories=2000, created_at=now - timedelta(days=30),
                    updated_at=now - timedelta(days=30)),
        Meal(user_id=user_id, name="Avena", calories=350, date=now.date(), created_at=now - timedelta(hours=3)),
        Meal(user_id=user_id, name="Pollo con arroz", calories=650, date=now.date(),
             created_at=now - timedelta(hours=1)),
        Workout(user_id=user_id, name="Pierna", duration=3600, completed=True,
                completed_at=now - timedelta(days=1), created_at=now - timedelta(days=1, hours=1)),
    )


def test_summary_from_history(add_rows, user_id_generator, now):
    user_id = user_id_generator()
    seed_history(add_rows, user_id, now)

    result = build_user_context(user_id, now)
    summary = result.summary
    assert not result.was_from_cache
    assert summary.total_calories_today == 1000
    assert summary.target_calories == 2000
    assert summary.last_meal.name == "Pollo con arroz"
    assert summary.last_workout.name == "Pierna"
    assert summary.weekly_stats.workout_count == 1
    assert summary.weekly_stats.total_calories == 1000
    assert result.fingerprint == f"2024-05-15|{(now - timedelta(hours=1)).isoformat()}"


def test_cache_hit_returns_identical_summary(add_rows, user_id_generator, now):
    user_id = user_id_generator()
    seed_history(add_rows, user_id, now)

    first = build_user_context(user_id, now, ttl_minutes=5)
    second = build_user_context(user_id, now + timedelta(minutes=2), ttl_minutes=5)

    assert not first.was_from_cache
    assert second.was_from_cache
    assert second.summary == first.summary
    assert second.fingerprint == first.fingerprint


def test_cache_expires_after_ttl(add_rows, user_id_generator, now):
    user_id = user_id_generator()
    seed_history(add_rows, user_id, now)

    build_user_context(user_id, now, ttl_minutes=5)
    assert not build_user_context(user_id, now + timedelta(minutes=5), ttl_minutes=5).was_from_cache


def test_new_data_changes_fingerprint(add_rows, user_id_generator, now):
    user_id = user_id_generator()
    seed_history(add_rows, user_id, now)
    first = build_user_context(user_id, now)

    later = now + timedelta(minutes=1)
    add_rows(Meal(user_id=user_id, name="Yogur", calories=150, date=later.date(), created_at=later))
    second = build_user_context(user_id, later)

    assert second.fingerprint != first.fingerprint
    assert not second.was_from_cache
    assert second.summary.total_calories_today == 1150
    assert second.summary.last_meal.name == "Yogur"


def test_empty_summary_is_not_cached(user_id_generator, now):
    user_id = user_id_generator()

    result = build_user_context(user_id, now)
    assert result.fingerprint == EMPTY_FINGERPRINT
    assert result.summary.is_empty()
    assert result.summary.target_calories == 2200
    assert query_records(ContextCache, ContextCache.user_id == user_id) == []
    assert not build_user_context(user_id, now).was_from_cache


def test_expired_entries_are_pruned_on_write(add_rows, user_id_generator, now):
    user_id = user_id_generator()
    seed_history(add_rows, user_id, now)
    first = build_user_context(user_id, now, ttl_minutes=5)

    later = now + timedelta(minutes=10)
    add_rows(Meal(user_id=user_id, name="Fruta", calories=100, date=later.date(), created_at=later))
    build_user_context(user_id, later, ttl_minutes=5)

    assert get_record(ContextCache, (user_id, first.fingerprint)) is None
    assert len(query_records(ContextCache, ContextCache.user_id == user_id)) == 1


def test_fingerprint_uses_workout_completion(add_rows, user_id_generator, now):
    user_id = user_id_generator()
    completed_at = now - timedelta(minutes=5)
    add_rows(Workout(user_id=user_id, name="Cardio", duration=1200, completed=True,
                     completed_at=completed_at, created_at=now - timedelta(hours=2)))
    assert compute_fingerprint(user_id, now) == f"2024-05-15|{completed_at.isoformat()}"


def test_personal_insights_are_capped_and_validated(add_rows, user_id_generator, now):
    user_id = user_id_generator()
    insight = {"type": "pattern", "title": "Cenas tardías", "description": "Cenas después de las 22h",
               "evidence": ["4 de 7 días"], "actionable": "Adelanta la cena"}
    add_rows(
        Meal(user_id=user_id, name="Cena", calories=500, date=now.date(), created_at=now),
        PersonalInsightsDoc(user_id=user_id, updated_at=now,
                            insights=[insight, {"type": "bogus"}, insight, insight, insight]),
    )

    insights = build_user_context(user_id, now).summary.personal_insights
    assert len(insights) == 3
    assert insights[0].key_evidence == "4 de 7 días"


def test_cache_write_failure_is_not_fatal(add_rows, user_id_generator, now):
    user_id = user_id_generator()
    seed_history(add_rows, user_id, now)

    with patch("coach.context.write_cache_entry", side_effect=PersistenceError()):
        result = build_user_context(user_id, now)

    assert result.summary.total_calories_today == 1000
    assert not result.was_from_cache


def test_cached_summary_is_not_served_after_midnight(add_rows, user_id_generator):
    user_id = user_id_generator()
    late = datetime(2024, 5, 15, 23, 58)
    add_rows(Meal(user_id=user_id, name="Cena", calories=800, date=late.date(), created_at=late - timedelta(hours=2)))

    first = build_user_context(user_id, late, ttl_minutes=5)
    assert first.summary.total_calories_today == 800

    after_midnight = datetime(2024, 5, 16, 0, 1)
    second = build_user_context(user_id, after_midnight, ttl_minutes=5)
    assert not second.was_from_cache
    assert second.fingerprint != first.fingerprint
    assert second.summary.total_calories_today == 0
    assert second.summary.last_meal is None
