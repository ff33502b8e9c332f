from enum import Enum

from coach.records import HistoryUsageSummary, UserContextSummary


class ChatMode(str, Enum):
    GENERIC = "generic"
    PERSONALIZED = "personalized"


class ModeLogic(str, Enum):
    OR = "or"
    AND = "and"


def select_mode(history: HistoryUsageSummary, meal_days_threshold: int, workouts_threshold: int,
                logic=ModeLogic.OR) -> ChatMode:
    """Pick the assistant behaviour from fresh usage aggregates.

    Recomputed on every request; a session that was personalized yesterday is
    generic today if the user stopped logging.
    """
    logic = ModeLogic(logic.lower() if isinstance(logic, str) else logic)
    meals_met = history.meal_days_7d >= meal_days_threshold
    workouts_met = history.workouts_14d >= workouts_threshold
    if logic is ModeLogic.AND:
        personalized = meals_met and workouts_met
    else:
        personalized = meals_met or workouts_met
    return ChatMode.PERSONALIZED if personalized else ChatMode.GENERIC


def redact_for_generic(summary: UserContextSummary) -> UserContextSummary:
    """Drop every user-specific daily field before a generic reply is prepared."""
    return summary.model_copy(update={
        "total_calories_today": None,
        "last_meal": None,
        "last_workout": None,
        "personal_insights": [],
    })
