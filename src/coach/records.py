"""Typed views over stored documents.

Rows and JSON blobs coming out of the store are untrusted. `Record.parse`
validates them with pydantic and fails closed: malformed data becomes None,
and malformed entries inside a list are dropped, instead of raising or passing
undefined fields along.
"""
import logging
from datetime import date, datetime
from typing import Annotated, Any, List, Literal, Optional

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, ValidationError, field_validator, model_validator

MAX_PERSONAL_INSIGHTS = 3

MessageRole = Literal["user", "assistant"]
InsightType = Literal["pattern", "recommendation", "achievement"]
MESSAGE_ROLES = ("user", "assistant")


class Record(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    @classmethod
    def parse(cls, data: Any):
        """Validate a dict or ORM row; returns None when it does not fit."""
        if data is None:
            return None
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            logging.warning(f"Dropping malformed {cls.__name__}: {e.error_count()} error(s)")
            return None


def _parse_list(model, raw: Any) -> list:
    """Keep the well-formed entries of a stored list, in order."""
    if not isinstance(raw, list):
        return []
    items = (model.parse(item) for item in raw)
    return [item for item in items if item is not None]


def _zero_if_missing(value):
    return 0 if value is None else value


def _as_flag(value):
    return bool(value)


Count = Annotated[int, BeforeValidator(_zero_if_missing)]
Amount = Annotated[float, BeforeValidator(_zero_if_missing)]
Flag = Annotated[bool, BeforeValidator(_as_flag)]


class ChatMessageRecord(Record):
    id: str = Field(min_length=1)
    role: MessageRole
    content: str
    timestamp: datetime
    tokens_used: Optional[int] = None
    response_time_ms: Optional[int] = None

    def to_dict(self) -> dict:
        return self.model_dump(mode="json", exclude_none=True)

    def to_chat_message(self) -> dict:
        return {"role": self.role, "content": self.content}


def parse_messages(raw: Any) -> List[ChatMessageRecord]:
    return _parse_list(ChatMessageRecord, raw)


class ChatSessionRecord(Record):
    id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    created_at: datetime
    updated_at: Optional[datetime] = None
    message_count: Count = 0
    is_active: Flag = True
    recent_messages: List[ChatMessageRecord] = Field(default_factory=list)

    @field_validator("recent_messages", mode="before")
    @classmethod
    def _messages(cls, value):
        return parse_messages(value)

    @model_validator(mode="after")
    def _default_updated_at(self):
        if self.updated_at is None:
            self.updated_at = self.created_at
        return self


class RateLimitRecord(Record):
    user_id: str
    hourly_count: Count = 0
    daily_count: Count = 0
    window_start: datetime
    day_start: datetime
    is_blocked: Flag = False


class LastMeal(Record):
    name: str
    calories: float
    when: str


class LastWorkout(Record):
    name: str
    duration: Count = 0
    when: str
    performance_score: Optional[float] = None


class WeeklyStats(Record):
    workout_count: Count = 0
    total_calories: Amount = 0


class PersonalInsight(Record):
    type: InsightType
    title: str = Field(min_length=1)
    description: str
    key_evidence: str = ""
    actionable: str = ""

    @model_validator(mode="before")
    @classmethod
    def _from_job_shape(cls, data):
        """The insight job stores an `evidence` list instead of `key_evidence`."""
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if data.get("key_evidence") is None:
            evidence = data.get("evidence")
            data["key_evidence"] = evidence[0] if isinstance(evidence, list) and evidence else ""
        if data.get("actionable") is None:
            data["actionable"] = ""
        return data


def parse_insights(raw: Any) -> List[PersonalInsight]:
    return _parse_list(PersonalInsight, raw)[:MAX_PERSONAL_INSIGHTS]


class UserContextSummary(Record):
    total_calories_today: Optional[float]
    target_calories: int
    last_meal: Optional[LastMeal] = None
    last_workout: Optional[LastWorkout] = None
    weekly_stats: WeeklyStats = Field(default_factory=WeeklyStats)
    personal_insights: List[PersonalInsight] = Field(default_factory=list)

    # A bad nested entry is dropped on its own; it does not void the summary.
    @field_validator("last_meal", mode="before")
    @classmethod
    def _last_meal(cls, value):
        return LastMeal.parse(value)

    @field_validator("last_workout", mode="before")
    @classmethod
    def _last_workout(cls, value):
        return LastWorkout.parse(value)

    @field_validator("weekly_stats", mode="before")
    @classmethod
    def _weekly_stats(cls, value):
        return WeeklyStats.parse(value) or WeeklyStats()

    @field_validator("personal_insights", mode="before")
    @classmethod
    def _insights(cls, value):
        return parse_insights(value)

    def is_empty(self) -> bool:
        return (
            not self.total_calories_today
            and self.last_meal is None
            and self.last_workout is None
            and not self.weekly_stats.workout_count
            and not self.weekly_stats.total_calories
            and not self.personal_insights
        )

    def to_dict(self) -> dict:
        return self.model_dump()


class ContextCacheEntry(Record):
    user_id: str
    fingerprint: str
    last_updated: datetime
    expires_at: datetime
    summary: UserContextSummary

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


class HistoryUsageSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    meal_days_7d: int = 0
    meals_7d: int = 0
    workout_days_14d: int = 0
    workouts_14d: int = 0


class AnalyticsDailyRecord(Record):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    day: date = Field(alias="date")
    total_messages: Count = 0
    unique_users: Count = 0
    avg_response_time_ms: Amount = 0
    completion_calls: Count = 0
    fallback_count: Count = 0
    error_count: Count = 0
    total_tokens: Count = 0
