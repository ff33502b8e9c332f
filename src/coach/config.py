import os
from dataclasses import dataclass

DATABASE_URL = os.getenv("DATABASE_URL")
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
DEFAULT_OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o-mini")

MAX_CONTEXT_MESSAGES = int(os.getenv("CHAT_MAX_CONTEXT_MESSAGES", "10"))
CACHE_TTL_MINUTES = int(os.getenv("CHAT_CACHE_TTL_MINUTES", "5"))
RATE_LIMIT_HOURLY = int(os.getenv("CHAT_RATE_LIMIT_HOURLY", "20"))
RATE_LIMIT_DAILY = int(os.getenv("CHAT_RATE_LIMIT_DAILY", "100"))
# Single deadline for the completion call, no extra slack on top of it
COMPLETION_TIMEOUT_SECONDS = float(os.getenv("CHAT_COMPLETION_TIMEOUT_SECONDS", "7"))
MAX_TOKENS = int(os.getenv("CHAT_MAX_TOKENS", "300"))
TEMPERATURE = float(os.getenv("CHAT_TEMPERATURE", "0.7"))
MAX_MESSAGE_LENGTH = int(os.getenv("CHAT_MAX_MESSAGE_LENGTH", "500"))

MEAL_DAYS_THRESHOLD = int(os.getenv("CHAT_MEAL_DAYS_THRESHOLD", "3"))
WORKOUTS_THRESHOLD = int(os.getenv("CHAT_WORKOUTS_THRESHOLD", "2"))
MODE_LOGIC = os.getenv("CHAT_MODE_LOGIC", "or")

DEFAULT_TARGET_CALORIES = int(os.getenv("CHAT_DEFAULT_TARGET_CALORIES", "2200"))


@dataclass
class ChatConfig:
    """Tunables for one chat pipeline instance, defaulting to the environment."""
    max_context_messages: int = MAX_CONTEXT_MESSAGES
    cache_ttl_minutes: int = CACHE_TTL_MINUTES
    rate_limit_hourly: int = RATE_LIMIT_HOURLY
    rate_limit_daily: int = RATE_LIMIT_DAILY
    completion_timeout_seconds: float = COMPLETION_TIMEOUT_SECONDS
    max_message_length: int = MAX_MESSAGE_LENGTH
    meal_days_threshold: int = MEAL_DAYS_THRESHOLD
    workouts_threshold: int = WORKOUTS_THRESHOLD
    mode_logic: str = MODE_LOGIC
    default_target_calories: int = DEFAULT_TARGET_CALORIES
