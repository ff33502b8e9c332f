from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


# Upstream collections, written by the tracker's CRUD services and read here.

class UserProfile(Base):
    __tablename__ = 'users'

    user_id = Column(String(128), primary_key=True)
    target_calories = Column(Integer, nullable=True)
    created_at = Column(DateTime)
    updated_at = Column(DateTime)


class Meal(Base):
    __tablename__ = 'meals'

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(128), index=True)
    name = Column(String(255))
    calories = Column(Float, default=0)
    date = Column(Date, index=True)
    created_at = Column(DateTime)


class Workout(Base):
    __tablename__ = 'workouts'

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(128), index=True)
    name = Column(String(255))
    duration = Column(Integer, default=0)  # seconds
    performance_score = Column(Float, nullable=True)
    # None on legacy rows written before the completion marker existed
    completed = Column(Boolean, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime)


class PersonalInsightsDoc(Base):
    __tablename__ = 'personal_insights'

    user_id = Column(String(128), primary_key=True)
    insights = Column(JSON)
    updated_at = Column(DateTime)


# Collections owned by the chat pipeline.

class ChatSession(Base):
    __tablename__ = 'chat_sessions'

    id = Column(String(64), primary_key=True)
    user_id = Column(String(128), index=True)
    created_at = Column(DateTime)
    updated_at = Column(DateTime)
    message_count = Column(Integer, default=0)
    is_active = Column(Boolean, default=True)
    recent_messages = Column(JSON, default=list)

    messages = relationship("ChatMessage", back_populates="session")


class ChatMessage(Base):
    __tablename__ = 'chat_messages'

    # Client-supplied ids are only unique within their own session
    session_id = Column(String(64), ForeignKey('chat_sessions.id'), primary_key=True)
    id = Column(String(128), primary_key=True)
    user_id = Column(String(128))
    role = Column(String(16))
    content = Column(Text)
    created_at = Column(DateTime)
    tokens_used = Column(Integer, nullable=True)
    response_time_ms = Column(Integer, nullable=True)

    session = relationship("ChatSession", back_populates="messages")


class RateLimit(Base):
    __tablename__ = 'rate_limits'

    user_id = Column(String(128), primary_key=True)
    hourly_count = Column(Integer, default=0, nullable=False)
    daily_count = Column(Integer, default=0, nullable=False)
    window_start = Column(DateTime, nullable=False)
    day_start = Column(DateTime, nullable=False)
    is_blocked = Column(Boolean, default=False, nullable=False)


class ContextCache(Base):
    __tablename__ = 'context_cache'

    user_id = Column(String(128), primary_key=True)
    fingerprint = Column(String(64), primary_key=True)
    last_updated = Column(DateTime)
    expires_at = Column(DateTime, index=True)
    summary = Column(JSON)


class DailyAnalytics(Base):
    __tablename__ = 'daily_analytics'

    date = Column(Date, primary_key=True)
    total_messages = Column(Integer, default=0)
    unique_users = Column(Integer, default=0)
    avg_response_time_ms = Column(Float, default=0)
    completion_calls = Column(Integer, default=0)
    fallback_count = Column(Integer, default=0)
    error_count = Column(Integer, default=0)
    total_tokens = Column(Integer, default=0)


class AnalyticsUser(Base):
    __tablename__ = 'daily_analytics_users'

    date = Column(Date, primary_key=True)
    user_id = Column(String(128), primary_key=True)


class OutOfScopeLog(Base):
    __tablename__ = 'out_of_scope_log'

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(128), index=True)
    message = Column(Text)
    reason = Column(String(255))
    confidence = Column(Float)
    created_at = Column(DateTime)
