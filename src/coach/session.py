import logging
import uuid
from datetime import datetime
from typing import List, Optional

from sqlalchemy.exc import IntegrityError

from coach.config import MAX_CONTEXT_MESSAGES
from coach.database.database import get_record, transaction
from coach.database.models import ChatMessage, ChatSession
from coach.errors import InputInvalid, PersistenceError
from coach.records import MESSAGE_ROLES, ChatMessageRecord, ChatSessionRecord, parse_messages


def create_session(user_id: str, now: datetime) -> str:
    session_id = uuid.uuid4().hex
    with transaction() as db:
        db.add(ChatSession(
            id=session_id,
            user_id=user_id,
            created_at=now,
            updated_at=now,
            message_count=0,
            is_active=True,
            recent_messages=[],
        ))
    logging.info(f"Started chat session {session_id} for user {user_id}")
    return session_id


def load_session(session_id: str, user_id: str) -> ChatSessionRecord:
    """Load a session owned by user_id; unknown or foreign ids are invalid input."""
    session = ChatSessionRecord.parse(get_record(ChatSession, session_id))
    if session is None or session.user_id != user_id:
        raise InputInvalid("La conversación indicada no existe.")
    return session


def close_session(session_id: str, now: datetime) -> None:
    with transaction() as db:
        session = db.get(ChatSession, session_id)
        if session is not None:
            session.is_active = False
            session.updated_at = now


def append_message(session_id: str, user_id: str, role: str, content: str, now: datetime,
                   message_id: Optional[str] = None, tokens_used: Optional[int] = None,
                   response_time_ms: Optional[int] = None, window: int = MAX_CONTEXT_MESSAGES) -> bool:
    """Persist a message and add it to the session's recent list.

    Returns False when a message with the same id was already stored in this
    session; the second write is dropped.
    """
    if role not in MESSAGE_ROLES:
        raise ValueError(f"Unsupported message role: {role}")
    message = ChatMessageRecord(
        id=message_id or uuid.uuid4().hex,
        role=role,
        content=content,
        timestamp=now,
        tokens_used=tokens_used,
        response_time_ms=response_time_ms,
    )
    try:
        with transaction() as db:
            session = db.get(ChatSession, session_id)
            if session is None:
                raise PersistenceError()
            if db.get(ChatMessage, (session_id, message.id)) is not None:
                logging.info(f"Duplicate message {message.id} ignored")
                return False
            db.add(ChatMessage(
                id=message.id,
                session_id=session_id,
                user_id=user_id,
                role=role,
                content=content,
                created_at=now,
                tokens_used=tokens_used,
                response_time_ms=response_time_ms,
            ))
            recent = [*(session.recent_messages or []), message.to_dict()]
            session.recent_messages = recent[-window:] if window > 0 else []
            session.message_count = (session.message_count or 0) + 1
            session.updated_at = now
    except PersistenceError as e:
        if isinstance(e.__cause__, IntegrityError):
            logging.info(f"Duplicate message {message.id} ignored")
            return False
        raise
    return True


def trim_recent_messages(session_id: str, window: int = MAX_CONTEXT_MESSAGES) -> int:
    """Drop the oldest recent messages beyond the window. Returns how many were dropped."""
    with transaction() as db:
        session = db.get(ChatSession, session_id)
        if session is None:
            return 0
        stored = session.recent_messages or []
        messages = parse_messages(stored)
        kept = messages[-window:] if window > 0 else []
        removed = len(stored) - len(kept)
        if removed:
            session.recent_messages = [m.to_dict() for m in kept]
        return removed


def reply_id(message_id: Optional[str]) -> Optional[str]:
    """Id of the assistant message answering a client message id."""
    return f"{message_id}:reply" if message_id else None


def find_reply(session_id: str, user_id: str, message_id: str) -> Optional[ChatMessageRecord]:
    """The stored answer to an already handled client message, if there is one."""
    row = get_record(ChatMessage, (session_id, reply_id(message_id)))
    if row is None or row.user_id != user_id:
        return None
    return ChatMessageRecord.parse({
        "id": row.id,
        "role": row.role,
        "content": row.content,
        "timestamp": row.created_at,
        "tokens_used": row.tokens_used,
        "response_time_ms": row.response_time_ms,
    })


def get_conversation_history(session_id: str, window: int = MAX_CONTEXT_MESSAGES) -> List[ChatMessageRecord]:
    session = get_record(ChatSession, session_id)
    if session is None:
        return []
    messages = parse_messages(session.recent_messages)
    return messages[-window:] if window > 0 else []


class SessionContext:
    """The conversation a request belongs to: an existing session or a new one."""

    def __init__(self, user_id: str, now: datetime, session_id: Optional[str] = None,
                 window: int = MAX_CONTEXT_MESSAGES):
        self.user_id = user_id
        self.now = now
        self.window = window
        if session_id:
            self.session = load_session(session_id, user_id)
            self.session_id = self.session.id
            self.messages = self.session.recent_messages
        else:
            self.session_id = create_session(user_id, now)
            self.messages = []

    def save_message(self, role, content, message_id=None, tokens_used=None, response_time_ms=None) -> bool:
        message_id = message_id or uuid.uuid4().hex
        saved = append_message(self.session_id, self.user_id, role, content, self.now,
                               message_id=message_id, tokens_used=tokens_used,
                               response_time_ms=response_time_ms, window=self.window)
        if saved:
            self.messages.append(ChatMessageRecord(
                id=message_id, role=role, content=content, timestamp=self.now,
                tokens_used=tokens_used, response_time_ms=response_time_ms,
            ))
        return saved
