"""Entry point of the chat pipeline: one user message in, one reply out.

The request walks a fixed sequence of states:

    RECEIVED -> ADMITTED -> RATE_CHECKED -> CONTEXT_READY -> MODE_DECIDED
             -> BYPASSED | COMPLETED | FALLBACK -> PERSISTED -> DONE

and ends early in one of the REJECTED_* or FAILED_INTERNAL states. A repeated
client message id that already has a stored reply goes straight to DONE. Each
transition is logged as a single `chat_event` JSON line carrying mode, cache
hit, data fingerprint and whether the payload was sanitized, so mode leaks can
be audited after the fact.

The caller id and the current time are always passed in; nothing here reads
ambient identity or the wall clock.
"""
import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from coach.analytics import record_out_of_scope, update_analytics
from coach.bot_messages import OUT_OF_SCOPE_REPLY
from coach.config import ChatConfig
from coach.context import build_user_context
from coach.errors import (
    AuthenticationMissing,
    ChatError,
    CompletionServiceError,
    CompletionTimeout,
    InputInvalid,
    RateLimited,
)
from coach.fallback import REPLY_NORMAL, classify_reply, fallback_reply, generic_reply
from coach.history import compute_history_summary
from coach.llm import CompletionClient
from coach.modes import ChatMode, redact_for_generic, select_mode
from coach.prompts import build_payload
from coach.rate_limit import check_rate_limit
from coach.relevance import is_relevant_query, should_short_circuit
from coach.session import SessionContext, find_reply, reply_id, trim_recent_messages


class RequestState(str, Enum):
    RECEIVED = "RECEIVED"
    ADMITTED = "ADMITTED"
    RATE_CHECKED = "RATE_CHECKED"
    CONTEXT_READY = "CONTEXT_READY"
    MODE_DECIDED = "MODE_DECIDED"
    BYPASSED = "BYPASSED"
    COMPLETED = "COMPLETED"
    FALLBACK = "FALLBACK"
    PERSISTED = "PERSISTED"
    DONE = "DONE"
    REJECTED_UNAUTHENTICATED = "REJECTED_UNAUTHENTICATED"
    REJECTED_IRRELEVANT = "REJECTED_IRRELEVANT"
    REJECTED_RATE_LIMITED = "REJECTED_RATE_LIMITED"
    REJECTED_INVALID_INPUT = "REJECTED_INVALID_INPUT"
    FAILED_INTERNAL = "FAILED_INTERNAL"


_ERROR_STATES = {
    AuthenticationMissing: RequestState.REJECTED_UNAUTHENTICATED,
    InputInvalid: RequestState.REJECTED_INVALID_INPUT,
    RateLimited: RequestState.REJECTED_RATE_LIMITED,
}


class ChatRequest(BaseModel):
    """Wire shape of an incoming call: `{message, sessionId?, messageId?}`."""
    model_config = ConfigDict(populate_by_name=True)

    message: Any = None
    session_id: Optional[str] = Field(default=None, alias="sessionId")
    message_id: Optional[str] = Field(default=None, alias="messageId")

    @field_validator("session_id", "message_id", mode="before")
    @classmethod
    def _blank_is_missing(cls, value):
        return value or None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ChatRequest":
        try:
            return cls.model_validate(data or {})
        except ValidationError as e:
            raise InputInvalid("Solicitud inválida.") from e


class ChatResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    session_id: str
    reply: str
    type: str
    tokens_used: Optional[int] = None
    response_time_ms: Optional[int] = None
    was_fallback: bool = False
    was_from_cache: bool = False
    mode: Optional[ChatMode] = Field(default=None, exclude=True)

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


@dataclass
class ChatTrace:
    user_id: Optional[str]
    state: RequestState = RequestState.RECEIVED
    session_id: Optional[str] = None
    mode: Optional[ChatMode] = None
    cache_hit: Optional[bool] = None
    fingerprint: Optional[str] = None
    sanitized: Optional[bool] = None
    history: list = field(default_factory=list)

    def transition(self, state: RequestState, **extra) -> None:
        self.state = state
        self.history.append(state)
        event = {
            "state": state.value,
            "user_id": self.user_id,
            "session_id": self.session_id,
            "mode": self.mode.value if self.mode else None,
            "cache_hit": self.cache_hit,
            "fingerprint": self.fingerprint,
            "sanitized": self.sanitized,
            **extra,
        }
        logging.info(f"chat_event {json.dumps(event, sort_keys=True, default=str)}")


def validate_message(raw: Any, max_length: int) -> str:
    message = ("" if raw is None else str(raw)).strip()
    if not message:
        raise InputInvalid("Mensaje vacío.")
    if len(message) > max_length:
        raise InputInvalid(f"Mensaje demasiado largo (máx. {max_length} caracteres).")
    return message


def _non_critical(step: str, action: Callable, *args, **kwargs) -> None:
    """Run a bookkeeping step whose failure must not fail the request."""
    try:
        action(*args, **kwargs)
    except Exception as e:
        logging.error(f"{step} failed: {e}")


def _elapsed_ms(clock: Callable[[], float], started: float) -> int:
    return int((clock() - started) * 1000)


async def handle_chat(request: ChatRequest, caller_id: Optional[str], now: datetime,
                      completion_client: Optional[CompletionClient] = None,
                      config: Optional[ChatConfig] = None,
                      clock: Callable[[], float] = time.monotonic) -> ChatResponse:
    config = config or ChatConfig()
    if completion_client is None:
        completion_client = CompletionClient(timeout_seconds=config.completion_timeout_seconds)
    trace = ChatTrace(user_id=caller_id)
    try:
        return await _run(request, caller_id, now, completion_client, config, clock, trace)
    except ChatError as e:
        trace.transition(_ERROR_STATES.get(type(e), RequestState.FAILED_INTERNAL), error=e.code.value)
        raise
    except Exception as e:
        logging.exception(f"Error in chat handler: {e}")
        trace.transition(RequestState.FAILED_INTERNAL, error=type(e).__name__)
        raise ChatError() from e


async def _run(request: ChatRequest, caller_id: Optional[str], now: datetime,
               completion_client: CompletionClient, config: ChatConfig,
               clock: Callable[[], float], trace: ChatTrace) -> ChatResponse:
    started = clock()

    # Admission: identity, input, topic
    if not caller_id:
        raise AuthenticationMissing()
    message = validate_message(request.message, config.max_message_length)

    replayed = _replay(request, caller_id, trace)
    if replayed is not None:
        return replayed

    relevance = is_relevant_query(message)
    if should_short_circuit(relevance):
        return _reply_out_of_scope(request, caller_id, message, relevance, now, config, clock, started, trace)
    trace.transition(RequestState.ADMITTED, confidence=relevance.confidence)

    decision = check_rate_limit(caller_id, now, config.rate_limit_hourly, config.rate_limit_daily)
    if not decision.allowed:
        raise RateLimited(decision.retry_after_ms)
    trace.transition(RequestState.RATE_CHECKED)

    session = SessionContext(caller_id, now, request.session_id, window=config.max_context_messages)
    trace.session_id = session.session_id
    conversation = list(session.messages)
    if not session.save_message("user", message, message_id=request.message_id):
        # Seen before but never answered: the earlier attempt failed, so answer it now
        conversation = [m for m in conversation if m.id != request.message_id]

    context = build_user_context(caller_id, now, config.cache_ttl_minutes, config.default_target_calories)
    history = compute_history_summary(caller_id, now)
    trace.cache_hit = context.was_from_cache
    trace.fingerprint = context.fingerprint
    trace.transition(RequestState.CONTEXT_READY)

    mode = select_mode(history, config.meal_days_threshold, config.workouts_threshold, config.mode_logic)
    summary = context.summary
    if mode is ChatMode.GENERIC:
        summary = redact_for_generic(summary)
    payload = build_payload(mode, message, summary, history, conversation, config.max_context_messages)
    trace.mode = mode
    trace.sanitized = payload.sanitized
    trace.transition(RequestState.MODE_DECIDED, removed_lines=payload.removed_lines)

    tokens_used = None
    used_fallback = False
    if mode is ChatMode.GENERIC:
        reply, reply_type, tokens_used = generic_reply(message), REPLY_NORMAL, 0
        trace.transition(RequestState.BYPASSED)
    else:
        try:
            result = await completion_client.complete(payload)
            reply, tokens_used = result.reply, result.tokens_used
            reply_type = classify_reply(reply)
            trace.transition(RequestState.COMPLETED, tokens_used=tokens_used)
        except (CompletionTimeout, CompletionServiceError) as e:
            used_fallback = True
            reason = "timeout" if isinstance(e, CompletionTimeout) else "servicio no disponible"
            reply, reply_type = fallback_reply(message, summary, reason)
            trace.transition(RequestState.FALLBACK, error=e.code.value)

    response_time_ms = _elapsed_ms(clock, started)
    session.save_message("assistant", reply, message_id=reply_id(request.message_id),
                         tokens_used=tokens_used, response_time_ms=response_time_ms)
    trace.transition(RequestState.PERSISTED)

    _non_critical("trim", trim_recent_messages, session.session_id, config.max_context_messages)
    _non_critical(
        "analytics", update_analytics, caller_id, now, response_time_ms, tokens_used,
        reached_completion=mode is ChatMode.PERSONALIZED and not used_fallback,
        used_fallback=used_fallback,
        had_error=used_fallback,
    )
    trace.transition(RequestState.DONE)

    return ChatResponse(
        session_id=session.session_id,
        reply=reply,
        type=reply_type,
        tokens_used=tokens_used,
        response_time_ms=response_time_ms,
        was_fallback=used_fallback,
        was_from_cache=context.was_from_cache,
        mode=mode,
    )


def _reply_out_of_scope(request, caller_id, message, relevance, now, config, clock, started, trace) -> ChatResponse:
    """Canned answer for off-topic messages: no quota charge, no completion call, still persisted."""
    session = SessionContext(caller_id, now, request.session_id, window=config.max_context_messages)
    trace.session_id = session.session_id
    session.save_message("user", message, message_id=request.message_id)
    response_time_ms = _elapsed_ms(clock, started)
    session.save_message("assistant", OUT_OF_SCOPE_REPLY, message_id=reply_id(request.message_id),
                         response_time_ms=response_time_ms)

    _non_critical("trim", trim_recent_messages, session.session_id, config.max_context_messages)
    _non_critical("out-of-scope log", record_out_of_scope, caller_id, message, relevance.reason, relevance.confidence, now)
    trace.transition(RequestState.REJECTED_IRRELEVANT, reason=relevance.reason, confidence=relevance.confidence)

    return ChatResponse(
        session_id=session.session_id,
        reply=OUT_OF_SCOPE_REPLY,
        type=REPLY_NORMAL,
        response_time_ms=response_time_ms,
    )


def _replay(request: ChatRequest, caller_id: str, trace: ChatTrace) -> Optional[ChatResponse]:
    """Answer a repeated client message id with the reply already stored for it."""
    if not (request.session_id and request.message_id):
        return None
    stored = find_reply(request.session_id, caller_id, request.message_id)
    if stored is None:
        return None
    trace.session_id = request.session_id
    trace.transition(RequestState.DONE, replayed=True, message_id=request.message_id)
    return ChatResponse(
        session_id=request.session_id,
        reply=stored.content,
        type=classify_reply(stored.content),
        tokens_used=stored.tokens_used,
        response_time_ms=stored.response_time_ms,
    )
