# tests/test_handler.py
import logging
from datetime import datetime, timedelta
from unittest.mock import patch

import pytest

from coach.analytics import get_daily_analytics
from coach.bot_messages import OUT_OF_SCOPE_REPLY
from coach.config import ChatConfig
from coach.database.database import get_record, query_records
from coach.database.models import ChatMessage, ChatSession, Meal, OutOfScopeLog, Workout
from coach.errors import (
    AuthenticationMissing,
    ChatError,
    CompletionServiceError,
    CompletionTimeout,
    ErrorCode,
    InputInvalid,
    RateLimited,
)
from coach.fallback import generic_reply
from coach.handler import ChatRequest, ChatResponse, handle_chat
from coach.llm import CompletionResult
from coach.modes import ChatMode
from coach.rate_limit import check_rate_limit, get_rate_limit


class FakeCompletionClient:
    def __init__(self, reply="Te recomiendo sumar proteína en la cena.", error=None):
        self.reply = reply
        self.error = error
        self.calls = []

    async def complete(self, payload):
        self.calls.append(payload)
        if self.error is not None:
            raise self.error
        return CompletionResult(reply=self.reply, tokens_used=55)


def fixed_clock(*ticks):
    values = iter(ticks)
    return lambda: next(values)


def seed_active_user(add_rows, user_id, now):
    add_rows(*[
        Meal(user_id=user_id, name="Comida", calories=600, date=(now - timedelta(days=d)).date(),
             created_at=now - timedelta(days=d, hours=2))
        for d in (0, 1, 3, 5)
    ])


@pytest.mark.asyncio
async def test_greeting_from_new_user_gets_generic_reply(user_id_generator, now):
    client = FakeCompletionClient()
    response = await handle_chat(ChatRequest(message="Hola"), user_id_generator(), now,
                                 completion_client=client, clock=fixed_clock(0.0, 0.25))

    assert response.type == "normal"
    assert not response.was_fallback
    assert response.mode is ChatMode.GENERIC
    assert response.reply == generic_reply("Hola")
    assert response.tokens_used == 0
    assert response.response_time_ms == 250
    assert client.calls == []

    history = get_record(ChatSession, response.session_id).recent_messages
    assert [m["role"] for m in history] == ["user", "assistant"]


@pytest.mark.asyncio
async def test_off_topic_message_short_circuits(user_id_generator, now):
    user_id = user_id_generator()
    client = FakeCompletionClient()
    response = await handle_chat(ChatRequest(message="¿Qué marca de ropa me recomiendas?"), user_id, now,
                                 completion_client=client)

    assert response.reply == OUT_OF_SCOPE_REPLY
    assert response.type == "normal"
    assert client.calls == []
    # No quota is charged for a rejected topic
    assert get_rate_limit(user_id) is None
    logged = query_records(OutOfScopeLog, OutOfScopeLog.user_id == user_id)
    assert len(logged) == 1
    assert logged[0].confidence >= 0.95
    assert get_record(ChatSession, response.session_id).message_count == 2


@pytest.mark.asyncio
async def test_meal_logging_alone_unlocks_personalized_mode(add_rows, user_id_generator, now):
    user_id = user_id_generator()
    seed_active_user(add_rows, user_id, now)
    client = FakeCompletionClient()

    response = await handle_chat(ChatRequest(message="¿Qué debería cenar para recuperarme?"), user_id, now,
                                 completion_client=client)

    assert response.mode is ChatMode.PERSONALIZED
    assert response.reply == client.reply
    assert response.type == "recommendation"
    assert response.tokens_used == 55
    assert len(client.calls) == 1
    payload = client.calls[0]
    assert payload.mode is ChatMode.PERSONALIZED
    assert "600/2200 kcal" in payload.instructions


@pytest.mark.asyncio
async def test_personalized_payload_includes_prior_turns(add_rows, user_id_generator, now):
    user_id = user_id_generator()
    seed_active_user(add_rows, user_id, now)
    client = FakeCompletionClient()

    first = await handle_chat(ChatRequest(message="¿Cuánta proteína necesito al día?"), user_id, now,
                              completion_client=client)
    await handle_chat(ChatRequest(message="¿Y en la cena?", session_id=first.session_id), user_id,
                      now + timedelta(minutes=1), completion_client=client)

    second_payload = client.calls[1]
    assert [m["role"] for m in second_payload.history] == ["user", "assistant"]
    assert second_payload.message == "¿Y en la cena?"


@pytest.mark.asyncio
async def test_request_over_hourly_limit_is_rejected(user_id_generator, now):
    user_id = user_id_generator()
    first = await handle_chat(ChatRequest(message="Hola"), user_id, now, completion_client=FakeCompletionClient())
    for _ in range(19):
        assert check_rate_limit(user_id, now, 20, 100).allowed
    count_before = get_record(ChatSession, first.session_id).message_count

    with pytest.raises(RateLimited) as exc_info:
        await handle_chat(ChatRequest(message="¿Qué rutina hago hoy?", session_id=first.session_id),
                          user_id, now, completion_client=FakeCompletionClient())

    assert exc_info.value.code is ErrorCode.RESOURCE_EXHAUSTED
    assert exc_info.value.retry_after_ms > 0
    assert exc_info.value.details["retryAfterMs"] == exc_info.value.retry_after_ms
    assert get_record(ChatSession, first.session_id).message_count == count_before


@pytest.mark.asyncio
@pytest.mark.parametrize("error", [CompletionTimeout(), CompletionServiceError()])
async def test_completion_failure_falls_back(add_rows, user_id_generator, error):
    now = datetime(2024, 6, 1, 12, 0) if isinstance(error, CompletionTimeout) else datetime(2024, 6, 2, 12, 0)
    user_id = user_id_generator()
    seed_active_user(add_rows, user_id, now)
    add_rows(Workout(user_id=user_id, name="Full body", duration=3000, completed=True,
                     completed_at=now - timedelta(hours=5), created_at=now - timedelta(hours=6)))

    response = await handle_chat(ChatRequest(message="¿Cómo voy con mi dieta esta semana?"), user_id, now,
                                 completion_client=FakeCompletionClient(error=error))

    assert response.was_fallback
    assert response.mode is ChatMode.PERSONALIZED
    assert "600/2200 kcal" in response.reply
    assert "Full body" in response.reply
    assert response.type == "recommendation"

    analytics = get_daily_analytics(now.date())
    assert analytics.total_messages == 1
    assert analytics.fallback_count == 1
    assert analytics.error_count == 1
    assert analytics.completion_calls == 0


@pytest.mark.asyncio
async def test_successful_exchange_updates_analytics(add_rows, user_id_generator):
    now = datetime(2024, 6, 3, 9, 0)
    user_id = user_id_generator()
    seed_active_user(add_rows, user_id, now)

    await handle_chat(ChatRequest(message="¿Qué desayuno antes de entrenar?"), user_id, now,
                      completion_client=FakeCompletionClient(), clock=fixed_clock(0.0, 1.5))
    await handle_chat(ChatRequest(message="Hola"), user_id_generator(), now,
                      completion_client=FakeCompletionClient(), clock=fixed_clock(0.0, 0.5))

    analytics = get_daily_analytics(now.date())
    assert analytics.total_messages == 2
    assert analytics.unique_users == 2
    assert analytics.completion_calls == 1
    assert analytics.total_tokens == 55
    assert analytics.avg_response_time_ms == 1000


@pytest.mark.asyncio
async def test_missing_identity_is_rejected(now):
    with pytest.raises(AuthenticationMissing):
        await handle_chat(ChatRequest(message="Hola"), None, now, completion_client=FakeCompletionClient())


@pytest.mark.asyncio
@pytest.mark.parametrize("message", [None, "", "   ", "a" * 501])
async def test_invalid_message_is_rejected(user_id_generator, now, message):
    user_id = user_id_generator()
    with pytest.raises(InputInvalid):
        await handle_chat(ChatRequest(message=message), user_id, now, completion_client=FakeCompletionClient(),
                          config=ChatConfig(max_message_length=500))
    assert get_rate_limit(user_id) is None


@pytest.mark.asyncio
async def test_unexpected_failure_becomes_internal_error(user_id_generator, now):
    with patch("coach.handler.build_user_context", side_effect=RuntimeError("boom")):
        with pytest.raises(ChatError) as exc_info:
            await handle_chat(ChatRequest(message="¿Qué rutina de fuerza hago?"), user_id_generator(), now,
                              completion_client=FakeCompletionClient())

    assert exc_info.value.code is ErrorCode.INTERNAL
    assert "boom" not in exc_info.value.message


@pytest.mark.asyncio
async def test_analytics_failure_does_not_fail_request(user_id_generator, now):
    with patch("coach.handler.update_analytics", side_effect=RuntimeError("store down")):
        response = await handle_chat(ChatRequest(message="Hola"), user_id_generator(), now,
                                     completion_client=FakeCompletionClient())
    assert response.reply == generic_reply("Hola")


@pytest.mark.asyncio
async def test_transitions_are_logged(user_id_generator, now, caplog):
    with caplog.at_level(logging.INFO):
        await handle_chat(ChatRequest(message="Hola"), user_id_generator(), now,
                          completion_client=FakeCompletionClient())

    events = [r.getMessage() for r in caplog.records if r.getMessage().startswith("chat_event ")]
    states = [e for e in events if '"state": "' in e]
    assert len(states) == 7
    assert '"state": "BYPASSED"' in states[-3]
    assert '"mode": "generic"' in states[-1]
    assert '"sanitized": true' in states[-1]


def test_request_and_response_wire_format():
    request = ChatRequest.from_dict({"message": "Hola", "sessionId": "abc", "messageId": ""})
    assert (request.message, request.session_id, request.message_id) == ("Hola", "abc", None)

    response = ChatResponse(session_id="abc", reply="¡Hola!", type="normal", tokens_used=0, response_time_ms=12)
    assert response.to_dict() == {
        "sessionId": "abc",
        "reply": "¡Hola!",
        "type": "normal",
        "tokensUsed": 0,
        "responseTimeMs": 12,
        "wasFallback": False,
        "wasFromCache": False,
    }

    response = ChatResponse(session_id="abc", reply="Vas bien", type="normal", mode=ChatMode.GENERIC)
    assert response.to_dict() == {"sessionId": "abc", "reply": "Vas bien", "type": "normal",
                                  "wasFallback": False, "wasFromCache": False}


def test_malformed_request_is_invalid_input():
    with pytest.raises(InputInvalid):
        ChatRequest.from_dict({"message": "Hola", "sessionId": ["not", "an", "id"]})


@pytest.mark.asyncio
async def test_configured_window_is_kept_in_session(user_id_generator, now):
    user_id = user_id_generator()
    config = ChatConfig(max_context_messages=20)
    session_id = None
    for i in range(10):
        response = await handle_chat(ChatRequest(message=f"Hola {i}", session_id=session_id), user_id,
                                     now + timedelta(seconds=i), completion_client=FakeCompletionClient(),
                                     config=config)
        session_id = response.session_id

    session = get_record(ChatSession, session_id)
    assert session.message_count == 20
    assert len(session.recent_messages) == 20
    assert session.recent_messages[0]["content"] == "Hola 0"


@pytest.mark.asyncio
async def test_repeated_message_id_is_answered_once(add_rows, user_id_generator, now):
    user_id = user_id_generator()
    seed_active_user(add_rows, user_id, now)
    client = FakeCompletionClient()
    first = await handle_chat(ChatRequest(message="Hola"), user_id, now, completion_client=client)
    request = ChatRequest(message="¿Qué ceno después de entrenar?", session_id=first.session_id,
                          message_id="client-42")

    original = await handle_chat(request, user_id, now, completion_client=client)
    hourly_after_first = get_rate_limit(user_id).hourly_count
    repeated = await handle_chat(request, user_id, now + timedelta(seconds=5), completion_client=client)

    assert len(client.calls) == 2  # "Hola" and the first delivery only
    assert repeated.reply == original.reply
    assert repeated.session_id == first.session_id
    assert get_rate_limit(user_id).hourly_count == hourly_after_first
    stored = query_records(ChatMessage, ChatMessage.session_id == first.session_id,
                           ChatMessage.role == "assistant")
    assert len(stored) == 2
    assert get_record(ChatSession, first.session_id).message_count == 4
