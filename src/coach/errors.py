"""Typed failures of the chat pipeline.

Every error that can reach the caller is a ChatError with one of the ErrorCode
values and a human-readable message. Messages are user facing: no stack traces,
no table or field names.
"""
import math
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    INVALID_ARGUMENT = "invalid-argument"
    RESOURCE_EXHAUSTED = "resource-exhausted"
    DEADLINE_EXCEEDED = "deadline-exceeded"
    INTERNAL = "internal"
    UNAVAILABLE = "unavailable"


class ChatError(Exception):
    code = ErrorCode.INTERNAL
    default_message = "Error interno del servidor."

    def __init__(self, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None,
                 code: Optional[ErrorCode] = None):
        self.message = message or self.default_message
        self.details = details or {}
        if code is not None:
            self.code = code
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        error = {"code": self.code.value, "message": self.message}
        if self.details:
            error["details"] = dict(self.details)
        return error


class AuthenticationMissing(ChatError):
    code = ErrorCode.UNAUTHENTICATED
    default_message = "Debes iniciar sesión para usar el chat."


class InputInvalid(ChatError):
    code = ErrorCode.INVALID_ARGUMENT
    default_message = "Mensaje no válido."


class RateLimited(ChatError):
    code = ErrorCode.RESOURCE_EXHAUSTED

    def __init__(self, retry_after_ms: int):
        self.retry_after_ms = retry_after_ms
        seconds = math.ceil(retry_after_ms / 1000)
        super().__init__(
            f"Has alcanzado el límite de mensajes. Intenta en ~{seconds} s.",
            details={"retryAfterMs": retry_after_ms},
        )


class CompletionTimeout(ChatError):
    code = ErrorCode.DEADLINE_EXCEEDED
    default_message = "El asistente tardó demasiado en responder."


class CompletionServiceError(ChatError):
    code = ErrorCode.UNAVAILABLE
    default_message = "El asistente no está disponible en este momento."


class PersistenceError(ChatError):
    default_message = "No se pudo guardar la conversación."


class InternalInvariantViolation(ChatError):
    """Programmer error: the pipeline reached a state it must never reach."""
