"""Instruction text for the completion call.

GENERIC payloads must never carry user data. They are built from a redacted
summary and a fixed template, then passed through sanitize_generic as a second,
independent filter that also drops the prior conversation.
"""
import re
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from coach.bot_messages import get_assistant_role
from coach.modes import ChatMode
from coach.records import ChatMessageRecord, HistoryUsageSummary, UserContextSummary

FORBIDDEN_PATTERNS = [
    re.compile(r"\d+\s*(k?cal|kilocal)", re.IGNORECASE),
    re.compile(r"calor[ií]a|calorie|kcal", re.IGNORECASE),
    re.compile(r"[uú]ltima comida|last meal", re.IGNORECASE),
    re.compile(r"[uú]ltimo entrenamiento|last workout", re.IGNORECASE),
    re.compile(r"\b(hoy|today)\b", re.IGNORECASE),
    re.compile(
        r"total_?calories_?today|last_?meal|last_?workout|weekly_?stats|personal_?insights|target_?calories",
        re.IGNORECASE,
    ),
]

GENERIC_INSTRUCTIONS = """MODO GENERAL: el usuario todavía no tiene historial suficiente.
- No hagas suposiciones sobre lo que el usuario ha comido, entrenado o dejado de hacer.
- No uses frases como "veo tus datos", "según tus registros" o "he notado que".
- Da solo orientación general, clara y breve (máximo 3-4 oraciones).
- Si la pregunta necesita datos personales, invita a registrar comidas y entrenamientos en la app.
- No diagnostiques enfermedades ni prescribas dietas médicas."""

PERSONALIZED_RULES = """INSTRUCCIONES CRÍTICAS:
1. Usa SOLO las cifras de arriba; nunca inventes cifras diarias que no aparezcan aquí.
2. Si hay patrones personales relevantes para la pregunta, cítalos con sus datos concretos.
3. Si no hay datos relevantes para la pregunta, responde con conocimiento general.
4. Sé claro y conciso (máximo 3-4 oraciones), usa emojis con moderación (1-2).
5. No diagnostiques enfermedades ni prescribas dietas médicas."""


def _format_number(value) -> str:
    return f"{value:.0f}"


def _personalized_instructions(summary: UserContextSummary, history: Optional[HistoryUsageSummary]) -> str:
    lines = [get_assistant_role(), "", "MODO PERSONALIZADO"]
    if history is not None:
        lines += [
            "HISTORIAL RECIENTE:",
            f"- Días con comidas registradas (últimos 7 días): {history.meal_days_7d} ({history.meals_7d} comidas)",
            f"- Entrenamientos completados (últimos 14 días): {history.workouts_14d} en {history.workout_days_14d} días",
        ]
    lines.append("CONTEXTO DEL USUARIO:")
    if summary.total_calories_today is not None:
        lines.append(
            f"- Calorías de hoy: {_format_number(summary.total_calories_today)}/{summary.target_calories} kcal"
        )
    if summary.last_meal is not None:
        lines.append(f"- Última comida: {summary.last_meal.name}")
    if summary.last_workout is not None:
        lines.append(f"- Último entrenamiento: {summary.last_workout.name}")
    lines.append(
        f"- Últimos 7 días: {summary.weekly_stats.workout_count} entrenamientos, "
        f"{_format_number(summary.weekly_stats.total_calories)} kcal registradas"
    )
    if summary.personal_insights:
        lines.append("PATRONES PERSONALES IDENTIFICADOS:")
        for idx, insight in enumerate(summary.personal_insights, start=1):
            lines += [
                f"{idx}. {insight.title}",
                f"   - Qué detecté: {insight.description}",
                f"   - Evidencia clave: {insight.key_evidence}",
                f"   - Recomendación: {insight.actionable}",
            ]
    lines += ["", PERSONALIZED_RULES]
    return "\n".join(lines)


def build_instructions(mode: ChatMode, summary: UserContextSummary,
                       history: Optional[HistoryUsageSummary] = None) -> str:
    if mode is ChatMode.GENERIC:
        # The summary is deliberately unused here
        return "\n".join([get_assistant_role(), "", GENERIC_INSTRUCTIONS])
    return _personalized_instructions(summary, history)


def sanitize_generic(text: str) -> Tuple[str, int]:
    """Strip every line that looks like user data. Returns the text and the number of lines removed."""
    kept = []
    removed = 0
    for line in text.splitlines():
        if any(pattern.search(line) for pattern in FORBIDDEN_PATTERNS):
            removed += 1
            continue
        kept.append(line)
    return "\n".join(kept), removed


@dataclass
class CompletionPayload:
    mode: ChatMode
    instructions: str
    message: str
    history: List[dict] = field(default_factory=list)
    sanitized: bool = False
    removed_lines: int = 0

    def to_messages(self) -> List[dict]:
        return [{"role": "system", "content": self.instructions}, *self.history,
                {"role": "user", "content": self.message}]


def build_payload(mode: ChatMode, message: str, summary: UserContextSummary,
                  history_summary: Optional[HistoryUsageSummary] = None,
                  conversation: Optional[List[ChatMessageRecord]] = None,
                  max_history: int = 10) -> CompletionPayload:
    if mode is ChatMode.GENERIC:
        instructions, removed = sanitize_generic(build_instructions(mode, summary, history_summary))
        return CompletionPayload(mode=mode, instructions=instructions, message=message,
                                 history=[], sanitized=True, removed_lines=removed)

    history = [m.to_chat_message() for m in (conversation or [])[-max_history:]] if max_history > 0 else []
    return CompletionPayload(
        mode=mode,
        instructions=build_instructions(mode, summary, history_summary),
        message=message,
        history=history,
    )
