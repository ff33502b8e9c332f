"""Deterministic replies used when the completion service is bypassed or fails."""
from typing import Tuple

from coach.records import UserContextSummary
from coach.relevance import normalize

REPLY_NORMAL = "normal"
REPLY_RECOMMENDATION = "recommendation"
REPLY_ACHIEVEMENT = "achievement"

GENERIC_DISCLAIMER = (
    "ℹ️ Esta es una orientación general: todavía no tengo suficiente historial tuyo para "
    "personalizarla. Registra tus comidas y entrenamientos durante unos días y podré ayudarte "
    "con más detalle. No sustituye el consejo de un profesional de la salud."
)

GENERIC_TEMPLATES = {
    "greeting": "¡Hola! Soy Apolo, tu entrenador. Puedo ayudarte con entrenamiento, alimentación, "
                "descanso y seguimiento de tu progreso. ¿Qué te gustaría saber?",
    "nutrition": "Una base sólida es priorizar alimentos poco procesados, incluir una fuente de proteína "
                 "en cada comida, sumar frutas y verduras y mantenerte bien hidratado.",
    "training": "Para avanzar de forma segura, combina trabajo de fuerza dos o tres veces por semana con "
                "algo de cardio, calienta antes de empezar y aumenta la carga de manera gradual.",
    "recovery": "El descanso también es entrenamiento: intenta dormir entre 7 y 9 horas, deja al menos un "
                "día de recuperación entre sesiones intensas del mismo grupo muscular y escucha a tu cuerpo.",
    "default": "Puedo orientarte sobre entrenamiento, alimentación, descanso y hábitos saludables. "
               "Cuéntame un poco más sobre lo que buscas.",
}

_TOPIC_WORDS = {
    "greeting": ("hola", "hey", "buenas", "buenos", "hello", "saludos", "que tal"),
    "nutrition": ("comer", "comida", "dieta", "nutricion", "proteina", "caloria", "desayuno",
                  "almuerzo", "cena", "snack", "suplemento", "hidrat"),
    "training": ("entren", "ejercicio", "rutina", "gym", "gimnasio", "fuerza", "cardio",
                 "pesas", "correr", "musculo", "sentadilla"),
    "recovery": ("dormir", "sueno", "descanso", "recuperacion", "dolor", "agujetas", "fatiga", "cansancio"),
}

_RECOMMENDATION_WORDS = ("recomiendo", "podrias", "suger", "te aconsejo", "prueba a")
_ACHIEVEMENT_WORDS = ("felic", "excelente", "gran trabajo", "bien hecho", "enhorabuena")


def message_topic(message: str) -> str:
    text = normalize(message)
    for topic in ("nutrition", "training", "recovery", "greeting"):
        if any(word in text for word in _TOPIC_WORDS[topic]):
            return topic
    return "default"


def generic_reply(message: str) -> str:
    """Hand-authored reply for GENERIC mode. Never mentions user data."""
    return f"{GENERIC_TEMPLATES[message_topic(message)]}\n\n{GENERIC_DISCLAIMER}"


def fallback_reply(message: str, summary: UserContextSummary, reason: str) -> Tuple[str, str]:
    parts = [f"Estoy teniendo problemas para responder ahora ({reason})."]
    if summary.total_calories_today is not None:
        parts.append(f"Hoy llevas {summary.total_calories_today:.0f}/{summary.target_calories} kcal.")
    if summary.last_workout is not None:
        parts.append(f"Buen progreso con tu entrenamiento \"{summary.last_workout.name}\" 💪")
    parts.append("Intenta una pregunta concreta y breve.")

    reply_type = REPLY_RECOMMENDATION if message_topic(message) == "nutrition" else REPLY_NORMAL
    return " ".join(parts), reply_type


def classify_reply(reply: str) -> str:
    text = normalize(reply)
    if any(word in text for word in _RECOMMENDATION_WORDS):
        return REPLY_RECOMMENDATION
    if any(word in text for word in _ACHIEVEMENT_WORDS):
        return REPLY_ACHIEVEMENT
    return REPLY_NORMAL
