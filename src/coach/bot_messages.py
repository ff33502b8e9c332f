"""Canned assistant messages in the coach's voice"""
import random


START_TOKEN = "start"
NEXT_TOKEN = "next"
ADD_USER_TOKEN = "add_user"
ERROR_TOKEN = "error"
UNAUTHORIZED_TOKEN = "unauthorized"

BOT_MESSAGES_COACH = {
    START_TOKEN: [
        "¡Hola! Soy Apolo, tu entrenador. ¿Hablamos de entrenamiento o de nutrición? 💪",
        "¡Bienvenido! Pregúntame lo que quieras sobre ejercicio, comida o descanso.",
        "¡Aquí estoy! ¿En qué te ayudo hoy con tu entrenamiento o tu alimentación?",
    ],
    NEXT_TOKEN: [
        "Hecho. Cerré la conversación anterior; empezamos una nueva.",
        "Listo, guardé nuestra charla anterior. ¿Qué quieres trabajar ahora?",
        "Conversación nueva en marcha. ¿Por dónde seguimos?",
    ],
    ADD_USER_TOKEN: [
        "Usuario añadido. Ya puede hablar con el entrenador.",
        "Listo, el nuevo usuario ya tiene acceso.",
    ],
    ERROR_TOKEN: [
        "Uy, algo falló de mi lado. ¿Lo intentamos de nuevo en un momento?",
        "Tuve un problema procesando tu mensaje. Inténtalo otra vez en breve.",
    ],
    UNAUTHORIZED_TOKEN: [
        "Debes iniciar sesión para usar el chat.",
        "Todavía no tienes acceso al entrenador. Pide al administrador que te registre.",
    ],
}

OUT_OF_SCOPE_REPLY = (
    "🤔 Esa pregunta está fuera de mi área de fitness y nutrición. Estoy aquí para ayudarte con:\n\n"
    "💪 Entrenamientos y ejercicios\n"
    "🥗 Nutrición y alimentación\n"
    "📊 Seguimiento de progreso\n"
    "💤 Descanso y recuperación\n\n"
    "¿En qué puedo ayudarte?"
)


def get_bot_message(user_id, token: str) -> str:
    """return random bot message for user by token"""
    _ = user_id
    return random.choice(BOT_MESSAGES_COACH[token])


def get_assistant_role():
    SYSTEM_PROMPT = "Eres Apolo, el entrenador personal de la app: motivador pero realista, " \
                    "empático, profesional sin ser rígido, y claro y conciso."
    return SYSTEM_PROMPT
