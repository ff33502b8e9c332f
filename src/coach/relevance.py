"""Two-tier keyword filter that keeps the assistant inside fitness and nutrition.

Messages that are clearly about something else are answered with a canned reply
before any rate-limit charge or completion call. Everything else passes, with a
confidence that downstream logging uses to tune these lists.
"""
import logging
import re
import unicodedata
from dataclasses import dataclass
from typing import List, Optional

SHORT_MESSAGE_LENGTH = 15
LONG_MESSAGE_LENGTH = 20
SHORT_CIRCUIT_CONFIDENCE = 0.85

FITNESS_KEYWORDS = [
    # Training
    'ejercicio', 'entrenar', 'entrenamiento', 'rutina', 'workout', 'gym', 'gimnasio',
    'musculo', 'muscular', 'fuerza', 'cardio', 'aerobico', 'anaerobico',
    'peso', 'repeticiones', 'reps', 'series', 'sets', 'descanso', 'recuperacion',
    'calentamiento', 'estiramiento', 'flexibilidad', 'movilidad',
    'press', 'sentadilla', 'squat', 'deadlift', 'peso muerto', 'bench press',
    'curl', 'flexion', 'plancha', 'abdominales', 'core',
    'dominadas', 'pull up', 'push up', 'lagartija', 'burpee',
    'crossfit', 'yoga', 'pilates', 'running', 'correr', 'caminar', 'nadar',
    'bicicleta', 'spinning', 'boxeo', 'hiit', 'tabata', 'circuito', 'superserie',
    'volumen', 'intensidad', 'periodizacion',
    'espalda', 'pecho', 'pierna', 'brazo', 'hombro', 'gluteo', 'cuadriceps',
    'biceps', 'triceps', 'deltoides', 'trapecio', 'dorsal', 'lumbar',
    # Nutrition
    'comida', 'alimento', 'comer', 'alimentacion', 'nutricion', 'dieta',
    'caloria', 'kcal', 'kilocaloria', 'energia',
    'proteina', 'carbohidrato', 'hidrato', 'grasa', 'fibra',
    'macro', 'macronutriente', 'micronutriente', 'vitamina', 'mineral',
    'deficit', 'superavit', 'recomposicion',
    'desayuno', 'almuerzo', 'cena', 'merienda', 'snack',
    'breakfast', 'lunch', 'dinner', 'protein', 'calorie', 'meal',
    'suplemento', 'creatina', 'whey', 'caseina', 'bcaa', 'aminoacido',
    'pre-workout', 'post-workout',
    'agua', 'hidratacion', 'hidratar',
    'fruta', 'verdura', 'vegetal', 'carne', 'pollo', 'pescado', 'huevo',
    'arroz', 'pasta', 'cereal', 'avena', 'quinoa', 'leche', 'yogur', 'queso',
    'ayuno', 'intermitente', 'keto', 'paleo', 'vegano', 'vegetariano',
    'glucosa', 'insulina', 'colesterol', 'omega 3',
    # Wellbeing and recovery
    'dormir', 'sueno', 'estres', 'relajacion', 'meditacion',
    'bienestar', 'salud', 'saludable', 'healthy',
    'cansancio', 'fatiga', 'agotamiento',
    'dolor', 'lesion', 'injury', 'molestia', 'inflamacion', 'agujetas', 'contractura',
    'postura', 'masaje', 'foam roller',
    # Goals and progress
    'objetivo', 'goal', 'progreso', 'avance', 'mejora', 'resultado', 'logro',
    'adelgazar', 'perder peso', 'quemar grasa', 'definir', 'masa muscular',
    'tonificar', 'definicion', 'cutting', 'bulking', 'porcentaje de grasa',
    'imc', 'bmi', 'rendimiento', 'performance', '1rm', 'resistencia', 'endurance',
    'velocidad', 'potencia', 'agilidad', 'motivacion', 'disciplina', 'constancia', 'habito',
    'fitness', 'forma fisica', 'condicion fisica', 'entrenador', 'nutricionista',
]

OUT_OF_SCOPE_KEYWORDS = [
    # Beauty
    'pelo', 'cabello', 'tinte', 'tenir', 'capilar', 'maquillaje', 'makeup', 'cosmetico',
    'crema facial', 'serum', 'mascarilla facial', 'manicura', 'pedicura', 'esmaltado',
    'pestanas', 'cejas', 'depilar', 'depilacion', 'cera', 'laser estetico',
    'botox', 'acido hialuronico', 'relleno', 'tatuaje', 'tattoo', 'piercing', 'perforacion',
    'perfume', 'fragancia', 'colonia', 'aroma',
    # Fashion
    'ropa', 'vestido', 'pantalon', 'camisa', 'blusa', 'falda', 'zapatos', 'zapatillas de vestir',
    'tacones', 'sandalias', 'moda', 'fashion', 'outfit', 'look', 'estilo de ropa',
    'accesorio', 'joyeria', 'collar', 'pulsera', 'anillo', 'bolso', 'cartera', 'mochila de moda', 'maleta',
    # Relationships
    'amor', 'enamorar', 'pareja', 'novio', 'novia', 'esposo', 'esposa', 'cita romantica', 'date',
    'ligar', 'seducir', 'conquistar', 'matrimonio', 'boda', 'casarse', 'divorcio', 'separacion',
    'romance', 'romantico', 'beso', 'abrazo amoroso', 'sexo', 'sexual', 'intimidad', 'erotico',
    'celos', 'infidelidad', 'engano',
    # Work and money
    'trabajo', 'empleo', 'job', 'empresa', 'oficina', 'jefe', 'jefa', 'sueldo', 'salario', 'pago',
    'nomina', 'contrato laboral', 'curriculum', 'cv', 'entrevista laboral', 'ascenso',
    'dinero', 'plata', 'efectivo', 'billete', 'moneda',
    'inversion', 'invertir', 'bolsa', 'acciones', 'trading', 'cuenta bancaria',
    'prestamo', 'credito', 'hipoteca', 'ahorro', 'ahorrar', 'presupuesto financiero', 'economia personal',
    'impuesto', 'declaracion', 'factura', 'negocio', 'emprendimiento', 'startup',
    # Entertainment
    'pelicula', 'movie', 'cine', 'netflix', 'streaming', 'actor', 'actriz', 'famoso',
    'celebrity', 'cancion', 'album', 'concierto', 'videojuego', 'gaming', 'consola',
    'playstation', 'xbox', 'anime', 'manga', 'comic', 'superheroe', 'novela', 'ficcion', 'literatura',
    # Unrelated technology
    'computadora', 'ordenador', 'pc', 'laptop', 'celular', 'movil', 'smartphone', 'iphone', 'android',
    'tablet', 'ipad', 'software', 'codigo', 'programacion', 'inteligencia artificial', 'ai',
    'machine learning', 'blockchain', 'bitcoin', 'criptomoneda', 'nft',
    # Everything else
    'politica', 'politico', 'gobierno', 'presidente', 'eleccion', 'religion', 'dios',
    'iglesia', 'rezo', 'oracion religiosa', 'filosofia', 'existencial', 'metafisica',
    'mascota', 'gato', 'animal domestico',
    'coche', 'auto', 'carro', 'vehiculo', 'conducir', 'viaje', 'vacaciones', 'turismo',
    'hotel', 'playa', 'clima', 'temperatura ambiente', 'sol',
    'vivienda', 'decoracion', 'mueble', 'diseno interior',
    'jardineria', 'planta ornamental', 'jardin', 'receta gourmet', 'restaurante',
    'astrologia', 'horoscopo', 'signo zodiacal', 'tarot', 'chisme', 'gossip', 'rumor', 'escandalo',
]

PROHIBITED_PHRASES = [
    'pintar el pelo', 'tenir el cabello', 'color de cabello', 'cambiar de look',
    'cortarme el pelo', 'peinado', 'que ropa', 'que vestir', 'como vestir',
    'outfit para', 'como ligar', 'conquistar a', 'me gusta un', 'enamorado de',
    'mi pareja', 'mi novio', 'mi novia', 'precio de', 'cuanto cuesta',
    'donde comprar', 'marca de ropa', 'marca de zapatos',
]

GREETINGS = ['hola', 'hey', 'buenas', 'hello', 'hi', 'buenos', 'saludos', 'que tal']

APP_PHRASES = [
    'app', 'aplicacion', 'registrar', 'guardar', 'borrar', 'eliminar', 'modificar',
    'como funciona', 'ayuda', 'configuracion', 'perfil', 'cuenta', 'usuario',
]


def normalize(text: str) -> str:
    """Lowercase and strip accents so 'Qué' and 'que' compare equal."""
    decomposed = unicodedata.normalize("NFKD", text.lower())
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch)).strip()


def _compile(terms, prefix: bool):
    # prefix: 'entrenar' also matches 'entrenarme', 'me gusta un' matches 'me gusta una';
    # otherwise whole words plus plural
    tail = "" if prefix else r"(?:s|es)?\b"
    return [(term, re.compile(r"\b" + re.escape(normalize(term)) + tail)) for term in terms]


_FITNESS = _compile(FITNESS_KEYWORDS, prefix=True)
_OUT_OF_SCOPE = _compile(OUT_OF_SCOPE_KEYWORDS, prefix=False)
_PROHIBITED = _compile(PROHIBITED_PHRASES, prefix=True)
_GREETINGS = _compile(GREETINGS, prefix=False)
_APP = _compile(APP_PHRASES, prefix=True)


def _matches(patterns, text: str) -> List[str]:
    return [term for term, pattern in patterns if pattern.search(text)]


@dataclass(frozen=True)
class RelevanceResult:
    is_relevant: bool
    confidence: float
    reason: Optional[str] = None


def is_relevant_query(message: str) -> RelevanceResult:
    text = normalize(message)
    length = len(message.strip())

    prohibited = _matches(_PROHIBITED, text)
    if prohibited:
        logging.info(f"Blocked by prohibited phrase: {prohibited[0]}")
        return RelevanceResult(False, 0.99, f"prohibited_phrase: {prohibited[0]}")

    out_of_scope = _matches(_OUT_OF_SCOPE, text)
    if out_of_scope:
        logging.info(f"Blocked by keywords: {', '.join(out_of_scope)}")
        return RelevanceResult(False, 0.98, f"out_of_scope_keywords: {', '.join(out_of_scope)}")

    if length < SHORT_MESSAGE_LENGTH:
        if _matches(_GREETINGS, text):
            return RelevanceResult(True, 0.9, "greeting")
        return RelevanceResult(True, 0.4, "short_message")

    relevant = _matches(_FITNESS, text)
    if len(relevant) >= 2:
        return RelevanceResult(True, 0.95, f"fitness_keywords: {', '.join(relevant[:3])}")
    if len(relevant) == 1:
        return RelevanceResult(True, 0.85, f"fitness_keywords: {relevant[0]}")

    if _matches(_APP, text):
        return RelevanceResult(True, 0.7, "app_navigation")

    if length > LONG_MESSAGE_LENGTH:
        logging.warning(f"Suspicious query, no fitness keywords: {message!r}")
        return RelevanceResult(True, 0.2, "no_fitness_keywords_found")

    return RelevanceResult(True, 0.5, "default")


def should_short_circuit(result: RelevanceResult) -> bool:
    return not result.is_relevant and result.confidence > SHORT_CIRCUIT_CONFIDENCE
