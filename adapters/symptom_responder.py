"""Rule-based local symptom responder.

Keyword table used by the chat screen when no assistant backend reply is
involved (quick suggestions) and by the stub chat-stream server. Not part
of the wire protocol.

A topic is keyed by its first keyword. The first message that mentions a
topic gets its follow-up question; later mentions get its recommendation.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from typing import List, Optional, Tuple

logger = logging.getLogger("mama.symptom_responder")


@dataclass(frozen=True)
class SymptomTopic:
    keywords: Tuple[str, ...]
    follow_up: str
    recommendation: str

    @property
    def key(self) -> str:
        return self.keywords[0]

    def matches(self, lowered: str) -> bool:
        return any(keyword in lowered for keyword in self.keywords)


QUICK_SUGGESTIONS = [
    "Dolor de barriga",
    "Calor en la frente",
    "Dolor de cabeza",
    "Tos o gripe",
]

SYMPTOM_TOPICS = [
    SymptomTopic(
        keywords=("dolor", "cabeza", "cefalea"),
        follow_up="¿Hace cuánto tiempo tienes este dolor de cabeza? ¿Es constante o intermitente?",
        recommendation=(
            "Para el dolor de cabeza te recomiendo:\n\n"
            "• Descansar en un lugar oscuro y silencioso\n"
            "• Tomar abundante agua\n"
            "• Aplicar compresas frías en la frente\n"
            "• Si persiste más de 24 horas, consulta con un médico\n\n"
            "¿Tienes algún otro síntoma?"
        ),
    ),
    SymptomTopic(
        keywords=("fiebre", "temperatura", "caliente"),
        follow_up="¿Has medido tu temperatura? ¿Tienes otros síntomas como escalofríos o sudoración?",
        recommendation=(
            "Para la fiebre te recomiendo:\n\n"
            "• Mantente hidratado con agua y líquidos\n"
            "• Usa ropa ligera\n"
            "• Descansa lo suficiente\n"
            "• Si la fiebre supera 38.5°C o dura más de 3 días, consulta a un médico\n\n"
            "¿Hay algo más que te preocupe?"
        ),
    ),
    SymptomTopic(
        keywords=("estómago", "náuseas", "vómito", "diarrea", "digestión"),
        follow_up="¿Desde cuándo tienes estas molestias estomacales? ¿Has comido algo diferente recientemente?",
        recommendation=(
            "Para las molestias estomacales te recomiendo:\n\n"
            "• Dieta blanda (arroz, pollo, plátano)\n"
            "• Evita alimentos grasos y picantes\n"
            "• Toma líquidos en pequeños sorbos\n"
            "• Si hay sangre o los síntomas persisten, busca atención médica\n\n"
            "¿Cómo te sientes ahora?"
        ),
    ),
    SymptomTopic(
        keywords=("cansancio", "fatiga", "sueño", "agotado"),
        follow_up="¿Cuántas horas estás durmiendo? ¿Este cansancio es reciente o llevas tiempo sintiéndote así?",
        recommendation=(
            "Para combatir el cansancio te recomiendo:\n\n"
            "• Dormir 7-8 horas diarias\n"
            "• Hacer ejercicio ligero regularmente\n"
            "• Alimentación balanceada\n"
            "• Reducir el estrés con técnicas de relajación\n\n"
            "¿Te gustaría agendar una cita con un especialista?"
        ),
    ),
    SymptomTopic(
        keywords=("tos", "gripe", "resfriado", "congestión", "nariz"),
        follow_up="¿La tos es seca o con flema? ¿Tienes otros síntomas como congestión nasal?",
        recommendation=(
            "Para los síntomas de gripe te recomiendo:\n\n"
            "• Descanso absoluto\n"
            "• Líquidos calientes (té, sopas)\n"
            "• Miel con limón para la garganta\n"
            "• Vapor de agua para la congestión\n"
            "• Si hay dificultad para respirar, consulta inmediatamente\n\n"
            "¿Necesitas más ayuda?"
        ),
    ),
]

THANKS_KEYWORDS = ("gracias", "thank")
APPOINTMENT_KEYWORDS = ("cita", "doctor", "médico")
GREETING_KEYWORDS = ("hola", "buenos", "buenas")

THANKS_REPLY = (
    "¡De nada! Recuerda que estoy aquí para ayudarte. Si tienes más preguntas "
    "sobre tu salud, no dudes en consultarme.\n\n¿Hay algo más en lo que pueda ayudarte?"
)
APPOINTMENT_REPLY = (
    "¡Claro! Puedo ayudarte a encontrar un especialista. Te recomiendo consultar "
    "con tu médico de confianza según los síntomas que describes.\n\n"
    "¿Te gustaría que te dé más información?"
)
GREETING_REPLY = (
    "¡Hola! ¿Cómo te encuentras hoy? Cuéntame si tienes algún síntoma o malestar "
    "que te preocupe. Estoy aquí para ayudarte."
)

DEFAULT_RESPONSES = [
    "Entiendo. ¿Podrías darme más detalles sobre cómo te sientes? Por ejemplo, ¿dónde sientes las molestias?",
    "Gracias por compartir eso conmigo. ¿Hace cuánto tiempo comenzaste a sentirte así?",
    "Es importante que me cuentes más. ¿El malestar es constante o aparece en ciertos momentos?",
    "¿Hay algo que haga que te sientas mejor o peor? Cuéntame más para poder ayudarte mejor.",
]


class SymptomResponder:
    """Keyword responder with per-conversation topic memory."""

    def __init__(
        self,
        topics: Optional[List[SymptomTopic]] = None,
        rng: Optional[random.Random] = None,
    ):
        self._topics = SYMPTOM_TOPICS if topics is None else topics
        self._rng = rng or random.Random()
        self._seen: List[str] = []

    @property
    def context(self) -> List[str]:
        """Topic keys already asked about, in order."""
        return list(self._seen)

    def respond(self, message: str) -> str:
        lowered = message.lower()

        for topic in self._topics:
            if topic.matches(lowered):
                if topic.key in self._seen:
                    return topic.recommendation
                self._seen.append(topic.key)
                logger.debug("New symptom topic: %s", topic.key)
                return topic.follow_up

        if any(keyword in lowered for keyword in THANKS_KEYWORDS):
            return THANKS_REPLY
        if any(keyword in lowered for keyword in APPOINTMENT_KEYWORDS):
            return APPOINTMENT_REPLY
        if any(keyword in lowered for keyword in GREETING_KEYWORDS):
            return GREETING_REPLY

        return self._rng.choice(DEFAULT_RESPONSES)

    def reset(self) -> None:
        self._seen.clear()
