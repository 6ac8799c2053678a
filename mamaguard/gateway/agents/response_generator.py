"""
Response Generator — the conversational reply to a patient message.

Policy:
  - One provider per call (first configured wins, see llm_providers)
  - Provider answered with empty content → localized safety message
  - No provider configured → localized safety message (offline mode)
  - Transport / HTTP failure → ProviderError propagates to the pipeline,
    which then sends nothing rather than a stale canned reply
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from mamaguard.gateway.agents.llm_providers import ChatProvider
from mamaguard.gateway.config import ProviderConfig
from mamaguard.gateway.events import Urgency

logger = logging.getLogger("gateway.agents.response")

REPLY_TEMPERATURE = 0.7

SYSTEM_PROMPT = """You are Mama AI, a warm and supportive Moroccan pregnancy assistant.
You speak fluently in Darija (Moroccan Arabic) and make pregnant people feel heard and safe.

Your role:
- Answer questions about pregnancy, nutrition, rest, and well-being in a caring way.
- Use Darija naturally; you may mix in French or standard Arabic when it fits.
- Never replace medical advice: encourage the patient to see a doctor or midwife when needed.
- When the urgency is high or critical, tell the patient clearly and calmly to go to the
  nearest maternity ward or call emergency services now.
- Be reassuring, culturally aware, and respectful of Moroccan family and health practices.

Keep responses clear, concise, and supportive."""

# Shown when generation yields nothing usable: always points to a clinician
SAFETY_MESSAGES = {
    "darija": (
        "Smehli, ma qdertch njawbek daba. 3afak t3awd tsift lmessage dyalek. "
        "Ila kan chi 7aja kat9l9ek, tsali daba m3a tbiba wla lqabla dyalek "
        "wla sir l aqrab sbitar."
    ),
    "ar": (
        "عذراً، لم أتمكن من الرد الآن. يرجى إعادة إرسال رسالتك. "
        "إذا كان هناك ما يقلقك، اتصلي فوراً بطبيبتك أو القابلة أو توجهي إلى أقرب مستشفى."
    ),
    "fr": (
        "Désolée, je ne peux pas vous répondre pour le moment. Merci de renvoyer votre message. "
        "Si quelque chose vous inquiète, contactez tout de suite votre médecin ou votre "
        "sage-femme, ou rendez-vous aux urgences les plus proches."
    ),
}

_LANGUAGE_ALIASES = {
    "darija": "darija", "ary": "darija", "moroccan": "darija",
    "ar": "ar", "arabic": "ar", "arabe": "ar",
    "fr": "fr", "french": "fr", "francais": "fr", "français": "fr",
}


def safety_message(language: str | None) -> str:
    key = _LANGUAGE_ALIASES.get((language or "").strip().lower(), "darija")
    return SAFETY_MESSAGES[key]


@dataclass
class ReplyContext:
    """What the generator knows about the patient for this reply."""

    patient_name: Optional[str] = None
    urgency: Urgency = Urgency.LOW
    gestational_week: Optional[int] = None
    language: Optional[str] = None

    def as_prompt_fields(self) -> dict[str, str]:
        fields = {
            "name": self.patient_name,
            "urgency": self.urgency.value,
            "gestational_week": self.gestational_week,
            "language": self.language,
        }
        return {k: str(v) for k, v in fields.items() if v not in (None, "")}


def build_user_prompt(message: str, context: ReplyContext) -> str:
    details = ", ".join(f"{k}: {v}" for k, v in context.as_prompt_fields().items())
    if not details:
        return message
    return f"Patient Info: ({details})\nPatient Message: {message}"


class ResponseGenerator:
    """
    Usage:
        generator = ResponseGenerator(provider, config)
        text = await generator.generate("I feel dizzy", ReplyContext(urgency=Urgency.MEDIUM))
    """

    def __init__(self, provider: ChatProvider | None, config: ProviderConfig) -> None:
        self._provider = provider
        self._timeout = config.timeouts.generation

    @property
    def provider_name(self) -> str:
        return self._provider.name if self._provider else "offline"

    async def generate(self, message: str, context: ReplyContext) -> str:
        if self._provider is None:
            logger.warning("No LLM provider configured — sending safety message")
            return safety_message(context.language)

        user_prompt = build_user_prompt(message, context)
        text = await self._provider.complete(
            system_prompt=SYSTEM_PROMPT,
            user_prompt=user_prompt,
            temperature=REPLY_TEMPERATURE,
            timeout=self._timeout,
        )
        if not text.strip():
            logger.warning("%s returned empty reply — using safety message", self.provider_name)
            return safety_message(context.language)

        logger.info("Reply generated by %s (%d chars)", self.provider_name, len(text))
        return text.strip()
