"""
Clinical Summarizer — short clinical resume for the treating physician.

Always medical English, one paragraph, at most 50 words, whatever the
language of the conversation.  Unlike the response generator there is
no canned fallback: an empty or failed completion raises ProviderError
and the pipeline keeps the previous resume.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from mamaguard.gateway.agents.llm_providers import ChatProvider
from mamaguard.gateway.agents.llm_utils import (
    collapse_whitespace,
    strip_label,
    truncate_words,
)
from mamaguard.gateway.config import ProviderConfig
from mamaguard.gateway.errors import ProviderError
from mamaguard.gateway.events import Urgency

logger = logging.getLogger("gateway.agents.summary")

MAX_SUMMARY_WORDS = 50
SUMMARY_TEMPERATURE = 0.3

SYSTEM_PROMPT = """You are a clinical summarizer for obstetric care. You will receive a transcript of a conversation between a pregnant patient and an assistant (messages may be in Darija, Arabic, French or mixed language).

Your task: Write a CLINICAL RESUME in professional medical English for the treating physician.
- Focus STRICTLY on symptoms, signs, and physiological status mentioned by the patient.
- Use standard medical terminology. Do not include greetings, reassurance, or non-clinical content.
- Maximum 50 words. Output ONLY the summary paragraph: no preamble, no "Summary:" label, no bullet points."""


@dataclass
class SummaryContext:
    transcript: str
    urgency: Optional[Urgency] = None
    gestational_week: Optional[int] = None


def build_user_prompt(context: SummaryContext) -> str:
    parts: list[str] = []
    if context.gestational_week is not None:
        parts.append(f"Gestational age: {context.gestational_week} weeks.")
    if context.urgency is not None:
        parts.append(f"Current risk level: {context.urgency.value}.")
    parts.append("\nConversation transcript:\n" + (context.transcript or "(No messages yet)"))
    return "\n".join(parts)


def normalize_resume(text: str) -> str:
    return truncate_words(strip_label(collapse_whitespace(text)), MAX_SUMMARY_WORDS)


class ClinicalSummarizer:

    def __init__(self, provider: ChatProvider | None, config: ProviderConfig) -> None:
        self._provider = provider
        self._timeout = config.timeouts.summary

    async def summarize(self, context: SummaryContext) -> str:
        if self._provider is None:
            raise ProviderError("no LLM provider configured", stage="summary")

        raw = await self._provider.complete(
            system_prompt=SYSTEM_PROMPT,
            user_prompt=build_user_prompt(context),
            temperature=SUMMARY_TEMPERATURE,
            timeout=self._timeout,
        )
        resume = normalize_resume(raw)
        if not resume:
            raise ProviderError(
                "provider returned an empty summary",
                provider=self._provider.name,
                stage="summary",
            )
        logger.info("Clinical resume generated by %s (%d words)", self._provider.name, len(resume.split()))
        return resume
