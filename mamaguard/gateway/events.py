"""
Inbound Event — the one object that enters the message pipeline.

Every WhatsApp message that survives ingestion (validation + dedup) is
wrapped in an InboundEvent.  Events are immutable: the pipeline reads
them, it never edits them.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, model_validator


class ContentType(str, Enum):
    TEXT = "text"
    AUDIO = "audio"


class Urgency(str, Enum):
    """Urgency tier produced by risk classification."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _URGENCY_RANK[self]

    @property
    def needs_alert(self) -> bool:
        return self in (Urgency.HIGH, Urgency.CRITICAL)


_URGENCY_RANK = {
    Urgency.LOW: 1,
    Urgency.MEDIUM: 2,
    Urgency.HIGH: 3,
    Urgency.CRITICAL: 4,
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


class InboundEvent(BaseModel):
    """One message received from a patient over the messaging channel."""

    provider_message_id: str
    sender_address: str
    content_type: ContentType
    raw_text: Optional[str] = None
    audio_ref: Optional[str] = None
    sender_name: str = ""
    received_at: datetime = Field(default_factory=_now)

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _check_content(self) -> InboundEvent:
        if not self.provider_message_id:
            raise ValueError("provider_message_id is required")
        if not self.sender_address:
            raise ValueError("sender_address is required")
        if self.content_type == ContentType.TEXT and not (self.raw_text or "").strip():
            raise ValueError("text events need a non-empty raw_text")
        if self.content_type == ContentType.AUDIO and not self.audio_ref:
            raise ValueError("audio events need an audio_ref")
        return self

    # ── Convenience factories ──

    @classmethod
    def text(cls, provider_message_id: str, sender_address: str, body: str, **kwargs) -> InboundEvent:
        return cls(
            provider_message_id=provider_message_id,
            sender_address=sender_address,
            content_type=ContentType.TEXT,
            raw_text=body,
            **kwargs,
        )

    @classmethod
    def audio(cls, provider_message_id: str, sender_address: str, media_id: str, **kwargs) -> InboundEvent:
        return cls(
            provider_message_id=provider_message_id,
            sender_address=sender_address,
            content_type=ContentType.AUDIO,
            audio_ref=media_id,
            **kwargs,
        )

    @property
    def is_audio(self) -> bool:
        return self.content_type == ContentType.AUDIO
