"""
Stored records — what the storage gateway reads and writes.

Patients are created by external registration flows; the pipeline only
reads them and updates their risk fields.  Conversations are created
lazily, messages and alerts are append-only.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from mamaguard.gateway.events import Urgency

CLINICAL_RESUME_KEY = "clinicalResume"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid4())


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class Patient(BaseModel):
    id: str = Field(default_factory=_new_id)
    phone_number: str  # E.164, leading "+"
    name: str = ""
    language: str = "darija"
    gestational_week: Optional[int] = None
    risk_level: Urgency = Urgency.LOW
    medical_history: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)

    @property
    def clinical_resume(self) -> Optional[str]:
        return self.medical_history.get(CLINICAL_RESUME_KEY)


class Conversation(BaseModel):
    id: str = Field(default_factory=_new_id)
    patient_id: str
    created_at: datetime = Field(default_factory=_now)


class Message(BaseModel):
    id: str = Field(default_factory=_new_id)
    conversation_id: str
    role: MessageRole
    content: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_now)

    model_config = {"frozen": True}

    @property
    def provider_message_id(self) -> Optional[str]:
        return self.metadata.get("provider_message_id")


class Alert(BaseModel):
    """Raised for high / critical classifications, shown on the clinician dashboard."""

    id: str = Field(default_factory=_new_id)
    patient_id: str
    urgency: Urgency
    symptom: Optional[str] = None
    provider_message_id: Optional[str] = None
    resolved: bool = False
    created_at: datetime = Field(default_factory=_now)
