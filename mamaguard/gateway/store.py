"""
Storage Gateway — the narrow persistence interface the pipeline uses.

Two implementations:
  InMemoryStorageGateway  — dev server and tests
  GCSStorageGateway       — JSON documents in a Cloud Storage bucket

The pipeline never sees backend exceptions: backends raise
PersistenceError (or NotFoundError for an unknown patient id).
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Optional

from google.api_core.exceptions import GoogleAPIError, PreconditionFailed

from mamaguard.gateway.errors import NotFoundError, PersistenceError
from mamaguard.gateway.events import Urgency
from mamaguard.gateway.records import (
    CLINICAL_RESUME_KEY,
    Alert,
    Conversation,
    Message,
    MessageRole,
    Patient,
)
from mamaguard.gateway.validators import format_for_whatsapp, normalize_phone

logger = logging.getLogger("gateway.store")


class StorageGateway(ABC):

    @abstractmethod
    async def get_patient_by_address(self, address: str) -> Optional[Patient]:
        """Look a patient up by phone address (any format). None if unregistered."""

    @abstractmethod
    async def get_or_create_conversation(self, patient_id: str) -> Conversation:
        ...

    @abstractmethod
    async def append_message(
        self,
        conversation_id: str,
        role: MessageRole | str,
        content: str,
        metadata: dict[str, Any] | None = None,
    ) -> Message:
        ...

    @abstractmethod
    async def list_messages(self, conversation_id: str, limit: int = 20) -> list[Message]:
        """Most recent ``limit`` messages, oldest first."""

    @abstractmethod
    async def update_patient_risk(
        self,
        patient_id: str,
        urgency: Urgency,
        clinical_resume: Optional[str] = None,
    ) -> Patient:
        """Set risk_level and (when given) medical_history.clinicalResume in one write."""

    @abstractmethod
    async def has_provider_message(self, provider_message_id: str) -> bool:
        """True if a persisted message already carries this channel message id."""

    @abstractmethod
    async def create_alert(
        self,
        patient_id: str,
        urgency: Urgency,
        symptom: Optional[str] = None,
        provider_message_id: Optional[str] = None,
    ) -> Alert:
        ...


def _apply_risk(patient: Patient, urgency: Urgency, clinical_resume: Optional[str]) -> Patient:
    history = dict(patient.medical_history)
    if clinical_resume:
        history[CLINICAL_RESUME_KEY] = clinical_resume
    return patient.model_copy(
        update={
            "risk_level": urgency,
            "medical_history": history,
            "updated_at": datetime.now(timezone.utc),
        }
    )


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  IN-MEMORY
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class InMemoryStorageGateway(StorageGateway):
    """Process-local storage.  Every method completes without awaiting, so
    each call is atomic with respect to other coroutines."""

    def __init__(self) -> None:
        self.patients: dict[str, Patient] = {}
        self.conversations: dict[str, Conversation] = {}
        self.messages: dict[str, list[Message]] = {}
        self.alerts: list[Alert] = []
        self._by_address: dict[str, str] = {}
        self._conversation_by_patient: dict[str, str] = {}
        self._provider_ids: set[str] = set()

    def add_patient(self, patient: Patient) -> Patient:
        patient = patient.model_copy(update={"phone_number": normalize_phone(patient.phone_number)})
        self.patients[patient.id] = patient
        self._by_address[format_for_whatsapp(patient.phone_number)] = patient.id
        return patient

    async def get_patient_by_address(self, address: str) -> Optional[Patient]:
        patient_id = self._by_address.get(format_for_whatsapp(address))
        return self.patients.get(patient_id) if patient_id else None

    async def get_or_create_conversation(self, patient_id: str) -> Conversation:
        if patient_id not in self.patients:
            raise NotFoundError(f"Unknown patient {patient_id}")
        conversation_id = self._conversation_by_patient.get(patient_id)
        if conversation_id:
            return self.conversations[conversation_id]
        conversation = Conversation(patient_id=patient_id)
        self.conversations[conversation.id] = conversation
        self.messages[conversation.id] = []
        self._conversation_by_patient[patient_id] = conversation.id
        logger.info("Created conversation %s for patient %s", conversation.id, patient_id)
        return conversation

    async def append_message(self, conversation_id, role, content, metadata=None) -> Message:
        if conversation_id not in self.conversations:
            raise PersistenceError(f"Conversation {conversation_id} does not exist")
        message = Message(
            conversation_id=conversation_id,
            role=MessageRole(role),
            content=content,
            metadata=dict(metadata or {}),
        )
        self.messages[conversation_id].append(message)
        if message.provider_message_id:
            self._provider_ids.add(message.provider_message_id)
        return message

    async def list_messages(self, conversation_id: str, limit: int = 20) -> list[Message]:
        return list(self.messages.get(conversation_id, [])[-limit:])

    async def update_patient_risk(self, patient_id, urgency, clinical_resume=None) -> Patient:
        patient = self.patients.get(patient_id)
        if patient is None:
            raise NotFoundError(f"Unknown patient {patient_id}")
        updated = _apply_risk(patient, Urgency(urgency), clinical_resume)
        self.patients[patient_id] = updated
        return updated

    async def has_provider_message(self, provider_message_id: str) -> bool:
        return provider_message_id in self._provider_ids

    async def create_alert(self, patient_id, urgency, symptom=None, provider_message_id=None) -> Alert:
        alert = Alert(
            patient_id=patient_id,
            urgency=Urgency(urgency),
            symptom=symptom,
            provider_message_id=provider_message_id,
        )
        self.alerts.append(alert)
        return alert


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  GOOGLE CLOUD STORAGE
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class GCSStorageGateway(StorageGateway):
    """
    Persists records as JSON blobs via GCSBucketManager.

    Layout:
        patients/{patient_id}.json
        patient_index/{digits}.json              → {"patient_id": ...}
        conversations/{patient_id}.json          (one per patient)
        messages/{conversation_id}/{ts}_{id}.json
        provider_messages/{provider_message_id}  (dedup marker)
        alerts/{patient_id}/{ts}_{id}.json

    Conversation creation uses if_generation_match=0, so two writers
    racing on the same patient converge on whichever blob landed first.
    Risk updates write with the generation they read, re-reading on conflict,
    so a concurrent edit to the patient record is never overwritten.
    """

    GCS_TIMEOUT = 15
    RISK_WRITE_ATTEMPTS = 3

    def __init__(self, gcs_bucket_manager) -> None:
        self._gcs = gcs_bucket_manager

    async def _call(self, fn, *args, **kwargs):
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except PreconditionFailed:
            raise
        except (GoogleAPIError, OSError, ValueError) as exc:
            raise PersistenceError(f"GCS {fn.__name__} failed: {exc}") from exc

    async def _read(self, path: str) -> Optional[dict]:
        return await self._call(self._gcs.read_json, path, timeout=self.GCS_TIMEOUT)

    async def _write(self, path: str, data, **kwargs) -> None:
        await self._call(self._gcs.write_json, path, data, timeout=self.GCS_TIMEOUT, **kwargs)

    @staticmethod
    def _stamp(record) -> str:
        return f"{record.created_at.strftime('%Y%m%dT%H%M%S%f')}_{record.id}"

    async def save_patient(self, patient: Patient) -> Patient:
        """Registration hook: write the patient and its address index entry."""
        patient = patient.model_copy(update={"phone_number": normalize_phone(patient.phone_number)})
        await self._write(f"patients/{patient.id}.json", patient.model_dump_json())
        await self._write(
            f"patient_index/{format_for_whatsapp(patient.phone_number)}.json",
            {"patient_id": patient.id},
        )
        return patient

    async def _load_patient(self, patient_id: str) -> Optional[Patient]:
        data = await self._read(f"patients/{patient_id}.json")
        return Patient.model_validate(data) if data else None

    async def get_patient_by_address(self, address: str) -> Optional[Patient]:
        digits = format_for_whatsapp(address)
        if not digits:
            return None
        index = await self._read(f"patient_index/{digits}.json")
        if not index:
            return None
        return await self._load_patient(index["patient_id"])

    async def get_or_create_conversation(self, patient_id: str) -> Conversation:
        path = f"conversations/{patient_id}.json"
        data = await self._read(path)
        if data:
            return Conversation.model_validate(data)

        conversation = Conversation(patient_id=patient_id)
        try:
            await self._write(path, conversation.model_dump_json(), if_generation_match=0)
        except PreconditionFailed:
            data = await self._read(path)
            if not data:
                raise PersistenceError(f"Conversation for {patient_id} vanished after create race")
            return Conversation.model_validate(data)
        logger.info("Created conversation %s for patient %s", conversation.id, patient_id)
        return conversation

    async def append_message(self, conversation_id, role, content, metadata=None) -> Message:
        message = Message(
            conversation_id=conversation_id,
            role=MessageRole(role),
            content=content,
            metadata=dict(metadata or {}),
        )
        await self._write(f"messages/{conversation_id}/{self._stamp(message)}.json", message.model_dump_json())
        if message.provider_message_id:
            await self._write(
                f"provider_messages/{message.provider_message_id}.json",
                {"message_id": message.id, "conversation_id": conversation_id},
            )
        return message

    async def list_messages(self, conversation_id: str, limit: int = 20) -> list[Message]:
        names = await self._call(
            self._gcs.list_names, f"messages/{conversation_id}/", timeout=self.GCS_TIMEOUT
        )
        messages = []
        for name in names[-limit:]:
            data = await self._read(name)
            if data:
                messages.append(Message.model_validate(data))
        return messages

    async def update_patient_risk(self, patient_id, urgency, clinical_resume=None) -> Patient:
        path = f"patients/{patient_id}.json"
        for attempt in range(1, self.RISK_WRITE_ATTEMPTS + 1):
            try:
                data, generation = await self._call(
                    self._gcs.read_json_versioned, path, timeout=self.GCS_TIMEOUT
                )
                if not data:
                    raise NotFoundError(f"Unknown patient {patient_id}")
                updated = _apply_risk(Patient.model_validate(data), Urgency(urgency), clinical_resume)
                await self._write(path, updated.model_dump_json(), if_generation_match=generation)
            except PreconditionFailed:
                logger.info("Patient %s changed under risk update (attempt %d)", patient_id, attempt)
                continue
            return updated
        raise PersistenceError(
            f"Risk update for {patient_id} lost {self.RISK_WRITE_ATTEMPTS} races with other writers"
        )

    async def has_provider_message(self, provider_message_id: str) -> bool:
        return await self._call(
            self._gcs.exists, f"provider_messages/{provider_message_id}.json", timeout=self.GCS_TIMEOUT
        )

    async def create_alert(self, patient_id, urgency, symptom=None, provider_message_id=None) -> Alert:
        alert = Alert(
            patient_id=patient_id,
            urgency=Urgency(urgency),
            symptom=symptom,
            provider_message_id=provider_message_id,
        )
        await self._write(f"alerts/{patient_id}/{self._stamp(alert)}.json", alert.model_dump_json())
        logger.info("Alert %s (%s) written for patient %s", alert.id, alert.urgency.value, patient_id)
        return alert
