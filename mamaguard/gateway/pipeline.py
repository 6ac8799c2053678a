"""
Message Pipeline — turns one inbound WhatsApp message into a reply,
a risk classification and a clinical record.

Per event:
  1. Resolve the patient by sender address (unknown sender → stop, no side effects)
  2. Get or create the conversation (per-patient lock)
  3. Audio only: download + transcribe (failure or empty transcript → stop)
  4. Classify risk (pure, never fails); high/critical → alert in background
  5. Generate the reply and send it as text
  6. Detached follow-ups, isolated from each other:
       a. audio events: synthesize → upload → send audio
       b. persist user + assistant messages while the summarizer runs,
          then write risk level + clinical resume in one update

Every error is classified in one place (_handle_error) and turned into a
PipelineResult; process() never raises.  If the reply cannot be produced
or sent, the risk level and alert are still recorded but no message is
appended.
"""

from __future__ import annotations

import asyncio
import logging
import time
import weakref
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Optional

from mamaguard.gateway.agents.clinical_summarizer import ClinicalSummarizer, SummaryContext
from mamaguard.gateway.agents.llm_utils import format_transcript
from mamaguard.gateway.agents.response_generator import ReplyContext, ResponseGenerator
from mamaguard.gateway.agents.risk_classifier import RiskAssessment, RiskClassifier
from mamaguard.gateway.channels import OutboundDispatcher
from mamaguard.gateway.config import ProviderTimeouts
from mamaguard.gateway.errors import NotFoundError, PipelineError, ProviderError
from mamaguard.gateway.events import InboundEvent, Urgency
from mamaguard.gateway.records import Conversation, MessageRole, Patient
from mamaguard.gateway.speech.synthesizer import SpeechSynthesizer
from mamaguard.gateway.speech.transcriber import Transcriber
from mamaguard.gateway.store import StorageGateway

logger = logging.getLogger("gateway.pipeline")

# Messages fed to the summarizer (current exchange included)
SUMMARY_HISTORY_LIMIT = 20

# Stages where a failure means "no transcript" rather than "no reply"
_TRANSCRIPT_STAGES = {"media_download", "transcription"}


class PipelineStatus(str, Enum):
    REPLIED = "replied"     # text reply sent, follow-ups launched
    IGNORED = "ignored"     # unregistered sender
    ABORTED = "aborted"     # no usable transcript
    FAILED = "failed"       # reply not produced or not delivered


@dataclass
class PipelineResult:
    event_id: str
    status: PipelineStatus
    patient_id: Optional[str] = None
    urgency: Optional[Urgency] = None
    stage: Optional[str] = None
    error_kind: Optional[str] = None
    error: Optional[str] = None
    reply: Optional[str] = None


class _PatientState:
    """
    Per-patient serialisation: a lock plus the last classification number
    issued and written.  Events hold it through their traces; it is dropped
    once no event for the patient is in flight.
    """

    __slots__ = ("lock", "issued_seq", "written_seq", "__weakref__")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.issued_seq = 0
        self.written_seq = 0


class _EventTrace:
    """Mutable per-event state the error handler needs."""

    def __init__(self, event: InboundEvent) -> None:
        self.event = event
        self.stage = "lookup"
        self.patient_id: Optional[str] = None
        self.patient_state: Optional[_PatientState] = None
        self.assessment: Optional[RiskAssessment] = None

    @property
    def tag(self) -> str:
        return f"[{self.event.provider_message_id} patient={self.patient_id or '-'}]"


class MessagePipeline:
    """
    Usage:
        pipeline = MessagePipeline(store=store, outbound=outbound, classifier=classifier,
                                   generator=generator, summarizer=summarizer)
        result = await pipeline.process(event)
        await pipeline.drain()   # wait for detached follow-ups (tests, shutdown)
    """

    def __init__(
        self,
        *,
        store: StorageGateway,
        outbound: OutboundDispatcher,
        classifier: RiskClassifier,
        generator: ResponseGenerator,
        summarizer: ClinicalSummarizer,
        transcriber: Transcriber | None = None,
        synthesizer: SpeechSynthesizer | None = None,
        timeouts: ProviderTimeouts | None = None,
    ) -> None:
        self._store = store
        self._outbound = outbound
        self._classifier = classifier
        self._generator = generator
        self._summarizer = summarizer
        self._transcriber = transcriber
        self._synthesizer = synthesizer
        self._timeouts = timeouts or ProviderTimeouts()

        self._patients: weakref.WeakValueDictionary[str, _PatientState] = weakref.WeakValueDictionary()
        self._bg_tasks: set[asyncio.Task] = set()
        self._metrics: dict[str, int] = {
            "events_processed": 0,
            "replies_sent": 0,
            "events_ignored": 0,
            "events_aborted": 0,
            "events_failed": 0,
            "followup_failures": 0,
            "stale_risk_writes_skipped": 0,
        }

    # ── Main Entry Point ──

    async def process(self, event: InboundEvent) -> PipelineResult:
        trace = _EventTrace(event)
        t0 = time.monotonic()
        try:
            result = await self._run(event, trace)
        except Exception as exc:
            result = self._handle_error(trace, exc)

        self._metrics["events_processed"] += 1
        logger.info(
            "%s %s in %.2fs (urgency=%s)",
            trace.tag, result.status.value, time.monotonic() - t0,
            result.urgency.value if result.urgency else "-",
        )
        return result

    async def _run(self, event: InboundEvent, trace: _EventTrace) -> PipelineResult:
        # 1. Patient
        patient = await self._store.get_patient_by_address(event.sender_address)
        if patient is None:
            raise NotFoundError(f"no patient registered for {event.sender_address}")
        trace.patient_id = patient.id
        trace.patient_state = self._state_for(patient.id)

        # 2. Conversation
        trace.stage = "conversation"
        async with trace.patient_state.lock:
            conversation = await self._store.get_or_create_conversation(patient.id)

        # 3. Transcript
        text = event.raw_text or ""
        if event.is_audio:
            text = await self._transcribe(event, trace)
        logger.info("%s message: %s", trace.tag, text[:80])

        # 4. Risk
        trace.stage = "classification"
        assessment = self._classifier.classify(text, patient.gestational_week)
        trace.assessment = assessment
        trace.patient_state.issued_seq += 1
        seq = trace.patient_state.issued_seq
        logger.info(
            "%s classified %s (symptom=%s)",
            trace.tag, assessment.urgency.value, assessment.symptom or "-",
        )
        if assessment.urgency.needs_alert:
            self._spawn(self._raise_alert(trace, assessment), f"alert-{event.provider_message_id}")

        # 5. Reply
        try:
            reply = await self._generate(text, patient, assessment, trace)
            await self._send_text(event, reply, trace)
        except Exception:
            self._spawn(
                self._update_risk(trace, seq, assessment.urgency, None),
                f"risk-{event.provider_message_id}",
            )
            raise

        self._metrics["replies_sent"] += 1

        # 6. Follow-ups
        if event.is_audio:
            self._spawn(self._voice_reply(event, reply, trace), f"voice-{event.provider_message_id}")
        self._spawn(
            self._record_exchange(event, patient, conversation, text, reply, assessment, seq, trace),
            f"record-{event.provider_message_id}",
        )

        return PipelineResult(
            event_id=event.provider_message_id,
            status=PipelineStatus.REPLIED,
            patient_id=patient.id,
            urgency=assessment.urgency,
            reply=reply,
        )

    # ── Steps ──

    async def _transcribe(self, event: InboundEvent, trace: _EventTrace) -> str:
        trace.stage = "media_download"
        audio, mime_type = await self._bounded(
            self._outbound.fetch_media(event.audio_ref), self._timeouts.media_download, trace.stage
        )
        trace.stage = "transcription"
        if self._transcriber is None:
            raise ProviderError("no transcriber configured", stage=trace.stage)
        return await self._bounded(
            self._transcriber.transcribe(audio, mime_type), self._timeouts.transcription, trace.stage
        )

    async def _generate(
        self, text: str, patient: Patient, assessment: RiskAssessment, trace: _EventTrace
    ) -> str:
        trace.stage = "generation"
        context = ReplyContext(
            patient_name=patient.name or None,
            urgency=assessment.urgency,
            gestational_week=patient.gestational_week,
            language=patient.language,
        )
        return await self._bounded(
            self._generator.generate(text, context), self._timeouts.generation, trace.stage
        )

    async def _send_text(self, event: InboundEvent, reply: str, trace: _EventTrace) -> None:
        trace.stage = "send_text"
        result = await self._bounded(
            self._outbound.send_text(event.provider_message_id, event.sender_address, reply),
            self._timeouts.channel_send,
            trace.stage,
        )
        if not result.success:
            raise ProviderError(
                result.error or "delivery failed", provider=result.channel, stage=trace.stage
            )

    # ── Follow-ups (detached) ──

    async def _voice_reply(self, event: InboundEvent, reply: str, trace: _EventTrace) -> None:
        if self._synthesizer is None or not self._outbound.can_send_audio:
            logger.info("%s voice reply skipped: speech output not configured", trace.tag)
            return
        try:
            audio = await self._bounded(
                self._synthesizer.synthesize(reply), self._timeouts.synthesis, "synthesis"
            )
            url = await self._bounded(
                self._outbound.upload_audio(event.provider_message_id, audio),
                self._timeouts.audio_upload,
                "audio_upload",
            )
            result = await self._bounded(
                self._outbound.send_audio(event.provider_message_id, event.sender_address, url),
                self._timeouts.channel_send,
                "send_audio",
            )
            if not result.success:
                raise ProviderError(result.error or "delivery failed", provider=result.channel, stage="send_audio")
            logger.info("%s voice reply sent", trace.tag)
        except PipelineError as exc:
            self._metrics["followup_failures"] += 1
            logger.warning("%s voice reply failed (%s): %s", trace.tag, exc.kind, exc)
        except Exception as exc:
            self._metrics["followup_failures"] += 1
            logger.error("%s voice reply crashed: %s", trace.tag, exc, exc_info=True)

    async def _record_exchange(
        self,
        event: InboundEvent,
        patient: Patient,
        conversation: Conversation,
        text: str,
        reply: str,
        assessment: RiskAssessment,
        seq: int,
        trace: _EventTrace,
    ) -> None:
        persisted, resume = await asyncio.gather(
            self._persist_messages(event, conversation, text, reply, assessment),
            self._summarize(event, patient, conversation, text, reply, assessment),
            return_exceptions=True,
        )
        for outcome, what in ((persisted, "message persistence"), (resume, "clinical summary")):
            if isinstance(outcome, BaseException):
                self._metrics["followup_failures"] += 1
                self._log_followup_error(trace, what, outcome)
        if isinstance(resume, BaseException):
            resume = None

        await self._update_risk(trace, seq, assessment.urgency, resume)

    async def _persist_messages(
        self,
        event: InboundEvent,
        conversation: Conversation,
        text: str,
        reply: str,
        assessment: RiskAssessment,
    ) -> None:
        await self._store.append_message(
            conversation.id,
            MessageRole.USER,
            text,
            {
                "provider_message_id": event.provider_message_id,
                "urgency": assessment.urgency.value,
                "content_type": event.content_type.value,
            },
        )
        await self._store.append_message(
            conversation.id,
            MessageRole.ASSISTANT,
            reply,
            {"in_reply_to": event.provider_message_id},
        )

    async def _summarize(
        self,
        event: InboundEvent,
        patient: Patient,
        conversation: Conversation,
        text: str,
        reply: str,
        assessment: RiskAssessment,
    ) -> str:
        history = await self._store.list_messages(conversation.id, SUMMARY_HISTORY_LIMIT)
        event_id = event.provider_message_id
        lines = [
            (m.role.value, m.content)
            for m in history
            if event_id not in (m.metadata.get("provider_message_id"), m.metadata.get("in_reply_to"))
        ]
        lines += [(MessageRole.USER.value, text), (MessageRole.ASSISTANT.value, reply)]
        context = SummaryContext(
            transcript=format_transcript(lines[-SUMMARY_HISTORY_LIMIT:]),
            urgency=assessment.urgency,
            gestational_week=patient.gestational_week,
        )
        return await self._bounded(
            self._summarizer.summarize(context), self._timeouts.summary, "summary"
        )

    async def _update_risk(
        self, trace: _EventTrace, seq: int, urgency: Urgency, resume: Optional[str]
    ) -> None:
        state = trace.patient_state
        try:
            async with state.lock:
                if seq < state.written_seq:
                    self._metrics["stale_risk_writes_skipped"] += 1
                    logger.info(
                        "%s risk write #%d skipped: #%d already written",
                        trace.tag, seq, state.written_seq,
                    )
                    return
                await self._store.update_patient_risk(trace.patient_id, urgency, resume)
                state.written_seq = seq
            logger.info(
                "%s risk=%s recorded%s", trace.tag, urgency.value, " with resume" if resume else ""
            )
        except Exception as exc:
            self._metrics["followup_failures"] += 1
            self._log_followup_error(trace, "risk update", exc)

    async def _raise_alert(self, trace: _EventTrace, assessment: RiskAssessment) -> None:
        try:
            await self._store.create_alert(
                trace.patient_id,
                assessment.urgency,
                assessment.symptom,
                trace.event.provider_message_id,
            )
            logger.warning(
                "%s ALERT %s: %s", trace.tag, assessment.urgency.value, assessment.symptom or "-"
            )
        except Exception as exc:
            self._metrics["followup_failures"] += 1
            self._log_followup_error(trace, "alert", exc)

    # ── Error handling ──

    def _handle_error(self, trace: _EventTrace, exc: BaseException) -> PipelineResult:
        event_id = trace.event.provider_message_id
        urgency = trace.assessment.urgency if trace.assessment else None

        if isinstance(exc, NotFoundError):
            self._metrics["events_ignored"] += 1
            logger.info("%s unregistered sender — no reply", trace.tag)
            status = PipelineStatus.IGNORED
        elif isinstance(exc, ProviderError) and trace.stage in _TRANSCRIPT_STAGES:
            self._metrics["events_aborted"] += 1
            logger.warning("%s no transcript (%s): %s", trace.tag, trace.stage, exc)
            status = PipelineStatus.ABORTED
        elif isinstance(exc, PipelineError):
            self._metrics["events_failed"] += 1
            logger.error("%s %s failed (%s): %s", trace.tag, trace.stage, exc.kind, exc)
            status = PipelineStatus.FAILED
        else:
            self._metrics["events_failed"] += 1
            logger.error("%s unexpected error at %s: %s", trace.tag, trace.stage, exc, exc_info=True)
            status = PipelineStatus.FAILED

        return PipelineResult(
            event_id=event_id,
            status=status,
            patient_id=trace.patient_id,
            urgency=urgency,
            stage=trace.stage,
            error_kind=getattr(exc, "kind", "unexpected"),
            error=str(exc),
        )

    @staticmethod
    def _log_followup_error(trace: _EventTrace, what: str, exc: BaseException) -> None:
        if isinstance(exc, PipelineError):
            logger.warning("%s %s failed (%s): %s", trace.tag, what, exc.kind, exc)
        else:
            logger.error("%s %s crashed: %s", trace.tag, what, exc, exc_info=exc)

    # ── Helpers ──

    @staticmethod
    async def _bounded(awaitable: Awaitable[Any], timeout: float, stage: str) -> Any:
        try:
            return await asyncio.wait_for(awaitable, timeout)
        except asyncio.TimeoutError as exc:
            raise ProviderError(f"timed out after {timeout:.0f}s", stage=stage) from exc

    def _state_for(self, patient_id: str) -> _PatientState:
        state = self._patients.get(patient_id)
        if state is None:
            state = self._patients[patient_id] = _PatientState()
        return state

    def _spawn(self, coro: Awaitable[None], name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._bg_tasks.add(task)
        task.add_done_callback(self._bg_tasks.discard)
        return task

    # ── Lifecycle ──

    @property
    def pending_followups(self) -> int:
        return len(self._bg_tasks)

    @property
    def tracked_patients(self) -> int:
        return len(self._patients)

    async def drain(self) -> None:
        """Wait for every detached follow-up (including ones they spawn)."""
        while self._bg_tasks:
            await asyncio.gather(*list(self._bg_tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        """Abandon in-flight follow-ups (process is going away)."""
        tasks = list(self._bg_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("Cancelled %d in-flight follow-up task(s)", len(tasks))

    def get_metrics(self) -> dict[str, Any]:
        metrics: dict[str, Any] = dict(self._metrics)
        metrics["pending_followups"] = len(self._bg_tasks)
        return metrics
