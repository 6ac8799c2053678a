"""
Tests for the MessagePipeline.

Tests cover:
  - Text and audio happy paths (reply, persisted messages, risk + resume)
  - Unknown sender / missing transcript → no side effects
  - Reply failures: no message appended, risk and alert still recorded
  - Follow-up isolation: voice, persistence and summary failures
  - Out-of-order follow-ups never overwrite a newer risk level
  - Timeouts, metrics, drain and shutdown
"""

import asyncio
import gc

import pytest

from mamaguard.gateway.agents.llm_providers import ChatProvider
from mamaguard.gateway.config import ProviderTimeouts
from mamaguard.gateway.errors import PersistenceError, ProviderError
from mamaguard.gateway.events import InboundEvent, Urgency
from mamaguard.gateway.pipeline import PipelineStatus
from mamaguard.gateway.records import CLINICAL_RESUME_KEY, MessageRole
from mamaguard.gateway.store import InMemoryStorageGateway
from mamaguard.gateway.tests.fakes import (
    PATIENT_PHONE,
    MemoryAudioStore,
    RecordingChannel,
    ScriptedChatProvider,
    StubSynthesizer,
    StubTranscriber,
    build_pipeline,
    seed_patient,
)


def _text(body, n=1):
    return InboundEvent.text(f"wamid.T{n}", PATIENT_PHONE, body)


def _audio(n=1):
    return InboundEvent.audio(f"wamid.A{n}", PATIENT_PHONE, f"MEDIA-{n}")


def _messages(store):
    return [m for conversation in store.messages.values() for m in conversation]


class _HangingProvider(ChatProvider):
    name = "hanging"

    def __init__(self):
        super().__init__("hang")

    async def complete(self, **kwargs):
        await asyncio.sleep(30)
        return "too late"


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Happy paths
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestTextEvent:

    @pytest.mark.asyncio
    async def test_reply_and_record(self, store, patient, channel):
        pipeline = build_pipeline(store=store, channel=channel)

        result = await pipeline.process(_text("severe headache today"))
        await pipeline.drain()

        assert result.status == PipelineStatus.REPLIED
        assert result.urgency == Urgency.HIGH
        assert channel.texts == ["Salam Fatima"]

        user, assistant = _messages(store)
        assert user.role == MessageRole.USER
        assert user.metadata == {"provider_message_id": "wamid.T1", "urgency": "high", "content_type": "text"}
        assert assistant.role == MessageRole.ASSISTANT
        assert assistant.content == "Salam Fatima"
        assert assistant.metadata == {"in_reply_to": "wamid.T1"}

        updated = store.patients[patient.id]
        assert updated.risk_level == Urgency.HIGH
        assert updated.medical_history[CLINICAL_RESUME_KEY] == "Patient at 28 weeks reports symptoms."

    @pytest.mark.asyncio
    async def test_reply_prompt_carries_patient_context(self, store, patient, channel):
        reply = ScriptedChatProvider("Salam")
        pipeline = build_pipeline(store=store, channel=channel, reply_provider=reply)

        await pipeline.process(_text("ana 3yana"))
        await pipeline.drain()

        prompt = reply.calls[0]["user_prompt"]
        assert "name: Fatima" in prompt
        assert "urgency: medium" in prompt
        assert "gestational_week: 28" in prompt
        assert "language: darija" in prompt

    @pytest.mark.asyncio
    async def test_high_urgency_raises_alert(self, store, patient, channel):
        pipeline = build_pipeline(store=store, channel=channel)
        await pipeline.process(_text("kaynzel dem bzaf"))
        await pipeline.drain()

        (alert,) = store.alerts
        assert alert.urgency == Urgency.CRITICAL
        assert alert.symptom == "Haemorrhage"
        assert alert.provider_message_id == "wamid.T1"

    @pytest.mark.asyncio
    async def test_low_urgency_no_alert(self, store, patient, channel):
        pipeline = build_pipeline(store=store, channel=channel)
        await pipeline.process(_text("feeling fine"))
        await pipeline.drain()
        assert store.alerts == []

    @pytest.mark.asyncio
    async def test_summary_sees_history_once(self, store, patient, channel):
        summary = ScriptedChatProvider("Resume.")
        pipeline = build_pipeline(store=store, channel=channel, summary_provider=summary)

        await pipeline.process(_text("first message", n=1))
        await pipeline.drain()
        await pipeline.process(_text("second message", n=2))
        await pipeline.drain()

        transcript = summary.calls[-1]["user_prompt"]
        assert transcript.count("user: first message") == 1
        assert transcript.count("user: second message") == 1
        assert transcript.index("first message") < transcript.index("second message")


class TestAudioEvent:

    @pytest.mark.asyncio
    async def test_transcribe_reply_then_voice(self, store, patient, channel):
        assets = MemoryAudioStore()
        transcriber = StubTranscriber()
        synthesizer = StubSynthesizer()
        pipeline = build_pipeline(
            store=store, channel=channel, transcriber=transcriber,
            synthesizer=synthesizer, audio_store=assets,
        )

        result = await pipeline.process(_audio())
        await pipeline.drain()

        assert result.status == PipelineStatus.REPLIED
        assert result.urgency == Urgency.HIGH
        assert channel.kinds == ["media", "text", "audio"]
        assert transcriber.calls == [(b"OggS-voice-note", "audio/ogg")]
        assert synthesizer.calls == ["Salam Fatima"]
        assert channel.audios[0].startswith("https://cdn.test/replies/wamid.A1-")

        user = _messages(store)[0]
        assert user.content == "severe headache and blurred vision"
        assert user.metadata["content_type"] == "audio"

    @pytest.mark.asyncio
    async def test_voice_skipped_without_audio_store(self, store, patient, channel):
        pipeline = build_pipeline(
            store=store, channel=channel, transcriber=StubTranscriber(), synthesizer=StubSynthesizer(),
        )
        await pipeline.process(_audio())
        await pipeline.drain()

        assert channel.kinds == ["media", "text"]
        assert pipeline.get_metrics()["followup_failures"] == 0

    @pytest.mark.asyncio
    async def test_voice_failure_is_isolated(self, store, patient, channel):
        pipeline = build_pipeline(
            store=store, channel=channel, transcriber=StubTranscriber(),
            synthesizer=StubSynthesizer(ProviderError("HTTP 500", provider="elevenlabs", stage="synthesis")),
            audio_store=MemoryAudioStore(),
        )
        result = await pipeline.process(_audio())
        await pipeline.drain()

        assert result.status == PipelineStatus.REPLIED
        assert channel.kinds == ["media", "text"]
        assert len(_messages(store)) == 2
        assert store.patients[patient.id].risk_level == Urgency.HIGH
        assert pipeline.get_metrics()["followup_failures"] == 1

    @pytest.mark.asyncio
    async def test_failed_audio_send_counts_as_followup_failure(self, store, patient):
        channel = RecordingChannel(fail_audio=True)
        pipeline = build_pipeline(
            store=store, channel=channel, transcriber=StubTranscriber(),
            synthesizer=StubSynthesizer(), audio_store=MemoryAudioStore(),
        )
        await pipeline.process(_audio())
        await pipeline.drain()

        assert channel.kinds == ["media", "text", "audio"]
        assert pipeline.get_metrics()["followup_failures"] == 1


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Early exits
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestEarlyExit:

    @pytest.mark.asyncio
    async def test_unknown_sender_ignored(self, store, channel):
        pipeline = build_pipeline(store=store, channel=channel)
        result = await pipeline.process(_text("salam"))
        await pipeline.drain()

        assert result.status == PipelineStatus.IGNORED
        assert result.error_kind == "not_found"
        assert channel.calls == []
        assert store.conversations == {}

    @pytest.mark.asyncio
    async def test_empty_transcript_aborts(self, store, patient, channel):
        pipeline = build_pipeline(store=store, channel=channel, transcriber=StubTranscriber(""))
        result = await pipeline.process(_audio())
        await pipeline.drain()

        assert result.status == PipelineStatus.ABORTED
        assert result.stage == "transcription"
        assert channel.texts == []
        assert _messages(store) == []
        assert store.patients[patient.id].risk_level == Urgency.LOW

    @pytest.mark.asyncio
    async def test_media_download_failure_aborts(self, store, patient):
        channel = RecordingChannel(media_error=ProviderError("HTTP 404", provider="whatsapp", stage="media_download"))
        pipeline = build_pipeline(store=store, channel=channel, transcriber=StubTranscriber())
        result = await pipeline.process(_audio())

        assert result.status == PipelineStatus.ABORTED
        assert result.stage == "media_download"

    @pytest.mark.asyncio
    async def test_no_transcriber_aborts(self, store, patient, channel):
        pipeline = build_pipeline(store=store, channel=channel)
        result = await pipeline.process(_audio())
        assert result.status == PipelineStatus.ABORTED


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Reply failures
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestReplyFailure:

    @pytest.mark.asyncio
    async def test_send_failure_records_risk_but_no_messages(self, store, patient):
        channel = RecordingChannel(fail_text=True)
        pipeline = build_pipeline(store=store, channel=channel)

        result = await pipeline.process(_text("severe headache"))
        await pipeline.drain()

        assert result.status == PipelineStatus.FAILED
        assert result.stage == "send_text"
        assert result.error_kind == "provider"
        assert _messages(store) == []
        assert store.patients[patient.id].risk_level == Urgency.HIGH
        assert len(store.alerts) == 1

    @pytest.mark.asyncio
    async def test_generation_timeout(self, store, patient, channel):
        pipeline = build_pipeline(
            store=store, channel=channel, reply_provider=_HangingProvider(),
            timeouts=ProviderTimeouts(generation=0.05),
        )
        result = await pipeline.process(_text("salam"))
        await pipeline.drain()

        assert result.status == PipelineStatus.FAILED
        assert result.stage == "generation"
        assert "timed out" in result.error
        assert channel.calls == []
        assert _messages(store) == []

    @pytest.mark.asyncio
    async def test_unexpected_error_is_contained(self, store, patient, channel):
        pipeline = build_pipeline(store=store, channel=channel, reply_provider=ScriptedChatProvider(RuntimeError("bug")))
        result = await pipeline.process(_text("salam"))
        await pipeline.drain()

        assert result.status == PipelineStatus.FAILED
        assert result.error_kind == "unexpected"
        assert pipeline.get_metrics()["events_failed"] == 1


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Follow-up isolation and ordering
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class _FailingAppendStore(InMemoryStorageGateway):
    async def append_message(self, conversation_id, role, content, metadata=None):
        raise PersistenceError("bucket unavailable")


class TestFollowUps:

    @pytest.mark.asyncio
    async def test_summary_failure_keeps_previous_resume(self, store, channel):
        patient = seed_patient(store, medical_history={CLINICAL_RESUME_KEY: "G2P1, 28 weeks, uneventful."})
        summary = ScriptedChatProvider(ProviderError("HTTP 503", provider="openai", stage="llm"))
        pipeline = build_pipeline(store=store, channel=channel, summary_provider=summary)

        await pipeline.process(_text("blurred vision"))
        await pipeline.drain()

        updated = store.patients[patient.id]
        assert updated.risk_level == Urgency.HIGH
        assert updated.clinical_resume == "G2P1, 28 weeks, uneventful."
        assert len(_messages(store)) == 2
        assert pipeline.get_metrics()["followup_failures"] == 1

    @pytest.mark.asyncio
    async def test_persistence_failure_still_updates_risk(self, channel):
        store = _FailingAppendStore()
        patient = seed_patient(store)
        pipeline = build_pipeline(store=store, channel=channel)

        result = await pipeline.process(_text("high fever"))
        await pipeline.drain()

        assert result.status == PipelineStatus.REPLIED
        assert store.patients[patient.id].risk_level == Urgency.HIGH
        assert pipeline.get_metrics()["followup_failures"] == 1

    @pytest.mark.asyncio
    async def test_stale_risk_write_is_skipped(self, store, patient, channel):
        gate = asyncio.Event()

        class SlowFirstSummary(ChatProvider):
            name = "slow"

            def __init__(self):
                super().__init__("slow")

            async def complete(self, *, system_prompt, user_prompt, temperature, timeout):
                if "bleeding" in user_prompt.split("user: ")[-1]:
                    await gate.wait()
                    return "Heavy bleeding."
                return "Feeling fine now."

        pipeline = build_pipeline(store=store, channel=channel, summary_provider=SlowFirstSummary())

        await pipeline.process(_text("heavy bleeding", n=1))
        await pipeline.process(_text("all good now", n=2))

        for _ in range(200):
            if store.patients[patient.id].clinical_resume == "Feeling fine now.":
                break
            await asyncio.sleep(0.01)
        gate.set()
        await pipeline.drain()

        updated = store.patients[patient.id]
        assert updated.risk_level == Urgency.LOW
        assert updated.clinical_resume == "Feeling fine now."
        assert pipeline.get_metrics()["stale_risk_writes_skipped"] == 1


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Lifecycle
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_shutdown_cancels_followups(self, store, patient, channel):
        pipeline = build_pipeline(store=store, channel=channel, summary_provider=_HangingProvider())
        await pipeline.process(_text("salam"))
        assert pipeline.pending_followups >= 1

        await pipeline.shutdown()
        assert pipeline.pending_followups == 0

    @pytest.mark.asyncio
    async def test_metrics(self, store, patient, channel):
        pipeline = build_pipeline(store=store, channel=channel)
        await pipeline.process(_text("salam", n=1))
        await pipeline.process(InboundEvent.text("wamid.X", "+212699999999", "salam"))
        await pipeline.drain()

        metrics = pipeline.get_metrics()
        assert metrics["events_processed"] == 2
        assert metrics["replies_sent"] == 1
        assert metrics["events_ignored"] == 1
        assert metrics["pending_followups"] == 0

    @pytest.mark.asyncio
    async def test_patient_state_released_once_idle(self, store, patient, channel):
        pipeline = build_pipeline(store=store, channel=channel, summary_provider=_HangingProvider())
        await pipeline.process(_text("salam", n=1))
        assert pipeline.tracked_patients == 1

        await pipeline.shutdown()
        gc.collect()
        assert pipeline.tracked_patients == 0

    @pytest.mark.asyncio
    async def test_risk_ordering_restarts_cleanly_after_release(self, store, patient, channel):
        pipeline = build_pipeline(store=store, channel=channel)
        for n, body in enumerate(["salam", "I feel tired", "all good"], start=1):
            await pipeline.process(_text(body, n=n))
            await pipeline.drain()
            gc.collect()
            assert pipeline.tracked_patients == 0

        await pipeline.process(_text("heavy bleeding", n=4))
        await pipeline.drain()
        assert store.patients[patient.id].risk_level == Urgency.CRITICAL
        assert pipeline.get_metrics()["stale_risk_writes_skipped"] == 0
