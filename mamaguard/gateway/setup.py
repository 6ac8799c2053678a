"""
Pipeline Setup — initializes and wires together all pipeline components.

Called once during app startup.  ProviderConfig is resolved here and
nowhere else; every adapter receives it through its constructor.
Tests pass their own store / channel / config to get a fully wired
pipeline without network access.
"""

from __future__ import annotations

import logging

import httpx

from mamaguard import settings
from mamaguard.gateway.agents.clinical_summarizer import ClinicalSummarizer
from mamaguard.gateway.agents.llm_providers import build_chat_provider
from mamaguard.gateway.agents.response_generator import ResponseGenerator
from mamaguard.gateway.agents.risk_classifier import RiskClassifier
from mamaguard.gateway.channels import (
    AudioAssetStore,
    ChannelDispatcher,
    OutboundDispatcher,
)
from mamaguard.gateway.config import ProviderConfig
from mamaguard.gateway.dedup import EventDeduplicator
from mamaguard.gateway.dispatchers.whatsapp_dispatcher import WhatsAppDispatcher
from mamaguard.gateway.pipeline import MessagePipeline
from mamaguard.gateway.queue import PatientQueueManager
from mamaguard.gateway.speech.synthesizer import SpeechSynthesizer
from mamaguard.gateway.speech.transcriber import Transcriber
from mamaguard.gateway.store import (
    GCSStorageGateway,
    InMemoryStorageGateway,
    StorageGateway,
)

logger = logging.getLogger("gateway.setup")

# Module-level singletons (set during initialize)
_config: ProviderConfig | None = None
_pipeline: MessagePipeline | None = None
_queue_manager: PatientQueueManager | None = None
_deduplicator: EventDeduplicator | None = None
_http_client: httpx.AsyncClient | None = None


async def initialize_pipeline(
    *,
    config: ProviderConfig | None = None,
    store: StorageGateway | None = None,
    channel: ChannelDispatcher | None = None,
    audio_store: AudioAssetStore | None = None,
) -> MessagePipeline:
    """
    Wire together all pipeline components and start the work queue.

    Returns the fully initialized MessagePipeline.
    """
    global _config, _pipeline, _queue_manager, _deduplicator, _http_client

    logger.info("Initializing MamaGuard pipeline...")

    # 1. Provider configuration, resolved once
    _config = config or ProviderConfig.from_env()
    _http_client = httpx.AsyncClient()

    # 2. Storage
    store = store or _build_store()
    if audio_store is None and settings.AUDIO_BUCKET_NAME:
        from mamaguard.infrastructure.gcs import GCSAudioStore, GCSBucketManager

        audio_store = GCSAudioStore(
            GCSBucketManager(settings.AUDIO_BUCKET_NAME),
            timeout=_config.timeouts.audio_upload,
        )

    # 3. Outbound channel
    outbound = OutboundDispatcher(
        channel or WhatsAppDispatcher(_config, http_client=_http_client),
        asset_store=audio_store,
    )

    # 4. Agents
    classifier = RiskClassifier.from_file(settings.RISK_VOCABULARY_PATH or None)
    generator = ResponseGenerator(
        build_chat_provider(_config, purpose="reply", http_client=_http_client), _config
    )
    summarizer = ClinicalSummarizer(
        build_chat_provider(_config, purpose="summary", http_client=_http_client), _config
    )

    # 5. Speech (only when credentials exist)
    transcriber = Transcriber(_config, http_client=_http_client) if _config.openai_api_key else None
    synthesizer = (
        SpeechSynthesizer(_config, http_client=_http_client) if _config.elevenlabs_api_key else None
    )

    # 6. Orchestrator
    _pipeline = MessagePipeline(
        store=store,
        outbound=outbound,
        classifier=classifier,
        generator=generator,
        summarizer=summarizer,
        transcriber=transcriber,
        synthesizer=synthesizer,
        timeouts=_config.timeouts,
    )

    # 7. Dedup + queue (uses pipeline.process as the processor)
    _deduplicator = EventDeduplicator(store)
    _queue_manager = PatientQueueManager(
        processor=_pipeline.process,
        max_pending=settings.PIPELINE_MAX_PENDING,
        max_concurrency=settings.PIPELINE_MAX_CONCURRENCY,
        idle_timeout_seconds=settings.PIPELINE_IDLE_TIMEOUT,
    )
    await _queue_manager.start()

    logger.info(
        "Pipeline initialized: llm=%s, transcription=%s, speech=%s, audio_store=%s, channel=%s, rules=%d",
        generator.provider_name,
        "on" if transcriber else "off",
        "on" if synthesizer else "off",
        "on" if outbound.can_send_audio else "off",
        outbound.channel_name,
        classifier.rule_count,
    )
    return _pipeline


async def shutdown_pipeline() -> None:
    """Stop the queue, abandon in-flight follow-ups, close HTTP connections."""
    global _pipeline, _queue_manager, _deduplicator, _http_client
    if _queue_manager:
        await _queue_manager.stop()
    if _pipeline:
        await _pipeline.shutdown()
    if _http_client:
        await _http_client.aclose()
    _pipeline = None
    _queue_manager = None
    _deduplicator = None
    _http_client = None
    logger.info("Pipeline shutdown complete")


def get_config() -> ProviderConfig | None:
    return _config


def get_pipeline() -> MessagePipeline | None:
    return _pipeline


def get_queue_manager() -> PatientQueueManager | None:
    return _queue_manager


def get_deduplicator() -> EventDeduplicator | None:
    return _deduplicator


def _build_store() -> StorageGateway:
    if settings.STORAGE_BACKEND == "gcs":
        if not settings.GCS_BUCKET_NAME:
            raise RuntimeError("STORAGE_BACKEND=gcs requires GCS_BUCKET_NAME")
        from mamaguard.infrastructure.gcs import GCSBucketManager

        gcs = GCSBucketManager(settings.GCS_BUCKET_NAME)
        gcs._ensure_initialized()
        logger.info("Using GCS storage (bucket=%s)", settings.GCS_BUCKET_NAME)
        return GCSStorageGateway(gcs)

    logger.warning("Using in-memory storage — data is lost on restart")
    return InMemoryStorageGateway()
