"""
Channel Abstractions — outbound delivery and audio asset hosting.

Inbound: a ChannelIngest turns a webhook body into InboundEvents.

The pipeline never talks to WhatsApp (or a bucket) directly.  It goes
through an OutboundDispatcher, which wraps:
  1. a ChannelDispatcher  — sends text / audio, fetches inbound media
  2. an AudioAssetStore   — hosts generated audio at a public URL

Ordering rule enforced here: for any inbound event, a text send must
have been attempted before an audio send is allowed.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from mamaguard.gateway.errors import ProviderError
from mamaguard.gateway.events import InboundEvent

logger = logging.getLogger("gateway.channels")


class DeliveryResult(BaseModel):
    """Outcome of a single message delivery attempt."""

    success: bool
    channel: str
    recipient: str
    message_id: Optional[str] = None
    error: Optional[str] = None
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )


class ChannelDispatcher(ABC):
    """Abstract messaging channel."""

    channel_name: str = ""

    @abstractmethod
    async def send_text(self, address: str, text: str) -> DeliveryResult:
        """Deliver a text message. Must not raise — return DeliveryResult."""

    @abstractmethod
    async def send_audio(self, address: str, asset_url: str) -> DeliveryResult:
        """Deliver an audio message by link. Must not raise."""

    @abstractmethod
    async def fetch_media(self, media_ref: str) -> tuple[bytes, str]:
        """Download inbound media. Returns (bytes, mime type); raises ProviderError."""


class AudioAssetStore(ABC):
    """Durable, publicly fetchable storage for generated audio."""

    @abstractmethod
    async def upload(self, data: bytes, name: str, content_type: str = "audio/mpeg") -> str:
        """Store ``data`` and return its public URL. Raises ProviderError."""


class OutboundDispatcher:
    """
    Usage:
        outbound = OutboundDispatcher(WhatsAppDispatcher(config), audio_store)
        await outbound.send_text(event_id, "+212600000001", "Salam!")
        url = await outbound.upload_audio(event_id, mp3_bytes)
        await outbound.send_audio(event_id, "+212600000001", url)
    """

    def __init__(
        self,
        channel: ChannelDispatcher,
        asset_store: AudioAssetStore | None = None,
        max_tracked_events: int = 10_000,
    ) -> None:
        self._channel = channel
        self._assets = asset_store
        self._max_tracked = max_tracked_events
        self._text_attempted: OrderedDict[str, None] = OrderedDict()

    @property
    def channel_name(self) -> str:
        return self._channel.channel_name

    @property
    def can_send_audio(self) -> bool:
        return self._assets is not None

    async def fetch_media(self, media_ref: str) -> tuple[bytes, str]:
        return await self._channel.fetch_media(media_ref)

    async def send_text(self, event_id: str, address: str, text: str) -> DeliveryResult:
        self._mark_text_attempted(event_id)
        result = await self._channel.send_text(address, text)
        if result.success:
            logger.info("Text reply for %s delivered via %s", event_id, self.channel_name)
        else:
            logger.warning(
                "Text reply for %s failed via %s: %s",
                event_id, self.channel_name, result.error,
            )
        return result

    async def send_audio(self, event_id: str, address: str, asset_url: str) -> DeliveryResult:
        if event_id not in self._text_attempted:
            logger.error("Refusing audio for %s: no text reply attempted yet", event_id)
            return DeliveryResult(
                success=False,
                channel=self.channel_name,
                recipient=address,
                error="text reply must be attempted before audio",
            )
        result = await self._channel.send_audio(address, asset_url)
        if not result.success:
            logger.warning("Audio reply for %s failed: %s", event_id, result.error)
        return result

    async def upload_audio(self, event_id: str, data: bytes) -> str:
        if self._assets is None:
            raise ProviderError("no audio asset store configured", stage="audio_upload")
        name = f"replies/{event_id}-{uuid4().hex[:8]}.mp3"
        url = await self._assets.upload(data, name, "audio/mpeg")
        logger.info("Uploaded audio reply for %s (%d bytes)", event_id, len(data))
        return url

    def _mark_text_attempted(self, event_id: str) -> None:
        self._text_attempted[event_id] = None
        self._text_attempted.move_to_end(event_id)
        while len(self._text_attempted) > self._max_tracked:
            self._text_attempted.popitem(last=False)


class ChannelIngest(ABC):
    """Abstract inbound channel — converts a webhook body into InboundEvents."""

    channel_name: str = ""

    @abstractmethod
    async def to_events(self, raw_input: Any) -> list[InboundEvent]:
        """
        Parse channel-specific data.  Returns [] for bodies that carry no
        patient message; raises ValidationError for malformed bodies.
        """
