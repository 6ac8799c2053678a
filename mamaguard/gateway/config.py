"""
Provider Configuration — resolved once at startup, injected everywhere.

Adapters never call os.getenv themselves; they receive a ProviderConfig
in their constructor.  Tests build one directly with only the fields
they care about.
"""

from __future__ import annotations

import os
from typing import Optional

from pydantic import BaseModel, Field

# LLM providers in priority order: the first one with a key is used
LLM_PROVIDER_PRIORITY = ("openai", "minimax", "gemini")


class ProviderTimeouts(BaseModel):
    """Upper bound (seconds) for each outbound provider call."""

    transcription: float = 30.0
    generation: float = 30.0
    summary: float = 20.0
    synthesis: float = 30.0
    channel_send: float = 10.0
    media_download: float = 20.0
    audio_upload: float = 30.0


class ProviderConfig(BaseModel):
    # LLM + speech-to-text
    openai_api_key: str = ""
    openai_model: str = "gpt-4o"
    openai_summary_model: str = "gpt-4o-mini"
    openai_transcription_model: str = "whisper-1"

    minimax_api_key: str = ""
    minimax_model: str = "abab6.5s-chat"

    gemini_api_key: str = ""
    gemini_model: str = "gemini-2.0-flash"

    # Text-to-speech
    elevenlabs_api_key: str = ""
    elevenlabs_voice_id: str = "21m00Tcm4TlvDq8ikWAM"
    elevenlabs_model: str = "eleven_multilingual_v2"

    # Messaging channel
    whatsapp_access_token: str = ""
    whatsapp_phone_number_id: str = ""
    whatsapp_graph_version: str = "v18.0"

    # Bias Whisper toward the Darija / Arabic family
    transcription_language: str = "ar"

    timeouts: ProviderTimeouts = Field(default_factory=ProviderTimeouts)

    @classmethod
    def from_env(cls) -> ProviderConfig:
        """Build the config from environment variables (values are trimmed)."""

        def env(name: str, default: str = "") -> str:
            return (os.getenv(name) or default).strip()

        def env_float(name: str, default: float) -> float:
            raw = env(name)
            return float(raw) if raw else default

        defaults = ProviderTimeouts()
        timeouts = ProviderTimeouts(
            transcription=env_float("TRANSCRIPTION_TIMEOUT", defaults.transcription),
            generation=env_float("GENERATION_TIMEOUT", defaults.generation),
            summary=env_float("SUMMARY_TIMEOUT", defaults.summary),
            synthesis=env_float("SYNTHESIS_TIMEOUT", defaults.synthesis),
            channel_send=env_float("CHANNEL_SEND_TIMEOUT", defaults.channel_send),
            media_download=env_float("MEDIA_DOWNLOAD_TIMEOUT", defaults.media_download),
            audio_upload=env_float("AUDIO_UPLOAD_TIMEOUT", defaults.audio_upload),
        )

        return cls(
            openai_api_key=env("OPENAI_API_KEY"),
            openai_model=env("OPENAI_MODEL", "gpt-4o"),
            openai_summary_model=env("OPENAI_SUMMARY_MODEL", "gpt-4o-mini"),
            minimax_api_key=env("MINIMAX_API_KEY"),
            minimax_model=env("MINIMAX_MODEL", "abab6.5s-chat"),
            gemini_api_key=env("GOOGLE_API_KEY"),
            gemini_model=env("GEMINI_MODEL", "gemini-2.0-flash"),
            elevenlabs_api_key=env("ELEVENLABS_API_KEY"),
            elevenlabs_voice_id=env("ELEVENLABS_VOICE_ID", "21m00Tcm4TlvDq8ikWAM"),
            whatsapp_access_token=env("WHATSAPP_ACCESS_TOKEN"),
            whatsapp_phone_number_id=env("WHATSAPP_PHONE_NUMBER_ID"),
            whatsapp_graph_version=env("WHATSAPP_GRAPH_VERSION", "v18.0"),
            timeouts=timeouts,
        )

    @property
    def llm_provider(self) -> Optional[str]:
        """Name of the first configured LLM provider, or None."""
        keys = {
            "openai": self.openai_api_key,
            "minimax": self.minimax_api_key,
            "gemini": self.gemini_api_key,
        }
        for name in LLM_PROVIDER_PRIORITY:
            if keys[name]:
                return name
        return None

    @property
    def whatsapp_configured(self) -> bool:
        return bool(self.whatsapp_access_token and self.whatsapp_phone_number_id)
