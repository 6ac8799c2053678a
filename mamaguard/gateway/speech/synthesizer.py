"""
Speech Synthesis Adapter — reply text → MP3 bytes via ElevenLabs.

One synthesis per reply, no caching, no retries.
"""

from __future__ import annotations

import logging

import httpx

from mamaguard.gateway.config import ProviderConfig
from mamaguard.gateway.errors import ProviderError

logger = logging.getLogger("gateway.speech.synthesizer")

ELEVENLABS_TTS_URL = "https://api.elevenlabs.io/v1/text-to-speech/{voice_id}"
PROVIDER = "elevenlabs"


class SpeechSynthesizer:

    def __init__(self, config: ProviderConfig, http_client: httpx.AsyncClient | None = None) -> None:
        self._api_key = config.elevenlabs_api_key
        self._voice_id = config.elevenlabs_voice_id
        self._model = config.elevenlabs_model
        self._timeout = config.timeouts.synthesis
        self._http = http_client

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    async def synthesize(self, text: str) -> bytes:
        if not self.configured:
            raise ProviderError("ELEVENLABS_API_KEY not set", provider=PROVIDER, stage="synthesis")

        url = ELEVENLABS_TTS_URL.format(voice_id=self._voice_id)
        payload = {
            "text": text,
            "model_id": self._model,
            "voice_settings": {"stability": 0.5, "similarity_boost": 0.75},
        }
        headers = {"xi-api-key": self._api_key, "Accept": "audio/mpeg"}

        try:
            if self._http is not None:
                response = await self._http.post(url, json=payload, headers=headers, timeout=self._timeout)
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.post(url, json=payload, headers=headers, timeout=self._timeout)
        except httpx.TimeoutException as exc:
            raise ProviderError(
                f"timed out after {self._timeout:.0f}s", provider=PROVIDER, stage="synthesis"
            ) from exc
        except httpx.HTTPError as exc:
            raise ProviderError(f"request failed: {exc}", provider=PROVIDER, stage="synthesis") from exc

        if response.status_code >= 400:
            raise ProviderError(
                f"HTTP {response.status_code}: {response.text[:300]}",
                provider=PROVIDER,
                stage="synthesis",
            )
        if not response.content:
            raise ProviderError("empty audio body", provider=PROVIDER, stage="synthesis")

        logger.info("Synthesized %d chars → %d bytes of audio", len(text), len(response.content))
        return response.content
