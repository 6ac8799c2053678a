"""
Transcription Adapter — voice note bytes → text via OpenAI Whisper.

The language hint is pinned to Arabic, which biases Whisper toward the
Darija / Arabic family the patients speak.  No retries here.
"""

from __future__ import annotations

import logging

import httpx

from mamaguard.gateway.config import ProviderConfig
from mamaguard.gateway.errors import ProviderError

logger = logging.getLogger("gateway.speech.transcriber")

WHISPER_URL = "https://api.openai.com/v1/audio/transcriptions"
PROVIDER = "openai-whisper"


class Transcriber:

    def __init__(self, config: ProviderConfig, http_client: httpx.AsyncClient | None = None) -> None:
        self._api_key = config.openai_api_key
        self._model = config.openai_transcription_model
        self._language = config.transcription_language
        self._timeout = config.timeouts.transcription
        self._http = http_client

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    async def transcribe(self, audio: bytes, mime_type: str = "audio/ogg") -> str:
        if not self.configured:
            raise ProviderError("OPENAI_API_KEY not set", provider=PROVIDER, stage="transcription")
        if not audio:
            raise ProviderError("no audio bytes to transcribe", provider=PROVIDER, stage="transcription")

        files = {"file": ("audio.ogg", audio, mime_type)}
        data = {"model": self._model, "language": self._language}
        headers = {"Authorization": f"Bearer {self._api_key}"}

        try:
            if self._http is not None:
                response = await self._http.post(
                    WHISPER_URL, files=files, data=data, headers=headers, timeout=self._timeout
                )
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.post(
                        WHISPER_URL, files=files, data=data, headers=headers, timeout=self._timeout
                    )
        except httpx.TimeoutException as exc:
            raise ProviderError(
                f"timed out after {self._timeout:.0f}s", provider=PROVIDER, stage="transcription"
            ) from exc
        except httpx.HTTPError as exc:
            raise ProviderError(f"request failed: {exc}", provider=PROVIDER, stage="transcription") from exc

        if response.status_code >= 400:
            raise ProviderError(
                f"HTTP {response.status_code}: {response.text[:300]}",
                provider=PROVIDER,
                stage="transcription",
            )

        try:
            text = (response.json().get("text") or "").strip()
        except ValueError as exc:
            raise ProviderError("response was not JSON", provider=PROVIDER, stage="transcription") from exc

        if not text:
            raise ProviderError("empty transcript", provider=PROVIDER, stage="transcription")

        logger.info("Transcribed %d bytes of audio → %d chars", len(audio), len(text))
        return text
