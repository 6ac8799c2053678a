"""
LLM Providers — interchangeable chat-completion backends.

Each provider turns {system_prompt, user_prompt, temperature} into text.
An empty string means "the provider answered but said nothing"; any
transport failure, timeout or non-2xx status is raised as ProviderError.

Selection is by configured credential in LLM_PROVIDER_PRIORITY order.
Exactly one provider is used per call — there is no cross-provider
fallback.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any

import httpx

from mamaguard.gateway.config import ProviderConfig
from mamaguard.gateway.errors import ProviderError

logger = logging.getLogger("gateway.agents.llm")

OPENAI_CHAT_URL = "https://api.openai.com/v1/chat/completions"
MINIMAX_CHAT_URL = "https://api.minimax.io/v1/text/chatcompletion_v2"


class ChatProvider(ABC):
    """Abstract chat-completion provider."""

    name: str = ""

    def __init__(self, model: str) -> None:
        self.model = model

    @abstractmethod
    async def complete(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
        temperature: float,
        timeout: float,
    ) -> str:
        """Return the completion text ("" when the provider returned nothing)."""


class _OpenAICompatibleProvider(ChatProvider):
    """Shared HTTP path for OpenAI-style /chat/completions endpoints."""

    url: str = ""

    def __init__(
        self,
        api_key: str,
        model: str,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(model)
        self._api_key = api_key
        self._http = http_client

    def _payload(self, system_prompt: str, user_prompt: str, temperature: float) -> dict[str, Any]:
        return {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "temperature": temperature,
        }

    async def _post(self, client: httpx.AsyncClient, payload: dict, timeout: float) -> httpx.Response:
        return await client.post(
            self.url,
            json=payload,
            headers={"Authorization": f"Bearer {self._api_key}"},
            timeout=timeout,
        )

    async def complete(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
        temperature: float,
        timeout: float,
    ) -> str:
        payload = self._payload(system_prompt, user_prompt, temperature)
        try:
            if self._http is not None:
                response = await self._post(self._http, payload, timeout)
            else:
                async with httpx.AsyncClient() as client:
                    response = await self._post(client, payload, timeout)
        except httpx.TimeoutException as exc:
            raise ProviderError(
                f"timed out after {timeout:.0f}s", provider=self.name, stage="llm"
            ) from exc
        except httpx.HTTPError as exc:
            raise ProviderError(f"request failed: {exc}", provider=self.name, stage="llm") from exc

        logger.info("%s response status: %d (model=%s)", self.name, response.status_code, self.model)
        if response.status_code >= 400:
            raise ProviderError(
                f"HTTP {response.status_code}: {response.text[:300]}",
                provider=self.name,
                stage="llm",
            )

        try:
            data = response.json()
        except ValueError as exc:
            raise ProviderError("response was not JSON", provider=self.name, stage="llm") from exc

        return self._extract_text(data)

    def _extract_text(self, data: dict) -> str:
        choices = data.get("choices") or []
        if choices:
            content = (choices[0].get("message") or {}).get("content") or ""
            if content.strip():
                return content.strip()
        self._log_empty(data)
        return ""

    def _log_empty(self, data: dict) -> None:
        error = (data.get("error") or {}).get("message")
        if error:
            logger.warning("%s returned an error field: %s", self.name, error)
        else:
            logger.warning("%s returned empty content", self.name)


class OpenAIChatProvider(_OpenAICompatibleProvider):
    name = "openai"
    url = OPENAI_CHAT_URL


class MiniMaxChatProvider(_OpenAICompatibleProvider):
    name = "minimax"
    url = MINIMAX_CHAT_URL

    def _log_empty(self, data: dict) -> None:
        base = data.get("base_resp") or {}
        status = base.get("status_code")
        if status not in (None, 0):
            logger.warning(
                "minimax non-zero status: %s", base.get("status_msg") or status
            )
        else:
            logger.warning("minimax empty content, raw keys: %s", ", ".join(data.keys()))


class GeminiChatProvider(ChatProvider):
    """Google Gemini via the google-genai SDK."""

    name = "gemini"

    def __init__(self, api_key: str, model: str, client: Any = None) -> None:
        super().__init__(model)
        self._api_key = api_key
        self._client = client

    @property
    def client(self):
        if self._client is None:
            from google import genai
            self._client = genai.Client(api_key=self._api_key)
        return self._client

    async def complete(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
        temperature: float,
        timeout: float,
    ) -> str:
        from google.genai import types

        config = types.GenerateContentConfig(
            system_instruction=system_prompt,
            temperature=temperature,
        )
        try:
            response = await asyncio.wait_for(
                self.client.aio.models.generate_content(
                    model=self.model,
                    contents=user_prompt,
                    config=config,
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError as exc:
            raise ProviderError(
                f"timed out after {timeout:.0f}s", provider=self.name, stage="llm"
            ) from exc
        except Exception as exc:
            raise ProviderError(f"request failed: {exc}", provider=self.name, stage="llm") from exc

        text = response.text
        if isinstance(text, str) and text.strip():
            return text.strip()
        logger.warning("gemini returned empty content")
        return ""


def build_chat_provider(
    config: ProviderConfig,
    *,
    purpose: str = "reply",
    http_client: httpx.AsyncClient | None = None,
) -> ChatProvider | None:
    """
    Pick the first configured provider.

    ``purpose="summary"`` selects the cheaper OpenAI summary model; the
    other providers use one model for both.
    """
    name = config.llm_provider
    if name == "openai":
        model = config.openai_summary_model if purpose == "summary" else config.openai_model
        return OpenAIChatProvider(config.openai_api_key, model, http_client=http_client)
    if name == "minimax":
        return MiniMaxChatProvider(config.minimax_api_key, config.minimax_model, http_client=http_client)
    if name == "gemini":
        return GeminiChatProvider(config.gemini_api_key, config.gemini_model)
    return None
