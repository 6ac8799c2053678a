"""
WhatsApp Cloud API Dispatcher — sends replies through the Meta Graph API.

Configuration (via ProviderConfig):
  whatsapp_access_token     — permanent or system-user token
  whatsapp_phone_number_id  — the business phone number id
  whatsapp_graph_version    — e.g. "v18.0"

Without credentials the dispatcher runs in stub mode: sends are logged
and reported as successful with error="stub_mode", so local development
works end to end without a Meta app.
"""

from __future__ import annotations

import logging

import httpx

from mamaguard.gateway.channels import ChannelDispatcher, DeliveryResult
from mamaguard.gateway.config import ProviderConfig
from mamaguard.gateway.errors import ProviderError
from mamaguard.gateway.validators import format_for_whatsapp

logger = logging.getLogger("gateway.dispatchers.whatsapp")

GRAPH_BASE_URL = "https://graph.facebook.com"


class WhatsAppDispatcher(ChannelDispatcher):
    """Delivers text and audio messages via the WhatsApp Cloud API."""

    channel_name = "whatsapp"

    def __init__(self, config: ProviderConfig, http_client: httpx.AsyncClient | None = None) -> None:
        self._token = config.whatsapp_access_token
        self._phone_number_id = config.whatsapp_phone_number_id
        self._version = config.whatsapp_graph_version
        self._send_timeout = config.timeouts.channel_send
        self._media_timeout = config.timeouts.media_download
        self._http = http_client
        if not config.whatsapp_configured:
            logger.warning("WhatsApp credentials not set — dispatcher in stub mode")

    @property
    def stub_mode(self) -> bool:
        return not (self._token and self._phone_number_id)

    @property
    def messages_url(self) -> str:
        return f"{GRAPH_BASE_URL}/{self._version}/{self._phone_number_id}/messages"

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._token}"}

    async def send_text(self, address: str, text: str) -> DeliveryResult:
        return await self._send(address, {"type": "text", "text": {"body": text}}, preview=text)

    async def send_audio(self, address: str, asset_url: str) -> DeliveryResult:
        return await self._send(address, {"type": "audio", "audio": {"link": asset_url}}, preview=asset_url)

    async def _send(self, address: str, content: dict, preview: str) -> DeliveryResult:
        to = format_for_whatsapp(address)
        if not to:
            return DeliveryResult(
                success=False,
                channel=self.channel_name,
                recipient=address,
                error="No recipient phone number",
            )

        if self.stub_mode:
            logger.info("WhatsApp stub: %s → %s: %s", content["type"], to, preview[:80])
            return DeliveryResult(
                success=True,
                channel=self.channel_name,
                recipient=address,
                error="stub_mode",
            )

        payload = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": to,
            **content,
        }
        try:
            response = await self._request("POST", self.messages_url, json=payload, timeout=self._send_timeout)
        except httpx.HTTPError as exc:
            logger.error("WhatsApp send error to %s: %s", to, exc)
            return DeliveryResult(
                success=False,
                channel=self.channel_name,
                recipient=address,
                error=f"{type(exc).__name__}: {exc}",
            )

        if response.status_code >= 400:
            logger.error("WhatsApp API error %d: %s", response.status_code, response.text[:300])
            return DeliveryResult(
                success=False,
                channel=self.channel_name,
                recipient=address,
                error=f"HTTP {response.status_code}",
            )

        message_id = None
        try:
            messages = response.json().get("messages") or []
            if messages:
                message_id = messages[0].get("id")
        except ValueError:
            pass

        logger.info("WhatsApp %s sent → %s (id=%s)", content["type"], to, message_id)
        return DeliveryResult(
            success=True,
            channel=self.channel_name,
            recipient=address,
            message_id=message_id,
        )

    async def fetch_media(self, media_ref: str) -> tuple[bytes, str]:
        """
        Two-step Graph download: GET /{media_id} resolves a short-lived
        URL, then GET on that URL (same bearer token) returns the bytes.
        """
        if self.stub_mode:
            raise ProviderError("WhatsApp credentials not set", provider="whatsapp", stage="media_download")

        meta_url = f"{GRAPH_BASE_URL}/{self._version}/{media_ref}"
        try:
            meta = await self._request("GET", meta_url, timeout=self._media_timeout)
            if meta.status_code >= 400:
                raise ProviderError(
                    f"media lookup HTTP {meta.status_code}", provider="whatsapp", stage="media_download"
                )
            info = meta.json()
            url = info.get("url")
            if not url:
                raise ProviderError("media lookup returned no url", provider="whatsapp", stage="media_download")
            mime_type = info.get("mime_type") or "audio/ogg"

            media = await self._request("GET", url, timeout=self._media_timeout)
        except httpx.HTTPError as exc:
            raise ProviderError(
                f"media download failed: {exc}", provider="whatsapp", stage="media_download"
            ) from exc
        except ValueError as exc:
            raise ProviderError("media lookup was not JSON", provider="whatsapp", stage="media_download") from exc

        if media.status_code >= 400:
            raise ProviderError(
                f"media download HTTP {media.status_code}", provider="whatsapp", stage="media_download"
            )
        logger.info("Downloaded media %s (%d bytes, %s)", media_ref, len(media.content), mime_type)
        return media.content, mime_type

    async def _request(self, method: str, url: str, *, timeout: float, json: dict | None = None) -> httpx.Response:
        if self._http is not None:
            return await self._http.request(method, url, json=json, headers=self._headers(), timeout=timeout)
        async with httpx.AsyncClient() as client:
            return await client.request(method, url, json=json, headers=self._headers(), timeout=timeout)
