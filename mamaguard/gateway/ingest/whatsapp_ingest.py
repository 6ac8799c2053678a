"""
WhatsApp Cloud API Ingest — converts Meta webhook bodies into
InboundEvents for the pipeline.

Expected webhook body (incoming message):
{
  "object": "whatsapp_business_account",
  "entry": [{
    "id": "WABA_ID",
    "changes": [{
      "field": "messages",
      "value": {
        "messaging_product": "whatsapp",
        "metadata": {"phone_number_id": "..."},
        "contacts": [{"profile": {"name": "Fatima"}, "wa_id": "212612345678"}],
        "messages": [{
          "from": "212612345678",
          "id": "wamid.HBgM...",
          "timestamp": "1718000000",
          "type": "text",                       # or "audio"
          "text": {"body": "..."},              # for text
          "audio": {"id": "MEDIA_ID", "voice": true, "mime_type": "audio/ogg"}
        }]
      }
    }]
  }]
}

Delivery-status callbacks carry "statuses" instead of "messages" and
produce no events.
"""

from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from mamaguard.gateway.channels import ChannelIngest
from mamaguard.gateway.errors import ValidationError
from mamaguard.gateway.events import InboundEvent
from mamaguard.gateway.validators import is_valid_e164, normalize_phone

logger = logging.getLogger("gateway.ingest.whatsapp")


def _require_list(container: dict, key: str, where: str) -> list:
    value = container.get(key, [])
    if not isinstance(value, list):
        raise ValidationError(f"{where}.{key} must be a list")
    return value


def _require_dict(value: Any, where: str) -> dict:
    if not isinstance(value, dict):
        raise ValidationError(f"{where} must be an object")
    return value


class WhatsAppIngest(ChannelIngest):
    """Converts a WhatsApp Cloud API webhook body into InboundEvents."""

    channel_name = "whatsapp"

    async def to_events(self, raw_input: Any) -> list[InboundEvent]:
        body = _require_dict(raw_input, "body")
        events: list[InboundEvent] = []

        for i, entry in enumerate(_require_list(body, "entry", "body")):
            entry = _require_dict(entry, f"entry[{i}]")
            for j, change in enumerate(_require_list(entry, "changes", f"entry[{i}]")):
                change = _require_dict(change, f"entry[{i}].changes[{j}]")
                value = _require_dict(change.get("value", {}), f"entry[{i}].changes[{j}].value")
                events.extend(self._parse_value(value))

        return events

    def _parse_value(self, value: dict) -> list[InboundEvent]:
        messages = _require_list(value, "messages", "value")
        if not messages:
            return []

        sender_name = ""
        contacts = _require_list(value, "contacts", "value")
        if contacts:
            contact = _require_dict(contacts[0], "value.contacts[0]")
            profile = _require_dict(contact.get("profile") or {}, "value.contacts[0].profile")
            name = profile.get("name") or ""
            if not isinstance(name, str):
                raise ValidationError("value.contacts[0].profile.name must be a string")
            sender_name = name

        events = []
        for message in messages:
            event = self._parse_message(_require_dict(message, "message"), sender_name)
            if event is not None:
                events.append(event)
        return events

    def _parse_message(self, message: dict, sender_name: str) -> InboundEvent | None:
        message_id = message.get("id")
        sender = message.get("from")
        msg_type = message.get("type")
        if not message_id or not sender or not msg_type:
            raise ValidationError("message needs id, from and type")

        address = normalize_phone(str(sender))
        if not is_valid_e164(address):
            raise ValidationError(f"message {message_id} has an invalid sender {sender!r}")

        try:
            if msg_type == "text":
                content = _require_dict(message.get("text") or {}, f"message {message_id} text")
                body = content.get("body") or ""
                if not isinstance(body, str):
                    raise ValidationError(f"message {message_id} text.body must be a string")
                text = body.strip()
                if not text:
                    logger.info("Empty text message %s ignored", message_id)
                    return None
                return InboundEvent.text(message_id, address, text, sender_name=sender_name)

            if msg_type in ("audio", "voice"):
                media = message.get("audio") or message.get("voice") or {}
                media_id = media.get("id") if isinstance(media, dict) else None
                if not media_id:
                    raise ValidationError(f"audio message {message_id} has no media id")
                return InboundEvent.audio(message_id, address, media_id, sender_name=sender_name)
        except PydanticValidationError as exc:
            raise ValidationError(f"invalid message {message_id}: {exc.errors()[0]['msg']}") from exc

        logger.info("Unsupported message type '%s' (%s) ignored", msg_type, message_id)
        return None
