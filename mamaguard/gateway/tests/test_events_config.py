"""
Tests for InboundEvent, ProviderConfig and the phone helpers.
"""

import pytest
from pydantic import ValidationError as PydanticValidationError

from mamaguard.gateway.config import ProviderConfig, ProviderTimeouts
from mamaguard.gateway.events import ContentType, InboundEvent, Urgency
from mamaguard.gateway.validators import format_for_whatsapp, is_valid_e164, normalize_phone


class TestInboundEvent:

    def test_text_factory(self):
        event = InboundEvent.text("wamid.1", "+212612345678", "salam")
        assert event.content_type == ContentType.TEXT
        assert not event.is_audio
        assert event.received_at.tzinfo is not None

    def test_text_needs_body(self):
        with pytest.raises(PydanticValidationError):
            InboundEvent.text("wamid.1", "+212612345678", "  ")

    def test_audio_needs_ref(self):
        with pytest.raises(PydanticValidationError):
            InboundEvent(provider_message_id="wamid.1", sender_address="+1", content_type=ContentType.AUDIO)

    def test_events_are_immutable(self):
        event = InboundEvent.text("wamid.1", "+212612345678", "salam")
        with pytest.raises(PydanticValidationError):
            event.raw_text = "changed"


class TestUrgency:

    def test_ordering(self):
        ranks = [u.rank for u in (Urgency.LOW, Urgency.MEDIUM, Urgency.HIGH, Urgency.CRITICAL)]
        assert ranks == sorted(ranks)

    def test_alerts_only_for_high_and_critical(self):
        assert [u for u in Urgency if u.needs_alert] == [Urgency.HIGH, Urgency.CRITICAL]


class TestProviderConfig:

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "  sk-test  ")
        monkeypatch.setenv("GOOGLE_API_KEY", "g-key")
        monkeypatch.setenv("WHATSAPP_ACCESS_TOKEN", "EAAG")
        monkeypatch.setenv("WHATSAPP_PHONE_NUMBER_ID", "1055")
        monkeypatch.setenv("GENERATION_TIMEOUT", "12.5")
        monkeypatch.delenv("MINIMAX_API_KEY", raising=False)

        config = ProviderConfig.from_env()

        assert config.openai_api_key == "sk-test"
        assert config.llm_provider == "openai"
        assert config.whatsapp_configured
        assert config.timeouts.generation == 12.5
        assert config.timeouts.summary == ProviderTimeouts().summary

    def test_nothing_configured(self):
        config = ProviderConfig()
        assert config.llm_provider is None
        assert not config.whatsapp_configured


class TestPhoneHelpers:

    @pytest.mark.parametrize("raw, expected", [
        ("212612345678", "+212612345678"),
        ("+212 612-345-678", "+212612345678"),
        ("(212) 612 345 678", "+212612345678"),
        ("", ""),
    ])
    def test_normalize(self, raw, expected):
        assert normalize_phone(raw) == expected

    def test_normalize_with_country_code(self):
        assert normalize_phone("612345678", country_code="+212") == "+212612345678"

    def test_whatsapp_wire_format(self):
        assert format_for_whatsapp("+212 612 345 678") == "212612345678"

    def test_e164(self):
        assert is_valid_e164("+212612345678")
        assert not is_valid_e164("212612345678")
        assert not is_valid_e164("+0123")
