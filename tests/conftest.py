"""
Shared fixtures for the MamaGuard API and scenario tests.

The real app is started with an in-memory store, a recording channel and
no provider credentials, so tests run fast and offline.  With no LLM key
the generator answers with the localized safety message.
"""

from types import SimpleNamespace

import pytest

from mamaguard.gateway.config import ProviderConfig
from mamaguard.gateway.store import InMemoryStorageGateway
from mamaguard.gateway.tests.fakes import RecordingChannel, seed_patient


@pytest.fixture
def wired(monkeypatch):
    """Patch settings + initialize_pipeline so app startup wires test doubles."""
    from mamaguard import settings
    from mamaguard.gateway import setup

    monkeypatch.setattr(settings, "WHATSAPP_VERIFY_TOKEN", "secret")
    monkeypatch.setattr(settings, "AUDIO_BUCKET_NAME", "")
    monkeypatch.setattr(settings, "RISK_VOCABULARY_PATH", "")

    store = InMemoryStorageGateway()
    patient = seed_patient(store)
    channel = RecordingChannel()
    real_initialize = setup.initialize_pipeline

    async def initialize_for_tests(**kwargs):
        return await real_initialize(config=ProviderConfig(), store=store, channel=channel)

    monkeypatch.setattr(setup, "initialize_pipeline", initialize_for_tests)
    return SimpleNamespace(store=store, patient=patient, channel=channel)


@pytest.fixture
def test_client(wired):
    """TestClient with startup/shutdown events run around each test."""
    from fastapi.testclient import TestClient
    from mamaguard.app import app

    with TestClient(app) as client:
        yield client


@pytest.fixture
def settle(test_client):
    """Block until the queue is empty and every detached follow-up finished."""
    from mamaguard.gateway import setup

    def _settle():
        test_client.portal.call(setup.get_queue_manager().join)
        test_client.portal.call(setup.get_pipeline().drain)

    return _settle
