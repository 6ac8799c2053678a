"""
Shared fixtures for pipeline unit tests.
Async tests are marked explicitly with @pytest.mark.asyncio.
"""

import pytest

from mamaguard.gateway.store import InMemoryStorageGateway
from mamaguard.gateway.tests.fakes import RecordingChannel, seed_patient


@pytest.fixture
def store():
    return InMemoryStorageGateway()


@pytest.fixture
def patient(store):
    return seed_patient(store)


@pytest.fixture
def channel():
    return RecordingChannel()
