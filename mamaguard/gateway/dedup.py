"""
Inbound de-duplication by channel message id.

WhatsApp redelivers a webhook whenever it does not get a fast 200, and
after our own restarts.  A message id is claimed at most once:

  1. in-memory ledger of recent ids (covers redeliveries while running)
  2. store lookup for a persisted message carrying the id (covers restarts)
"""

from __future__ import annotations

import logging
from collections import OrderedDict

from mamaguard.gateway.errors import PersistenceError
from mamaguard.gateway.store import StorageGateway

logger = logging.getLogger("gateway.dedup")

DEFAULT_LEDGER_SIZE = 10_000


class EventDeduplicator:

    def __init__(self, store: StorageGateway | None = None, max_entries: int = DEFAULT_LEDGER_SIZE) -> None:
        self._store = store
        self._max_entries = max_entries
        self._seen: OrderedDict[str, None] = OrderedDict()
        self._in_flight: set[str] = set()

    def __contains__(self, provider_message_id: str) -> bool:
        return provider_message_id in self._seen

    def __len__(self) -> int:
        return len(self._seen)

    async def claim(self, provider_message_id: str) -> bool:
        """True the first time an id is seen, False for every redelivery."""
        # Check-and-mark runs before the first await; lookups for different ids overlap.
        if provider_message_id in self._seen or provider_message_id in self._in_flight:
            logger.info("Duplicate delivery of %s ignored (ledger)", provider_message_id)
            return False
        self._in_flight.add(provider_message_id)
        try:
            persisted = await self._persisted(provider_message_id)
        finally:
            self._in_flight.discard(provider_message_id)
        self._remember(provider_message_id)
        if persisted:
            logger.info("Duplicate delivery of %s ignored (already persisted)", provider_message_id)
            return False
        return True

    def release(self, provider_message_id: str) -> None:
        """Forget a claim so a later redelivery can be processed."""
        self._seen.pop(provider_message_id, None)

    async def _persisted(self, provider_message_id: str) -> bool:
        if self._store is None:
            return False
        try:
            return await self._store.has_provider_message(provider_message_id)
        except PersistenceError as exc:
            # Store unreachable: the ledger alone decides
            logger.warning("Dedup store lookup failed for %s: %s", provider_message_id, exc)
            return False

    def _remember(self, provider_message_id: str) -> None:
        self._seen[provider_message_id] = None
        while len(self._seen) > self._max_entries:
            self._seen.popitem(last=False)
