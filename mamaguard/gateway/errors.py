"""
Pipeline error taxonomy.

Adapters raise these; the MessagePipeline classifies them in one place.
Only ValidationError ever reaches an HTTP client (as a 400).
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base for every error the inbound pipeline knows how to classify."""

    kind = "pipeline"


class ValidationError(PipelineError):
    """Malformed inbound payload — rejected at ingestion."""

    kind = "validation"


class NotFoundError(PipelineError):
    """Sender is not a registered patient."""

    kind = "not_found"


class ProviderError(PipelineError):
    """Any failed call to an external provider (LLM, STT, TTS, channel)."""

    kind = "provider"

    def __init__(self, message: str, *, provider: str = "", stage: str = "") -> None:
        super().__init__(message)
        self.provider = provider
        self.stage = stage

    def __str__(self) -> str:
        base = super().__str__()
        if self.provider:
            return f"[{self.provider}] {base}"
        return base


class PersistenceError(PipelineError):
    """Storage gateway failure."""

    kind = "persistence"


class QueueFullError(PipelineError):
    """The work queue is at capacity; the event was not accepted."""

    kind = "queue_full"
