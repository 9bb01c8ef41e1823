"""
Error taxonomy for the relevance engine.

Per-article failures never escalate past their batch, provider failures
degrade to embedding fallback scoring, and persistence failures stop the run.
"""

from typing import Optional


class RelevanceEngineError(Exception):
    """Base class for all engine errors."""


class ValidationError(RelevanceEngineError):
    """Malformed caller input. Fatal to the single request only."""


class LimitExceededError(ValidationError):
    """A soft per-user limit (exclusions, interests) would be exceeded."""

    def __init__(self, rejection):
        self.rejection = rejection
        super().__init__(
            f"{rejection.kind} limit reached: {rejection.current}/{rejection.limit}"
        )


class ProviderError(RelevanceEngineError):
    """Network, timeout or non-success response from a model provider."""


class ProviderFormatError(ProviderError):
    """A provider answered, but not in the shape the engine expects."""


class PersistenceError(RelevanceEngineError):
    """The store rejected a read or write. Always stops the run."""


class PartialItemFailure(RelevanceEngineError):
    """One article's model result was missing or malformed.

    Logged and recorded on the batch outcome; the article falls back to
    its embedding score and the batch continues.
    """

    def __init__(self, article_id: Optional[int], reason: str, record: Optional[object] = None):
        self.article_id = article_id
        self.reason = reason
        self.record = record
        super().__init__(f"article {article_id}: {reason}")
