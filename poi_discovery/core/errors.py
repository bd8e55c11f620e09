"""Error taxonomy shared by the discovery and enrichment pipeline."""

from typing import Optional


class PipelineError(RuntimeError):
    """Base class for pipeline errors."""


class SourceUnavailable(PipelineError):
    """A discovery source could not be reached or returned an unusable payload."""

    def __init__(self, source: str, reason: str) -> None:
        super().__init__(f"{source}: {reason}")
        self.source = source
        self.reason = reason


class ExtractionFailure(PipelineError):
    """The extraction oracle failed or returned something that could not be parsed."""


class ExtractionTimeout(ExtractionFailure):
    """The extraction oracle did not answer within its timeout."""


class PersistenceFailure(PipelineError):
    """A single record could not be written to the location store."""


class PersistenceUnavailable(PipelineError):
    """The location store cannot be reached at all."""


class InvalidTransition(PipelineError):
    """A moderation state change is not allowed."""


class QueueFull(PipelineError):
    """A bounded enrichment queue rejected a new item."""


class QueueItemExhausted(PipelineError):
    """An enrichment item ran out of attempts and was moved to the dead state."""

    def __init__(self, record_id: str, attempts: int, last_error: Optional[str]) -> None:
        super().__init__(f"{record_id} exhausted after {attempts} attempts: {last_error}")
        self.record_id = record_id
        self.attempts = attempts
        self.last_error = last_error
