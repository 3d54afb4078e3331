"""
Pipeline error taxonomy.

  ValidationError    bad input, rejected at submission; never enters the pipeline
  ProviderError      OCR / LLM call failed or timed out; retried, then terminal
  InvalidTransition  state machine invariant violated; a bug signal, not retryable
  PublicationError   event log unreachable; logged and swallowed
  StorageError       binary storage collaborator failed
  NotFoundError      unknown batch / document / analysis
  QueueFullError     worker queue saturated; submission rejected (back-pressure)
  DuplicateKeyError  unique key violated in the repository

Each error carries a stable machine-readable `error_code`, which the API
layer copies into the ErrorResponse envelope.
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for every error raised by the batch pipeline."""

    error_code = "PIPELINE_ERROR"

    def __init__(self, message: str, *, field: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.field = field


class ValidationError(PipelineError):
    error_code = "VALIDATION_ERROR"

    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        error_code: str | None = None,
    ) -> None:
        super().__init__(message, field=field)
        if error_code:
            self.error_code = error_code


class ProviderError(PipelineError):
    """An OCR or summarization call failed, including timeouts."""

    error_code = "PROVIDER_ERROR"

    def __init__(self, provider: str, message: str) -> None:
        super().__init__(f"{provider}: {message}")
        self.provider = provider


class InvalidTransition(PipelineError):
    error_code = "INVALID_TRANSITION"

    def __init__(self, entity: str, entity_id: str, current: str, target: str) -> None:
        super().__init__(
            f"{entity} {entity_id} cannot move from {current} to {target}"
        )
        self.entity_id = entity_id
        self.current = current
        self.target = target


class PublicationError(PipelineError):
    error_code = "PUBLICATION_ERROR"


class StorageError(PipelineError):
    error_code = "STORAGE_ERROR"


class NotFoundError(PipelineError):
    error_code = "NOT_FOUND"

    def __init__(self, entity: str, entity_id: str) -> None:
        super().__init__(f"{entity} '{entity_id}' was not found.")
        self.entity = entity
        self.entity_id = entity_id


class QueueFullError(PipelineError):
    error_code = "QUEUE_FULL"


class DuplicateKeyError(PipelineError):
    error_code = "DUPLICATE_KEY"
