"""Error taxonomy for the import pipeline."""


class PipelineError(Exception):
    """Base exception for all import pipeline errors."""


class ValidationError(PipelineError):
    """Malformed caller input (empty request, oversized payload, bad file). Never retried."""


class CSVParseError(ValidationError):
    """Delimited file could not be parsed into headers and rows."""


class ReviewStateError(ValidationError):
    """Review action attempted on an item that is no longer pending."""


class RateLimited(PipelineError):
    """Per-actor quota exhausted for the current window."""

    def __init__(self, retry_after: int, message: str | None = None):
        self.retry_after = retry_after
        super().__init__(message or f"Too many requests, retry after {retry_after}s")


class TransientServiceError(PipelineError):
    """Inference service temporarily unavailable (retryable: timeout, connection error, 429, 5xx)."""


class InferenceTimeout(TransientServiceError):
    """Retry series exceeded its overall time budget."""


class InferenceServiceError(PipelineError):
    """Inference service rejected the request (non-retryable: 400, 401, 403, 422)."""


class SchemaValidationError(PipelineError):
    """Inference response does not match the expected shape for its document type."""

    def __init__(self, document_type: str, errors: list[str]):
        self.document_type = document_type
        self.errors = errors
        super().__init__(f"{document_type} response failed validation: {'; '.join(errors)}")


class InvalidTransition(PipelineError):
    """Task status change not allowed by the task lifecycle."""


class NotFound(PipelineError):
    """Referenced task or review item does not exist."""
