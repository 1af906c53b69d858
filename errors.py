"""
Error taxonomy shared by the upload, job and rate-limiting layers.

Every PipelineError carries a stable machine-readable ``code`` and the HTTP
status the API answers with. Collaborator errors (ExtractionError,
ClassificationError) are raised by the recognition / classification engines
and translated by the job pipeline.
"""

from typing import Optional


class PipelineError(Exception):
    """Base class for errors surfaced to API callers."""

    code = "INTERNAL"
    status_code = 500
    retryable = False

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "retryable": self.retryable}


class InvalidInput(PipelineError):
    code = "INVALID_INPUT"
    status_code = 400


class ChunkOutOfRange(InvalidInput):
    code = "CHUNK_OUT_OF_RANGE"


class NotFound(PipelineError):
    code = "NOT_FOUND"
    status_code = 404


class SessionNotFound(NotFound):
    code = "SESSION_NOT_FOUND"


class JobNotFound(NotFound):
    code = "JOB_NOT_FOUND"


class InvalidState(PipelineError):
    code = "INVALID_STATE"
    status_code = 409


class SessionNotUploading(InvalidState):
    """Chunk sent to a session that already completed or failed."""

    code = "INVALID_SESSION_STATE"
    status_code = 400


class SessionNotReady(InvalidState):
    """Processing requested for a session whose upload is not complete."""

    code = "SESSION_NOT_READY"
    status_code = 404


class IncompleteUpload(PipelineError):
    code = "INCOMPLETE_UPLOAD"
    status_code = 400


class ExtractionFailed(PipelineError):
    code = "EXTRACTION_FAILED"
    status_code = 422
    retryable = True


class OptimizationFailed(PipelineError):
    code = "OPTIMIZATION_FAILED"
    status_code = 422
    retryable = True


class RateLimited(PipelineError):
    code = "RATE_LIMITED"
    status_code = 429
    retryable = True

    def __init__(self, message: str, retry_after_ms: int, decision=None):
        super().__init__(message)
        self.retry_after_ms = retry_after_ms
        self.decision = decision

    @property
    def retry_after_seconds(self) -> int:
        return max(1, -(-self.retry_after_ms // 1000))


class ResourceExhausted(PipelineError):
    code = "RESOURCE_EXHAUSTED"
    status_code = 503
    retryable = True


class Internal(PipelineError):
    code = "INTERNAL"
    status_code = 500
    retryable = True


# --- Collaborator errors ---

class ExtractionError(Exception):
    """Raised by a TextExtractor when recognition fails."""


class ClassificationError(Exception):
    """Raised by a classifier when structured fields cannot be produced."""
