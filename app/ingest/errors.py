"""
Error taxonomy for the ingestion pipeline.

    PipelineError (base)
    ├── InvalidInput
    ├── IncompleteUpload
    ├── NotFound
    ├── JobAlreadyFinalized
    ├── InvalidTransition
    ├── UploadExpired
    ├── ProcessingFailed
    └── Timeout

Every error carries a machine-readable error_code and an HTTP status so the API
layer can render it without knowing each subclass.
"""
from typing import Any, Dict, Optional


class PipelineError(Exception):
    """Base error for chunk, job and processing failures.
    Why available: One type for the API exception handler to catch; subclasses only pick a code and status."""

    error_code = "pipeline_error"
    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Serializable error body: detail, errorCode and optional details."""
        body: Dict[str, Any] = {"detail": self.message, "errorCode": self.error_code}
        if self.details:
            body["details"] = self.details
        return body


class InvalidInput(PipelineError):
    error_code = "invalid_input"
    status_code = 400


class IncompleteUpload(PipelineError):
    error_code = "incomplete_upload"
    status_code = 400


class NotFound(PipelineError):
    error_code = "not_found"
    status_code = 404


class JobAlreadyFinalized(PipelineError):
    error_code = "job_already_finalized"
    status_code = 409


class InvalidTransition(PipelineError):
    error_code = "invalid_transition"
    status_code = 409


class UploadExpired(PipelineError):
    error_code = "upload_expired"
    status_code = 410


class ProcessingFailed(PipelineError):
    """Aggregation or enrichment raised. The underlying message is kept in details["cause"]."""

    error_code = "processing_failed"
    status_code = 500

    def __init__(self, message: str, cause: Optional[BaseException] = None, details: Optional[Dict[str, Any]] = None):
        details = dict(details or {})
        if cause is not None:
            details.setdefault("cause", type(cause).__name__)
        super().__init__(message, details)
        self.cause = cause


class Timeout(PipelineError):
    error_code = "timeout"
    status_code = 504
