"""Error taxonomy shared by the stores, pipelines and the API layer.

Each error carries the HTTP status it maps to and whether the caller may
retry the same request unchanged.
"""
from __future__ import annotations

from typing import Any


class MemoryBookError(Exception):
    """Base class for all domain errors."""
    status_code: int = 500
    error_code: str = "internal_error"
    retryable: bool = False

    def __init__(self, message: str, *, details: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(MemoryBookError):
    """Malformed or missing required input. Raised before any side effect."""
    status_code = 400
    error_code = "validation_error"


class StorageError(MemoryBookError):
    """The object store failed or was unreachable."""
    status_code = 502
    error_code = "storage_error"
    retryable = True


class UploadError(StorageError):
    """The object store rejected a write."""
    error_code = "upload_error"


class ObjectExistsError(UploadError):
    """The target path is already taken; uploads never overwrite."""
    error_code = "object_exists"
    retryable = False


class MediaTimeoutError(StorageError):
    """A storage call exceeded its time budget."""
    status_code = 504
    error_code = "storage_timeout"


class NotFoundError(MemoryBookError):
    """Referenced record or media path is absent."""
    status_code = 404
    error_code = "not_found"


class ConflictError(MemoryBookError):
    """Duplicate identifier on insert."""
    status_code = 409
    error_code = "conflict"


class AuthorizationError(MemoryBookError):
    """Caller lacks the required role."""
    status_code = 403
    error_code = "forbidden"


class InternalError(MemoryBookError):
    """Unexpected failure anywhere in the pipeline."""
    status_code = 500
    error_code = "internal_error"


class SubmissionFailedError(InternalError):
    """Upload or insert failed after validation; uploads were rolled back.

    The client should resubmit the whole multipart payload.
    """
    error_code = "submission_failed"
    retryable = True
