"""
Exception types raised by the upload pipeline.

Every error carries a machine-readable code. The text shown to users for a
failed upload always comes from ERROR_MESSAGES, never from the backend.
"""

from typing import Any, Dict, Optional

ERROR_MESSAGES: Dict[str, str] = {
    "FILE_TOO_LARGE": "File exceeds your plan's size limit",
    "EMPTY_FILE": "File is empty",
    "BLOCKED_FILE_TYPE": "This file type is not allowed for security reasons",
    "INVALID_FILE_TYPE": "This file type is not accepted here",
    "VALIDATION_ERROR": "File could not be validated",
    "MISSING_UPLOADER_NAME": "Please enter your name before uploading",
    "QUOTA_EXCEEDED": "Storage limit reached",
    "LINK_UNAVAILABLE": "This upload link is no longer accepting files",
    "WORKSPACE_NOT_FOUND": "The destination workspace could not be found",
    "INVALID_CONTEXT": "Upload destination is invalid",
    "STORAGE_ERROR": "Upload failed, please try again",
    "SESSION_EXPIRED": "Upload session expired, please try again",
    "SESSION_CONFLICT": "Another upload of this file is already in progress",
    "VERIFICATION_FAILED": "Upload could not be verified, please try again",
    "DATABASE_ERROR": "File was stored but could not be saved to your files",
    "CANCELLED": "Upload cancelled",
    "RETRY_LIMIT_EXCEEDED": "Upload failed after several attempts",
    "INVALID_STATE": "This upload cannot be changed in its current state",
    "INTERNAL_ERROR": "Something went wrong, please try again later",
}


def user_message(code: str) -> str:
    """Return the catalog message for an error code."""
    return ERROR_MESSAGES.get(code, ERROR_MESSAGES["INTERNAL_ERROR"])


class UploadError(Exception):
    """Base class for upload failures."""

    code = "INTERNAL_ERROR"
    retryable = False

    def __init__(self, message: Optional[str] = None, code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        if code:
            self.code = code
        self.message = message or user_message(self.code)
        self.details = details or {}
        super().__init__(self.message)

    @property
    def user_message(self) -> str:
        return user_message(self.code)


class ValidationError(UploadError):
    """Pre-transfer problem the user can correct (size, type, name)."""

    code = "VALIDATION_ERROR"


class QuotaExceededError(UploadError):
    """The upload would exceed the storage allotment, or the allotment could not be checked."""

    code = "QUOTA_EXCEEDED"


class StorageError(UploadError):
    """Backend unreachable, session expired or verification mismatch."""

    code = "STORAGE_ERROR"
    retryable = True


class MetadataCommitError(UploadError):
    """
    The object was stored but its database row was not written.

    The stored object is left in place and becomes an orphan for the
    reconciler to find; storage_path and bucket identify it.
    """

    code = "DATABASE_ERROR"

    def __init__(self, message: Optional[str] = None, storage_path: str = "", bucket: str = "", **kwargs):
        super().__init__(message, **kwargs)
        self.storage_path = storage_path
        self.bucket = bucket
        self.details.setdefault("storage_path", storage_path)
        self.details.setdefault("bucket", bucket)


class UploadCancelledError(UploadError):
    """Raised inside the pipeline once the user has cancelled."""

    code = "CANCELLED"


class InvalidTransitionError(UploadError):
    """A status change not allowed by the upload state machine."""

    code = "INVALID_STATE"
