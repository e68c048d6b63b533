"""
Error taxonomy for modelkeeper.
Every failure raised by the store, the downloaders or the catalog is a
ModelKeeperError so callers (and the API layer) can handle them uniformly.
"""

from typing import Optional


class ModelKeeperError(Exception):
    """Base class for all modelkeeper errors."""

    code = "error"
    status_code = 500
    recovery_suggestion = "Try the operation again."

    def __init__(self, message: str, model_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.model_id = model_id

    def to_dict(self) -> dict:
        return {
            "error": self.code,
            "detail": self.message,
            "model_id": self.model_id,
            "suggestion": self.recovery_suggestion,
        }


class NotFoundError(ModelKeeperError):
    """A file, record or history entry does not exist."""

    code = "not_found"
    status_code = 404
    recovery_suggestion = (
        "Check that the model exists, or download it from the catalog."
    )


class AlreadyExistsError(ModelKeeperError):
    """The operation would duplicate something that already exists."""

    code = "already_exists"
    status_code = 409
    recovery_suggestion = "No action needed."


class AlreadyLocalError(AlreadyExistsError):
    code = "already_local"


class AlreadyInProgressError(AlreadyExistsError):
    code = "already_in_progress"
    recovery_suggestion = "Wait for the running download or cancel it first."


class ConcurrencyLimitReachedError(ModelKeeperError):
    code = "concurrency_limit_reached"
    status_code = 429
    recovery_suggestion = "Wait for a running download to finish."


class NetworkError(ModelKeeperError):
    """Transient transport failure. Retrying usually helps."""

    code = "network_error"
    status_code = 502
    recovery_suggestion = "Check your internet connection and retry."


class StorageError(ModelKeeperError):
    code = "storage_error"
    status_code = 500
    recovery_suggestion = "Check available disk space and file permissions."


class IntegrityError(ModelKeeperError):
    code = "integrity_error"
    status_code = 422
    recovery_suggestion = "Delete the model and download it again."


class ValidationError(ModelKeeperError):
    """Malformed input."""

    code = "validation_error"
    status_code = 400
    recovery_suggestion = "Correct the input and try again."


class NoDownloadURLError(ValidationError):
    code = "no_download_url"


class NotFailedError(ValidationError):
    code = "not_failed"
    recovery_suggestion = "Only failed downloads can be retried; start a new download instead."


class DownloadCancelledError(ModelKeeperError):
    code = "cancelled"
    status_code = 499
    recovery_suggestion = "Start the download again to resume from the partial file."
