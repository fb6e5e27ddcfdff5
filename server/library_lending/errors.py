"""
Error taxonomy for the lending service.

Every error carries the HTTP status and error code it maps to, so the
FastAPI layer can render any of them with a single exception handler.
"""

from typing import Optional


class ErrorCode:
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    INVALID_STATE = "INVALID_STATE"
    NO_FACE_DETECTED = "NO_FACE_DETECTED"
    INVALID_IMAGE = "INVALID_IMAGE"
    MODEL_LOAD_ERROR = "MODEL_LOAD_ERROR"
    DATABASE_ERROR = "DATABASE_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    FACE_MISMATCH = "FACE_MISMATCH"
    NEEDS_MANUAL_REVIEW = "NEEDS_MANUAL_REVIEW"


class LendingError(Exception):
    """Base class for errors reported to callers of the lending service."""
    status_code = 500
    error_code = ErrorCode.DATABASE_ERROR

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(LendingError):
    """Missing or malformed input."""
    status_code = 400
    error_code = ErrorCode.VALIDATION_ERROR


class NotFoundError(LendingError):
    """No matching record (usually: no active loan for the pair)."""
    status_code = 404
    error_code = ErrorCode.NOT_FOUND


class InvalidStateError(LendingError):
    """Transition not allowed from the record's current state."""
    status_code = 409
    error_code = ErrorCode.INVALID_STATE


class ExtractionError(LendingError):
    """A descriptor could not be derived from a decodable image."""
    status_code = 422
    error_code = ErrorCode.NO_FACE_DETECTED


class NoFaceDetected(ExtractionError):
    """All detection strategies were exhausted without finding a face."""
    error_code = ErrorCode.NO_FACE_DETECTED


class InvalidImageError(ValidationError):
    """Image payload could not be decoded. Retrying cannot fix it."""
    error_code = ErrorCode.INVALID_IMAGE


class ModelLoadError(LendingError):
    """Biometric model weights are unavailable from every source."""
    status_code = 503
    error_code = ErrorCode.MODEL_LOAD_ERROR


class PersistenceError(LendingError):
    """The record store rejected a read or write."""
    status_code = 500
    error_code = ErrorCode.DATABASE_ERROR


class ServiceUnavailable(LendingError):
    """The record store has not been initialized yet."""
    status_code = 503
    error_code = ErrorCode.SERVICE_UNAVAILABLE
