"""Exception hierarchy for the notes API.

Every error carries a machine-readable code, a human message and the HTTP
status it maps to. Services raise these; ``main.py`` renders them.
"""
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Machine-readable error identifiers."""

    INVALID_INPUT = "INVALID_INPUT"
    INVALID_JSON = "INVALID_JSON"
    INVALID_NOTE_ID = "INVALID_NOTE_ID"
    INVALID_PAGE = "INVALID_PAGE"
    INVALID_TIME_RANGE = "INVALID_TIME_RANGE"

    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"

    NOTE_NOT_FOUND = "NOTE_NOT_FOUND"
    FILE_NOT_FOUND = "FILE_NOT_FOUND"
    PUBLIC_LINK_NOT_FOUND = "PUBLIC_LINK_NOT_FOUND"

    RESOURCE_LOCKED = "RESOURCE_LOCKED"
    FILE_TOO_LARGE = "FILE_TOO_LARGE"
    UNSUPPORTED_TYPE = "UNSUPPORTED_TYPE"

    STORAGE_FAILED = "STORAGE_FAILED"
    DATABASE_ERROR = "DATABASE_ERROR"
    MEDIA_PROXY_NOT_CONFIGURED = "MEDIA_PROXY_NOT_CONFIGURED"
    MEDIA_PROXY_FAILED = "MEDIA_PROXY_FAILED"


class NotesError(Exception):
    """Base exception for all notes API errors.

    Attributes:
        message: Human-readable error message
        code: Machine-readable error code
        details: Additional context, only exposed in debug mode
    """

    status_code = 500
    default_code = ErrorCode.STORAGE_FAILED

    def __init__(
        self,
        message: str,
        code: Optional[ErrorCode] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self, include_details: bool = False) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "success": False,
            "error": {"code": self.code.value, "message": self.message},
        }
        if include_details and self.details:
            payload["details"] = self.details
        return payload


class ValidationError(NotesError):
    status_code = 400
    default_code = ErrorCode.INVALID_INPUT


class Unauthorized(NotesError):
    status_code = 401
    default_code = ErrorCode.UNAUTHORIZED


class Forbidden(NotesError):
    status_code = 403
    default_code = ErrorCode.FORBIDDEN


class NotFound(NotesError):
    status_code = 404
    default_code = ErrorCode.NOTE_NOT_FOUND


class Conflict(NotesError):
    status_code = 409
    default_code = ErrorCode.RESOURCE_LOCKED


class PayloadTooLarge(NotesError):
    status_code = 413
    default_code = ErrorCode.FILE_TOO_LARGE


class UnsupportedMediaType(NotesError):
    status_code = 415
    default_code = ErrorCode.UNSUPPORTED_TYPE


class StorageError(NotesError):
    """An underlying store (database, blob storage, key-value) failed."""

    status_code = 500
    default_code = ErrorCode.STORAGE_FAILED


class UpstreamError(NotesError):
    status_code = 502
    default_code = ErrorCode.MEDIA_PROXY_FAILED
