"""
Standardized error response models for Thread Relay.

Provides consistent error formatting for JSON responses and for the
``error`` event emitted on an open stream.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ErrorCode(str, Enum):
    """Closed set of wire error codes. Clients switch on these values."""

    # Validation
    INVALID_ID_FORMAT = "INVALID_ID_FORMAT"
    MESSAGE_TOO_LONG = "MESSAGE_TOO_LONG"
    FIELD_REQUIRED = "FIELD_REQUIRED"
    UNSUPPORTED_IMAGE_TYPE = "UNSUPPORTED_IMAGE_TYPE"
    IMAGE_TOO_LARGE = "IMAGE_TOO_LARGE"

    # Limits
    MSG_LIMIT_REACHED = "MSG_LIMIT_REACHED"

    # Conversation lookup
    THREAD_NOT_FOUND = "THREAD_NOT_FOUND"
    FORBIDDEN = "FORBIDDEN"

    # Persistence
    DATABASE_ERROR = "DATABASE_ERROR"

    # AI thread provider
    OPENAI_TIMEOUT = "OPENAI_TIMEOUT"
    OPENAI_API_ERROR = "OPENAI_API_ERROR"

    # Object storage
    S3_UPLOAD_FAILED = "S3_UPLOAD_FAILED"
    S3_TIMEOUT = "S3_TIMEOUT"

    # Catch-all
    INTERNAL_ERROR = "INTERNAL_ERROR"


class ErrorDetail(BaseModel):
    """Detailed information about a specific validation or sub-error."""

    field: str | None = None
    message: str
    code: str | None = None


class ErrorResponse(BaseModel):
    """Standardized error response model for JSON endpoints.

    Example response:
    {
        "error": {
            "code": "THREAD_NOT_FOUND",
            "message": "Thread not found",
            "request_id": "req_abc123",
            "timestamp": "2025-01-15T10:30:00Z",
            "path": "/api/fetch-messages"
        }
    }
    """

    code: ErrorCode
    message: str
    request_id: str | None = None
    timestamp: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    details: list[ErrorDetail] | None = None
    path: str | None = None
    # Debug info - only included in development mode
    debug: dict[str, Any] | None = Field(default=None, exclude=True)

    def to_dict(self, include_debug: bool = False) -> dict[str, Any]:
        """Convert to dictionary for JSON response."""
        data = self.model_dump(mode="json", exclude_none=True)
        if include_debug and self.debug:
            data["debug"] = self.debug
        return {"error": data}


class StreamErrorPayload(BaseModel):
    """Data of the ``error`` event sent on an already-open stream.

    Example:
    {
        "code": "OPENAI_TIMEOUT",
        "message": "The assistant took too long to respond",
        "requestId": "req_abc123",
        "timestamp": "2025-01-15T10:30:00+00:00"
    }
    """

    model_config = ConfigDict(populate_by_name=True)

    code: ErrorCode
    message: str
    request_id: str | None = Field(default=None, serialization_alias="requestId")
    timestamp: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


# HTTP status code mappings for error codes
ERROR_CODE_TO_STATUS: dict[ErrorCode, int] = {
    # 400 Bad Request
    ErrorCode.INVALID_ID_FORMAT: 400,
    ErrorCode.MESSAGE_TOO_LONG: 400,
    ErrorCode.FIELD_REQUIRED: 400,
    ErrorCode.UNSUPPORTED_IMAGE_TYPE: 400,
    ErrorCode.IMAGE_TOO_LARGE: 400,
    # 403 Forbidden
    ErrorCode.FORBIDDEN: 403,
    # 404 Not Found
    ErrorCode.THREAD_NOT_FOUND: 404,
    # 429 Too Many Requests
    ErrorCode.MSG_LIMIT_REACHED: 429,
    # 500 Internal Server Error
    ErrorCode.DATABASE_ERROR: 500,
    ErrorCode.INTERNAL_ERROR: 500,
    # 502 Bad Gateway
    ErrorCode.OPENAI_API_ERROR: 502,
    ErrorCode.S3_UPLOAD_FAILED: 502,
    # 504 Gateway Timeout
    ErrorCode.OPENAI_TIMEOUT: 504,
    ErrorCode.S3_TIMEOUT: 504,
}


def get_status_code(error_code: ErrorCode) -> int:
    """Get HTTP status code for an error code."""
    return ERROR_CODE_TO_STATUS.get(error_code, 500)


__all__ = [
    "ERROR_CODE_TO_STATUS",
    "ErrorCode",
    "ErrorDetail",
    "ErrorResponse",
    "StreamErrorPayload",
    "get_status_code",
]
