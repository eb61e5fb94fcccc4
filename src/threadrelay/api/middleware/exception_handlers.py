"""
Global exception handlers for Thread Relay.

Provides centralized error handling with consistent response formatting,
localized messages, proper logging, and request context integration.
Errors raised after a stream has opened never reach these handlers; they
are converted with ``to_stream_error`` and sent in-band instead.
"""

from __future__ import annotations

import traceback

from typing import Any

import asyncpg

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from openai import APIError as OpenAIAPIError, APITimeoutError as OpenAITimeoutError
from pydantic import ValidationError

from threadrelay.api.middleware.request_context import (
    get_locale,
    get_request_context,
    get_request_id,
    normalize_locale,
)
from threadrelay.core.constants import get_settings
from threadrelay.core.messages import get_message
from threadrelay.models.error_models import (
    ErrorCode,
    ErrorDetail,
    ErrorResponse,
    StreamErrorPayload,
    get_status_code,
)
from threadrelay.utils.logger import logger


class AppException(Exception):
    """Base application exception with error code support.

    The client-facing message is rendered from the code and params in the
    caller's locale when the error is reported.

    Example:
        raise AppException(ErrorCode.MESSAGE_TOO_LONG, params={"max": 1000})
    """

    def __init__(
        self,
        code: ErrorCode,
        params: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ):
        self.code = code
        self.params = params or {}
        self.cause = cause
        super().__init__(f"{code.value}: {cause}" if cause else code.value)

    @property
    def status_code(self) -> int:
        return get_status_code(self.code)

    def message_for(self, locale: str) -> str:
        return get_message(self.code.value, self.params, locale)


class ValidationException(AppException):
    """Malformed or out-of-range client input (400)."""


class ConversationNotFoundError(AppException):
    def __init__(self, conversation_id: str | None = None):
        super().__init__(ErrorCode.THREAD_NOT_FOUND, params={"conversation_id": conversation_id})
        self.conversation_id = conversation_id


class ForbiddenError(AppException):
    def __init__(self, conversation_id: str | None = None):
        super().__init__(ErrorCode.FORBIDDEN, params={"conversation_id": conversation_id})


class MessageLimitError(AppException):
    """Per-conversation user-message limit reached (429). Never retried."""

    def __init__(self, limit: int):
        super().__init__(ErrorCode.MSG_LIMIT_REACHED, params={"max": limit})
        self.limit = limit


class ProviderError(AppException):
    """AI thread provider failure or timeout."""

    def __init__(self, code: ErrorCode = ErrorCode.OPENAI_API_ERROR, cause: Exception | None = None):
        super().__init__(code, cause=cause)


class StorageError(AppException):
    """Durable storage failure. Retryable from the batcher's point of view."""

    def __init__(self, cause: Exception | None = None):
        super().__init__(ErrorCode.DATABASE_ERROR, cause=cause)


class UploadError(AppException):
    """Object store upload failure or timeout."""

    def __init__(self, code: ErrorCode = ErrorCode.S3_UPLOAD_FAILED, cause: Exception | None = None):
        super().__init__(code, cause=cause)


def classify_exception(exc: BaseException) -> ErrorCode:
    """Map any exception to the wire error code that describes it."""
    if isinstance(exc, AppException):
        return exc.code
    if isinstance(exc, OpenAITimeoutError | TimeoutError):
        return ErrorCode.OPENAI_TIMEOUT
    if isinstance(exc, OpenAIAPIError):
        return ErrorCode.OPENAI_API_ERROR
    if isinstance(exc, asyncpg.PostgresError):
        return ErrorCode.DATABASE_ERROR
    return ErrorCode.INTERNAL_ERROR


def to_stream_error(exc: BaseException, request_id: str | None = None, locale: str | None = None) -> StreamErrorPayload:
    """Build the sanitized payload of an in-band ``error`` event."""
    locale = locale or get_locale()
    if isinstance(exc, AppException):
        message = exc.message_for(locale)
    else:
        message = get_message(classify_exception(exc).value, None, locale)
    if get_settings().debug and not isinstance(exc, AppException):
        message = f"{message} ({type(exc).__name__}: {exc})"
    return StreamErrorPayload(
        code=classify_exception(exc),
        message=message,
        request_id=request_id or get_request_id(),
    )


def _create_error_response(
    code: ErrorCode,
    message: str,
    request: Request | None = None,
    details: list[ErrorDetail] | None = None,
    debug_info: dict[str, Any] | None = None,
) -> ErrorResponse:
    """Create a standardized error response."""
    return ErrorResponse(
        code=code,
        message=message,
        request_id=get_request_id(),
        path=request.url.path if request else None,
        details=details,
        debug=debug_info,
    )


def _log_error(error: Exception, code: ErrorCode, status_code: int) -> None:
    """Log error with appropriate level and context."""
    ctx = get_request_context()
    log_context = ctx.to_log_context() if ctx else {}
    log_context["error_code"] = code.value
    log_context["status_code"] = status_code

    if status_code >= 500:
        logger.error(f"Server error: {code.value} - {error}", exc_info=True, **log_context)
    elif status_code >= 400:
        logger.warning(f"Client error: {code.value} - {error}", **log_context)


def _json(status_code: int, response: ErrorResponse) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=response.to_dict(include_debug=get_settings().debug))


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """Handle application-specific exceptions."""
    status_code = exc.status_code

    debug_info = None
    if get_settings().debug:
        debug_info = {
            "exception_type": type(exc).__name__,
            "cause": str(exc.cause) if exc.cause else None,
        }

    error_response = _create_error_response(
        code=exc.code,
        message=exc.message_for(get_locale()),
        request=request,
        debug_info=debug_info,
    )
    _log_error(exc, exc.code, status_code)
    return _json(status_code, error_response)


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle FastAPI HTTPException with consistent formatting."""
    status_to_code = {
        400: ErrorCode.FIELD_REQUIRED,
        403: ErrorCode.FORBIDDEN,
        404: ErrorCode.THREAD_NOT_FOUND,
        422: ErrorCode.FIELD_REQUIRED,
        429: ErrorCode.MSG_LIMIT_REACHED,
    }
    code = status_to_code.get(exc.status_code, ErrorCode.INTERNAL_ERROR)
    message = exc.detail if isinstance(exc.detail, str) else str(exc.detail)

    error_response = _create_error_response(code=code, message=message, request=request)
    _log_error(exc, code, exc.status_code)
    return _json(exc.status_code, error_response)


# pydantic error types that map onto a specific wire code
_PYDANTIC_TYPE_TO_CODE: dict[str, ErrorCode] = {
    "missing": ErrorCode.FIELD_REQUIRED,
    "string_too_short": ErrorCode.FIELD_REQUIRED,
    "string_too_long": ErrorCode.MESSAGE_TOO_LONG,
    "string_pattern_mismatch": ErrorCode.INVALID_ID_FORMAT,
}


def _validation_details(errors: list[Any]) -> tuple[ErrorCode, list[ErrorDetail]]:
    """Translate pydantic errors, using the first error to choose the code."""
    details = []
    code: ErrorCode | None = None
    for error in errors:
        error_type = error["type"]
        mapped = _PYDANTIC_TYPE_TO_CODE.get(error_type)
        if mapped is None and error_type in ErrorCode.__members__:
            mapped = ErrorCode(error_type)
        code = code or mapped
        details.append(
            ErrorDetail(
                field=".".join(str(loc) for loc in error["loc"] if loc != "body"),
                message=error["msg"],
                code=(mapped or ErrorCode.FIELD_REQUIRED).value,
            )
        )
    return code or ErrorCode.FIELD_REQUIRED, details


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handle request body validation errors as 400s with the matching wire code."""
    code, details = _validation_details(list(exc.errors()))
    field = details[0].field if details else None
    params = {"field": field, "max": get_settings().max_message_length}

    # The route never ran, so a body-level language has not been applied yet
    locale = get_locale()
    if isinstance(exc.body, dict) and isinstance(exc.body.get("language"), str):
        locale = normalize_locale(exc.body["language"]) or locale

    error_response = _create_error_response(
        code=code,
        message=get_message(code.value, params, locale),
        request=request,
        details=details,
    )
    status_code = get_status_code(code)
    _log_error(exc, code, status_code)
    return _json(status_code, error_response)


async def pydantic_exception_handler(request: Request, exc: ValidationError) -> JSONResponse:
    """Handle Pydantic ValidationError raised while building internal models."""
    _, details = _validation_details(list(exc.errors()))
    error_response = _create_error_response(
        code=ErrorCode.INTERNAL_ERROR,
        message=get_message(ErrorCode.INTERNAL_ERROR.value, None, get_locale()),
        request=request,
        details=details,
    )
    _log_error(exc, ErrorCode.INTERNAL_ERROR, 500)
    return _json(500, error_response)


async def openai_exception_handler(request: Request, exc: OpenAIAPIError) -> JSONResponse:
    """Handle OpenAI API errors that escaped the provider adapter."""
    code = classify_exception(exc)
    status_code = get_status_code(code)

    debug_info = None
    if get_settings().debug:
        debug_info = {
            "openai_error_type": type(exc).__name__,
            "openai_error_code": getattr(exc, "code", None),
        }

    error_response = _create_error_response(
        code=code,
        message=get_message(code.value, None, get_locale()),
        request=request,
        debug_info=debug_info,
    )
    _log_error(exc, code, status_code)
    return _json(status_code, error_response)


async def asyncpg_exception_handler(request: Request, exc: asyncpg.PostgresError) -> JSONResponse:
    """Handle PostgreSQL database errors."""
    debug_info = None
    if get_settings().debug:
        debug_info = {
            "pg_error_code": getattr(exc, "sqlstate", None),
            "pg_error_class": type(exc).__name__,
        }

    error_response = _create_error_response(
        code=ErrorCode.DATABASE_ERROR,
        message=get_message(ErrorCode.DATABASE_ERROR.value, None, get_locale()),
        request=request,
        debug_info=debug_info,
    )
    _log_error(exc, ErrorCode.DATABASE_ERROR, 500)
    return _json(500, error_response)


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions with graceful degradation."""
    logger.error(
        f"Unhandled exception: {type(exc).__name__}: {exc}",
        exc_info=True,
        request_id=get_request_id(),
        path=request.url.path,
    )

    debug_info = None
    if get_settings().debug:
        debug_info = {
            "exception_type": type(exc).__name__,
            "exception_message": str(exc),
            "traceback": traceback.format_exc(),
        }

    error_response = _create_error_response(
        code=ErrorCode.INTERNAL_ERROR,
        message=get_message(ErrorCode.INTERNAL_ERROR.value, None, get_locale()),
        request=request,
        debug_info=debug_info,
    )
    return _json(500, error_response)


def register_exception_handlers(app: FastAPI) -> None:
    """Register all exception handlers with the FastAPI application."""
    # Starlette types handlers as taking Exception; narrower handlers are safe at runtime
    app.add_exception_handler(AppException, app_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(HTTPException, http_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, validation_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(ValidationError, pydantic_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(OpenAIAPIError, openai_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(asyncpg.PostgresError, asyncpg_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, generic_exception_handler)


__all__ = [
    "AppException",
    "ConversationNotFoundError",
    "ForbiddenError",
    "MessageLimitError",
    "ProviderError",
    "StorageError",
    "UploadError",
    "ValidationException",
    "app_exception_handler",
    "asyncpg_exception_handler",
    "classify_exception",
    "generic_exception_handler",
    "http_exception_handler",
    "openai_exception_handler",
    "pydantic_exception_handler",
    "register_exception_handlers",
    "to_stream_error",
    "validation_exception_handler",
]
