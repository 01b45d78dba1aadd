"""
BeatMarket Error Taxonomy

Every failure the services raise carries a machine-readable ``kind`` and a
human-readable message, so callers branch on the kind rather than on exception
text. The HTTP layer maps each kind to a status code through
``register_exception_handlers``.

Kinds:
- validation_error: bad input, never retried (400)
- auth_error: missing or invalid identity (401)
- not_found / forbidden: unknown subject or not owned by the caller (404)
- insufficient_funds: wallet balance below the price (402)
- conflict: state does not allow the operation (409)
- upstream_error: storage, transcoding, ledger or payment provider failure (5xx)
"""

import logging

from enum import Enum
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse


logger = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    """Machine-readable error categories surfaced to API clients."""

    VALIDATION = "validation_error"
    AUTH = "auth_error"
    NOT_FOUND = "not_found"
    FORBIDDEN = "forbidden"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    CONFLICT = "conflict"
    UPSTREAM = "upstream_error"


class BeatMarketError(Exception):
    """
    Base class for all domain errors.

    Subclasses fix ``kind`` and ``status_code``; instances carry the message
    and optional structured ``details`` that are merged into the error body.

    Example:
        >>> error = NotFoundError("Upload not found", upload_id="abc")
        >>> error.to_dict()["error"]
        'not_found'
    """

    kind: ErrorKind = ErrorKind.UPSTREAM
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        """Render the error as the JSON body returned to clients."""
        return {
            "error": self.kind.value,
            "message": self.message,
            "statusCode": self.status_code,
            **self.details,
        }


class ValidationError(BeatMarketError):
    """Raised when request input is missing or malformed."""

    kind = ErrorKind.VALIDATION
    status_code = status.HTTP_400_BAD_REQUEST


class AuthError(BeatMarketError):
    """Raised when the caller has no valid identity."""

    kind = ErrorKind.AUTH
    status_code = status.HTTP_401_UNAUTHORIZED


class NotFoundError(BeatMarketError):
    """Raised when the requested subject does not exist."""

    kind = ErrorKind.NOT_FOUND
    status_code = status.HTTP_404_NOT_FOUND


class ForbiddenError(BeatMarketError):
    """Raised when the subject exists but belongs to someone else. Reported as 404."""

    kind = ErrorKind.FORBIDDEN
    status_code = status.HTTP_404_NOT_FOUND


class InsufficientFundsError(BeatMarketError):
    """Raised when a wallet cannot cover a spend."""

    kind = ErrorKind.INSUFFICIENT_FUNDS
    status_code = status.HTTP_402_PAYMENT_REQUIRED

    def __init__(self, credits_needed: int, credits_available: int, message: str | None = None):
        super().__init__(
            message or "Insufficient credits",
            creditsNeeded=credits_needed,
            creditsAvailable=credits_available,
        )
        self.credits_needed = credits_needed
        self.credits_available = credits_available


class ConflictError(BeatMarketError):
    """Raised when the current state of a record does not allow the operation."""

    kind = ErrorKind.CONFLICT
    status_code = status.HTTP_409_CONFLICT


class UpstreamError(BeatMarketError):
    """Raised when a collaborator (storage, ffmpeg, database, payments) fails."""

    kind = ErrorKind.UPSTREAM
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


class StorageError(UpstreamError):
    """Object storage request failed."""


class TranscodeError(UpstreamError):
    """Preview derivation failed during finalize."""


class LedgerError(UpstreamError):
    """A ledger write could not be completed."""


class PaymentProviderError(UpstreamError):
    """The payment provider rejected or failed a request."""

    status_code = status.HTTP_502_BAD_GATEWAY


# =============================================================================
# FastAPI Integration
# =============================================================================


async def beatmarket_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Render a BeatMarketError as its JSON body and status code."""
    if not isinstance(exc, BeatMarketError):
        raise exc

    is_server_error = exc.status_code >= status.HTTP_500_INTERNAL_SERVER_ERROR
    log_level = logging.ERROR if is_server_error else logging.INFO
    logger.log(
        log_level,
        "%s %s failed with %s: %s",
        request.method,
        request.url.path,
        exc.kind.value,
        exc.message,
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def request_validation_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Render FastAPI request validation failures as 400 validation errors."""
    errors = exc.errors() if isinstance(exc, RequestValidationError) else []
    fields = []
    for error in errors:
        field = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        if field:
            fields.append(field)
    logger.info("Request validation failed on %s: %s", request.url.path, fields)

    message = f"Invalid request: {', '.join(fields)}" if fields else "Invalid request"
    error = ValidationError(message, fields=fields)
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


def register_exception_handlers(app: FastAPI) -> None:
    """Attach the domain and request-validation error handlers to an application."""
    app.add_exception_handler(BeatMarketError, beatmarket_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_error_handler)
