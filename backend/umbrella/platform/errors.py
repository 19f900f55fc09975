"""
Application error taxonomy.

Every error carries an HTTP status, a stable machine-readable error_code and
optional details for client-side messaging. Handlers raise these; the
exception handlers registered by register_exception_handlers() turn them into
JSON responses.

Taxonomy:
- ValidationError (400): malformed caller input
- AuthenticationFailed (401): missing, invalid or expired credential
- AuthorizationFailed (403): valid credential, insufficient role
- NotFound (404): entity absent where presence was required
- DuplicateIdentity (409): internal only, always converted into a re-read
- ConfigurationError (500): operator-provided secret missing
- UpstreamError (502): identity provider unavailable or erroring

SECURITY: 5xx messages are replaced with a generic message in responses;
the original text is only logged.
"""

import logging
from typing import Optional, Dict, Any

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)

SIGN_IN_AGAIN_MESSAGE = "Your session is invalid or has expired. Please sign in again."
GENERIC_SERVER_ERROR_MESSAGE = "An internal error occurred. Please try again later."


class AppError(Exception):
    """Base class for errors that map to an HTTP response."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_code: str = "internal_error"

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.details = details
        if error_code:
            self.error_code = error_code

    def public_message(self) -> str:
        """Message safe to return to clients."""
        if self.status_code >= 500:
            return GENERIC_SERVER_ERROR_MESSAGE
        return self.message


class ValidationError(AppError):
    status_code = status.HTTP_400_BAD_REQUEST
    error_code = "validation_error"


class AuthenticationFailed(AppError):
    status_code = status.HTTP_401_UNAUTHORIZED
    error_code = "authentication_failed"

    def __init__(
        self,
        message: str = SIGN_IN_AGAIN_MESSAGE,
        details: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None,
    ):
        super().__init__(message, details=details, error_code=error_code)


class AuthorizationFailed(AppError):
    status_code = status.HTTP_403_FORBIDDEN
    error_code = "authorization_failed"


class NotFound(AppError):
    status_code = status.HTTP_404_NOT_FOUND
    error_code = "not_found"


class DuplicateIdentity(AppError):
    """
    Unique constraint violation on user creation.

    Callers treat this as "someone else already created it": re-read and
    use the existing row. It is never returned to a client.
    """
    status_code = status.HTTP_409_CONFLICT
    error_code = "duplicate_identity"


class IdentityConflict(AppError):
    """
    The (provider, subject) pair already belongs to a different external id.

    Not a race: the two identities really collide, so there is no row to
    converge on.
    """
    status_code = status.HTTP_409_CONFLICT
    error_code = "identity_conflict"


class ConfigurationError(AppError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_code = "configuration_error"


class UpstreamError(AppError):
    status_code = status.HTTP_502_BAD_GATEWAY
    error_code = "upstream_error"


class MissingPrimaryEmail(UpstreamError):
    """Provider user record has no email matching its primary email id."""
    error_code = "missing_primary_email"


def _request_id(request: Request) -> Optional[str]:
    return getattr(request.state, "request_id", None)


def build_error_body(
    error_code: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
    request_id: Optional[str] = None,
) -> Dict[str, Any]:
    body: Dict[str, Any] = {"detail": message, "error_code": error_code}
    if details:
        body["details"] = details
    if request_id:
        body["request_id"] = request_id
    return body


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """Convert AppError into a JSON response with minimal detail."""
    request_id = _request_id(request)
    log_extra = {
        "error_code": exc.error_code,
        "status_code": exc.status_code,
        "path": request.url.path,
        "request_id": request_id,
    }
    if exc.status_code >= 500:
        logger.error(f"Request failed: {exc.message}", extra=log_extra)
    else:
        logger.info(f"Request rejected: {exc.message}", extra=log_extra)

    headers = None
    if exc.status_code == status.HTTP_401_UNAUTHORIZED:
        headers = {"WWW-Authenticate": "Bearer"}

    details = exc.details if exc.status_code < 500 else None
    return JSONResponse(
        status_code=exc.status_code,
        content=build_error_body(exc.error_code, exc.public_message(), details, request_id),
        headers=headers,
    )


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Render FastAPI body/query validation failures as 400 validation_error."""
    fields = [
        ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        for error in exc.errors()
    ]
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=build_error_body(
            "validation_error",
            "Invalid request",
            details={"fields": fields},
            request_id=_request_id(request),
        ),
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unhandled exceptions with proper logging."""
    request_id = _request_id(request)
    logger.error(
        "Unhandled exception",
        extra={
            "error": str(exc),
            "error_type": type(exc).__name__,
            "path": request.url.path,
            "request_id": request_id,
        },
        exc_info=True,
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=build_error_body(
            "internal_error", "An unexpected error occurred", request_id=request_id
        ),
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Install the AppError and catch-all handlers on an application."""
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
