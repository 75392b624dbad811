"""Error taxonomy, classification and FastAPI handlers."""

import logging
import builtins
from enum import Enum
from typing import Optional
from uuid import uuid4

import httpx
import redis
import stripe
from fastapi import HTTPException
from fastapi.responses import JSONResponse
from sqlalchemy import exc as sa_exc
from starlette.requests import Request

from listos.core.logging import get_request_id


class ErrorKind(str, Enum):
    NETWORK = "network"
    AUTHENTICATION = "authentication"
    AUTHORIZATION = "authorization"
    VALIDATION = "validation"
    SERVER = "server"
    PAYMENT = "payment"
    QUOTA_EXCEEDED = "quota_exceeded"
    UNKNOWN = "unknown"

    @property
    def retryable(self) -> bool:
        return self in RETRYABLE_KINDS


RETRYABLE_KINDS = frozenset({ErrorKind.NETWORK, ErrorKind.SERVER})

USER_MESSAGES = {
    ErrorKind.NETWORK: "We could not reach the server. Check your connection and try again.",
    ErrorKind.AUTHENTICATION: "Your session has expired. Please sign in again.",
    ErrorKind.AUTHORIZATION: "You do not have permission to perform this action.",
    ErrorKind.VALIDATION: "The submitted data is not valid.",
    ErrorKind.SERVER: "We are having technical problems. Please try again in a few moments.",
    ErrorKind.PAYMENT: "There was a problem with your payment. Please check your card details.",
    ErrorKind.QUOTA_EXCEEDED: "You have used all of your free documents. Upgrade to Pro for unlimited access.",
    ErrorKind.UNKNOWN: "An unexpected error occurred. Please try again.",
}

# Client affordance rendered for each kind.
ACTIONS = {
    ErrorKind.NETWORK: "retry",
    ErrorKind.SERVER: "retry",
    ErrorKind.AUTHENTICATION: "login",
    ErrorKind.PAYMENT: "update_payment",
    ErrorKind.QUOTA_EXCEEDED: "upgrade",
}

KIND_STATUS = {
    ErrorKind.NETWORK: 503,
    ErrorKind.SERVER: 503,
    ErrorKind.AUTHENTICATION: 401,
    ErrorKind.AUTHORIZATION: 403,
    ErrorKind.VALIDATION: 400,
    ErrorKind.PAYMENT: 402,
    ErrorKind.QUOTA_EXCEEDED: 403,
    ErrorKind.UNKNOWN: 500,
}


class AppError(Exception):
    code = "app_error"
    status_code = 500
    kind = ErrorKind.UNKNOWN

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        kind: Optional[ErrorKind] = None,
        user_message: Optional[str] = None,
        request_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if kind:
            self.kind = kind
        if status_code:
            self.status_code = status_code
        self.user_message = user_message or USER_MESSAGES[self.kind]
        self.request_id = request_id

    @property
    def retryable(self) -> bool:
        return self.kind.retryable


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400
    kind = ErrorKind.VALIDATION


class AuthenticationError(AppError):
    code = "unauthenticated"
    status_code = 401
    kind = ErrorKind.AUTHENTICATION


class QuotaExceededError(AppError):
    code = "quota_exceeded"
    status_code = 403
    kind = ErrorKind.QUOTA_EXCEEDED


class ServiceUnavailableError(AppError):
    code = "service_unavailable"
    status_code = 503
    kind = ErrorKind.SERVER


class CorruptStateError(AppError):
    """Persisted state violates an engine invariant; never retried."""
    code = "corrupt_state"
    status_code = 500
    kind = ErrorKind.UNKNOWN


class ClassifiedError(AppError):
    """Terminal outcome of a retried operation, carrying its classification."""

    def __init__(self, message: str, *, kind: ErrorKind, attempts: int = 1, code: Optional[str] = None, operation: Optional[str] = None):
        super().__init__(
            message,
            code=code or kind.value,
            kind=kind,
            status_code=KIND_STATUS[kind],
        )
        self.attempts = attempts
        self.operation = operation


_STRIPE_KINDS = (
    (stripe.APIConnectionError, ErrorKind.NETWORK),
    (stripe.AuthenticationError, ErrorKind.AUTHENTICATION),
    (stripe.SignatureVerificationError, ErrorKind.AUTHENTICATION),
    (stripe.PermissionError, ErrorKind.AUTHORIZATION),
    (stripe.RateLimitError, ErrorKind.SERVER),
    (stripe.APIError, ErrorKind.SERVER),
    (stripe.CardError, ErrorKind.PAYMENT),
    (stripe.IdempotencyError, ErrorKind.VALIDATION),
    (stripe.InvalidRequestError, ErrorKind.VALIDATION),
    (stripe.StripeError, ErrorKind.PAYMENT),
)

_NETWORK_ERRORS = (
    sa_exc.OperationalError,
    sa_exc.DisconnectionError,
    sa_exc.TimeoutError,
    redis.exceptions.ConnectionError,
    redis.exceptions.TimeoutError,
    httpx.TransportError,
    builtins.ConnectionError,
    builtins.TimeoutError,
)

_VALIDATION_ERRORS = (
    sa_exc.IntegrityError,
    sa_exc.DataError,
)


def kind_for_status(status: int) -> ErrorKind:
    """Map an HTTP status code onto the error taxonomy."""
    if status == 401:
        return ErrorKind.AUTHENTICATION
    if status == 403:
        return ErrorKind.AUTHORIZATION
    if status in (400, 404, 409, 422):
        return ErrorKind.VALIDATION
    if status == 402:
        return ErrorKind.PAYMENT
    if status == 408:
        return ErrorKind.NETWORK
    if status == 429 or 500 <= status <= 599:
        return ErrorKind.SERVER
    return ErrorKind.UNKNOWN


def _status_of(exc: BaseException) -> Optional[int]:
    status = getattr(exc, "status_code", None)
    if status is None:
        response = getattr(exc, "response", None)
        status = getattr(response, "status_code", None)
    return status if isinstance(status, int) else None


def classify_error(exc: BaseException) -> ErrorKind:
    """Classify any exception. Unrecognized failures are UNKNOWN (terminal)."""
    if isinstance(exc, AppError):
        return exc.kind
    for exc_type, kind in _STRIPE_KINDS:
        if isinstance(exc, exc_type):
            return kind
    if isinstance(exc, _NETWORK_ERRORS):
        return ErrorKind.NETWORK
    if isinstance(exc, _VALIDATION_ERRORS):
        return ErrorKind.VALIDATION
    status = _status_of(exc)
    if status is not None:
        return kind_for_status(status)
    return ErrorKind.UNKNOWN


def to_app_error(exc: BaseException, *, operation: Optional[str] = None, attempts: int = 1) -> AppError:
    """Wrap a foreign exception in a ClassifiedError; AppErrors pass through."""
    if isinstance(exc, AppError):
        return exc
    kind = classify_error(exc)
    name = operation or "operation"
    return ClassifiedError(f"{name} failed: {exc}", kind=kind, attempts=attempts, operation=operation)


def _extract_request_id(request: Request, fallback: Optional[str] = None) -> str:
    return (
        getattr(request.state, "request_id", None)
        or get_request_id()
        or fallback
        or str(uuid4())
    )


def error_body(err: AppError, request_id: Optional[str] = None) -> dict:
    body = {
        "code": err.code,
        "message": err.message,
        "kind": err.kind.value,
        "retryable": err.retryable,
        "user_message": err.user_message,
        "action": ACTIONS.get(err.kind),
    }
    if request_id:
        body["request_id"] = request_id
    return body


def _error_payload(err: AppError, request_id: str) -> dict:
    return {
        "success": False,
        "error": error_body(err, request_id),
        "detail": err.message,
    }


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _extract_request_id(request)
    payload = _error_payload(exc, rid)
    logger = logging.getLogger("listos")
    log_level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(
        log_level,
        "app.error",
        extra={
            "request_id": rid,
            "error_code": exc.code,
            "error_kind": exc.kind.value,
            "error_message": exc.message,
            "status": exc.status_code,
        },
    )
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _extract_request_id(request)
    message = exc.detail if exc.detail else "HTTP error"
    err = AppError(
        str(message),
        code="not_found" if exc.status_code == 404 else "http_error",
        status_code=exc.status_code,
        kind=kind_for_status(exc.status_code),
    )
    logger = logging.getLogger("listos")
    logger.warning("http.error", extra={"request_id": rid, "error_code": err.code, "status": exc.status_code})
    response = JSONResponse(status_code=exc.status_code, content=_error_payload(err, rid))
    response.headers["x-request-id"] = rid
    return response


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _extract_request_id(request)
    logger = logging.getLogger("listos")
    logger.error("unhandled.exception", exc_info=True, extra={"request_id": rid, "error_code": "internal_error"})
    err = AppError("Unexpected error", code="internal_error")
    response = JSONResponse(status_code=500, content=_error_payload(err, rid))
    response.headers["x-request-id"] = rid
    return response
