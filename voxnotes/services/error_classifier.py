"""
VoxNotes Backend — Error Classification
=========================================

What:  Maps any exception raised around a provider call to an ErrorType
       bucket and a retryable flag.
Why:   The retry executor decides "retry or give up" from this, the circuit
       breaker keys its histogram by it, and batch results aggregate by it.
How:   Our own exception classes are classified by type. Builtin timeouts and
       connection errors map to timeout/network. Anything else falls back to
       message inspection, which is how provider SDK errors that slipped past
       translation still land in a useful bucket.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum

from voxnotes.exceptions import (
    AuthRequiredError,
    CircuitOpenError,
    ExternalServiceError,
    InternalError,
    NotFoundError,
    ProcessingError,
    ProviderAuthError,
    ProviderTimeoutError,
    QuotaExceededError,
    RateLimitExceededError,
    StorageError,
    ValidationError,
    VoxNotesError,
)


class ErrorType(str, Enum):
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    NETWORK = "network"
    AUTH = "auth"
    VALIDATION = "validation"
    QUOTA = "quota"
    SERVER_ERROR = "server_error"
    CLIENT_ERROR = "client_error"
    STORAGE = "storage"
    PROCESSING = "processing"
    CIRCUIT_OPEN = "circuit_open"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class Classification:
    error_type: ErrorType
    retryable: bool


# Checked in order; first hit wins
_MESSAGE_RULES = (
    (("rate limit", "too many requests", "429", "resource exhausted"), ErrorType.RATE_LIMIT, True),
    (("timeout", "timed out", "deadline exceeded"), ErrorType.TIMEOUT, True),
    (("unauthorized", "unauthenticated", "permission denied", "api key", "401", "403"),
     ErrorType.AUTH, False),
    (("quota", "billing"), ErrorType.QUOTA, False),
    (("network", "connection", "econnreset", "econnrefused", "socket"), ErrorType.NETWORK, True),
    (("500", "502", "503", "504", "internal server", "service unavailable", "bad gateway"),
     ErrorType.SERVER_ERROR, True),
    (("invalid", "400", "unsupported", "malformed"), ErrorType.CLIENT_ERROR, False),
)


def classify_error(exc: BaseException) -> Classification:
    """Return the ErrorType bucket and retryability for `exc`."""
    if isinstance(exc, CircuitOpenError):
        return Classification(ErrorType.CIRCUIT_OPEN, False)
    if isinstance(exc, (ProviderTimeoutError, asyncio.TimeoutError, TimeoutError)):
        return Classification(ErrorType.TIMEOUT, True)
    if isinstance(exc, RateLimitExceededError):
        return Classification(ErrorType.RATE_LIMIT, True)
    if isinstance(exc, (ProviderAuthError, AuthRequiredError)):
        return Classification(ErrorType.AUTH, False)
    if isinstance(exc, ValidationError):
        return Classification(ErrorType.VALIDATION, False)
    if isinstance(exc, ProcessingError):
        return Classification(ErrorType.PROCESSING, False)
    if isinstance(exc, QuotaExceededError):
        return Classification(ErrorType.QUOTA, False)
    if isinstance(exc, NotFoundError):
        return Classification(ErrorType.CLIENT_ERROR, False)
    if isinstance(exc, StorageError):
        return Classification(ErrorType.STORAGE, exc.retryable)
    if isinstance(exc, ExternalServiceError):
        return Classification(ErrorType.SERVER_ERROR, exc.retryable)
    if isinstance(exc, VoxNotesError):
        return Classification(ErrorType.UNKNOWN, exc.retryable)
    if isinstance(exc, ConnectionError):
        return Classification(ErrorType.NETWORK, True)
    return _classify_message(str(exc))


def _classify_message(message: str) -> Classification:
    lowered = message.lower()
    for needles, error_type, retryable in _MESSAGE_RULES:
        if any(needle in lowered for needle in needles):
            return Classification(error_type, retryable)
    return Classification(ErrorType.UNKNOWN, False)


def as_voxnotes_error(exc: BaseException, service: str) -> VoxNotesError:
    """
    Wrap a foreign exception into the taxonomy without leaking its text.

    The original exception is kept as `__cause__` by the caller
    (`raise ... from exc`) and its type is recorded in the context.
    """
    if isinstance(exc, VoxNotesError):
        return exc
    classification = classify_error(exc)
    context = {"service": service, "error_type": classification.error_type.value,
               "original_error": type(exc).__name__}
    if classification.error_type == ErrorType.TIMEOUT:
        return ProviderTimeoutError(service=service, context=context)
    if classification.error_type == ErrorType.RATE_LIMIT:
        return RateLimitExceededError(service=service, context=context)
    if classification.error_type == ErrorType.AUTH:
        return ProviderAuthError(service=service, context=context)
    if classification.error_type in (ErrorType.NETWORK, ErrorType.SERVER_ERROR):
        return ExternalServiceError(service=service, context=context)
    if classification.error_type == ErrorType.QUOTA:
        error = ExternalServiceError(
            message=f"The {service} service quota is exhausted",
            service=service,
            context=context,
        )
        error.retryable = False
        return error
    if classification.error_type == ErrorType.CLIENT_ERROR:
        return ValidationError(message=f"The {service} service rejected the request",
                               context=context)
    return InternalError(context=context)


def error_category(exc: VoxNotesError) -> str:
    """Name of the top-level taxonomy class `exc` belongs to (e.g. ProcessingError)."""
    for cls in type(exc).__mro__:
        if VoxNotesError in cls.__bases__:
            return cls.__name__
    return VoxNotesError.__name__
