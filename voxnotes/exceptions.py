"""
VoxNotes Backend — Custom Exception Hierarchy
===============================================

What:  Defines application-specific exceptions for every failure the
       orchestrator can report.
Why:   Each class carries its HTTP mapping, machine-readable code and
       retryability, so the retry executor, the note processor and the
       HTTP exception handlers all agree on what a failure means.
How:   Each exception carries a safe message and a context dict.
       Global exception handlers (registered in main.py) turn them into
       structured JSON responses.
Who:   Raised by services and routes; caught by the note processor and
       by the global handlers.

Exception Hierarchy:
    VoxNotesError (base)
    ├── AuthRequiredError            → 401
    ├── ValidationError              → 400 (never retried)
    ├── NotFoundError                → 404
    ├── QuotaExceededError           → 429 (user must wait)
    ├── QuotaUnavailableError        → 503 (quota could not be verified)
    ├── BusyError                    → 409 (note claimed elsewhere)
    ├── ConcurrentModificationError  → 409
    ├── ProcessingError              → 422
    │   ├── EmptyTranscriptionError
    │   └── InvalidAnalysisError
    ├── ExternalServiceError         → 503
    │   ├── ProviderTimeoutError
    │   └── ProviderAuthError
    ├── RateLimitExceededError       → 429 (retryable, retry_after)
    ├── CircuitOpenError             → 503
    ├── StorageError                 → 503
    │   └── StorageUnavailableError
    ├── DatabaseError                → 500
    └── InternalError                → 500
"""

from typing import Any, Dict, Optional


class VoxNotesError(Exception):
    """
    Base exception for all VoxNotes application errors.

    Attributes:
        message:  User-facing error description (safe to return in API response)
        context:  Additional debug info (logged, returned only as `details`)
        attempts: Provider attempts made before this error surfaced
                  (filled in by the retry executor)
    """

    error_code = "server_error"
    status_code = 500
    retryable = False

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        context: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.context = context or {}
        self.attempts: Optional[int] = None
        super().__init__(self.message)

    def with_attempts(self, attempts: int) -> "VoxNotesError":
        """Annotate the error with the number of attempts that produced it."""
        self.attempts = attempts
        self.context["attempts"] = attempts
        return self


class AuthRequiredError(VoxNotesError):
    """Raised when a trigger is called without a resolvable caller identity."""

    error_code = "auth_required"
    status_code = 401

    def __init__(self, message: str = "Authentication required", context: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, context=context)


class ValidationError(VoxNotesError):
    """
    Raised when input fails validation.

    Covers bad trigger input and provider rejections of the request itself
    (unsupported audio, malformed prompt). Retrying the same input can never
    succeed, so the retry executor short-circuits on it.
    """

    error_code = "validation_error"
    status_code = 400

    def __init__(
        self,
        message: str = "Validation failed",
        field: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if field:
            ctx["field"] = field
        super().__init__(message=message, context=ctx)
        self.field = field


class NotFoundError(VoxNotesError):
    """Raised when a note (or its audio blob) does not exist."""

    error_code = "not_found"
    status_code = 404

    def __init__(
        self,
        resource: str = "resource",
        resource_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        message = f"The requested {resource} was not found"
        if resource_id:
            message = f"{resource} with ID '{resource_id}' was not found"
        ctx = context or {}
        ctx["resource"] = resource
        if resource_id:
            ctx["resource_id"] = resource_id
        super().__init__(message=message, context=ctx)


class QuotaExceededError(VoxNotesError):
    """
    Raised by the HTTP layer when a process result reports a quota violation.

    Carries current usage and limits so the caller can show remaining capacity.
    """

    error_code = "quota_exceeded"
    status_code = 429

    def __init__(
        self,
        reason: str,
        usage: Optional[Dict[str, Any]] = None,
        limits: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=reason, context={"usage": usage or {}, "limits": limits or {}})
        self.usage = usage or {}
        self.limits = limits or {}


class QuotaUnavailableError(VoxNotesError):
    """Usage could not be computed, so admission failed closed."""

    error_code = "quota_unavailable"
    status_code = 503
    retryable = True

    def __init__(
        self,
        message: str = "Unable to verify quota at this time. Please try again shortly.",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class BusyError(VoxNotesError):
    """The note is already claimed by another in-flight attempt."""

    error_code = "busy"
    status_code = 409

    def __init__(self, note_id: str, context: Optional[Dict[str, Any]] = None):
        ctx = context or {}
        ctx["note_id"] = note_id
        super().__init__(
            message="Note is currently being processed by another worker",
            context=ctx,
        )


class ConcurrentModificationError(VoxNotesError):
    """A guarded write found the note changed underneath it (claim lost)."""

    error_code = "concurrent_modification"
    status_code = 409

    def __init__(self, note_id: str, context: Optional[Dict[str, Any]] = None):
        ctx = context or {}
        ctx["note_id"] = note_id
        super().__init__(
            message=f"Note '{note_id}' was modified by another worker",
            context=ctx,
        )


class ProcessingError(VoxNotesError):
    """
    A processing stage produced unusable output.

    This is a data problem (bad audio, unparseable analysis), not a
    transient one, so it is not retried.
    """

    error_code = "processing_error"
    status_code = 422

    def __init__(
        self,
        message: str = "Note processing failed",
        stage: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if stage:
            ctx["stage"] = stage
        super().__init__(message=message, context=ctx)
        self.stage = stage


class EmptyTranscriptionError(ProcessingError):
    """The speech-to-text provider returned no usable text."""

    error_code = "empty_transcription"

    def __init__(self, context: Optional[Dict[str, Any]] = None):
        super().__init__(
            message="Transcription returned no text. The recording may be silent or unreadable.",
            stage="transcription",
            context=context,
        )


class InvalidAnalysisError(ProcessingError):
    """The analysis output was empty, unparseable, or not salvageable."""

    error_code = "invalid_analysis"

    def __init__(
        self,
        message: str = "Analysis output could not be parsed",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, stage="analysis", context=context)


class ExternalServiceError(VoxNotesError):
    """
    A provider reported a fault (5xx, upstream overload, network failure).

    Retryable by default; subclasses narrow that down.
    """

    error_code = "external_service_error"
    status_code = 503
    retryable = True

    def __init__(
        self,
        message: str = "An external service is temporarily unavailable",
        service: Optional[str] = None,
        retry_after: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if service:
            ctx["service"] = service
        if retry_after:
            ctx["retry_after"] = retry_after
        super().__init__(message=message, context=ctx)
        self.service = service
        self.retry_after = retry_after


class ProviderTimeoutError(ExternalServiceError):
    """A provider call exceeded its timeout."""

    error_code = "provider_timeout"

    def __init__(self, service: Optional[str] = None, timeout: Optional[float] = None,
                 context: Optional[Dict[str, Any]] = None):
        ctx = context or {}
        if timeout is not None:
            ctx["timeout"] = timeout
        super().__init__(
            message="The external service did not respond in time",
            service=service,
            context=ctx,
        )


class ProviderAuthError(ExternalServiceError):
    """Credentials were rejected; retrying cannot help."""

    error_code = "provider_auth_error"
    retryable = False

    def __init__(self, service: Optional[str] = None, context: Optional[Dict[str, Any]] = None):
        super().__init__(
            message="The external service rejected our credentials",
            service=service,
            context=context,
        )


class RateLimitExceededError(VoxNotesError):
    """
    A provider rate-limited us.

    Retryable; `retry_after` is surfaced to callers as a Retry-After hint.
    """

    error_code = "rate_limit_exceeded"
    status_code = 429
    retryable = True

    def __init__(
        self,
        retry_after: int = 60,
        service: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        message = (
            f"Rate limit exceeded. Please wait {retry_after} seconds before trying again."
        )
        ctx = context or {}
        ctx["retry_after"] = retry_after
        if service:
            ctx["service"] = service
        super().__init__(message=message, context=ctx)
        self.retry_after = retry_after
        self.service = service


class CircuitOpenError(VoxNotesError):
    """
    The circuit breaker for a service key is shedding load.

    Raised before any attempt is made, so it never consumes retry budget.
    """

    error_code = "circuit_open"
    status_code = 503

    def __init__(
        self,
        service: str,
        recovery_time: int = 60,
        context: Optional[Dict[str, Any]] = None,
    ):
        message = (
            f"The {service} service is temporarily unavailable due to repeated failures. "
            f"It will be retried in approximately {recovery_time} seconds."
        )
        ctx = context or {}
        ctx["service"] = service
        ctx["recovery_time"] = recovery_time
        super().__init__(message=message, context=ctx)
        self.service = service
        self.recovery_time = recovery_time


class StorageError(VoxNotesError):
    """Audio blob could not be read."""

    error_code = "storage_error"
    status_code = 503
    retryable = True

    def __init__(
        self,
        message: str = "Audio storage operation failed",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class StorageUnavailableError(StorageError):
    """Transport-level failure talking to blob storage."""

    error_code = "storage_unavailable"

    def __init__(
        self,
        message: str = "Audio storage is temporarily unavailable",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class DatabaseError(VoxNotesError):
    """
    Raised when database operations fail unexpectedly.

    The client-facing message is always generic; SQL detail stays in logs.
    """

    error_code = "database_error"
    status_code = 500

    def __init__(
        self,
        message: str = "A database error occurred. Please try again later.",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class InternalError(VoxNotesError):
    """Anything unexpected, wrapped so no stack trace leaks to callers."""

    error_code = "internal_error"
    status_code = 500

    def __init__(
        self,
        message: str = "An unexpected error occurred while processing the note",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)
