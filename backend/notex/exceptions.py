"""
NoteX Backend — Custom Exception Hierarchy
============================================

What:  Application-specific exceptions for every failure the API reports.
Why:   Services raise domain errors; a single global handler in main.py turns
       them into structured JSON responses with the right HTTP status, so
       routes never build error payloads by hand.
How:   Each class carries `status_code` and `error_code` as class attributes,
       plus a user-facing message and a context dict (logged, and returned as
       `details` only where it is safe to do so).

Exception Hierarchy:
    NoteXError (base)                     → 500
    ├── ValidationError                   → 400
    │   ├── InsufficientBalanceError      → 400
    │   ├── SelfReferralError             → 400
    │   └── InvalidReferralCodeError      → 400
    ├── WebhookSignatureError             → 400
    ├── AuthenticationError               → 401
    ├── ForbiddenError                    → 403
    │   └── InsufficientCreditsError      → 403
    ├── NotFoundError                     → 404
    ├── ConflictError                     → 409
    │   └── AlreadyReferredError          → 409
    ├── RateLimitExceededError            → 429
    ├── ConfigurationError                → 500
    ├── PaymentServiceError               → 500 (generic message)
    ├── FileStorageError                  → 500 (generic message)
    ├── DatabaseError                     → 500 (generic message)
    ├── LLMServiceError                   → 503
    └── CircuitBreakerOpenError           → 503
"""

from typing import Any, Dict, Optional


class NoteXError(Exception):
    """
    Base exception for all NoteX application errors.

    Attributes:
        message:  User-facing error description
        context:  Additional debug info
        expose_details: Whether `context` may be returned to the client
    """

    status_code: int = 500
    error_code: str = "server_error"
    expose_details: bool = True

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        context: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.context = context or {}
        super().__init__(self.message)


class ValidationError(NoteXError):
    """
    Raised when client input fails a business rule.

    When:    Missing upload fields, price outside [0.99, 99.99], text too short,
             payout below the minimum, unsupported plan tier.
    HTTP:    400 Bad Request (Pydantic schema errors share the same envelope)
    """

    status_code = 400
    error_code = "validation_error"

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


class InsufficientBalanceError(ValidationError):
    """Payout requested for more than the seller's wallet holds."""

    error_code = "insufficient_balance"

    def __init__(self, message: str = "Insufficient balance", context: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, field="amount", context=context)


class SelfReferralError(ValidationError):
    error_code = "self_referral"

    def __init__(self, message: str = "Cannot use your own referral code"):
        super().__init__(message=message, field="referral_code")


class InvalidReferralCodeError(ValidationError):
    error_code = "invalid_referral_code"

    def __init__(self, message: str = "Invalid referral code"):
        super().__init__(message=message, field="referral_code")


class WebhookSignatureError(NoteXError):
    """
    Raised when a Stripe webhook fails signature verification.

    HTTP:    400 Bad Request. Raised before any state is touched; Stripe treats
             the 4xx as a permanent rejection of that delivery.
    """

    status_code = 400
    error_code = "invalid_signature"
    expose_details = False

    def __init__(self, message: str = "Webhook signature verification failed", context: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, context=context)


class AuthenticationError(NoteXError):
    """
    Raised when a request cannot be tied to a user.

    When:    Bad Telegram initData signature, missing bearer token, unknown or
             expired session token.
    HTTP:    401 Unauthorized
    """

    status_code = 401
    error_code = "unauthorized"

    def __init__(self, message: str = "Authentication required", context: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, context=context)


class ForbiddenError(NoteXError):
    """
    Raised when an authenticated user is not allowed to do something.

    When:    Downloading or reviewing a note without a completed purchase.
    HTTP:    403 Forbidden
    """

    status_code = 403
    error_code = "forbidden"

    def __init__(self, message: str = "Access denied", context: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, context=context)


class InsufficientCreditsError(ForbiddenError):
    """
    Raised when a free-plan user has no AI credits left.

    The response carries `{"upgrade": true}` so the client can show the
    upgrade / watch-an-ad prompt.
    """

    error_code = "insufficient_credits"

    def __init__(self, message: str = "Insufficient credits", credits: int = 0):
        super().__init__(message=message, context={"upgrade": True, "credits": credits})


class NotFoundError(NoteXError):
    """
    Raised when a requested resource does not exist (or is not visible).

    When:    Unknown note id, unpublished note in the public catalog,
             purchase/session not owned by the caller.
    HTTP:    404 Not Found
    """

    status_code = 404
    error_code = "not_found"

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


class ConflictError(NoteXError):
    """
    Raised when the request collides with existing state.

    When:    Note already purchased, already subscribed, duplicate review.
    HTTP:    409 Conflict
    """

    status_code = 409
    error_code = "conflict"

    def __init__(self, message: str = "Resource already exists", context: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, context=context)


class AlreadyReferredError(ConflictError):
    error_code = "already_referred"

    def __init__(self, message: str = "You have already used a referral code"):
        super().__init__(message=message)


class RateLimitExceededError(NoteXError):
    """
    Raised when a caller exceeds a rate or daily cap.

    When:    More than 5 rewarded-ad credits in one UTC day.
    HTTP:    429 Too Many Requests with a Retry-After header
    """

    status_code = 429
    error_code = "rate_limit_exceeded"

    def __init__(
        self,
        retry_after: int = 60,
        message: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        message = message or (
            f"Rate limit exceeded. Please wait {retry_after} seconds before making more requests."
        )
        ctx = context or {}
        ctx["retry_after"] = retry_after
        super().__init__(message=message, context=ctx)
        self.retry_after = retry_after


class ConfigurationError(NoteXError):
    """
    Raised when a feature is requested whose settings are missing.

    When:    Subscription checkout for a tier with no STRIPE_PRICE_* value.
    HTTP:    500 Internal Server Error
    """

    status_code = 500
    error_code = "configuration_error"
    expose_details = False

    def __init__(self, message: str = "Service is not configured", context: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, context=context)


class PaymentServiceError(NoteXError):
    """
    Raised when a Stripe API call fails.

    HTTP:    500 with a generic message; the Stripe error is logged only.
    """

    status_code = 500
    error_code = "payment_error"
    expose_details = False

    def __init__(
        self,
        message: str = "Payment service error. Please try again later.",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class FileStorageError(NoteXError):
    """Raised when reading, writing or deleting a stored note file fails."""

    status_code = 500
    error_code = "server_error"
    expose_details = False

    def __init__(
        self,
        message: str = "File storage operation failed",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class DatabaseError(NoteXError):
    """
    Raised when database operations fail unexpectedly.

    Security Note:
        The message returned to the client is always generic.
        Constraint names and SQL are logged server-side only.
    """

    status_code = 500
    error_code = "server_error"
    expose_details = False

    def __init__(
        self,
        message: str = "A database error occurred. Please try again later.",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class LLMServiceError(NoteXError):
    """
    Raised when the Gemini service fails after all retries.

    HTTP:    503 Service Unavailable, with Retry-After when known
    """

    status_code = 503
    error_code = "llm_service_error"

    def __init__(
        self,
        message: str = "AI service is temporarily unavailable",
        retry_after: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if retry_after:
            ctx["retry_after"] = retry_after
        super().__init__(message=message, context=ctx)
        self.retry_after = retry_after


class CircuitBreakerOpenError(NoteXError):
    """
    Raised when the Gemini circuit breaker is OPEN.

    How circuit breaker works:
        CLOSED (normal) → failures increment counter
        → After N failures → OPEN (reject all calls for recovery_timeout)
        → After timeout → HALF-OPEN (allow one test call)
        → Test succeeds → CLOSED, test fails → OPEN again
    """

    status_code = 503
    error_code = "service_unavailable"

    def __init__(
        self,
        recovery_time: int = 60,
        context: Optional[Dict[str, Any]] = None,
    ):
        message = (
            f"AI service is temporarily unavailable due to repeated failures. "
            f"The service will automatically retry in approximately {recovery_time} seconds."
        )
        ctx = context or {}
        ctx["recovery_time"] = recovery_time
        super().__init__(message=message, context=ctx)
        self.recovery_time = recovery_time
        self.retry_after = recovery_time
