"""
Custom Exceptions for the Billing Engine

Hierarchical exception classes for proper error handling across layers.
Each class carries its HTTP status and a stable error code so the API
layer can translate them without knowing the details.
"""

from typing import Optional, Dict, Any


class BillingEngineError(Exception):
    """Base exception for all billing engine errors."""

    status_code: int = 500
    code: str = "INTERNAL_ERROR"
    user_message: str = "Something went wrong, please try again later"

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        original_error: Optional[Exception] = None
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.original_error = original_error

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        return {
            "error": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "user_message": self.user_message,
            "details": self.details
        }


class ValidationError(BillingEngineError):
    """Raised when input validation fails."""
    status_code = 400
    code = "VALIDATION_ERROR"
    user_message = "Some of the submitted details are invalid"


class DatabaseError(BillingEngineError):
    """Raised when database operations fail."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        table: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if operation:
            details["operation"] = operation
        if table:
            details["table"] = table
        super().__init__(message, details, original_error)


class NotFoundError(DatabaseError):
    """Raised when a requested resource is not found."""
    status_code = 404
    code = "NOT_FOUND"
    user_message = "The requested record was not found"


class SessionNotFound(NotFoundError):
    """Raised when no payment session matches an id or notification."""
    code = "SESSION_NOT_FOUND"
    user_message = "We could not find this payment"


class UserNotResolved(SessionNotFound):
    """Raised when a payment cannot be attributed to any user."""
    code = "USER_NOT_RESOLVED"


class SessionExpired(BillingEngineError):
    """Raised when a payment session passed its expiry before resolving."""
    status_code = 410
    code = "SESSION_EXPIRED"
    user_message = "This payment page has expired, please start again"

    def __init__(self, message: str, session_id: Optional[str] = None):
        details = {"session_id": session_id} if session_id else {}
        super().__init__(message, details)


class DuplicateReconciliation(BillingEngineError):
    """
    Raised when a session was already resolved by another delivery.

    Never surfaced to clients; callers log it and return the prior result.
    """
    status_code = 200
    code = "DUPLICATE_RECONCILIATION"

    def __init__(self, message: str, session_id: Optional[str] = None):
        details = {"session_id": session_id} if session_id else {}
        super().__init__(message, details)


class ProviderError(BillingEngineError):
    """Raised when the card processor call fails."""
    status_code = 502
    code = "PROVIDER_ERROR"
    user_message = "The payment provider could not process the request"
    retryable: bool = False

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        response_code: Optional[int] = None,
        original_error: Optional[Exception] = None
    ):
        details: Dict[str, Any] = {"retryable": self.retryable}
        if operation:
            details["operation"] = operation
        if response_code is not None:
            details["response_code"] = response_code
        super().__init__(message, details, original_error)
        self.response_code = response_code


class ProviderUnavailable(ProviderError):
    """Network failure, timeout or 5xx from the processor. Safe to retry."""
    status_code = 503
    code = "PROVIDER_UNAVAILABLE"
    user_message = "The payment provider is temporarily unavailable, please retry"
    retryable = True


class ProviderRejected(ProviderError):
    """The processor answered but refused the request."""
    status_code = 502
    code = "PROVIDER_REJECTED"
    user_message = "The payment provider rejected the request"


class AccessDenied(BillingEngineError):
    """Base for entitlement guard failures; carries where to send the user."""

    def __init__(
        self,
        message: str,
        redirect_to: str,
        details: Optional[Dict[str, Any]] = None,
    ):
        details = dict(details or {})
        details["redirect_to"] = redirect_to
        super().__init__(message, details)
        self.redirect_to = redirect_to


class ContractNotSigned(AccessDenied):
    """Raised when a protected action requires a signed contract."""
    status_code = 403
    code = "CONTRACT_NOT_SIGNED"
    user_message = "Please sign the subscription agreement to continue"


class PaymentRequired(AccessDenied):
    """Raised when the user has no active entitlement."""
    status_code = 402
    code = "PAYMENT_REQUIRED"
    user_message = "An active subscription is required"


class ConfigurationError(BillingEngineError):
    """Raised when configuration is missing or invalid."""

    def __init__(
        self,
        message: str,
        missing_keys: Optional[list] = None,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if missing_keys:
            details["missing_keys"] = missing_keys
        super().__init__(message, details, original_error)
