from typing import Optional, Dict, Any


class ReconcilerException(Exception):
    """Base exception for all payment reconciliation errors."""

    def __init__(
        self,
        message: str,
        code: str = "internal_error",
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}


class SecurityError(ReconcilerException):
    """
    Raised when an inbound event fails transport or authenticity checks.
    Terminal: the gateway must not retry these.
    """

    def __init__(
        self,
        message: str,
        code: str = "security_error",
        status_code: int = 400,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, code=code, status_code=status_code, details=details)


class RateLimitExceededError(SecurityError):
    """Raised when a source address exceeds the webhook request threshold."""

    def __init__(self, retry_after: int, details: Optional[Dict[str, Any]] = None):
        payload = dict(details or {})
        payload["retry_after"] = retry_after
        super().__init__(
            "Rate limit exceeded",
            code="rate_limited",
            status_code=429,
            details=payload,
        )
        self.retry_after = retry_after


class MissingIdentityError(ReconcilerException):
    """
    Raised when the subscriber/plan pair for a payment cannot be resolved yet.
    Recoverable: a later, better-informed event completes the finalization.
    Handlers acknowledge it for initial payments; anywhere else it escapes as
    a 500 so the gateway re-delivers.
    """

    def __init__(
        self,
        message: str,
        subscriber_id: Optional[str] = None,
        plan_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        payload = dict(details or {})
        payload.setdefault("has_subscriber_id", bool(subscriber_id))
        payload.setdefault("has_plan_id", bool(plan_id))
        super().__init__(
            message, code="missing_identity", status_code=500, details=payload
        )
        self.subscriber_id = subscriber_id
        self.plan_id = plan_id


class GatewayLookupError(ReconcilerException):
    """Raised when a call to the payment gateway fails."""

    def __init__(
        self,
        message: str,
        code: str = "gateway_error",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, code=code, status_code=502, details=details)


class StorageError(ReconcilerException):
    """Raised when the record store fails; the gateway should re-deliver."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message, code="storage_error", status_code=500, details=details
        )


class BillingConflictError(ReconcilerException):
    """Raised when a ledger write would reassign a record to another subscriber."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message, code="billing_conflict", status_code=409, details=details
        )


class ConfigurationError(ReconcilerException):
    """Raised when application configuration is invalid or missing."""

    def __init__(
        self,
        message: str,
        code: str = "config_error",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, code=code, status_code=500, details=details)
