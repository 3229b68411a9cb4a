"""
Credit Wallet Errors

Every recoverable condition is raised as a CreditError subclass and rendered
by the API error handler as {"error_code": ..., "message": ...} with the
subclass's HTTP status.
"""

from typing import Optional

from .config import ERROR_CODES


class CreditError(Exception):
    """Base class for all errors the credit API reports to callers."""

    status_code = 500
    error_code = "INTERNAL_ERROR"

    def __init__(self, message: Optional[str] = None, **details):
        self.message = message or ERROR_CODES.get(self.error_code, self.error_code)
        self.details = details
        super().__init__(self.message)

    def to_dict(self):
        """Convert to API response format."""
        payload = {"error_code": self.error_code, "message": self.message}
        if self.details:
            payload.update(self.details)
        return payload


# ==================== VALIDATION (400) ====================

class ValidationError(CreditError):
    status_code = 400
    error_code = "VALIDATION_ERROR"


class BadTimestamp(ValidationError):
    error_code = "BAD_TIMESTAMP"


class StaleRequest(ValidationError):
    error_code = "STALE_REQUEST"


class MissingIdempotencyKey(ValidationError):
    error_code = "MISSING_IDEMPOTENCY_KEY"


# ==================== AUTHENTICATION (401) ====================

class AuthError(CreditError):
    status_code = 401
    error_code = "INVALID_TOKEN"


class MissingToken(AuthError):
    error_code = "MISSING_TOKEN"


class InvalidToken(AuthError):
    error_code = "INVALID_TOKEN"


class ExpiredToken(AuthError):
    error_code = "EXPIRED_TOKEN"


class WrongTokenType(AuthError):
    error_code = "WRONG_TOKEN_TYPE"


class InvalidCredentials(AuthError):
    error_code = "INVALID_CREDENTIALS"


# ==================== AUTHORIZATION (403) ====================

class AuthorizationError(CreditError):
    status_code = 403
    error_code = "FORBIDDEN"


# ==================== RESOLUTION ====================

class ResolutionError(CreditError):
    status_code = 404
    error_code = "TARGET_NOT_FOUND"


class TargetNotFound(ResolutionError):
    error_code = "TARGET_NOT_FOUND"


class InvalidTarget(ResolutionError):
    """A scan token that failed verification. `reason` carries the token error code."""

    status_code = 400
    error_code = "INVALID_TARGET"


# ==================== CONFLICTS (409) ====================

class ConflictError(CreditError):
    status_code = 409
    error_code = "DUPLICATE_REQUEST"


class DuplicateRequest(ConflictError):
    error_code = "DUPLICATE_REQUEST"


class UsernameTaken(ConflictError):
    error_code = "USERNAME_TAKEN"


# ==================== BUSINESS RULES (400) ====================

class BusinessRuleError(CreditError):
    status_code = 400
    error_code = "INSUFFICIENT_CREDITS"


class InsufficientCredits(BusinessRuleError):
    error_code = "INSUFFICIENT_CREDITS"


# ==================== THROTTLING / CONTENTION ====================

class RateLimited(CreditError):
    status_code = 429
    error_code = "RATE_LIMITED"


class TargetBusy(CreditError):
    """The target row stayed locked by other transactions past the lock deadline."""

    status_code = 503
    error_code = "TARGET_BUSY"


# ==================== INTERNAL (500) ====================

class InternalError(CreditError):
    status_code = 500
    error_code = "INTERNAL_ERROR"


class CommitOutcomeUnknown(InternalError):
    """Commit kept failing with an unknown result; resubmitting with the same key is safe."""

    error_code = "COMMIT_OUTCOME_UNKNOWN"


class KeyConfigurationError(RuntimeError):
    """Raised at startup when scan token keys cannot be provisioned as configured."""


