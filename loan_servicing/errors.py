"""
Error Hierarchy

Typed exceptions for every failure mode the trust-and-integrity layer can
surface. Each carries an HTTP status and a stable code; to_response() produces
the REST envelope. Messages never contain internal details.
"""

from typing import Optional


class ServicingError(Exception):
    """Base exception for all servicing errors."""

    def __init__(self, message: str, code: str, http_status: int = 500):
        super().__init__(message)
        self.message = message
        self.code = code
        self.http_status = http_status

    def to_response(self) -> dict:
        """Convert to standardized REST error response."""
        return {"error": self.message, "code": self.code}


class AuthenticationRequiredError(ServicingError):
    """No verified identity on the request."""
    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message, "UNAUTHENTICATED", 401)


class ForbiddenError(ServicingError):
    """Authenticated, but the access, ownership or role check failed."""
    def __init__(self, message: str = "Forbidden", code: str = "FORBIDDEN"):
        super().__init__(message, code, 403)


class CsrfValidationError(ForbiddenError):
    """Missing or invalid CSRF token on a state-changing request."""
    def __init__(self):
        super().__init__("Invalid or missing CSRF token", "CSRF_INVALID")


class InvalidInputError(ServicingError):
    """Malformed or out-of-range input, rejected before touching storage."""
    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message, "VALIDATION_ERROR", 400)
        self.field = field

    def to_response(self) -> dict:
        response = super().to_response()
        if self.field:
            response["field"] = self.field
        return response


class NotFoundError(ServicingError):
    """Referenced entity does not exist (raised only after access is confirmed)."""
    def __init__(self, resource_type: str, resource_id: str):
        super().__init__(f"{resource_type} not found", "NOT_FOUND", 404)
        self.resource_type = resource_type
        self.resource_id = resource_id


class RateLimitExceededError(ServicingError):
    """Too many requests for the subject within the current window."""
    def __init__(self, retry_after: int, reset_at: Optional[int] = None):
        super().__init__("Too many requests", "RATE_LIMITED", 429)
        self.retry_after = retry_after
        self.reset_at = reset_at

    def to_response(self) -> dict:
        response = super().to_response()
        response["retryAfter"] = self.retry_after
        if self.reset_at is not None:
            response["resetAt"] = self.reset_at
        return response


class ConfigurationError(ServicingError):
    """Required configuration is missing or unusable; aborts startup."""
    def __init__(self, message: str):
        super().__init__(message, "CONFIGURATION_ERROR", 500)
