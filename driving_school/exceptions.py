"""
Error taxonomy for the driving school API.

Every error raised by services carries the HTTP status it maps to; the
handlers registered in ``main`` render them with the standard
``{"status": "error", "message": ...}`` envelope.
"""

from typing import Any, Dict, List, Optional


class AppError(Exception):
    """Base class for errors that map onto a client-facing HTTP response."""

    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None, errors: Optional[List[Dict[str, Any]]] = None) -> None:
        self.message = message or self.default_message
        self.errors = errors
        super().__init__(self.message)


class BadRequest(AppError):
    status_code = 400
    default_message = "Bad request"


class Unauthenticated(AppError):
    status_code = 401
    default_message = "Not authenticated"


class TokenExpired(Unauthenticated):
    default_message = "Token expired"


class TokenInvalid(Unauthenticated):
    default_message = "Invalid token"


class Forbidden(AppError):
    status_code = 403
    default_message = "Insufficient permissions"


class NotFound(AppError):
    status_code = 404

    def __init__(self, resource: str = "Resource") -> None:
        super().__init__(f"{resource} not found")


class Conflict(AppError):
    status_code = 409
    default_message = "Conflict"


class PaymentProviderError(AppError):
    """The payment provider could not be reached or rejected the request."""

    status_code = 502
    default_message = "Payment provider error"
