"""Application error taxonomy.

Every error a handler can raise on purpose derives from :class:`ApiError`
and carries the HTTP status it maps to.  ``create_app`` registers a single
JSON error handler for the base class.
"""

from __future__ import annotations

from typing import Optional


class ApiError(Exception):
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None, details: Optional[str] = None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        self.details = details

    def to_dict(self) -> dict:
        body = {"error": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(ApiError):
    status_code = 400
    default_message = "Invalid request"


class SignatureInvalid(ApiError):
    status_code = 400
    default_message = "Invalid signature"


class Unauthorized(ApiError):
    status_code = 401
    default_message = "Unauthorized"


class PaymentRequired(ApiError):
    status_code = 402
    default_message = "An active subscription is required"


class Forbidden(ApiError):
    status_code = 403
    default_message = "Not authorized"


class NotFound(ApiError):
    status_code = 404
    default_message = "Not found"


class PersistenceError(ApiError):
    status_code = 500
    default_message = "Database operation failed"


class UpstreamUnavailable(ApiError):
    status_code = 502
    default_message = "Analysis backend unavailable"
