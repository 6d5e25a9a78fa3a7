# aurelia/errors.py
"""Error taxonomy shared by every handler.

Each error carries the HTTP status and the public message it maps to; the
exception handler in ``main`` turns them into ``{"error": ..., "details": ...}``.
"""
from __future__ import annotations

from typing import Optional


class AureliaError(Exception):
    status_code = 500
    message = "Internal server error"

    def __init__(self, message: Optional[str] = None, details: Optional[str] = None):
        self.message = message or self.message
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> dict:
        body = {"error": self.message}
        if self.details:
            body["details"] = self.details
        return body


class InvalidRequest(AureliaError):
    status_code = 400
    message = "Invalid request"


class Unauthenticated(AureliaError):
    status_code = 401
    message = "Authorization required"


class InvalidToken(AureliaError):
    status_code = 401
    message = "Token has expired or is invalid"


class Forbidden(AureliaError):
    status_code = 403
    message = "Access denied"


class NotFound(AureliaError):
    status_code = 404
    message = "Not found"


class VerificationFetchError(AureliaError):
    status_code = 400
    message = "Failed to verify phone number"


class IdentityConflictError(AureliaError):
    status_code = 409
    message = "Login failed"


class IdentityCreationError(AureliaError):
    status_code = 500
    message = "Failed to create user account"


class TokenIssuanceError(AureliaError):
    status_code = 500
    message = "Failed to generate login link"


class SignatureInvalid(AureliaError):
    status_code = 400
    message = "Invalid payment signature"


class GatewayError(AureliaError):
    status_code = 500
    message = "Failed to create Razorpay order"
