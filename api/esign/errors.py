"""Error taxonomy for the signing core.

Every error the API hands back carries a stable ``code`` that callers can
branch on and a short message that is safe to show a signer. Raw exception
text from collaborators never reaches a signer.
"""
from typing import Optional


class SigningError(Exception):
    status_code = 400
    code = "ERROR"
    message = "Request could not be completed"

    def __init__(self, message: Optional[str] = None, *, code: Optional[str] = None, details: Optional[dict] = None):
        self.message = message or self.message
        if code:
            self.code = code
        self.details = details or {}
        super().__init__(self.message)

    def as_dict(self) -> dict:
        body = {"ok": False, "code": self.code, "error": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationFailed(SigningError):
    status_code = 400
    code = "VALIDATION_FAILED"
    message = "Request payload is invalid"


class AuthorizationFailed(SigningError):
    status_code = 403
    code = "FORBIDDEN"
    message = "You do not have access to this document"


class NotFound(SigningError):
    status_code = 404
    code = "NOT_FOUND"
    message = "Not found"


class Conflict(SigningError):
    status_code = 409
    code = "CONFLICT"
    message = "Request conflicts with the current state"


class Throttled(SigningError):
    status_code = 429
    code = "RATE_LIMITED"
    message = "Too many requests"

    def __init__(self, message: Optional[str] = None, *, retry_after: int = 60, code: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(message, code=code, details=details)
        self.retry_after = max(1, int(retry_after))


class DependencyFailed(SigningError):
    status_code = 502
    code = "DEPENDENCY_FAILED"
    message = "A downstream service is unavailable"


class InvariantViolation(SigningError):
    status_code = 500
    code = "INTERNAL_ERROR"
    message = "The request could not be completed"


# Signer-facing messages. Anything a signer sees comes from this table.
SIGNER_MESSAGES = {
    "TOKEN_INVALID": "This signing link is invalid",
    "TOKEN_EXPIRED": "This signing link has expired",
    "TOKEN_REVOKED": "This signing link is no longer valid",
    "ALREADY_SIGNED": "You have already signed this document",
    "NOT_YOUR_TURN": "Waiting for a previous signer",
    "DOCUMENT_CLOSED": "This document is no longer available for signing",
    "LOCKED_OUT": "Too many attempts. Try again later",
    "MFA_REQUIRED": "Verify your identity before continuing",
    "OTP_INVALID": "The verification code is incorrect",
    "OTP_EXPIRED": "The verification code has expired. Request a new one",
}


def signer_error(code: str, *, status_code: int = 403, details: Optional[dict] = None) -> AuthorizationFailed:
    err = AuthorizationFailed(SIGNER_MESSAGES[code], code=code, details=details)
    err.status_code = status_code
    return err


class RenderError(Exception):
    """Raised by a renderer; ``retryable`` separates timeouts/5xx from 4xx."""

    def __init__(self, message: str, *, retryable: bool):
        super().__init__(message)
        self.retryable = retryable


class StorageError(Exception):
    pass
