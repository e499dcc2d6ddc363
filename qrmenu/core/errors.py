"""
Error taxonomy for sessions, rate limiting and WhatsApp authentication.

Every error carries a stable ``kind`` (what API clients switch on) and the
HTTP status the app maps it to.
"""
from typing import Any, Dict, Optional


class QRMenuError(Exception):
    """Base class for all domain errors."""

    kind = "Error"
    status_code = 400

    def __init__(self, message: Optional[str] = None, **details: Any):
        self.message = message or self.__class__.__doc__ or self.kind
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        body = {"error": self.kind, "detail": self.message}
        body.update(self.details)
        return body


class SessionNotFound(QRMenuError):
    """Session not found"""
    kind = "SessionNotFound"
    status_code = 404


class SessionExpired(QRMenuError):
    """Session expired"""
    kind = "SessionExpired"
    status_code = 401


class SessionContextMismatch(QRMenuError):
    """Session does not belong to this store, table or device"""
    kind = "SessionContextMismatch"
    status_code = 403


class SessionLimitExceeded(QRMenuError):
    """Too many active sessions"""
    kind = "SessionLimitExceeded"
    status_code = 429


class InvalidSessionState(QRMenuError):
    """Operation not allowed in the current session state"""
    kind = "InvalidSessionState"
    status_code = 409


class RateLimitExceeded(QRMenuError):
    """Too many requests"""
    kind = "RateLimitExceeded"
    status_code = 429

    def __init__(self, retry_after: int, message: Optional[str] = None, **details: Any):
        self.retry_after = max(0, int(retry_after))
        super().__init__(message, retryAfter=self.retry_after, **details)


class TokenNotFound(QRMenuError):
    """Invalid or unknown token"""
    kind = "TokenNotFound"
    status_code = 404


class TokenExpired(QRMenuError):
    """Token expired"""
    kind = "TokenExpired"
    status_code = 410


class TokenAlreadyUsed(QRMenuError):
    """Token already used"""
    kind = "TokenAlreadyUsed"
    status_code = 409


class AuthFailed(QRMenuError):
    """Invalid or expired code"""
    kind = "AuthFailed"
    status_code = 401


class FingerprintBlocked(QRMenuError):
    """Device blocked"""
    kind = "FingerprintBlocked"
    status_code = 403


class InvalidFingerprint(QRMenuError):
    """Invalid device fingerprint"""
    kind = "InvalidFingerprint"
    status_code = 400


class InvalidPhoneNumber(QRMenuError):
    """Invalid phone number"""
    kind = "InvalidPhoneNumber"
    status_code = 400
