from __future__ import annotations

from datetime import datetime
from typing import Optional

from trustgate.logging import sanitize_error_message


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP ``status_code`` and a stable
    ``error_code``:
    - unauthorized (401)
    - forbidden (403)
    - rate_limited (429)
    - validation_error (400)
    - conflict (409)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}

    def to_payload(self) -> dict:
        """Error envelope safe to hand to an outer transport layer."""
        payload = {
            "status": "error",
            "error": {
                "code": self.error_code,
                "message": sanitize_error_message(self.message),
            },
        }
        if self.detail:
            payload["error"]["details"] = self.detail
        return payload


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class InvalidCredentials(AuthenticationError):
    """Unknown principal or wrong secret; deliberately indistinguishable."""

    def __init__(self, message: str = "invalid credentials") -> None:
        super().__init__(message)


class TokenInvalid(AuthenticationError):
    def __init__(self, message: str = "invalid or expired token") -> None:
        super().__init__(message)


class MfaCodeInvalid(AuthenticationError):
    def __init__(self, message: str = "invalid verification code") -> None:
        super().__init__(message)


class BackupCodeInvalid(AuthenticationError):
    def __init__(self, message: str = "invalid backup code") -> None:
        super().__init__(message)


class AccountNotActive(ForbiddenError):
    """The user or client exists but is not in ``active`` status."""

    def __init__(
        self,
        message: str = "account not active",
        *,
        status: Optional[str] = None,
        detail: Optional[dict] = None,
    ) -> None:
        merged = dict(detail or {})
        if status:
            merged.setdefault("status", status)
        super().__init__(message, detail=merged)
        self.account_status = status


class QuotaExceeded(RateLimitedError):
    def __init__(self, reset_at: Optional[datetime] = None) -> None:
        detail = {"reset_at": reset_at.isoformat()} if reset_at else None
        super().__init__("usage quota exceeded", detail=detail)
        self.reset_at = reset_at


class MfaLockedOut(RateLimitedError):
    def __init__(self, retry_after_seconds: Optional[int] = None) -> None:
        detail = (
            {"retry_after_seconds": retry_after_seconds}
            if retry_after_seconds
            else None
        )
        super().__init__("too many failed verification attempts", detail=detail)


class ConflictingRegistration(ConflictError):
    def __init__(self, message: str = "email already registered") -> None:
        super().__init__(message)


class InternalError(ServerError):
    def __init__(self, message: str = "internal error") -> None:
        super().__init__(message)


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "InvalidCredentials",
    "TokenInvalid",
    "MfaCodeInvalid",
    "BackupCodeInvalid",
    "AccountNotActive",
    "QuotaExceeded",
    "MfaLockedOut",
    "ConflictingRegistration",
    "InternalError",
]
