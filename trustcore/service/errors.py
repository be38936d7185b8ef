from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for operational, user-correctable failures.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``
    that the API layer renders into the error envelope. Anything that is not a
    ``ServiceError`` (entropy failure, storage outage) is a fault and surfaces
    as ``server_error``.
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


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class ExpiredError(ServiceError):
    """Credential is past its expiry instant (410)."""
    status_code = 410
    error_code = "expired"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429). Raised by callers, never by this core."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


# Second factor


class InvalidCodeError(AuthenticationError):
    """A one-time code did not verify. The message never says why."""
    error_code = "invalid_code"

    def __init__(self, message: str = "invalid code", **kwargs) -> None:
        super().__init__(message, **kwargs)


class NotInitializedError(ConflictError):
    """Two-factor enable requested before setup produced a secret."""
    error_code = "not_initialized"


class AlreadyEnabledError(ConflictError):
    error_code = "already_enabled"


class NotEnabledError(ConflictError):
    error_code = "not_enabled"


class SecondFactorRequiredError(ForbiddenError):
    """Token was minted without a second factor for an account that has one."""
    error_code = "second_factor_required"

    def __init__(self, message: str = "second factor verification required", **kwargs) -> None:
        super().__init__(message, **kwargs)


class PasswordRequiredError(ValidationError):
    """Account has no password (OAuth-only) so it cannot re-authenticate."""
    error_code = "password_required"


class InvalidPasswordError(AuthenticationError):
    error_code = "invalid_password"

    def __init__(self, message: str = "invalid password", **kwargs) -> None:
        super().__init__(message, **kwargs)


# Invitations


class AlreadyResolvedError(ConflictError):
    error_code = "already_resolved"


class InvitationExpiredError(ExpiredError):
    def __init__(self, message: str = "invitation has expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class DuplicateMemberError(ConflictError):
    error_code = "duplicate_member"


class DuplicatePendingInviteError(ConflictError):
    error_code = "duplicate_invite"


# Service tokens


class InvalidSignatureError(AuthenticationError):
    error_code = "invalid_signature"

    def __init__(self, message: str = "invalid token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenExpiredError(ExpiredError):
    status_code = 401

    def __init__(self, message: str = "token has expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


# Faults


class EntropyUnavailableError(RuntimeError):
    """The OS random source failed. Never downgraded to a weaker generator."""


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "ExpiredError",
    "RateLimitedError",
    "ServerError",
    "InvalidCodeError",
    "NotInitializedError",
    "AlreadyEnabledError",
    "NotEnabledError",
    "PasswordRequiredError",
    "SecondFactorRequiredError",
    "InvalidPasswordError",
    "AlreadyResolvedError",
    "InvitationExpiredError",
    "DuplicateMemberError",
    "DuplicatePendingInviteError",
    "InvalidSignatureError",
    "TokenExpiredError",
    "EntropyUnavailableError",
]
