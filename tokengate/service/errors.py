from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a stable ``error_code`` that
    clients can branch on:
    - unauthorized / token_expired / token_revoked (401)
    - forbidden / token_invalid (403)
    - validation_error / invite_code_invalid / invite_code_used (400)
    - conflict (409)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"
    default_message: str = "invalid request"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        message = message or self.default_message
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


class InvalidInviteCodeError(ValidationError):
    """No invite code with that value exists."""
    error_code = "invite_code_invalid"
    default_message = "invalid invite code"


class InviteCodeAlreadyUsedError(ValidationError):
    """Invite code exists but was consumed already."""
    error_code = "invite_code_used"
    default_message = "invite code already used"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"
    default_message = "authentication required"


class InvalidCredentialsError(AuthenticationError):
    """Unknown username or wrong password; deliberately indistinguishable."""
    default_message = "invalid credentials"


class TokenExpiredError(AuthenticationError):
    error_code = "token_expired"
    default_message = "token expired"


class TokenRevokedError(AuthenticationError):
    error_code = "token_revoked"
    default_message = "token revoked"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"
    default_message = "insufficient permissions"


class TokenInvalidError(ForbiddenError):
    """Malformed token or bad signature."""
    error_code = "token_invalid"
    default_message = "invalid token"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"
    default_message = "conflict"


class DuplicateUsernameError(ConflictError):
    default_message = "username already taken"


class ServerError(ServiceError):
    """Internal server error (500). The message never carries internal detail."""
    status_code = 500
    error_code = "server_error"
    default_message = "internal error"


class InternalInconsistencyError(ServerError):
    """A user was created but its invite code could not be consumed."""


class StoreUnavailableError(ServerError):
    """The credential store failed or could not be reached."""


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidInviteCodeError",
    "InviteCodeAlreadyUsedError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "TokenExpiredError",
    "TokenRevokedError",
    "ForbiddenError",
    "TokenInvalidError",
    "ConflictError",
    "DuplicateUsernameError",
    "ServerError",
    "InternalInconsistencyError",
    "StoreUnavailableError",
]
