from __future__ import annotations

import unicodedata
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from tokengate.logging import get_correlation_id

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
    "invite_code_invalid",
    "invite_code_used",
    "token_expired",
    "token_invalid",
    "token_revoked",
})


def _normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi override characters, then NFKC normalize."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


def _validate_username(value: str) -> str:
    normalized = _normalize_unicode(value.strip())
    if len(normalized) < 3:
        raise ValueError("username must be at least 3 characters")
    return normalized


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


class RegisterRequest(BaseModel):
    # unknown fields such as ``role`` are dropped by pydantic's default extra="ignore"
    username: str = Field(..., max_length=64)
    password: str = Field(..., min_length=6, max_length=256)
    invite_code: str = Field(..., min_length=10, max_length=128)

    @field_validator("username")
    @classmethod
    def _validate_register_username(cls, value: str) -> str:
        return _validate_username(value)

    @field_validator("invite_code")
    @classmethod
    def _strip_invite_code(cls, value: str) -> str:
        return value.strip()


class LoginRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=64)
    password: str = Field(..., min_length=1, max_length=256)

    @field_validator("username")
    @classmethod
    def _normalize_login_username(cls, value: str) -> str:
        return _normalize_unicode(value.strip())


class RefreshTokenRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=4096)


class AdminCreateUserRequest(BaseModel):
    username: str = Field(..., max_length=64)
    password: str = Field(..., min_length=6, max_length=256)
    # checked against the role enum by the service so the error lists allowed roles
    role: Optional[str] = Field(default=None, max_length=32)

    @field_validator("username")
    @classmethod
    def _validate_admin_username(cls, value: str) -> str:
        return _validate_username(value)


class InviteCodeRequest(BaseModel):
    quantity: int = Field(default=1)


class UserSummary(BaseModel):
    id: int
    username: Optional[str] = None
    role: str


class UserListItem(UserSummary):
    created_at: str


class AuthResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    user: UserSummary


class AccessTokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"


class InviteCodeItem(BaseModel):
    code: str
    is_used: bool
    created_by: Optional[int] = None
    used_by: Optional[int] = None
    created_at: str
    used_at: Optional[str] = None


class InviteCodesResponse(BaseModel):
    codes: List[str]
    failed: int = 0


class UserListResponse(BaseModel):
    items: List[UserListItem]


class InviteCodeListResponse(BaseModel):
    items: List[InviteCodeItem]
