from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or state constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class DuplicateUsername(ConstraintViolation):
    """Username unique constraint tripped on insert."""

    def __init__(self, username: str):
        super().__init__("username already exists", {"field": "username"})
        self.username = username


class DuplicateCode(ConstraintViolation):
    """Invite code collided with an existing one; callers retry with a new code."""

    def __init__(self, code: str):
        super().__init__("invite code already exists", {"field": "code"})
        self.code = code


class InviteCodeConsumed(ConstraintViolation):
    """The conditional unused -> used update matched no row."""

    def __init__(self, code: str):
        super().__init__("invite code missing or already used", {"field": "code"})
        self.code = code


class StoreUnavailable(Exception):
    """Backing store could not be reached or failed mid-operation."""


__all__ = [
    "ConstraintViolation",
    "DuplicateUsername",
    "DuplicateCode",
    "InviteCodeConsumed",
    "StoreUnavailable",
]
