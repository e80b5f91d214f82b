from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    """Closed set of account roles; parse once at the boundary with ``Role(value)``."""

    USER = "user"
    ADMIN = "admin"
    MODERATOR = "moderator"

    @classmethod
    def values(cls) -> list[str]:
        return [member.value for member in cls]


@dataclass
class User:
    id: int
    username: str
    password_hash: str
    role: Role = Role.USER
    created_at: datetime = field(default_factory=_utcnow)

    def summary(self) -> dict:
        """Public-safe view of the account (never includes the hash)."""
        return {"id": self.id, "username": self.username, "role": self.role.value}


@dataclass
class InviteCode:
    code: str
    created_by: int
    is_used: bool = False
    used_by: Optional[int] = None
    created_at: datetime = field(default_factory=_utcnow)
    used_at: Optional[datetime] = None

    def as_dict(self) -> dict:
        return {
            "code": self.code,
            "is_used": self.is_used,
            "created_by": self.created_by,
            "used_by": self.used_by,
            "created_at": self.created_at.isoformat(),
            "used_at": self.used_at.isoformat() if self.used_at else None,
        }
