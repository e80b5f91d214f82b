from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Dict, List, Optional

from tokengate.logging import get_logger
from tokengate.storage.errors import DuplicateCode, DuplicateUsername, InviteCodeConsumed
from tokengate.storage.models import InviteCode, Role, User


class MemoryStore:
    """In-process credential store for tests and single-instance development."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[int, User] = {}
        self.invite_codes: Dict[str, InviteCode] = {}
        self._user_id_seq: int = 1
        # RLock so register_with_invite can reuse create_user while holding it
        self._data_lock = threading.RLock()

    # users
    def create_user(
        self, username: str, password_hash: str, role: Role = Role.USER
    ) -> User:
        with self._data_lock:
            if any(existing.username == username for existing in self.users.values()):
                raise DuplicateUsername(username)
            user = User(
                id=self._user_id_seq,
                username=username,
                password_hash=password_hash,
                role=Role(role),
            )
            self._user_id_seq += 1
            self.users[user.id] = user
            return user

    def find_user_by_username(self, username: str) -> Optional[User]:
        with self._data_lock:
            return next(
                (u for u in self.users.values() if u.username == username), None
            )

    def get_user(self, user_id: int) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def list_users(self) -> List[User]:
        with self._data_lock:
            return sorted(self.users.values(), key=lambda u: u.id)

    # invite codes
    def create_invite_code(self, code: str, creator_user_id: int) -> InviteCode:
        with self._data_lock:
            if code in self.invite_codes:
                raise DuplicateCode(code)
            invite = InviteCode(code=code, created_by=creator_user_id)
            self.invite_codes[code] = invite
            return invite

    def find_invite_code(self, code: str) -> Optional[InviteCode]:
        with self._data_lock:
            return self.invite_codes.get(code)

    def mark_invite_code_used(self, code: str, consumer_user_id: int) -> bool:
        """Flip ``code`` from unused to used; False when no transition happened."""
        with self._data_lock:
            invite = self.invite_codes.get(code)
            if invite is None or invite.is_used:
                return False
            invite.is_used = True
            invite.used_by = consumer_user_id
            invite.used_at = datetime.now(timezone.utc)
            return True

    def list_invite_codes(self) -> List[InviteCode]:
        with self._data_lock:
            return sorted(
                self.invite_codes.values(), key=lambda c: c.created_at, reverse=True
            )

    def register_with_invite(
        self, username: str, password_hash: str, code: str
    ) -> User:
        """Create a ``user`` account and consume ``code`` under one lock hold."""
        with self._data_lock:
            invite = self.invite_codes.get(code)
            if invite is None or invite.is_used:
                raise InviteCodeConsumed(code)
            user = self.create_user(username, password_hash, Role.USER)
            if not self.mark_invite_code_used(code, user.id):
                self.users.pop(user.id, None)
                self.logger.warning("register_with_invite_rolled_back", user_id=user.id)
                raise InviteCodeConsumed(code)
            return user
