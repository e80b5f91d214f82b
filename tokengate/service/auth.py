from __future__ import annotations

import asyncio
import secrets
from typing import Any, Callable, Iterable, List, Optional, Protocol, TypeVar

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from tokengate.config import Settings
from tokengate.logging import get_logger
from tokengate.service.errors import (
    AuthenticationError,
    DuplicateUsernameError,
    ForbiddenError,
    InternalInconsistencyError,
    InvalidCredentialsError,
    InvalidInviteCodeError,
    InviteCodeAlreadyUsedError,
    ServerError,
    StoreUnavailableError,
    TokenRevokedError,
    ValidationError,
)
from tokengate.service.revocation import RevocationRegistry
from tokengate.service.tokens import TokenClaims, TokenIssuer, TokenSubject, TokenVerifier
from tokengate.storage.errors import (
    DuplicateCode,
    DuplicateUsername,
    InviteCodeConsumed,
    StoreUnavailable,
)
from tokengate.storage.models import InviteCode, Role, User

logger = get_logger(__name__)

T = TypeVar("T")

ADMIN_ROLES = (Role.ADMIN,)
STAFF_ROLES = (Role.ADMIN, Role.MODERATOR)

INVITE_CODE_BYTES = 12


class CredentialStore(Protocol):
    def create_user(
        self, username: str, password_hash: str, role: Role = Role.USER
    ) -> User: ...

    def find_user_by_username(self, username: str) -> Optional[User]: ...

    def get_user(self, user_id: int) -> Optional[User]: ...

    def list_users(self) -> List[User]: ...

    def create_invite_code(self, code: str, creator_user_id: int) -> InviteCode: ...

    def find_invite_code(self, code: str) -> Optional[InviteCode]: ...

    def mark_invite_code_used(self, code: str, consumer_user_id: int) -> bool: ...

    def list_invite_codes(self) -> List[InviteCode]: ...


class AuthService:
    """Session and registration protocols on top of a credential store.

    Password hashing and every store call run in worker threads so the event
    loop is never blocked by argon2 or database I/O.
    """

    def __init__(
        self,
        store: CredentialStore,
        registry: RevocationRegistry,
        settings: Settings,
        *,
        issuer: Optional[TokenIssuer] = None,
        verifier: Optional[TokenVerifier] = None,
    ) -> None:
        self.store = store
        self.registry = registry
        self.settings = settings
        self.issuer = issuer or TokenIssuer(settings)
        self.verifier = verifier or TokenVerifier(settings, registry)
        self._pwd_hasher = PasswordHasher(
            time_cost=settings.password_hash_time_cost,
            memory_cost=settings.password_hash_memory_cost,
            type=Type.ID,
        )
        self._dummy_hash: Optional[str] = None
        self.logger = logger

    # helpers
    async def _store_call(self, fn: Callable[..., T], *args: Any) -> T:
        try:
            return await asyncio.to_thread(fn, *args)
        except StoreUnavailable as exc:
            self.logger.error(
                "credential_store_unavailable", operation=fn.__name__, error=str(exc)
            )
            raise StoreUnavailableError() from exc

    def _hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def _verify_password(self, stored_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerificationError):
            return False

    async def _burn_password_check(self, password: str) -> None:
        """Spend a verify on unknown usernames so both failures cost the same."""
        if self._dummy_hash is None:
            self._dummy_hash = await asyncio.to_thread(
                self._hash_password, secrets.token_urlsafe(16)
            )
        await asyncio.to_thread(self._verify_password, self._dummy_hash, password)

    @staticmethod
    def _extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        if not header.lower().startswith("bearer "):
            return None
        token = header.split(" ", 1)[1].strip()
        return token or None

    @staticmethod
    def _parse_role(role: Optional[str]) -> Role:
        if role is None or role == "":
            return Role.USER
        try:
            return Role(role)
        except ValueError:
            allowed = Role.values()
            raise ValidationError(
                f"invalid role; allowed roles: {', '.join(allowed)}",
                detail={"allowed_roles": allowed},
            )

    # session protocol
    async def login(self, username: str, password: str) -> dict[str, Any]:
        user = await self._store_call(self.store.find_user_by_username, username)
        if user is None:
            await self._burn_password_check(password)
            self.logger.info("login_failed", reason="unknown_user")
            raise InvalidCredentialsError()
        matches = await asyncio.to_thread(
            self._verify_password, user.password_hash, password
        )
        if not matches:
            self.logger.info("login_failed", reason="password_mismatch", user_id=user.id)
            raise InvalidCredentialsError()

        subject = TokenSubject.from_user(user)
        access_token = self.issuer.issue_access_token(subject)
        refresh_token = self.issuer.issue_refresh_token(subject)
        self.logger.info("login_succeeded", user_id=user.id)
        return {
            "access_token": access_token,
            "refresh_token": refresh_token,
            "token_type": "bearer",
            "user": user.summary(),
        }

    async def refresh(self, refresh_token: str) -> dict[str, Any]:
        claims = await self.verifier.verify_refresh(refresh_token)
        if not claims.jti:
            # a refresh token without an identifier can never be revoked
            self.logger.warning("refresh_token_missing_jti", user_id=claims.id)
            raise TokenRevokedError()
        # username is not carried by refresh tokens and is left unset
        subject = TokenSubject(id=claims.id, role=claims.role, username=None)
        access_token = self.issuer.issue_access_token(subject)
        self.logger.info("access_token_refreshed", user_id=claims.id)
        return {"access_token": access_token, "token_type": "bearer"}

    async def logout(self, refresh_token: str) -> dict[str, Any]:
        claims = self.verifier.decode_ignoring_expiry(
            refresh_token, self.settings.refresh_token_secret
        )
        if claims is None:
            self.logger.info("logout_untrusted_token")
        elif not claims.jti:
            self.logger.info("logout_token_without_jti", user_id=claims.id)
        else:
            await self.registry.revoke(claims.jti, float(claims.exp))
            self.logger.info("refresh_token_revoked", user_id=claims.id, jti=claims.jti)
        return {"message": "logged out"}

    async def authenticate(
        self,
        authorization: Optional[str],
        required_roles: Optional[Iterable[Role]] = None,
    ) -> TokenClaims:
        token = self._extract_bearer(authorization)
        if not token:
            raise AuthenticationError()
        claims = await self.verifier.verify_access(token)
        if required_roles is not None and claims.role not in tuple(required_roles):
            self.logger.info(
                "role_check_failed", user_id=claims.id, role=claims.role.value
            )
            raise ForbiddenError()
        return claims

    async def profile(self, claims: TokenClaims) -> dict[str, Any]:
        user = await self._store_call(self.store.get_user, claims.id)
        if user is None:
            return {"id": claims.id, "username": claims.username, "role": claims.role.value}
        return user.summary()

    # registration protocol
    async def register(
        self, username: str, password: str, invite_code: str
    ) -> dict[str, Any]:
        invite = await self._store_call(self.store.find_invite_code, invite_code)
        if invite is None:
            self.logger.info("register_rejected", reason="invite_code_invalid")
            raise InvalidInviteCodeError()
        if invite.is_used:
            self.logger.info("register_rejected", reason="invite_code_used")
            raise InviteCodeAlreadyUsedError()

        password_hash = await asyncio.to_thread(self._hash_password, password)

        atomic = getattr(self.store, "register_with_invite", None)
        if atomic is not None:
            try:
                user = await self._store_call(atomic, username, password_hash, invite_code)
            except DuplicateUsername:
                raise DuplicateUsernameError()
            except InviteCodeConsumed:
                self.logger.info("register_rejected", reason="invite_code_consumed_concurrently")
                raise InviteCodeAlreadyUsedError()
        else:
            user = await self._register_two_step(username, password_hash, invite_code)

        self.logger.info("user_registered", user_id=user.id)
        return user.summary()

    async def _register_two_step(
        self, username: str, password_hash: str, invite_code: str
    ) -> User:
        try:
            user = await self._store_call(
                self.store.create_user, username, password_hash, Role.USER
            )
        except DuplicateUsername:
            raise DuplicateUsernameError()
        marked = await self._store_call(
            self.store.mark_invite_code_used, invite_code, user.id
        )
        if not marked:
            self.logger.error(
                "invite_code_mark_used_failed", user_id=user.id, code_prefix=invite_code[:6]
            )
            raise InternalInconsistencyError()
        return user

    async def admin_create_user(
        self, username: str, password: str, role: Optional[str] = None
    ) -> dict[str, Any]:
        parsed_role = self._parse_role(role)
        existing = await self._store_call(self.store.find_user_by_username, username)
        if existing is not None:
            raise DuplicateUsernameError()
        password_hash = await asyncio.to_thread(self._hash_password, password)
        try:
            user = await self._store_call(
                self.store.create_user, username, password_hash, parsed_role
            )
        except DuplicateUsername:
            raise DuplicateUsernameError()
        self.logger.info("admin_user_created", user_id=user.id, role=user.role.value)
        return user.summary()

    async def ensure_admin(self, username: str, password: str) -> tuple[User, bool]:
        """Create ``username`` as an admin unless it already exists."""
        existing = await self._store_call(self.store.find_user_by_username, username)
        if existing is not None:
            return existing, False
        password_hash = await asyncio.to_thread(self._hash_password, password)
        try:
            user = await self._store_call(
                self.store.create_user, username, password_hash, Role.ADMIN
            )
        except DuplicateUsername:
            user = await self._store_call(self.store.find_user_by_username, username)
            return user, False
        self.logger.info("admin_bootstrapped", user_id=user.id)
        return user, True

    async def generate_invite_codes(
        self, admin_id: int, quantity: int = 1
    ) -> dict[str, Any]:
        low, high = self.settings.invite_batch_min, self.settings.invite_batch_max
        if not isinstance(quantity, int) or not low <= quantity <= high:
            raise ValidationError(
                f"quantity must be between {low} and {high}",
                detail={"min": low, "max": high},
            )
        generated: list[str] = []
        failures = 0
        attempts = 0
        while len(generated) < quantity and attempts < quantity * 2:
            attempts += 1
            code = secrets.token_hex(INVITE_CODE_BYTES)
            try:
                await self._store_call(self.store.create_invite_code, code, admin_id)
            except DuplicateCode:
                failures += 1
                self.logger.warning("invite_code_collision", attempt=attempts)
                continue
            generated.append(code)
        if not generated:
            self.logger.error("invite_code_generation_failed", attempts=attempts)
            raise ServerError()
        self.logger.info(
            "invite_codes_generated", admin_id=admin_id, count=len(generated), failed=failures
        )
        return {"codes": generated, "failed": failures}

    async def list_users(self) -> list[dict[str, Any]]:
        users = await self._store_call(self.store.list_users)
        return [
            {**user.summary(), "created_at": user.created_at.isoformat()}
            for user in users
        ]

    async def list_invite_codes(self) -> list[dict[str, Any]]:
        codes = await self._store_call(self.store.list_invite_codes)
        return [invite.as_dict() for invite in codes]
