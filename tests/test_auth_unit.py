"""Unit tests for the auth service.

Tests for:
- Login / refresh / logout session protocol
- Invite-gated registration, including concurrent races
- Admin-direct user creation and invite code generation
- Bearer authentication and role gates
"""

import asyncio
import time

import pytest

from tokengate.service.auth import ADMIN_ROLES, STAFF_ROLES, AuthService
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
    TokenInvalidError,
    TokenRevokedError,
    ValidationError,
)
from tokengate.service.revocation import InMemoryRevocationRegistry
from tokengate.service.tokens import encode_jwt
from tokengate.storage.errors import StoreUnavailable
from tokengate.storage.memory import MemoryStore
from tokengate.storage.models import Role


class TwoStepMemoryStore(MemoryStore):
    """Memory store without the atomic registration path."""

    register_with_invite = None

    def __init__(self):
        super().__init__()
        self.lose_mark_race = False

    def mark_invite_code_used(self, code, consumer_user_id):
        if self.lose_mark_race:
            return False
        return super().mark_invite_code_used(code, consumer_user_id)


class UnavailableStore(MemoryStore):
    def find_user_by_username(self, username):
        raise StoreUnavailable("connection refused")


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def registry():
    return InMemoryRevocationRegistry()


@pytest.fixture
def auth_service(memory_store, registry, settings):
    return AuthService(memory_store, registry, settings)


@pytest.fixture
def admin(memory_store, auth_service):
    return memory_store.create_user(
        "root", auth_service._hash_password("rootpass"), Role.ADMIN
    )


@pytest.fixture
def invite_code(memory_store, admin):
    return memory_store.create_invite_code("invite-code-0001", admin.id).code


@pytest.fixture
def test_user(memory_store, auth_service):
    return memory_store.create_user(
        "alice", auth_service._hash_password("wonderland"), Role.USER
    )


def _refresh_payload(settings, **overrides):
    now = int(time.time())
    payload = {
        "iss": settings.jwt_issuer,
        "aud": settings.jwt_audience,
        "sub": 1,
        "role": "user",
        "iat": now,
        "exp": now + 3600,
        "jti": "handmade-jti",
    }
    payload.update(overrides)
    return {k: v for k, v in payload.items() if v is not None}


class TestPasswordHashing:
    def test_hash_is_argon2id_and_not_plaintext(self, auth_service):
        pwd_hash = auth_service._hash_password("wonderland")
        assert pwd_hash.startswith("$argon2id$")
        assert "wonderland" not in pwd_hash

    def test_verify_rejects_garbage_hash(self, auth_service):
        assert auth_service._verify_password("not-a-hash", "wonderland") is False


class TestLogin:
    async def test_login_returns_token_pair_and_summary(self, auth_service, test_user):
        result = await auth_service.login("alice", "wonderland")

        assert result["user"] == {"id": test_user.id, "username": "alice", "role": "user"}
        access = await auth_service.verifier.verify_access(result["access_token"])
        refresh = await auth_service.verifier.verify_refresh(result["refresh_token"])
        assert access.username == "alice"
        assert refresh.id == test_user.id
        assert refresh.jti

    async def test_wrong_password_and_unknown_user_look_identical(self, auth_service, test_user):
        with pytest.raises(InvalidCredentialsError) as wrong_password:
            await auth_service.login("alice", "not-the-password")
        with pytest.raises(InvalidCredentialsError) as unknown_user:
            await auth_service.login("nobody", "wonderland")

        assert wrong_password.value.message == unknown_user.value.message
        assert wrong_password.value.status_code == unknown_user.value.status_code == 401

    async def test_store_outage_is_generic_server_error(self, registry, settings):
        service = AuthService(UnavailableStore(), registry, settings)
        with pytest.raises(StoreUnavailableError) as excinfo:
            await service.login("alice", "wonderland")
        assert excinfo.value.status_code == 500
        assert excinfo.value.message == "internal error"


class TestRefreshAndLogout:
    async def test_refresh_issues_new_access_token(self, auth_service, test_user):
        tokens = await auth_service.login("alice", "wonderland")
        refreshed = await auth_service.refresh(tokens["refresh_token"])

        assert refreshed["access_token"] != tokens["access_token"]
        assert "refresh_token" not in refreshed
        claims = await auth_service.verifier.verify_access(refreshed["access_token"])
        assert claims.id == test_user.id
        assert claims.role is Role.USER
        assert claims.username is None

    async def test_refresh_token_remains_usable(self, auth_service, test_user):
        tokens = await auth_service.login("alice", "wonderland")
        await auth_service.refresh(tokens["refresh_token"])
        await auth_service.refresh(tokens["refresh_token"])

    async def test_logout_blocks_refresh(self, auth_service, test_user):
        tokens = await auth_service.login("alice", "wonderland")
        result = await auth_service.logout(tokens["refresh_token"])

        assert result == {"message": "logged out"}
        with pytest.raises(TokenRevokedError):
            await auth_service.refresh(tokens["refresh_token"])

    async def test_logout_is_idempotent(self, auth_service, registry, test_user):
        tokens = await auth_service.login("alice", "wonderland")
        first = await auth_service.logout(tokens["refresh_token"])
        second = await auth_service.logout(tokens["refresh_token"])

        assert first == second
        assert len(registry) == 1

    async def test_logout_revokes_expired_token(self, auth_service, registry, settings):
        past = int(time.time()) - 3600
        token = encode_jwt(
            _refresh_payload(settings, iat=past - 60, exp=past, jti="expired-jti"),
            settings.refresh_token_secret,
        )
        await auth_service.logout(token)
        assert await registry.is_revoked("expired-jti") is True

    async def test_logout_normalizes_untrusted_tokens(self, auth_service, registry, settings):
        forged = encode_jwt(_refresh_payload(settings, jti="forged"), "attacker-secret")
        no_jti = encode_jwt(_refresh_payload(settings, jti=None), settings.refresh_token_secret)

        results = [
            await auth_service.logout("garbage"),
            await auth_service.logout(forged),
            await auth_service.logout(no_jti),
        ]

        assert all(r == {"message": "logged out"} for r in results)
        assert len(registry) == 0

    async def test_refresh_token_without_jti_is_rejected(self, auth_service, settings):
        token = encode_jwt(_refresh_payload(settings, jti=None), settings.refresh_token_secret)
        with pytest.raises(TokenRevokedError):
            await auth_service.refresh(token)


class TestRegistration:
    async def test_register_consumes_invite(self, auth_service, memory_store, invite_code):
        user = await auth_service.register("bob", "builder1", invite_code)

        assert user["username"] == "bob"
        assert user["role"] == "user"
        invite = memory_store.find_invite_code(invite_code)
        assert invite.is_used is True
        assert invite.used_by == user["id"]
        assert invite.used_at is not None

    async def test_registered_user_can_login(self, auth_service, invite_code):
        await auth_service.register("bob", "builder1", invite_code)
        result = await auth_service.login("bob", "builder1")
        assert result["user"]["role"] == "user"

    async def test_unknown_invite_code_creates_nothing(self, auth_service, memory_store, admin):
        with pytest.raises(InvalidInviteCodeError) as excinfo:
            await auth_service.register("bob", "builder1", "plausible-but-unknown")

        assert excinfo.value.status_code == 400
        assert excinfo.value.error_code == "invite_code_invalid"
        assert memory_store.find_user_by_username("bob") is None

    async def test_used_invite_code_is_rejected(self, auth_service, invite_code):
        await auth_service.register("bob", "builder1", invite_code)
        with pytest.raises(InviteCodeAlreadyUsedError) as excinfo:
            await auth_service.register("carol", "builder2", invite_code)
        assert excinfo.value.error_code == "invite_code_used"

    async def test_duplicate_username_leaves_code_unused(self, auth_service, memory_store, admin, test_user):
        code = memory_store.create_invite_code("invite-code-0002", admin.id).code
        with pytest.raises(DuplicateUsernameError) as excinfo:
            await auth_service.register("alice", "another1", code)

        assert excinfo.value.status_code == 409
        assert memory_store.find_invite_code(code).is_used is False

    async def test_concurrent_registrations_single_winner(self, auth_service, memory_store, invite_code):
        results = await asyncio.gather(
            auth_service.register("racer-one", "password1", invite_code),
            auth_service.register("racer-two", "password2", invite_code),
            return_exceptions=True,
        )

        winners = [r for r in results if isinstance(r, dict)]
        losers = [r for r in results if isinstance(r, Exception)]
        assert len(winners) == 1
        assert len(losers) == 1
        assert isinstance(losers[0], InviteCodeAlreadyUsedError)
        invite = memory_store.find_invite_code(invite_code)
        assert invite.is_used is True
        assert invite.used_by == winners[0]["id"]
        assert len(memory_store.list_users()) == 2  # admin + winner

    async def test_concurrent_same_username_single_winner(self, auth_service, memory_store, admin):
        first = memory_store.create_invite_code("invite-code-aaaa", admin.id).code
        second = memory_store.create_invite_code("invite-code-bbbb", admin.id).code

        results = await asyncio.gather(
            auth_service.register("samename", "password1", first),
            auth_service.register("samename", "password2", second),
            return_exceptions=True,
        )

        winners = [r for r in results if isinstance(r, dict)]
        losers = [r for r in results if isinstance(r, Exception)]
        assert len(winners) == 1
        assert len(losers) == 1
        assert isinstance(losers[0], DuplicateUsernameError)
        used = [c for c in (first, second) if memory_store.find_invite_code(c).is_used]
        assert len(used) == 1


class TestTwoStepRegistration:
    @pytest.fixture
    def two_step_store(self):
        return TwoStepMemoryStore()

    @pytest.fixture
    def service(self, two_step_store, registry, settings):
        return AuthService(two_step_store, registry, settings)

    async def test_two_step_path_registers(self, service, two_step_store):
        code = two_step_store.create_invite_code("invite-code-two1", 1).code
        user = await service.register("dave", "password1", code)

        assert user["role"] == "user"
        assert two_step_store.find_invite_code(code).used_by == user["id"]

    async def test_lost_mark_race_is_internal_inconsistency(self, service, two_step_store):
        code = two_step_store.create_invite_code("invite-code-two2", 1).code
        two_step_store.lose_mark_race = True

        with pytest.raises(InternalInconsistencyError) as excinfo:
            await service.register("erin", "password1", code)

        assert excinfo.value.status_code == 500
        assert excinfo.value.message == "internal error"


class TestAdminCreateUser:
    async def test_creates_user_with_requested_role(self, auth_service):
        user = await auth_service.admin_create_user("mod", "modpass1", "moderator")
        assert user["role"] == "moderator"

    async def test_role_defaults_to_user(self, auth_service):
        user = await auth_service.admin_create_user("plain", "plainpass")
        assert user["role"] == "user"

    async def test_unknown_role_lists_allowed_roles(self, auth_service, memory_store):
        with pytest.raises(ValidationError) as excinfo:
            await auth_service.admin_create_user("boss", "bosspass", "superuser")

        assert excinfo.value.status_code == 400
        assert excinfo.value.detail["allowed_roles"] == ["user", "admin", "moderator"]
        assert memory_store.find_user_by_username("boss") is None

    async def test_existing_username_conflicts(self, auth_service, test_user):
        with pytest.raises(DuplicateUsernameError):
            await auth_service.admin_create_user("alice", "whatever1", "admin")

    async def test_ensure_admin_is_noop_when_present(self, auth_service):
        user, created = await auth_service.ensure_admin("boot", "bootpass")
        again, created_again = await auth_service.ensure_admin("boot", "other-pass")

        assert created is True
        assert created_again is False
        assert user.role is Role.ADMIN
        assert again.id == user.id


class TestInviteCodeGeneration:
    async def test_generates_requested_quantity(self, auth_service, memory_store, admin):
        result = await auth_service.generate_invite_codes(admin.id, 3)

        assert len(result["codes"]) == 3
        assert result["failed"] == 0
        for code in result["codes"]:
            assert len(code) == 24
            int(code, 16)
            assert memory_store.find_invite_code(code).created_by == admin.id

    @pytest.mark.parametrize("quantity", [0, -1, 21])
    async def test_quantity_outside_bounds_rejected(self, auth_service, admin, quantity):
        with pytest.raises(ValidationError):
            await auth_service.generate_invite_codes(admin.id, quantity)

    async def test_collisions_are_retried_and_counted(self, auth_service, admin, monkeypatch):
        monkeypatch.setattr("tokengate.service.auth.secrets.token_hex", lambda n: "ab" * n)
        result = await auth_service.generate_invite_codes(admin.id, 2)

        assert result["codes"] == ["ab" * 12]
        assert result["failed"] == 3

    async def test_all_attempts_colliding_is_server_error(self, auth_service, memory_store, admin, monkeypatch):
        memory_store.create_invite_code("cd" * 12, admin.id)
        monkeypatch.setattr("tokengate.service.auth.secrets.token_hex", lambda n: "cd" * n)

        with pytest.raises(ServerError):
            await auth_service.generate_invite_codes(admin.id, 1)


class TestAuthenticate:
    async def test_missing_or_malformed_header(self, auth_service):
        with pytest.raises(AuthenticationError):
            await auth_service.authenticate(None)
        with pytest.raises(AuthenticationError):
            await auth_service.authenticate("Basic abc")
        with pytest.raises(AuthenticationError):
            await auth_service.authenticate("Bearer ")

    async def test_valid_bearer_returns_claims(self, auth_service, test_user):
        tokens = await auth_service.login("alice", "wonderland")
        claims = await auth_service.authenticate(f"Bearer {tokens['access_token']}")
        assert claims.id == test_user.id

    async def test_refresh_token_is_not_an_access_token(self, auth_service, test_user):
        tokens = await auth_service.login("alice", "wonderland")
        with pytest.raises(TokenInvalidError) as excinfo:
            await auth_service.authenticate(f"Bearer {tokens['refresh_token']}")
        assert excinfo.value.status_code == 403

    async def test_role_gates(self, auth_service, memory_store, test_user):
        await auth_service.admin_create_user("mod", "modpass1", "moderator")
        user_tokens = await auth_service.login("alice", "wonderland")
        mod_tokens = await auth_service.login("mod", "modpass1")

        with pytest.raises(ForbiddenError):
            await auth_service.authenticate(
                f"Bearer {user_tokens['access_token']}", required_roles=STAFF_ROLES
            )
        staff = await auth_service.authenticate(
            f"Bearer {mod_tokens['access_token']}", required_roles=STAFF_ROLES
        )
        assert staff.role is Role.MODERATOR
        with pytest.raises(ForbiddenError):
            await auth_service.authenticate(
                f"Bearer {mod_tokens['access_token']}", required_roles=ADMIN_ROLES
            )

    async def test_profile_fills_username_from_store(self, auth_service, test_user):
        tokens = await auth_service.login("alice", "wonderland")
        refreshed = await auth_service.refresh(tokens["refresh_token"])
        claims = await auth_service.authenticate(f"Bearer {refreshed['access_token']}")

        profile = await auth_service.profile(claims)
        assert profile == {"id": test_user.id, "username": "alice", "role": "user"}


class TestListings:
    async def test_list_users_ordered_by_id(self, auth_service, admin, test_user):
        users = await auth_service.list_users()
        assert [u["username"] for u in users] == ["root", "alice"]
        assert all("password_hash" not in u for u in users)
        assert all("created_at" in u for u in users)

    async def test_list_invite_codes(self, auth_service, admin):
        await auth_service.generate_invite_codes(admin.id, 2)
        codes = await auth_service.list_invite_codes()
        assert len(codes) == 2
        assert all(c["is_used"] is False for c in codes)
