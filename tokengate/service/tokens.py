from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from tokengate.config import Settings
from tokengate.logging import get_logger
from tokengate.service.errors import TokenExpiredError, TokenInvalidError, TokenRevokedError
from tokengate.service.revocation import RevocationRegistry
from tokengate.storage.models import Role

logger = get_logger(__name__)


@dataclass(frozen=True)
class TokenSubject:
    """Identity a token is issued for. ``username`` is None when unknown."""

    id: int
    role: Role
    username: Optional[str] = None

    @classmethod
    def from_user(cls, user: Any) -> "TokenSubject":
        return cls(id=user.id, role=Role(user.role), username=user.username)


@dataclass(frozen=True)
class TokenClaims:
    id: int
    role: Role
    iat: int
    exp: int
    username: Optional[str] = None
    jti: Optional[str] = None
    raw: dict = field(default_factory=dict, compare=False, repr=False)


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _sign(secret: str, signing_input: str) -> str:
    return _encode_segment(
        hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
    )


def encode_jwt(payload: dict[str, Any], secret: str) -> str:
    header = {"alg": "HS256", "typ": "JWT"}
    header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
    payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
    signing_input = f"{header_enc}.{payload_enc}"
    return f"{signing_input}.{_sign(secret, signing_input)}"


class TokenIssuer:
    """Builds signed access and refresh tokens."""

    def __init__(self, settings: Settings, *, clock: Callable[[], float] = time.time) -> None:
        self.settings = settings
        self._clock = clock

    def _base_claims(self, subject: TokenSubject, ttl_minutes: int) -> dict[str, Any]:
        now = int(self._clock())
        return {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": subject.id,
            "role": Role(subject.role).value,
            "iat": now,
            "exp": now + ttl_minutes * 60,
        }

    def issue_access_token(self, subject: TokenSubject) -> str:
        payload = self._base_claims(subject, self.settings.access_token_ttl_minutes)
        payload["username"] = subject.username
        # unique per token so two issues within one second still differ
        payload["jti"] = str(uuid.uuid4())
        return encode_jwt(payload, self.settings.access_token_secret)

    def issue_refresh_token(self, subject: TokenSubject) -> str:
        payload = self._base_claims(subject, self.settings.refresh_token_ttl_minutes)
        payload["jti"] = str(uuid.uuid4())
        return encode_jwt(payload, self.settings.refresh_token_secret)


class TokenVerifier:
    """Turns a raw token into trusted claims or a classified failure.

    Checks run in order: signature and structure (``TokenInvalidError``),
    expiry (``TokenExpiredError``), then revocation of the ``jti`` when asked
    (``TokenRevokedError``).
    """

    def __init__(
        self,
        settings: Settings,
        registry: RevocationRegistry,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self.registry = registry
        self._clock = clock

    def _decode(self, token: str, secret: str) -> TokenClaims:
        if not isinstance(token, str):
            raise TokenInvalidError()
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise TokenInvalidError()

        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError, RecursionError):
            logger.info("jwt_header_decode_failed")
            raise TokenInvalidError()
        alg = header.get("alg") if isinstance(header, dict) else None
        if alg != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=alg)
            raise TokenInvalidError()

        expected_sig = _sign(secret, f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise TokenInvalidError()
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError, RecursionError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenInvalidError()
        if not isinstance(payload, dict):
            raise TokenInvalidError()

        if payload.get("iss") != self.settings.jwt_issuer:
            raise TokenInvalidError()
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            raise TokenInvalidError()

        try:
            return TokenClaims(
                id=int(payload["sub"]),
                role=Role(payload["role"]),
                iat=int(payload.get("iat") or 0),
                exp=int(payload["exp"]),
                username=payload.get("username"),
                jti=payload.get("jti") or None,
                raw=payload,
            )
        except (KeyError, TypeError, ValueError):
            raise TokenInvalidError()

    async def verify(self, token: str, secret: str, *, check_revocation: bool = False) -> TokenClaims:
        claims = self._decode(token, secret)
        if claims.exp <= self._clock() - self.settings.token_leeway_seconds:
            raise TokenExpiredError()
        if check_revocation and claims.jti and await self.registry.is_revoked(claims.jti):
            logger.warning("revoked_refresh_token_presented", user_id=claims.id, jti=claims.jti)
            raise TokenRevokedError()
        return claims

    async def verify_access(self, token: str) -> TokenClaims:
        return await self.verify(token, self.settings.access_token_secret)

    async def verify_refresh(self, token: str) -> TokenClaims:
        return await self.verify(
            token, self.settings.refresh_token_secret, check_revocation=True
        )

    def decode_ignoring_expiry(self, token: str, secret: str) -> Optional[TokenClaims]:
        """Signature-checked claims regardless of ``exp``; None if untrusted."""
        try:
            return self._decode(token, secret)
        except TokenInvalidError:
            return None
