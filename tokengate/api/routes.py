from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header

from tokengate.api.schemas import (
    AccessTokenResponse,
    AdminCreateUserRequest,
    AuthResponse,
    Envelope,
    InviteCodeItem,
    InviteCodeListResponse,
    InviteCodeRequest,
    InviteCodesResponse,
    LoginRequest,
    RefreshTokenRequest,
    RegisterRequest,
    UserListItem,
    UserListResponse,
    UserSummary,
)
from tokengate.logging import get_logger
from tokengate.service.auth import ADMIN_ROLES, STAFF_ROLES
from tokengate.service.runtime import get_runtime
from tokengate.service.tokens import TokenClaims

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


async def get_principal(authorization: Optional[str] = Header(None)) -> TokenClaims:
    runtime = get_runtime()
    return await runtime.auth.authenticate(authorization)


async def get_staff_principal(authorization: Optional[str] = Header(None)) -> TokenClaims:
    runtime = get_runtime()
    return await runtime.auth.authenticate(authorization, required_roles=STAFF_ROLES)


async def get_admin_principal(authorization: Optional[str] = Header(None)) -> TokenClaims:
    runtime = get_runtime()
    return await runtime.auth.authenticate(authorization, required_roles=ADMIN_ROLES)


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    """Create a ``user`` account by consuming a single-use invite code.

    Raises:
        400: invite code unknown or already used
        409: username taken
    """
    runtime = get_runtime()
    user = await runtime.auth.register(body.username, body.password, body.invite_code)
    return Envelope(status="ok", data=UserSummary(**user))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest):
    """Exchange username and password for an access/refresh token pair.

    Raises:
        401: If credentials are invalid
    """
    runtime = get_runtime()
    result = await runtime.auth.login(body.username, body.password)
    return Envelope(
        status="ok",
        data=AuthResponse(
            access_token=result["access_token"],
            refresh_token=result["refresh_token"],
            token_type=result["token_type"],
            user=UserSummary(**result["user"]),
        ),
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(body: RefreshTokenRequest):
    runtime = get_runtime()
    result = await runtime.auth.refresh(body.refresh_token)
    return Envelope(status="ok", data=AccessTokenResponse(**result))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(body: RefreshTokenRequest):
    runtime = get_runtime()
    result = await runtime.auth.logout(body.refresh_token)
    return Envelope(status="ok", data=result)


@router.get("/auth/profile", response_model=Envelope, tags=["auth"])
async def profile(principal: TokenClaims = Depends(get_principal)):
    runtime = get_runtime()
    summary = await runtime.auth.profile(principal)
    return Envelope(status="ok", data=UserSummary(**summary))


@router.get("/auth/staff", response_model=Envelope, tags=["auth"])
async def staff_area(principal: TokenClaims = Depends(get_staff_principal)):
    return Envelope(
        status="ok",
        data={"message": "staff area", "user_id": principal.id, "role": principal.role.value},
    )


@router.post("/admin/invite-codes", response_model=Envelope, status_code=201, tags=["admin"])
async def admin_generate_invite_codes(
    body: InviteCodeRequest, principal: TokenClaims = Depends(get_admin_principal)
):
    runtime = get_runtime()
    result = await runtime.auth.generate_invite_codes(principal.id, body.quantity)
    return Envelope(status="ok", data=InviteCodesResponse(**result))


@router.get("/admin/invite-codes", response_model=Envelope, tags=["admin"])
async def admin_list_invite_codes(principal: TokenClaims = Depends(get_admin_principal)):
    runtime = get_runtime()
    codes = await runtime.auth.list_invite_codes()
    return Envelope(
        status="ok",
        data=InviteCodeListResponse(items=[InviteCodeItem(**c) for c in codes]),
    )


@router.post("/admin/users", response_model=Envelope, status_code=201, tags=["admin"])
async def admin_create_user(
    body: AdminCreateUserRequest, principal: TokenClaims = Depends(get_admin_principal)
):
    runtime = get_runtime()
    user = await runtime.auth.admin_create_user(body.username, body.password, body.role)
    logger.info("admin_create_user_requested", admin_id=principal.id, user_id=user["id"])
    return Envelope(status="ok", data=UserSummary(**user))


@router.get("/admin/users", response_model=Envelope, tags=["admin"])
async def admin_list_users(principal: TokenClaims = Depends(get_admin_principal)):
    runtime = get_runtime()
    users = await runtime.auth.list_users()
    return Envelope(
        status="ok",
        data=UserListResponse(items=[UserListItem(**u) for u in users]),
    )
