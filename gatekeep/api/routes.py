from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Query

from gatekeep.api.schemas import (
    AdminCreateUserRequest,
    AdminUpdateUserRequest,
    ChangePasswordRequest,
    Envelope,
    ForgotPasswordRequest,
    LoginRequest,
    LogoutRequest,
    ResetPasswordRequest,
    SignupRequest,
    SignupResponse,
    TokenRefreshRequest,
    TokenResponse,
    UpdateProfileRequest,
    UserListResponse,
    UserResponse,
    ValidateResetCodeRequest,
    VerifyEmailRequest,
    VerifyEmailResponse,
)
from gatekeep.logging import get_logger
from gatekeep.service.authenticator import AuthContext
from gatekeep.service.errors import ForbiddenError, ValidationError
from gatekeep.service.runtime import get_runtime
from gatekeep.storage.common import MAX_PAGE_SIZE
from gatekeep.storage.models import User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _user_payload(user: User) -> UserResponse:
    return UserResponse(**user.to_public_dict())


# dependencies
async def get_identity(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return await runtime.authenticator.authenticate(authorization)


async def require_verified(ctx: AuthContext = Depends(get_identity)) -> AuthContext:
    if not ctx.is_verified:
        raise ForbiddenError("email verification required")
    return ctx


def require_role(*roles: str):
    """Dependency factory: 403 unless the verified caller's role is one of ``roles``."""

    async def _check(ctx: AuthContext = Depends(require_verified)) -> AuthContext:
        if ctx.role not in roles:
            logger.warning("role_forbidden", user_id=ctx.user_id, role=ctx.role)
            raise ForbiddenError("insufficient role", detail={"required": list(roles)})
        return ctx

    return _check


require_admin = require_role("admin")


# auth
@router.post("/auth/signup", response_model=Envelope, status_code=201, tags=["auth"])
async def signup(body: SignupRequest):
    runtime = get_runtime()
    user, tokens = await runtime.auth.signup(
        email=body.email,
        password=body.password,
        name=body.name,
        phone=body.phone,
        document_id=body.document_id,
    )
    return Envelope(
        status="ok",
        data=SignupResponse(
            user=_user_payload(user), tokens=TokenResponse(**tokens.to_dict())
        ),
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest):
    """Authenticate with email and password.

    Raises:
        401: If credentials are invalid or the account is disabled
    """
    runtime = get_runtime()
    tokens = await runtime.auth.login(body.email, body.password)
    return Envelope(status="ok", data=TokenResponse(**tokens.to_dict()))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(body: TokenRefreshRequest):
    runtime = get_runtime()
    tokens = await runtime.auth.refresh(body.refresh_token)
    return Envelope(status="ok", data=TokenResponse(**tokens.to_dict()))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    body: Optional[LogoutRequest] = None, ctx: AuthContext = Depends(get_identity)
):
    runtime = get_runtime()
    await runtime.auth.logout(ctx, body.refresh_token if body else None)
    return Envelope(status="ok", data={"message": "logged out"})


@router.post("/auth/logout_all", response_model=Envelope, tags=["auth"])
async def logout_all(ctx: AuthContext = Depends(get_identity)):
    runtime = get_runtime()
    revoked = await runtime.auth.logout_all(ctx)
    return Envelope(status="ok", data={"revoked_refresh_tokens": revoked})


@router.post("/auth/verify_email", response_model=Envelope, tags=["auth"])
async def verify_email(body: VerifyEmailRequest):
    """Redeem the token mailed at signup or after an email change.

    Returns a fresh token pair whose claims carry the verified status.

    Raises:
        400: If the token is unknown, expired or already used
    """
    runtime = get_runtime()
    user, tokens = await runtime.auth.verify_email(body.token)
    return Envelope(
        status="ok",
        data=VerifyEmailResponse(
            user=_user_payload(user), tokens=TokenResponse(**tokens.to_dict())
        ),
    )


@router.post("/auth/forgot_password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest):
    runtime = get_runtime()
    await runtime.auth.forgot_password(body.email)
    # same answer whether or not the address is registered
    return Envelope(
        status="ok",
        data={"message": "if the account exists, a reset code has been sent"},
    )


@router.post("/auth/validate_reset_code", response_model=Envelope, tags=["auth"])
async def validate_reset_code(body: ValidateResetCodeRequest):
    runtime = get_runtime()
    await runtime.auth.validate_reset_code(body.email, body.code)
    return Envelope(status="ok", data={"valid": True})


@router.post("/auth/reset_password", response_model=Envelope, tags=["auth"])
async def reset_password(body: ResetPasswordRequest):
    runtime = get_runtime()
    await runtime.auth.reset_password(body.email, body.code, body.new_password)
    return Envelope(status="ok", data={"message": "password reset"})


# self service
@router.get("/me", response_model=Envelope, tags=["users"])
async def get_me(ctx: AuthContext = Depends(get_identity)):
    runtime = get_runtime()
    user = await runtime.auth.get_user(ctx.user_id)
    return Envelope(status="ok", data=_user_payload(user))


@router.patch("/me", response_model=Envelope, tags=["users"])
async def update_me(
    body: UpdateProfileRequest, ctx: AuthContext = Depends(require_verified)
):
    runtime = get_runtime()
    user = await runtime.auth.update_profile(
        ctx.user_id,
        name=body.name,
        email=body.email,
        phone=body.phone,
        avatar_url=body.avatar_url,
    )
    return Envelope(status="ok", data=_user_payload(user))


@router.delete("/me", response_model=Envelope, tags=["users"])
async def delete_me(ctx: AuthContext = Depends(require_verified)):
    runtime = get_runtime()
    await runtime.auth.delete_account(ctx.user_id)
    await runtime.tokens.block(ctx.jti, ctx.expires_at)
    return Envelope(status="ok", data={"deleted": True})


@router.post("/me/password", response_model=Envelope, tags=["users"])
async def change_password(
    body: ChangePasswordRequest, ctx: AuthContext = Depends(require_verified)
):
    runtime = get_runtime()
    await runtime.auth.change_password(
        ctx.user_id, body.current_password, body.new_password
    )
    return Envelope(status="ok", data={"message": "password changed"})


@router.post("/me/verification_email", response_model=Envelope, tags=["users"])
async def resend_verification_email(ctx: AuthContext = Depends(get_identity)):
    runtime = get_runtime()
    sent = await runtime.auth.request_email_verification(ctx.user_id)
    return Envelope(status="ok", data={"sent": sent})


# admin
@router.get("/admin/users", response_model=Envelope, tags=["admin"])
async def admin_list_users(
    limit: int = Query(20, ge=1, le=MAX_PAGE_SIZE),
    offset: int = Query(0, ge=0),
    document_id: Optional[str] = Query(None, max_length=32),
    ctx: AuthContext = Depends(require_admin),
):
    runtime = get_runtime()
    if document_id:
        user = await runtime.auth.find_by_document(document_id)
        return Envelope(
            status="ok",
            data=UserListResponse(
                items=[_user_payload(user)], total=1, limit=limit, offset=0
            ),
        )
    users, total = await runtime.auth.list_users(limit=limit, offset=offset)
    return Envelope(
        status="ok",
        data=UserListResponse(
            items=[_user_payload(u) for u in users],
            total=total,
            limit=limit,
            offset=offset,
        ),
    )


@router.post("/admin/users", response_model=Envelope, status_code=201, tags=["admin"])
async def admin_create_user(
    body: AdminCreateUserRequest, ctx: AuthContext = Depends(require_admin)
):
    runtime = get_runtime()
    user = await runtime.auth.admin_create_user(
        email=body.email,
        password=body.password,
        name=body.name,
        role=body.role,
        phone=body.phone,
        document_id=body.document_id,
    )
    return Envelope(status="ok", data=_user_payload(user))


@router.get("/admin/users/{user_id}", response_model=Envelope, tags=["admin"])
async def admin_get_user(user_id: int, ctx: AuthContext = Depends(require_admin)):
    runtime = get_runtime()
    user = await runtime.auth.get_user(user_id)
    return Envelope(status="ok", data=_user_payload(user))


@router.patch("/admin/users/{user_id}", response_model=Envelope, tags=["admin"])
async def admin_update_user(
    user_id: int,
    body: AdminUpdateUserRequest,
    ctx: AuthContext = Depends(require_admin),
):
    runtime = get_runtime()
    if user_id == ctx.user_id and (body.role not in (None, ctx.role) or body.is_active is False):
        raise ValidationError("admins cannot demote or disable themselves")
    user = await runtime.auth.admin_update_user(
        user_id, role=body.role, is_active=body.is_active, name=body.name
    )
    return Envelope(status="ok", data=_user_payload(user))


@router.delete("/admin/users/{user_id}", response_model=Envelope, tags=["admin"])
async def admin_delete_user(user_id: int, ctx: AuthContext = Depends(require_admin)):
    runtime = get_runtime()
    if user_id == ctx.user_id:
        raise ValidationError("use DELETE /v1/me to delete your own account")
    await runtime.auth.delete_account(user_id)
    return Envelope(status="ok", data={"deleted": True})


@router.get("/healthz", response_model=Envelope, tags=["health"])
async def healthz():
    runtime = get_runtime()
    return Envelope(
        status="ok",
        data={
            "status": "healthy",
            "store": type(runtime.store).__name__,
            "cache": type(runtime.cache).__name__,
        },
    )
