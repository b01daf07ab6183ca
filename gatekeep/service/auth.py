from __future__ import annotations

from dataclasses import dataclass, replace
from typing import List, Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from gatekeep.logging import get_logger
from gatekeep.service.authenticator import AuthContext
from gatekeep.service.codes import OneTimeCodes
from gatekeep.service.email import LogMailer, Mailer
from gatekeep.service.errors import (
    ConflictError,
    InvalidCredentialsError,
    NotFoundError,
    PrincipalGoneError,
    TokenRevokedError,
    ValidationError,
    WrongTokenTypeError,
)
from gatekeep.service.tokens import TokenAuthority, TokenType
from gatekeep.service.user_cache import CachedUserDirectory
from gatekeep.storage.models import Role, User

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"

    def to_dict(self) -> dict:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "expires_in": self.expires_in,
        }


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def _validate_email(email: str) -> str:
    normalized = normalize_email(email)
    local, _, domain = normalized.partition("@")
    if not local or "." not in domain:
        raise ValidationError("invalid email", detail={"field": "email"})
    return normalized


def _validate_password(password: str) -> None:
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(
            f"password must be at least {MIN_PASSWORD_LENGTH} characters",
            detail={"field": "password"},
        )


class AuthService:
    """Account flows on top of the cached directory and the token authority."""

    def __init__(
        self,
        users: CachedUserDirectory,
        tokens: TokenAuthority,
        *,
        default_role: str = "user",
        password_hasher: Optional[PasswordHasher] = None,
        codes: Optional[OneTimeCodes] = None,
        mailer: Optional[Mailer] = None,
    ) -> None:
        self.users = users
        self.tokens = tokens
        self.codes = codes or OneTimeCodes(tokens.kv)
        self.mailer = mailer or LogMailer()
        self.default_role = default_role
        self._pwd_hasher = password_hasher or PasswordHasher(type=Type.ID)
        # verified against on unknown emails so both paths cost one argon2 check
        self._dummy_hash = self._pwd_hasher.hash("gatekeep-timing-equalizer")
        self.logger = logger

    # passwords
    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, password_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(password_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            self.logger.warning("password_hash_unusable")
            return False

    # helpers
    def _role(self, name: str) -> Role:
        role = self.users.directory.get_role_by_name(name)
        if role is None:
            raise ValidationError(f"unknown role {name}", detail={"field": "role"})
        return role

    async def _require_user(self, user_id: int) -> User:
        user = await self.users.find_by_id(user_id)
        if user is None:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        return user

    async def issue_tokens(self, user: User) -> TokenPair:
        access = await self.tokens.issue_access_token(user.id, user.email)
        refresh = await self.tokens.issue_refresh_token(user.id)
        return TokenPair(
            access_token=access,
            refresh_token=refresh,
            expires_in=self.tokens.access_token_ttl,
        )

    async def _create_user(
        self,
        email: str,
        password: str,
        name: str,
        *,
        phone: Optional[str],
        document_id: Optional[str],
        role: Optional[str],
        is_verified: bool,
    ) -> User:
        email = _validate_email(email)
        _validate_password(password)
        if not name or not name.strip():
            raise ValidationError("name is required", detail={"field": "name"})
        role_record = self._role(role or self.default_role)
        if await self.users.find_by_email(email):
            raise ConflictError("email already registered", detail={"field": "email"})
        if document_id and await self.users.find_by_document(document_id):
            raise ConflictError(
                "document already registered", detail={"field": "document_id"}
            )
        return await self.users.create(
            User(
                email=email,
                name=name.strip(),
                password_hash=self.hash_password(password),
                role=role_record,
                is_verified=is_verified,
                phone=phone,
                document_id=document_id,
            )
        )

    async def _send_email_verification(self, user: User) -> None:
        token = await self.codes.issue_email_verification(user.id, user.email)
        self.mailer.send_email_verification(user.email, token)
        self.logger.info("email_verification_sent", user_id=user.id)

    # account lifecycle
    async def signup(
        self,
        email: str,
        password: str,
        name: str,
        *,
        phone: Optional[str] = None,
        document_id: Optional[str] = None,
        role: Optional[str] = None,
    ) -> Tuple[User, TokenPair]:
        user = await self._create_user(
            email,
            password,
            name,
            phone=phone,
            document_id=document_id,
            role=role,
            is_verified=False,
        )
        self.logger.info("user_signed_up", user_id=user.id)
        await self._send_email_verification(user)
        return user, await self.issue_tokens(user)

    async def login(self, email: str, password: str) -> TokenPair:
        user = await self.users.find_by_email(normalize_email(email))
        if user is None:
            self.verify_password(self._dummy_hash, password or "")
            self.logger.info("login_failed", reason="unknown_account")
            raise InvalidCredentialsError("invalid credentials")
        if not self.verify_password(user.password_hash, password or ""):
            self.logger.info("login_failed", reason="bad_password", user_id=user.id)
            raise InvalidCredentialsError("invalid credentials")
        if not user.is_active:
            self.logger.info("login_failed", reason="inactive", user_id=user.id)
            raise InvalidCredentialsError("invalid credentials")
        pair = await self.issue_tokens(user)
        self.logger.info("login_succeeded", user_id=user.id)
        return pair

    async def refresh(self, refresh_token: str) -> TokenPair:
        """Rotate a refresh token: the presented one is revoked and a new pair issued.

        Removing the registry entry is the claim on the token. Two requests
        racing with the same refresh token both pass signature checks, but
        only the one whose delete removed the entry gets a new pair.
        """
        claims = await self.tokens.verify(refresh_token)
        if claims.type != TokenType.REFRESH:
            raise WrongTokenTypeError("refresh token required")
        if not await self.tokens.revoke_refresh_token(claims.jti):
            self.logger.warning("refresh_token_not_registered", user_id=claims.sub)
            raise TokenRevokedError("refresh token revoked")
        user = await self.users.find_by_id(claims.sub)
        if user is None:
            raise PrincipalGoneError("user no longer exists")
        if not user.is_active:
            raise InvalidCredentialsError("account disabled")
        pair = await self.issue_tokens(user)
        self.logger.info("refresh_token_rotated", user_id=user.id)
        return pair

    async def logout(self, ctx: AuthContext, refresh_token: Optional[str] = None) -> None:
        refresh_jti = None
        if refresh_token:
            claims = self.tokens.decode(refresh_token)
            if claims.type != TokenType.REFRESH:
                raise WrongTokenTypeError("refresh token required")
            if claims.sub == ctx.user_id:
                refresh_jti = claims.jti
            else:
                self.logger.warning("logout_foreign_refresh_token", user_id=ctx.user_id)
        await self.tokens.block(ctx.jti, ctx.expires_at)
        if refresh_jti:
            await self.tokens.revoke_refresh_token(refresh_jti)
        self.logger.info("logout", user_id=ctx.user_id)

    async def logout_all(self, ctx: AuthContext) -> int:
        await self.tokens.block(ctx.jti, ctx.expires_at)
        return await self.tokens.revoke_all_refresh_tokens(ctx.user_id)

    async def change_password(
        self, user_id: int, current_password: str, new_password: str
    ) -> None:
        user = await self._require_user(user_id)
        if not self.verify_password(user.password_hash, current_password or ""):
            raise InvalidCredentialsError("current password does not match")
        _validate_password(new_password)
        if current_password == new_password:
            raise ValidationError(
                "new password must differ from the current one",
                detail={"field": "new_password"},
            )
        await self.users.update_password(user_id, self.hash_password(new_password))
        revoked = await self.tokens.revoke_all_refresh_tokens(user_id)
        self.logger.info("password_changed", user_id=user_id, sessions_revoked=revoked)

    async def update_profile(
        self,
        user_id: int,
        *,
        name: Optional[str] = None,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        avatar_url: Optional[str] = None,
    ) -> User:
        user = await self._require_user(user_id)
        changes: dict = {}
        if name is not None:
            if not name.strip():
                raise ValidationError("name is required", detail={"field": "name"})
            changes["name"] = name.strip()
        if email is not None:
            new_email = _validate_email(email)
            if new_email != user.email:
                if await self.users.find_by_email(new_email):
                    raise ConflictError("email already registered", detail={"field": "email"})
                changes["email"] = new_email
                changes["is_verified"] = False
        if phone is not None:
            changes["phone"] = phone or None
        if avatar_url is not None:
            changes["avatar_url"] = avatar_url or None
        if not changes:
            return user
        updated = await self.users.update(replace(user, **changes))
        if "email" in changes:
            await self._send_email_verification(updated)
        return updated

    async def delete_account(self, user_id: int) -> None:
        await self._require_user(user_id)
        await self.tokens.revoke_all_refresh_tokens(user_id)
        if not await self.users.delete(user_id):
            raise NotFoundError("user not found", detail={"user_id": user_id})
        self.logger.info("user_deleted", user_id=user_id)

    async def request_email_verification(self, user_id: int) -> bool:
        """Mail a fresh verification token; False when the address is already verified."""
        user = await self._require_user(user_id)
        if user.is_verified:
            return False
        await self._send_email_verification(user)
        return True

    async def verify_email(self, token: str) -> Tuple[User, TokenPair]:
        """Redeem a mailed verification token and issue a pair carrying the new status.

        Tokens are single use and expire; one issued for an address the user
        has since changed away from is refused.
        """
        pending = await self.codes.consume_email_verification(token)
        if pending is None:
            raise ValidationError(
                "invalid or expired verification token", detail={"field": "token"}
            )
        user = await self._require_user(pending.user_id)
        if user.email != pending.email:
            self.logger.info("email_verification_stale", user_id=user.id)
            raise ValidationError(
                "invalid or expired verification token", detail={"field": "token"}
            )
        if not user.is_verified:
            await self.users.mark_verified(user.id)
            self.logger.info("email_verified", user_id=user.id)
        user = await self._require_user(user.id)
        if not user.is_active:
            raise InvalidCredentialsError("account disabled")
        return user, await self.issue_tokens(user)

    # password reset
    async def forgot_password(self, email: str) -> None:
        """Mail a reset code. Unknown addresses are accepted silently."""
        user = await self.users.find_by_email(normalize_email(email))
        if user is None:
            self.logger.info("password_reset_requested", outcome="unknown_account")
            return
        code = await self.codes.issue_password_reset(user.id)
        self.mailer.send_password_reset(user.email, code)
        self.logger.info("password_reset_requested", user_id=user.id)

    async def _reset_target(self, email: str) -> User:
        user = await self.users.find_by_email(normalize_email(email))
        if user is None:
            raise NotFoundError("invalid email or code")
        return user

    async def validate_reset_code(self, email: str, code: str) -> None:
        user = await self._reset_target(email)
        if not await self.codes.check_password_reset(user.id, code):
            raise NotFoundError("invalid email or code")

    async def reset_password(self, email: str, code: str, new_password: str) -> None:
        """Set a new password with a mailed code; every refresh session ends."""
        _validate_password(new_password)
        user = await self._reset_target(email)
        if not await self.codes.consume_password_reset(user.id, code):
            raise NotFoundError("invalid email or code")
        await self.users.update_password(user.id, self.hash_password(new_password))
        revoked = await self.tokens.revoke_all_refresh_tokens(user.id)
        self.logger.info("password_reset_completed", user_id=user.id, sessions_revoked=revoked)

    # admin
    async def admin_create_user(
        self,
        email: str,
        password: str,
        name: str,
        *,
        role: Optional[str] = None,
        phone: Optional[str] = None,
        document_id: Optional[str] = None,
    ) -> User:
        """Create an active account whose address an administrator vouches for."""
        user = await self._create_user(
            email,
            password,
            name,
            phone=phone,
            document_id=document_id,
            role=role,
            is_verified=True,
        )
        self.logger.info("user_admin_created", user_id=user.id, role=user.role.name)
        return user

    async def list_users(self, limit: int = 20, offset: int = 0) -> Tuple[List[User], int]:
        return await self.users.list_users(limit=limit, offset=offset), await self.users.count()

    async def get_user(self, user_id: int) -> User:
        return await self._require_user(user_id)

    async def find_by_document(self, document_id: str) -> User:
        user = await self.users.find_by_document(document_id)
        if user is None:
            raise NotFoundError("user not found", detail={"document_id": document_id})
        return user

    async def admin_update_user(
        self,
        user_id: int,
        *,
        role: Optional[str] = None,
        is_active: Optional[bool] = None,
        name: Optional[str] = None,
    ) -> User:
        """Apply admin changes; a role or activation change ends every refresh session."""
        user = await self._require_user(user_id)
        changes: dict = {}
        if role is not None and role != user.role.name:
            changes["role"] = self._role(role)
        if is_active is not None and is_active != user.is_active:
            changes["is_active"] = is_active
        if name is not None and name.strip() and name.strip() != user.name:
            changes["name"] = name.strip()
        if not changes:
            return user
        updated = await self.users.update(replace(user, **changes))
        if "role" in changes or "is_active" in changes:
            await self.tokens.revoke_all_refresh_tokens(user_id)
        self.logger.info(
            "user_admin_updated", user_id=user_id, fields=sorted(changes.keys())
        )
        return updated

    async def set_role(self, user_id: int, role: str) -> User:
        return await self.admin_update_user(user_id, role=role)

    async def set_active(self, user_id: int, is_active: bool) -> User:
        return await self.admin_update_user(user_id, is_active=is_active)
