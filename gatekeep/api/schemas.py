from __future__ import annotations

import re
import unicodedata
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from gatekeep.logging import get_correlation_id

_STABLE_ERROR_CODES = {
    "validation_error",
    "unauthorized",
    "forbidden",
    "not_found",
    "conflict",
    "store_unavailable",
    "server_error",
}


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _STABLE_ERROR_CODES:
            return "server_error"
        return value


class Envelope(BaseModel):
    """API envelope format shared by every response."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = unicodedata.normalize("NFKC", value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    labels = domain.split(".")
    if len(labels) < 2 or not all(_EMAIL_DOMAIN_LABEL.match(label) for label in labels):
        raise ValueError("invalid email domain")
    return normalized


class SignupRequest(BaseModel):
    email: str
    password: str = Field(..., max_length=256)
    name: str = Field(..., min_length=1, max_length=255)
    phone: Optional[str] = Field(default=None, max_length=32)
    document_id: Optional[str] = Field(default=None, max_length=32)

    @field_validator("email")
    @classmethod
    def _validate_signup_email(cls, value: str) -> str:
        return _validate_email(value)


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., max_length=256)

    @field_validator("email")
    @classmethod
    def _normalize_login_email(cls, value: str) -> str:
        return value.strip().lower()


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=4096)


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=4096)


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int


class UserResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int
    email: str
    name: str
    role: str
    is_active: bool
    is_verified: bool
    phone: Optional[str] = None
    document_id: Optional[str] = None
    avatar_url: Optional[str] = None
    created_at: str
    updated_at: str


class SignupResponse(BaseModel):
    user: UserResponse
    tokens: TokenResponse


class UserListResponse(BaseModel):
    items: List[UserResponse]
    total: int
    limit: int
    offset: int


class UpdateProfileRequest(BaseModel):
    name: Optional[str] = Field(default=None, max_length=255)
    email: Optional[str] = None
    phone: Optional[str] = Field(default=None, max_length=32)
    avatar_url: Optional[str] = Field(default=None, max_length=2048)

    @field_validator("email")
    @classmethod
    def _validate_profile_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value) if value is not None else None


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(..., max_length=256)
    new_password: str = Field(..., max_length=256)


class AdminUpdateUserRequest(BaseModel):
    role: Optional[str] = Field(default=None, max_length=64)
    is_active: Optional[bool] = None
    name: Optional[str] = Field(default=None, max_length=255)


class AdminCreateUserRequest(SignupRequest):
    role: Optional[str] = Field(default=None, max_length=64)


class VerifyEmailRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)


class VerifyEmailResponse(BaseModel):
    user: UserResponse
    tokens: TokenResponse


class ForgotPasswordRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _normalize_forgot_email(cls, value: str) -> str:
        return value.strip().lower()


class ValidateResetCodeRequest(ForgotPasswordRequest):
    code: str = Field(..., pattern=r"^\d{6}$")


class ResetPasswordRequest(ValidateResetCodeRequest):
    new_password: str = Field(..., max_length=256)
