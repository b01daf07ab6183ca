from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from gatekeep.logging import get_logger
from gatekeep.service.errors import (
    MissingCredentialsError,
    PrincipalGoneError,
    WrongTokenTypeError,
)
from gatekeep.service.tokens import TokenAuthority, TokenType
from gatekeep.service.user_cache import CachedUserDirectory

logger = get_logger(__name__)


@dataclass(frozen=True)
class AuthContext:
    """Identity attached to an authenticated request."""

    user_id: int
    email: str
    role: str
    jti: str
    expires_at: int
    is_verified: bool = False


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, credentials = header.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    credentials = credentials.strip()
    return credentials or None


class RequestAuthenticator:
    def __init__(self, tokens: TokenAuthority, users: CachedUserDirectory) -> None:
        self.tokens = tokens
        self.users = users

    async def authenticate(self, authorization: Optional[str]) -> AuthContext:
        """Resolve an ``Authorization`` header to the caller's identity.

        Raises an ``AuthenticationError`` subclass on every rejection path;
        store outages during the revocation check propagate unchanged.
        """
        token = extract_bearer(authorization)
        if token is None:
            raise MissingCredentialsError("missing bearer token")
        claims = await self.tokens.verify(token)
        if claims.type != TokenType.ACCESS:
            logger.info("auth_wrong_token_type", kind=claims.type.value, jti=claims.jti)
            raise WrongTokenTypeError("access token required")
        user = await self.users.find_by_id(claims.sub)
        if user is None:
            logger.info("auth_principal_gone", user_id=claims.sub, jti=claims.jti)
            raise PrincipalGoneError("user no longer exists")
        # email, role and verification come from the current user record, not
        # the claims: a role change or verification applies to tokens already out
        return AuthContext(
            user_id=int(user.id),
            email=user.email,
            role=user.role.name,
            jti=claims.jti,
            expires_at=claims.exp,
            is_verified=bool(user.is_verified),
        )
