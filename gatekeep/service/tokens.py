"""Bearer-token issuance, verification and revocation.

Tokens are signed JWTs. Their revocation state lives in the key-value store
under three namespaces:

``blocked_token:{jti}``
    Sentinel written on logout; expires when the token would have.
``refresh_token:{jti}``
    Owner id of a live refresh token; expires with the token.
``user_refresh_tokens:{subject}``
    Set of live refresh jtis per subject, pruned on revoke and revoke-all.
"""

from __future__ import annotations

import math
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Mapping, Optional, Union

import jwt

from gatekeep.config import SigningKeys
from gatekeep.logging import get_logger
from gatekeep.service.errors import (
    InvalidSignatureError,
    MalformedTokenError,
    PrincipalNotFoundError,
    TokenExpiredError,
    TokenRevokedError,
)
from gatekeep.storage.common import KeyValueStore, UserDirectory

logger = get_logger(__name__)

BLOCKED_PREFIX = "blocked_token:"
REFRESH_PREFIX = "refresh_token:"
USER_REFRESH_SET_PREFIX = "user_refresh_tokens:"

_REQUIRED_CLAIMS = ["exp", "iat", "jti", "sub", "iss", "aud", "type"]


def blocked_key(jti: str) -> str:
    return f"{BLOCKED_PREFIX}{jti}"


def refresh_key(jti: str) -> str:
    return f"{REFRESH_PREFIX}{jti}"


def user_refresh_set_key(subject_id: Union[int, str]) -> str:
    return f"{USER_REFRESH_SET_PREFIX}{subject_id}"


class TokenType(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


@dataclass(frozen=True)
class TokenClaims:
    sub: int
    jti: str
    type: TokenType
    iat: int
    exp: int
    iss: str
    aud: str
    email: Optional[str] = None
    role: Optional[str] = None
    is_verified: Optional[bool] = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "TokenClaims":
        """Build typed claims from a decoded payload, rejecting anything malformed."""
        try:
            token_type = TokenType(payload["type"])
            sub = int(payload["sub"])
            iat = int(payload["iat"])
            exp = int(payload["exp"])
            jti = str(payload["jti"])
            aud = payload["aud"]
            if isinstance(aud, (list, tuple)):
                aud = aud[0]
            claims = cls(
                sub=sub,
                jti=jti,
                type=token_type,
                iat=iat,
                exp=exp,
                iss=str(payload["iss"]),
                aud=str(aud),
                email=payload.get("email"),
                role=payload.get("role"),
                is_verified=(
                    bool(payload["is_verified"]) if "is_verified" in payload else None
                ),
            )
        except (KeyError, TypeError, ValueError, IndexError) as exc:
            raise MalformedTokenError(f"malformed claims: {exc}") from exc
        if not claims.jti:
            raise MalformedTokenError("empty jti")
        if claims.exp <= claims.iat:
            raise MalformedTokenError("exp must be after iat")
        if claims.type == TokenType.ACCESS and claims.email is None:
            raise MalformedTokenError("access token without email")
        return claims

    @property
    def expires_at(self) -> datetime:
        return datetime.fromtimestamp(self.exp).astimezone()


class TokenAuthority:
    """Sole authority on whether a bearer credential is currently valid.

    ``directory`` must be the durable directory, not the cached one, so that
    issued tokens always carry the current role and verification state.
    """

    def __init__(
        self,
        directory: UserDirectory,
        kv: KeyValueStore,
        keys: SigningKeys,
        *,
        issuer: str,
        audience: str,
        access_token_ttl: int = 900,
        refresh_token_ttl: int = 7 * 24 * 60 * 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if access_token_ttl <= 0 or refresh_token_ttl <= 0:
            raise ValueError("token lifetimes must be positive")
        self.directory = directory
        self.kv = kv
        self._keys = keys
        self.issuer = issuer
        self.audience = audience
        self._access_ttl = int(access_token_ttl)
        self._refresh_ttl = int(refresh_token_ttl)
        self._clock = clock

    @property
    def access_token_ttl(self) -> int:
        return self._access_ttl

    @property
    def refresh_token_ttl(self) -> int:
        return self._refresh_ttl

    def _base_claims(self, subject_id: int, token_type: TokenType, ttl: int) -> dict:
        now = int(self._clock())
        return {
            "iss": self.issuer,
            "aud": self.audience,
            "iat": now,
            "exp": now + ttl,
            "jti": str(uuid.uuid4()),
            "sub": str(subject_id),
            "type": token_type.value,
        }

    def _encode(self, claims: dict) -> str:
        return jwt.encode(claims, self._keys.private_key, algorithm=self._keys.algorithm)

    def _require_subject(self, subject_id: int):
        user = self.directory.get_user(subject_id)
        if not user:
            logger.warning("token_issue_unknown_subject", subject_id=subject_id)
            raise PrincipalNotFoundError(f"user {subject_id} not found")
        return user

    # issuance
    async def issue_access_token(self, subject_id: int, email: str) -> str:
        user = self._require_subject(subject_id)
        claims = self._base_claims(subject_id, TokenType.ACCESS, self._access_ttl)
        claims.update(
            {
                "email": email,
                "role": user.role.name,
                "is_verified": bool(user.is_verified),
            }
        )
        return self._encode(claims)

    async def issue_refresh_token(self, subject_id: int) -> str:
        user = self._require_subject(subject_id)
        claims = self._base_claims(subject_id, TokenType.REFRESH, self._refresh_ttl)
        claims["role"] = user.role.name
        token = self._encode(claims)
        # Two commands; a crash in between leaves an entry that self-expires.
        await self.kv.set(refresh_key(claims["jti"]), str(subject_id), self._refresh_ttl)
        await self.kv.sadd(user_refresh_set_key(subject_id), claims["jti"])
        return token

    # verification
    def decode(self, token: str) -> TokenClaims:
        """Check signature and structure only; no expiry or revocation checks."""
        if not token or not isinstance(token, str):
            raise MalformedTokenError("empty token")
        try:
            payload = jwt.decode(
                token,
                self._keys.public_key,
                algorithms=[self._keys.algorithm],
                audience=self.audience,
                issuer=self.issuer,
                options={
                    # expiry is checked against the injected clock in verify()
                    "verify_exp": False,
                    "verify_iat": False,
                    "verify_nbf": False,
                    "require": _REQUIRED_CLAIMS,
                },
            )
        except jwt.InvalidSignatureError as exc:
            raise InvalidSignatureError("signature verification failed") from exc
        except jwt.PyJWTError as exc:
            raise MalformedTokenError(f"invalid token: {exc}") from exc
        return TokenClaims.from_payload(payload)

    async def verify(self, token: str) -> TokenClaims:
        claims = self.decode(token)
        # exp is exclusive: a token is already expired at exp itself
        if self._clock() >= claims.exp:
            raise TokenExpiredError("token expired")
        if await self.is_blocked(claims.jti):
            raise TokenRevokedError("token revoked")
        return claims

    # block list
    async def block(self, jti: str, expires_at: Union[int, float, datetime]) -> None:
        if isinstance(expires_at, datetime):
            expires_at = expires_at.timestamp()
        ttl = math.ceil(float(expires_at) - self._clock())
        if ttl <= 0:
            return
        await self.kv.set(blocked_key(jti), "1", ttl)
        logger.info("token_blocked", jti=jti, ttl=ttl)

    async def is_blocked(self, jti: str) -> bool:
        return await self.kv.exists(blocked_key(jti))

    # refresh registry
    async def revoke_refresh_token(self, jti: str) -> bool:
        """Remove a refresh token from the registry.

        Returns True only for the caller whose delete removed the entry; the
        store's delete is atomic, so of two concurrent revokes of one jti
        exactly one sees True.
        """
        owner = await self.kv.get(refresh_key(jti))
        deleted = await self.kv.delete(refresh_key(jti))
        if owner:
            await self.kv.srem(user_refresh_set_key(owner), jti)
        return deleted > 0

    async def revoke_all_refresh_tokens(self, subject_id: int) -> int:
        set_key = user_refresh_set_key(subject_id)
        jtis = await self.kv.smembers(set_key)
        # entries first, then the set, so a partial run leaves only orphaned entries
        for jti in jtis:
            await self.kv.delete(refresh_key(jti))
        await self.kv.delete(set_key)
        logger.info("refresh_tokens_revoked_all", subject_id=subject_id, count=len(jtis))
        return len(jtis)

    invalidate_all_user_refresh_tokens = revoke_all_refresh_tokens

    async def is_refresh_token_valid(self, jti: str) -> bool:
        return await self.kv.exists(refresh_key(jti))
