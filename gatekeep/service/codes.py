"""Single-use codes for email verification and password reset.

Both live in the key-value store and expire on their own:

``email_verification:{token}``
    ``{"user_id": ..., "email": ...}`` for an outstanding verification link.
    The address is recorded so a token mailed to an old address stops working
    once the user changes it.
``password_reset:{user_id}``
    ``{"code": "123456", "attempts": 0}``; one outstanding code per user, a new
    request replaces the previous code.

Consuming either removes the key, and only the caller whose delete removed it
counts as having used the code.
"""

from __future__ import annotations

import json
import secrets
from dataclasses import dataclass
from typing import Optional, Union

from gatekeep.logging import get_logger
from gatekeep.storage.common import KeyValueStore

logger = get_logger(__name__)

EMAIL_VERIFICATION_PREFIX = "email_verification:"
PASSWORD_RESET_PREFIX = "password_reset:"

RESET_CODE_DIGITS = 6


def email_verification_key(token: str) -> str:
    return f"{EMAIL_VERIFICATION_PREFIX}{token}"


def password_reset_key(user_id: Union[int, str]) -> str:
    return f"{PASSWORD_RESET_PREFIX}{user_id}"


def generate_reset_code() -> str:
    # 100000-999999, never a leading zero
    return str(secrets.randbelow(9 * 10 ** (RESET_CODE_DIGITS - 1)) + 10 ** (RESET_CODE_DIGITS - 1))


@dataclass(frozen=True)
class PendingVerification:
    user_id: int
    email: str


class OneTimeCodes:
    def __init__(
        self,
        kv: KeyValueStore,
        *,
        verification_ttl: int = 24 * 60 * 60,
        reset_ttl: int = 60 * 60,
        max_reset_attempts: int = 5,
    ) -> None:
        self.kv = kv
        self.verification_ttl = verification_ttl
        self.reset_ttl = reset_ttl
        self.max_reset_attempts = max_reset_attempts

    # email verification
    async def issue_email_verification(self, user_id: int, email: str) -> str:
        token = secrets.token_urlsafe(32)
        payload = json.dumps({"user_id": user_id, "email": email})
        await self.kv.set(email_verification_key(token), payload, self.verification_ttl)
        return token

    async def consume_email_verification(self, token: str) -> Optional[PendingVerification]:
        """Use up a verification token; None when unknown, expired or already used."""
        if not token:
            return None
        key = email_verification_key(token)
        raw = await self.kv.get(key)
        if raw is None:
            return None
        if not await self.kv.delete(key):
            return None
        try:
            data = json.loads(raw)
            return PendingVerification(user_id=int(data["user_id"]), email=str(data["email"]))
        except (ValueError, KeyError, TypeError):
            logger.warning("email_verification_payload_invalid")
            return None

    # password reset
    async def issue_password_reset(self, user_id: int) -> str:
        code = generate_reset_code()
        payload = json.dumps({"code": code, "attempts": 0})
        await self.kv.set(password_reset_key(user_id), payload, self.reset_ttl)
        return code

    async def check_password_reset(self, user_id: int, code: str) -> bool:
        """Compare ``code`` with the outstanding one without using it up.

        A mismatch counts as an attempt; once ``max_reset_attempts`` is reached
        the outstanding code is discarded and a new one has to be requested.
        """
        key = password_reset_key(user_id)
        raw = await self.kv.get(key)
        if raw is None:
            return False
        try:
            data = json.loads(raw)
            expected = str(data["code"])
            attempts = int(data.get("attempts", 0))
        except (ValueError, KeyError, TypeError):
            await self.kv.delete(key)
            return False
        if code and secrets.compare_digest(expected, str(code)):
            return True
        attempts += 1
        if attempts >= self.max_reset_attempts:
            await self.kv.delete(key)
            logger.warning("password_reset_code_discarded", user_id=user_id, attempts=attempts)
            return False
        remaining = await self.kv.ttl(key)
        if remaining > 0:
            await self.kv.set(key, json.dumps({"code": expected, "attempts": attempts}), remaining)
        return False

    async def consume_password_reset(self, user_id: int, code: str) -> bool:
        if not await self.check_password_reset(user_id, code):
            return False
        return await self.kv.delete(password_reset_key(user_id)) > 0
