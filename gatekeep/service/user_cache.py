from __future__ import annotations

import json
from typing import List, Optional

from gatekeep.logging import get_logger
from gatekeep.storage.common import KeyValueStore, UserDirectory
from gatekeep.storage.errors import StoreUnavailableError
from gatekeep.storage.models import User

logger = get_logger(__name__)

DEFAULT_CACHE_TTL = 60 * 60


def id_key(user_id: int) -> str:
    return f"user:id:{user_id}"


def email_key(email: str) -> str:
    return f"user:email:{email}"


class CachedUserDirectory:
    """Read/write-through cache in front of a durable ``UserDirectory``.

    Each user is cached under ``user:id:{id}`` and ``user:email:{email}`` with
    the same payload and TTL. Both keys are written in one ``set_many`` and
    removed in one ``delete``, so a reader never sees one without the other.
    Cache outages degrade to the directory; directory errors propagate.
    """

    def __init__(
        self,
        directory: UserDirectory,
        kv: KeyValueStore,
        *,
        ttl: int = DEFAULT_CACHE_TTL,
    ) -> None:
        self.directory = directory
        self.kv = kv
        self.ttl = ttl

    # cache helpers
    async def _get_cached(self, key: str) -> Optional[User]:
        try:
            raw = await self.kv.get(key)
        except StoreUnavailableError as exc:
            logger.warning("user_cache_read_failed", key=key, error=str(exc))
            return None
        if raw is None:
            return None
        try:
            return User.from_cache_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("user_cache_payload_invalid", key=key, error=str(exc))
            return None

    async def _set_cache(self, user: User) -> None:
        if user.id is None:
            return
        payload = json.dumps(user.to_cache_dict())
        try:
            await self.kv.set_many(
                {id_key(user.id): payload, email_key(user.email): payload}, self.ttl
            )
        except StoreUnavailableError as exc:
            logger.warning("user_cache_write_failed", user_id=user.id, error=str(exc))

    async def _invalidate_cache(self, user: User) -> None:
        try:
            await self.kv.delete(id_key(user.id), email_key(user.email))
        except StoreUnavailableError as exc:
            logger.warning("user_cache_invalidate_failed", user_id=user.id, error=str(exc))

    # cached reads
    async def find_by_id(self, user_id: int) -> Optional[User]:
        cached = await self._get_cached(id_key(user_id))
        if cached is not None:
            logger.debug("user_cache_hit", user_id=user_id)
            return cached
        user = self.directory.get_user(user_id)
        if user is not None:
            await self._set_cache(user)
        return user

    async def find_by_email(self, email: str) -> Optional[User]:
        cached = await self._get_cached(email_key(email))
        if cached is not None:
            logger.debug("user_cache_hit", user_id=cached.id)
            return cached
        user = self.directory.get_user_by_email(email)
        if user is not None:
            await self._set_cache(user)
        return user

    # writes
    async def create(self, user: User) -> User:
        # not cached here; the first read warms it
        return self.directory.create_user(user)

    async def update(self, user: User) -> User:
        # the old email is only known from the pre-update record
        current = await self.find_by_id(user.id)
        updated = self.directory.update_user(user)
        if current is not None:
            await self._invalidate_cache(current)
        await self._set_cache(updated)
        return updated

    async def delete(self, user_id: int) -> bool:
        current = await self.find_by_id(user_id)
        if current is None:
            return False
        deleted = self.directory.delete_user(user_id)
        if deleted:
            await self._invalidate_cache(current)
        return deleted

    async def update_password(self, user_id: int, password_hash: str) -> None:
        current = await self.find_by_id(user_id)
        if current is not None:
            await self._invalidate_cache(current)
        self.directory.update_password(user_id, password_hash)

    async def mark_verified(self, user_id: int) -> None:
        current = await self.find_by_id(user_id)
        if current is not None:
            await self._invalidate_cache(current)
        self.directory.mark_verified(user_id)

    # uncached pass-throughs
    async def find_by_document(self, document_id: str) -> Optional[User]:
        return self.directory.get_user_by_document(document_id)

    async def list_users(self, limit: int = 20, offset: int = 0) -> List[User]:
        return self.directory.list_users(limit=limit, offset=offset)

    async def count(self) -> int:
        return self.directory.count_users()
