"""Storage contracts and helpers shared between memory and postgres implementations.

``UserDirectory`` is the durable lookup every principal-facing service talks to;
``KeyValueStore`` is the volatile store used for the revocation index, the
refresh-token registry, and the user cache.
"""

from __future__ import annotations

from typing import Any, List, Mapping, Optional, Protocol, Set

from gatekeep.storage.models import Role, User

# Roles every store seeds on first start
DEFAULT_ROLES: tuple[Role, ...] = (
    Role(id=1, name="admin", description="Full administrative access"),
    Role(id=2, name="user", description="Regular account"),
)

MAX_PAGE_SIZE = 100


class UserDirectory(Protocol):
    def get_user(self, user_id: int) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_document(self, document_id: str) -> Optional[User]: ...

    def get_role_by_name(self, name: str) -> Optional[Role]: ...

    def create_user(self, user: User) -> User: ...

    def update_user(self, user: User) -> User: ...

    def update_password(self, user_id: int, password_hash: str) -> None: ...

    def mark_verified(self, user_id: int) -> None: ...

    def delete_user(self, user_id: int) -> bool: ...

    def list_users(self, limit: int = 20, offset: int = 0) -> List[User]: ...

    def count_users(self) -> int: ...


class KeyValueStore(Protocol):
    """Async key-value contract; values are strings and callers own serialization.

    Implementations raise ``StoreUnavailableError`` when the backend cannot be
    reached.
    """

    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, ttl: int = 0) -> bool: ...

    async def set_many(self, mapping: Mapping[str, str], ttl: int = 0) -> None: ...

    async def exists(self, key: str) -> bool: ...

    async def delete(self, *keys: str) -> int: ...

    async def expire(self, key: str, ttl: int) -> bool: ...

    async def ttl(self, key: str) -> int: ...

    async def sadd(self, key: str, *members: str) -> int: ...

    async def smembers(self, key: str) -> Set[str]: ...

    async def srem(self, key: str, *members: str) -> int: ...

    async def close(self) -> None: ...


def normalize_page(limit: int, offset: int) -> tuple[int, int]:
    """Clamp pagination arguments to sane bounds."""
    return max(1, min(int(limit), MAX_PAGE_SIZE)), max(0, int(offset))


def safe_row_value(row: Any, key: str, default: Optional[Any] = None) -> Optional[Any]:
    """Read a column from a dict-like row, tolerating missing keys."""
    if row is None:
        return default
    try:
        value = row[key]
    except (KeyError, IndexError, TypeError):
        return default
    return default if value is None else value
