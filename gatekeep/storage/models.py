from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_datetime(raw: Any) -> datetime:
    if isinstance(raw, datetime):
        return raw
    parsed = datetime.fromisoformat(str(raw))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class Role:
    id: int
    name: str
    description: Optional[str] = None


@dataclass
class User:
    """A principal: the identity embedded in tokens and held in the user cache.

    ``id`` is None until the directory assigns one on create.
    """

    email: str
    name: str
    password_hash: str
    role: Role
    id: Optional[int] = None
    is_active: bool = True
    is_verified: bool = False
    phone: Optional[str] = None
    document_id: Optional[str] = None  # national id number, secondary lookup key
    avatar_url: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def touch(self) -> None:
        self.updated_at = utcnow()

    def to_public_dict(self) -> Dict[str, Any]:
        """API representation; never includes the credential hash."""
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "role": self.role.name,
            "is_active": self.is_active,
            "is_verified": self.is_verified,
            "phone": self.phone,
            "document_id": self.document_id,
            "avatar_url": self.avatar_url,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    def to_cache_dict(self) -> Dict[str, Any]:
        """Full snapshot for the user cache, credential hash included.

        Login reads the hash from the cache, so the cached form must carry it.
        """
        data = self.to_public_dict()
        data["role_id"] = self.role.id
        data["role_name"] = data.pop("role")
        data["role_description"] = self.role.description
        data["password_hash"] = self.password_hash
        return data

    @classmethod
    def from_cache_dict(cls, data: Dict[str, Any]) -> "User":
        return cls(
            id=int(data["id"]),
            email=data["email"],
            name=data["name"],
            password_hash=data["password_hash"],
            role=Role(
                id=int(data["role_id"]),
                name=data["role_name"],
                description=data.get("role_description"),
            ),
            is_active=bool(data["is_active"]),
            is_verified=bool(data["is_verified"]),
            phone=data.get("phone"),
            document_id=data.get("document_id"),
            avatar_url=data.get("avatar_url"),
            created_at=_parse_datetime(data["created_at"]),
            updated_at=_parse_datetime(data["updated_at"]),
        )
