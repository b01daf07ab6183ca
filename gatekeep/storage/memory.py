from __future__ import annotations

import json
import threading
from dataclasses import replace
from pathlib import Path
from typing import Dict, List, Optional

from gatekeep.logging import get_logger
from gatekeep.storage.common import DEFAULT_ROLES, normalize_page
from gatekeep.storage.errors import ConstraintViolation, RecordNotFound
from gatekeep.storage.models import Role, User, utcnow


def _copy(user: User) -> User:
    return replace(user, role=replace(user.role))


class MemoryStore:
    """In-memory user directory for tests and local development.

    Returns copies so callers can never mutate stored rows in place, the same
    isolation a database gives. When ``fs_root`` is set, state is mirrored to
    ``<fs_root>/state/memory_store.json`` and reloaded on start.
    """

    def __init__(self, fs_root: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[int, User] = {}
        self.roles: Dict[str, Role] = {role.name: replace(role) for role in DEFAULT_ROLES}
        self._user_id_seq: int = 1
        # RLock so helpers can re-enter from within locked sections
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # persistence
    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        payload = {
            "user_id_seq": self._user_id_seq,
            "users": [u.to_cache_dict() for u in self.users.values()],
        }
        path = self._state_path()
        tmp = path.with_suffix(".tmp")
        tmp.write_text(json.dumps(payload))
        tmp.replace(path)

    def _load_state(self) -> bool:
        path = self._state_path()
        if not path.exists():
            return False
        try:
            payload = json.loads(path.read_text())
            users = [User.from_cache_dict(raw) for raw in payload.get("users", [])]
        except (OSError, ValueError, KeyError, TypeError) as exc:
            self.logger.warning("memory_store_state_unreadable", path=str(path), error=str(exc))
            return False
        with self._data_lock:
            self.users = {u.id: u for u in users if u.id is not None}
            self._user_id_seq = int(
                payload.get("user_id_seq", max(self.users, default=0) + 1)
            )
        self.logger.info("memory_store_state_loaded", users=len(self.users))
        return True

    def _next_user_id(self) -> int:
        user_id = self._user_id_seq
        self._user_id_seq += 1
        return user_id

    def _check_unique(self, user: User) -> None:
        for existing in self.users.values():
            if existing.id == user.id:
                continue
            if existing.email == user.email:
                raise ConstraintViolation("email already exists", {"field": "email"})
            if user.document_id and existing.document_id == user.document_id:
                raise ConstraintViolation(
                    "document already exists", {"field": "document_id"}
                )

    # roles
    def get_role_by_name(self, name: str) -> Optional[Role]:
        with self._data_lock:
            role = self.roles.get(name)
            return replace(role) if role else None

    # users
    def create_user(self, user: User) -> User:
        with self._data_lock:
            self._check_unique(user)
            if user.role.name not in self.roles:
                raise ConstraintViolation("unknown role", {"field": "role"})
            stored = _copy(user)
            stored.id = self._next_user_id()
            now = utcnow()
            stored.created_at = now
            stored.updated_at = now
            self.users[stored.id] = stored
            self._persist_state()
            return _copy(stored)

    def get_user(self, user_id: int) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return _copy(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return _copy(user) if user else None

    def get_user_by_document(self, document_id: str) -> Optional[User]:
        with self._data_lock:
            user = next(
                (u for u in self.users.values() if u.document_id == document_id), None
            )
            return _copy(user) if user else None

    def update_user(self, user: User) -> User:
        with self._data_lock:
            if user.id not in self.users:
                raise RecordNotFound("user not found", {"user_id": user.id})
            self._check_unique(user)
            if user.role.name not in self.roles:
                raise ConstraintViolation("unknown role", {"field": "role"})
            stored = _copy(user)
            stored.role = replace(self.roles[user.role.name])
            stored.created_at = self.users[user.id].created_at
            stored.updated_at = utcnow()
            self.users[stored.id] = stored
            self._persist_state()
            return _copy(stored)

    def update_password(self, user_id: int, password_hash: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise RecordNotFound("user not found", {"user_id": user_id})
            user.password_hash = password_hash
            user.touch()
            self._persist_state()

    def mark_verified(self, user_id: int) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise RecordNotFound("user not found", {"user_id": user_id})
            user.is_verified = True
            user.touch()
            self._persist_state()

    def delete_user(self, user_id: int) -> bool:
        with self._data_lock:
            if user_id not in self.users:
                return False
            self.users.pop(user_id, None)
            self._persist_state()
            return True

    def list_users(self, limit: int = 20, offset: int = 0) -> List[User]:
        limit, offset = normalize_page(limit, offset)
        with self._data_lock:
            ordered = sorted(self.users.values(), key=lambda u: u.id or 0)
            return [_copy(u) for u in ordered[offset : offset + limit]]

    def count_users(self) -> int:
        with self._data_lock:
            return len(self.users)
