from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from gatekeep.logging import get_logger
from gatekeep.storage.common import normalize_page, safe_row_value
from gatekeep.storage.errors import (
    ConstraintViolation,
    RecordNotFound,
    StoreUnavailableError,
)
from gatekeep.storage.models import Role, User

_USER_SELECT = """
    SELECT u.*, r.name AS role_name, r.description AS role_description
    FROM app_user u
    JOIN role r ON r.id = u.role_id
"""


class PostgresStore:
    """Postgres-backed user directory over the existing ``app_user``/``role`` tables.

    The schema is owned by migrations outside this package; start-up only
    checks that the tables are present.
    """

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=True,
        )
        self._verify_required_schema()

    @contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except errors.UniqueViolation as exc:
            field = "document_id" if "document" in str(exc) else "email"
            raise ConstraintViolation(f"{field} already exists", {"field": field}) from exc
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("unknown role", {"field": "role"}) from exc
        except psycopg.OperationalError as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StoreUnavailableError(str(exc), backend="database") from exc

    def _verify_required_schema(self) -> None:
        """Ensure the user tables exist before serving requests."""

        required_tables = ["app_user", "role"]
        with self._connect() as conn:
            missing_tables = []
            for table in required_tables:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply the schema migrations first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _row_to_user(row: Any) -> User:
        now = datetime.now(timezone.utc)
        return User(
            id=int(row["id"]),
            email=row["email"],
            name=safe_row_value(row, "name", ""),
            password_hash=row["password_hash"],
            role=Role(
                id=int(row["role_id"]),
                name=row["role_name"],
                description=safe_row_value(row, "role_description"),
            ),
            is_active=bool(safe_row_value(row, "is_active", True)),
            is_verified=bool(safe_row_value(row, "is_verified", False)),
            phone=safe_row_value(row, "phone"),
            document_id=safe_row_value(row, "document_id"),
            avatar_url=safe_row_value(row, "avatar_url"),
            created_at=safe_row_value(row, "created_at", now),
            updated_at=safe_row_value(row, "updated_at", now),
        )

    def _fetch_one(self, where: str, params: tuple) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(f"{_USER_SELECT} WHERE {where}", params).fetchone()
        return self._row_to_user(row) if row else None

    # roles
    def get_role_by_name(self, name: str) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, name, description FROM role WHERE name = %s", (name,)
            ).fetchone()
        if not row:
            return None
        return Role(id=int(row["id"]), name=row["name"], description=row.get("description"))

    # users
    def get_user(self, user_id: int) -> Optional[User]:
        return self._fetch_one("u.id = %s", (user_id,))

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._fetch_one("u.email = %s", (email,))

    def get_user_by_document(self, document_id: str) -> Optional[User]:
        return self._fetch_one("u.document_id = %s", (document_id,))

    def create_user(self, user: User) -> User:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO app_user (email, name, password_hash, role_id, is_active, is_verified,
                                      phone, document_id, avatar_url, created_at, updated_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, now(), now())
                RETURNING id
                """,
                (
                    user.email,
                    user.name,
                    user.password_hash,
                    user.role.id,
                    user.is_active,
                    user.is_verified,
                    user.phone,
                    user.document_id,
                    user.avatar_url,
                ),
            ).fetchone()
        created = self.get_user(int(row["id"]))
        if created is None:
            raise RuntimeError("user vanished after insert")
        self.logger.info("user_created", user_id=created.id)
        return created

    def update_user(self, user: User) -> User:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE app_user
                SET email = %s, name = %s, role_id = %s, is_active = %s, is_verified = %s,
                    phone = %s, document_id = %s, avatar_url = %s, updated_at = now()
                WHERE id = %s
                """,
                (
                    user.email,
                    user.name,
                    user.role.id,
                    user.is_active,
                    user.is_verified,
                    user.phone,
                    user.document_id,
                    user.avatar_url,
                    user.id,
                ),
            )
            if cur.rowcount == 0:
                raise RecordNotFound("user not found", {"user_id": user.id})
        updated = self.get_user(int(user.id))
        if updated is None:
            raise RecordNotFound("user not found", {"user_id": user.id})
        return updated

    def update_password(self, user_id: int, password_hash: str) -> None:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE app_user SET password_hash = %s, updated_at = now() WHERE id = %s",
                (password_hash, user_id),
            )
            if cur.rowcount == 0:
                raise RecordNotFound("user not found", {"user_id": user_id})

    def mark_verified(self, user_id: int) -> None:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE app_user SET is_verified = TRUE, updated_at = now() WHERE id = %s",
                (user_id,),
            )
            if cur.rowcount == 0:
                raise RecordNotFound("user not found", {"user_id": user_id})

    def delete_user(self, user_id: int) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
            return cur.rowcount > 0

    def list_users(self, limit: int = 20, offset: int = 0) -> List[User]:
        limit, offset = normalize_page(limit, offset)
        with self._connect() as conn:
            rows = conn.execute(
                f"{_USER_SELECT} ORDER BY u.id LIMIT %s OFFSET %s", (limit, offset)
            ).fetchall()
        return [self._row_to_user(row) for row in rows]

    def count_users(self) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT COUNT(*) AS total FROM app_user").fetchone()
        return int(row["total"]) if row else 0
