from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from gatekeep.logging import get_logger

logger = get_logger(__name__)

# Only asymmetric algorithms: the verifying side must never hold signing material.
SUPPORTED_JWT_ALGORITHMS = frozenset(
    {"RS256", "RS384", "RS512", "PS256", "PS384", "PS512", "ES256", "ES384", "ES512"}
)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings, read once at process start."""

    database_url: str = env_field(
        "postgresql://localhost:5432/gatekeep", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    redis_socket_timeout: float = env_field(5.0, "REDIS_SOCKET_TIMEOUT")
    shared_fs_root: str = env_field("/srv/gatekeep", "SHARED_FS_ROOT")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors; enables runtime resets.",
    )
    jwt_private_key_path: str | None = env_field(None, "JWT_PRIVATE_KEY_PATH")
    jwt_public_key_path: str | None = env_field(None, "JWT_PUBLIC_KEY_PATH")
    jwt_algorithm: str = env_field("RS256", "JWT_ALGORITHM")
    jwt_issuer: str | None = env_field(
        None, "JWT_ISSUER", description="Defaults to APP_BASE_URL"
    )
    jwt_audience: str | None = env_field(
        None, "JWT_AUDIENCE", description="Defaults to APP_BASE_URL"
    )
    access_token_ttl_seconds: int = env_field(
        15 * 60, "ACCESS_TOKEN_TTL_SECONDS", gt=0
    )
    refresh_token_ttl_seconds: int = env_field(
        7 * 24 * 60 * 60, "REFRESH_TOKEN_TTL_SECONDS", gt=0
    )
    user_cache_ttl_seconds: int = env_field(
        60 * 60,
        "USER_CACHE_TTL_SECONDS",
        gt=0,
        description="Lifetime of both user:id and user:email cache entries",
    )
    default_role: str = env_field("user", "DEFAULT_ROLE")
    email_verification_ttl_seconds: int = env_field(
        24 * 60 * 60, "EMAIL_VERIFICATION_TTL_SECONDS", gt=0
    )
    password_reset_ttl_seconds: int = env_field(
        60 * 60, "PASSWORD_RESET_TTL_SECONDS", gt=0
    )
    password_reset_max_attempts: int = env_field(
        5,
        "PASSWORD_RESET_MAX_ATTEMPTS",
        gt=0,
        description="Wrong codes accepted before an outstanding reset code is discarded",
    )
    email_log_codes: bool = env_field(
        False,
        "EMAIL_LOG_CODES",
        description="Write verification and reset codes to the log (development only)",
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("jwt_algorithm")
    @classmethod
    def _validate_algorithm(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in SUPPORTED_JWT_ALGORITHMS:
            raise ValueError(
                f"JWT_ALGORITHM must be an asymmetric algorithm, got {value!r}"
            )
        return normalized

    @property
    def token_issuer(self) -> str:
        return self.jwt_issuer or self.app_base_url

    @property
    def token_audience(self) -> str:
        return self.jwt_audience or self.app_base_url


@dataclass(frozen=True)
class SigningKeys:
    """Key pair and algorithm used to sign and verify bearer tokens.

    Loaded once at startup and handed to the token authority; never mutated.
    """

    private_key: str
    public_key: str
    algorithm: str = "RS256"

    def __repr__(self) -> str:
        return f"SigningKeys(algorithm={self.algorithm!r})"

    @classmethod
    def load(cls, settings: Settings) -> "SigningKeys":
        """Read the PEM files named in settings.

        When no paths are configured, a generated RSA pair under
        ``SHARED_FS_ROOT/keys`` is reused (or created on first start) so tokens
        stay valid across restarts.
        """
        if settings.jwt_private_key_path or settings.jwt_public_key_path:
            if not (settings.jwt_private_key_path and settings.jwt_public_key_path):
                raise RuntimeError(
                    "JWT_PRIVATE_KEY_PATH and JWT_PUBLIC_KEY_PATH must be set together"
                )
            return cls(
                private_key=Path(settings.jwt_private_key_path).read_text(),
                public_key=Path(settings.jwt_public_key_path).read_text(),
                algorithm=settings.jwt_algorithm,
            )
        if not settings.jwt_algorithm.startswith(("RS", "PS")):
            raise RuntimeError(
                f"{settings.jwt_algorithm} requires JWT_PRIVATE_KEY_PATH and JWT_PUBLIC_KEY_PATH"
            )
        private_pem, public_pem = _load_or_generate_rsa_pair(
            Path(settings.shared_fs_root) / "keys"
        )
        return cls(
            private_key=private_pem,
            public_key=public_pem,
            algorithm=settings.jwt_algorithm,
        )


def generate_rsa_pair(key_size: int = 2048) -> tuple[str, str]:
    """Return a fresh (private_pem, public_pem) pair."""
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()
    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()
    return private_pem, public_pem


def _atomic_write(path: Path, content: str, mode: int) -> None:
    fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent), prefix=f".{path.name}_", suffix=".tmp"
    )
    try:
        try:
            os.write(fd, content.encode())
            os.fchmod(fd, mode)
        finally:
            os.close(fd)
        os.rename(tmp_path, str(path))
    except OSError:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


def _load_or_generate_rsa_pair(key_dir: Path) -> tuple[str, str]:
    private_path = key_dir / "jwt_private.pem"
    public_path = key_dir / "jwt_public.pem"

    try:
        key_dir.mkdir(parents=True, exist_ok=True)
        os.chmod(key_dir, 0o700)
    except PermissionError:
        # Directory may already exist with different ownership (e.g., in container)
        pass

    if (
        private_path.exists()
        and public_path.exists()
        and not private_path.is_symlink()
        and not public_path.is_symlink()
    ):
        private_pem = private_path.read_text()
        public_pem = public_path.read_text()
        if private_pem.strip() and public_pem.strip():
            return private_pem, public_pem
        logger.warning("jwt_key_files_empty", path=str(key_dir))

    private_pem, public_pem = generate_rsa_pair()
    try:
        _atomic_write(private_path, private_pem, 0o600)
        _atomic_write(public_path, public_pem, 0o644)
    except OSError as exc:
        logger.error("jwt_key_persist_failed", error=str(exc), path=str(key_dir))
        raise RuntimeError(
            "Unable to persist JWT signing keys; set JWT_PRIVATE_KEY_PATH/JWT_PUBLIC_KEY_PATH "
            "or make SHARED_FS_ROOT writable"
        ) from exc
    logger.info("jwt_keys_generated", path=str(key_dir))
    return private_pem, public_pem


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
