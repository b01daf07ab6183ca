#!/usr/bin/env python3
"""Create the first admin account, or promote an existing user to admin.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Str0ng-Passphrase' python scripts/bootstrap_admin.py
    python scripts/bootstrap_admin.py --email admin@example.com --password 'Str0ng-Passphrase' --name Admin

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password for the admin user (12+ chars, 3+ character classes)
    DATABASE_URL: PostgreSQL connection string (in-memory store when unset)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def validate_password(password: str) -> bool:
    """Check password meets complexity requirements."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(not c.isalnum() for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


async def bootstrap_admin(
    email: str, password: str, name: str = "Administrator", dry_run: bool = False
) -> dict:
    """Create or promote an admin; the account ends up active and verified.

    Returns:
        dict with user_id, email, and status
        ('created', 'promoted', 'already_admin' or 'dry_run')
    """
    # imported late so the env defaults set in main() are seen by settings
    from gatekeep.service.runtime import get_runtime

    runtime = get_runtime()
    email = email.strip().lower()
    existing = await runtime.users.find_by_email(email)

    if existing:
        if existing.role.name == "admin" and existing.is_active and existing.is_verified:
            return {"user_id": existing.id, "email": email, "status": "already_admin"}
        if dry_run:
            return {"user_id": existing.id, "email": email, "status": "dry_run"}
        await runtime.auth.admin_update_user(existing.id, role="admin", is_active=True)
        if not existing.is_verified:
            await runtime.users.mark_verified(existing.id)
        return {"user_id": existing.id, "email": email, "status": "promoted"}

    if dry_run:
        return {"user_id": None, "email": email, "status": "dry_run"}

    user = await runtime.auth.admin_create_user(email, password, name, role="admin")
    return {"user_id": user.id, "email": email, "status": "created"}


_MESSAGES = {
    "created": "Created admin {email} (id: {user_id})",
    "promoted": "Promoted {email} to admin (id: {user_id})",
    "already_admin": "{email} is already an active, verified admin; nothing to do",
    "dry_run": "[DRY RUN] would create or promote {email}",
}


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Create or promote the gatekeep admin account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument("--name", default="Administrator")
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args(argv)

    if not args.email or not args.password:
        parser.error("--email/--password (or ADMIN_EMAIL/ADMIN_PASSWORD) are required")
    if not validate_password(args.password):
        parser.error(
            "password needs 12+ characters from at least 3 of: upper, lower, digit, symbol"
        )

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("SHARED_FS_ROOT", "/tmp/gatekeep-bootstrap")
        print("note: DATABASE_URL unset, writing to the in-memory store")
    # revocation state is irrelevant for a one-shot bootstrap
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    from gatekeep.service.errors import ServiceError
    from gatekeep.storage.errors import StoreUnavailableError

    try:
        result = asyncio.run(
            bootstrap_admin(args.email, args.password, args.name, args.dry_run)
        )
    except (ServiceError, StoreUnavailableError, RuntimeError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1

    print(_MESSAGES[result["status"]].format(**result))
    return 0


if __name__ == "__main__":
    sys.exit(main())
