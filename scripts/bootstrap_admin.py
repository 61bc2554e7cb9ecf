#!/usr/bin/env python3
"""Create the first admin account, or grant the admin role to an existing user.

    DATABASE_URL=... JWT_SECRET=... python scripts/bootstrap_admin.py \
        --email admin@example.com --password 'SecurePassword123!'

ADMIN_EMAIL and ADMIN_PASSWORD may be used instead of the flags.
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

from authcentral.service.errors import ServiceError  # noqa: E402
from authcentral.storage.errors import ConstraintViolation, StoreUnavailable  # noqa: E402

ADMIN_ROLE = "admin"


def validate_password(password: str) -> bool:
    """Admin passwords: 12+ characters drawn from at least three character classes."""
    if len(password) < 12:
        return False
    classes = (str.isupper, str.islower, str.isdigit, lambda c: not c.isalnum())
    return sum(any(test(c) for c in password) for test in classes) >= 3


async def bootstrap_admin(email: str, password: str, dry_run: bool = False) -> dict:
    """Returns ``{user_id, email, status}`` with status one of
    created, promoted, already_admin or dry_run."""
    # Settings are read on first use, after main() has adjusted the environment
    from authcentral.service.runtime import get_runtime

    runtime = get_runtime()
    result = {"user_id": None, "email": email, "status": "dry_run"}

    existing = await runtime.bounded_store.get_user_by_email(email)
    if existing:
        result["user_id"] = existing.id
        access = await runtime.bounded_store.resolve_access(existing.id)
        if ADMIN_ROLE in access.roles:
            result["status"] = "already_admin"
        elif not dry_run:
            await runtime.rbac.assign_role(existing.id, ADMIN_ROLE)
            result["status"] = "promoted"
    elif not dry_run:
        user = await runtime.auth.register(email, password)
        await runtime.rbac.assign_role(user.id, ADMIN_ROLE)
        result.update(user_id=user.id, status="created")

    await runtime.audit.drain()
    return result


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()

    if not args.email or not args.password:
        parser.error("--email and --password (or ADMIN_EMAIL/ADMIN_PASSWORD) are required")
    if not validate_password(args.password):
        parser.error("password needs 12+ characters from at least three character classes")
    if not os.environ.get("DATABASE_URL"):
        parser.error("DATABASE_URL is required; an in-memory admin would not outlive this run")

    # The blacklist is not touched here, so Redis may be absent
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(bootstrap_admin(args.email, args.password, args.dry_run))
    except (ServiceError, ConstraintViolation, StoreUnavailable) as exc:
        sys.exit(f"bootstrap failed: {exc}")
    print(f"{result['status']}: {result['email']} (id: {result['user_id']})")


if __name__ == "__main__":
    main()
