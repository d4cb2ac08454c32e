#!/usr/bin/env python3
"""Seed an account with a given role, creating it if needed.

Usage:
    ADMIN_EMAIL=ops@example.com ADMIN_PASSWORD='long passphrase' python scripts/bootstrap_admin.py
    python scripts/bootstrap_admin.py --email ops@example.com --password '...' --role admin

Environment Variables:
    ADMIN_EMAIL: Email for the account
    ADMIN_PASSWORD: Password for the account (8-128 characters)
    DATABASE_URL: PostgreSQL connection string (in-memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def bootstrap_account(email: str, password: str, role: str, dry_run: bool = False) -> dict:
    """Create the account or move an existing one to ``role``.

    Returns:
        dict with user_id, email, role and status
        ('created', 'updated', 'unchanged' or 'dry_run')
    """
    # Imported late so the environment below is in place before settings load.
    from sessionguard.service.runtime import get_runtime

    runtime = get_runtime()
    existing = runtime.store.get_user_by_email(email)

    if existing:
        if existing.role == role:
            return {"user_id": existing.id, "email": existing.email, "role": role, "status": "unchanged"}
        if dry_run:
            return {"user_id": existing.id, "email": existing.email, "role": role, "status": "dry_run"}
        runtime.store.update_user_role(existing.id, role)
        return {"user_id": existing.id, "email": existing.email, "role": role, "status": "updated"}

    if dry_run:
        return {"user_id": None, "email": email, "role": role, "status": "dry_run"}

    user = await runtime.auth.register(email, password)
    if user.role != role:
        runtime.store.update_user_role(user.id, role)
    await runtime.close()
    return {"user_id": user.id, "email": user.email, "role": role, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Seed a SessionGuard account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument("--role", default="admin")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        sys.exit(1)
    if not args.password or not 8 <= len(args.password) <= 128:
        print("Error: --password or ADMIN_PASSWORD must be 8-128 characters")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("TEST_MODE", "true")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(bootstrap_account(args.email, args.password, args.role, args.dry_run))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    print(f"{result['status']}: {result['email']} role={result['role']} id={result['user_id']}")


if __name__ == "__main__":
    main()
