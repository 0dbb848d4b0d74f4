#!/usr/bin/env python3
"""Create the first superadmin, or promote an existing account to superadmin.

Usage:
    ADMIN_EMAIL=owner@example.com ADMIN_USERNAME=owner ADMIN_PASSWORD=... \
        python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email owner@example.com --username owner --password ...

Environment Variables:
    ADMIN_EMAIL, ADMIN_USERNAME, ADMIN_PASSWORD: account to create or promote
    DATABASE_URL: PostgreSQL connection string (memory store if unset)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

MIN_PASSWORD_LENGTH = 10
MAX_PASSWORD_LENGTH = 200


async def bootstrap_superadmin(
    email: str, username: str, password: str, dry_run: bool = False
) -> dict:
    """Returns a dict with user_id, email and status."""
    # Imported late so the env defaults below apply to Settings
    from classifieds.service.runtime import get_runtime

    runtime = get_runtime()
    existing = runtime.store.get_user_by_email(email.strip().lower())

    if existing:
        if existing.is_superadmin:
            print(f"User {email} is already a superadmin (id: {existing.id})")
            return {"user_id": existing.id, "email": existing.email, "status": "already_superadmin"}
        if dry_run:
            print(f"[DRY RUN] Would promote {email} to superadmin")
            return {"user_id": existing.id, "email": existing.email, "status": "dry_run"}
        runtime.store.set_user_flags(existing.id, is_admin=True, is_superadmin=True)
        print(f"Promoted {email} to superadmin (id: {existing.id})")
        return {"user_id": existing.id, "email": existing.email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create superadmin {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    user = await runtime.auth.register(email, username, "Site", "Owner", password)
    runtime.store.set_user_flags(user.id, is_admin=True, is_superadmin=True)
    print(f"Created superadmin {email} (id: {user.id})")
    return {"user_id": user.id, "email": user.email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a superadmin for Fish Classifieds",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--username", default=os.environ.get("ADMIN_USERNAME", "admin"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        sys.exit(1)
    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)
    if not MIN_PASSWORD_LENGTH <= len(args.password) <= MAX_PASSWORD_LENGTH:
        print(f"Error: Password must be {MIN_PASSWORD_LENGTH}-{MAX_PASSWORD_LENGTH} characters")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    try:
        result = asyncio.run(
            bootstrap_superadmin(args.email, args.username, args.password, args.dry_run)
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nSuperadmin created. Log in through /api/auth/login.")
    elif result["status"] == "promoted":
        print("\nExisting user promoted to superadmin.")


if __name__ == "__main__":
    main()
