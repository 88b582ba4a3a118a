#!/usr/bin/env python3
"""Create an administrator account.

Usage:
    ADMIN_USERNAME=owner ADMIN_EMAIL=owner@example.com ADMIN_PASSWORD=secret123 \
        python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --username owner --email owner@example.com --password secret123

Environment Variables:
    ADMIN_USERNAME, ADMIN_EMAIL, ADMIN_PASSWORD: account details
    DATABASE_URL: PostgreSQL connection string (the in-memory store is used if unset)

At most three administrators may exist; the store rejects a fourth.
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def bootstrap_admin(
    username: str, email: str, password: str, dry_run: bool = False
) -> dict:
    """Register an admin through the same path as the HTTP endpoint.

    Returns:
        dict with email and status ('created', 'already_admin', 'rejected' or 'dry_run')
    """
    # Import here so env defaults set by main() are seen by the settings loader
    from fruitables.service.runtime import get_runtime

    runtime = get_runtime()
    await runtime.open()
    try:
        existing = await runtime.store.find_user_by_email(email)
        if existing and existing.role == "admin":
            print(f"User {email} already exists as admin (id: {existing.id})")
            return {"user_id": existing.id, "email": email, "status": "already_admin"}

        if dry_run:
            print(f"[DRY RUN] Would create admin user: {username} <{email}>")
            return {"user_id": None, "email": email, "status": "dry_run"}

        result = await runtime.auth.register(username, email, password, "admin")
        if not result.success:
            print(f"Rejected: {result.message}")
            return {"user_id": None, "email": email, "status": "rejected"}
        print(result.message)
        return {"user_id": result.data["user_id"], "email": email, "status": "created"}
    finally:
        await runtime.close()


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for Fruitables",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--username", default=os.environ.get("ADMIN_USERNAME"))
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    for name in ("username", "email", "password"):
        if not getattr(args, name):
            print(f"Error: --{name} or ADMIN_{name.upper()} environment variable required")
            sys.exit(1)

    if not 6 <= len(args.password) <= 255:
        print("Error: Password must be between 6 and 255 characters")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    try:
        result = asyncio.run(
            bootstrap_admin(args.username, args.email.strip().lower(), args.password, args.dry_run)
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)
    if result["status"] == "rejected":
        sys.exit(1)


if __name__ == "__main__":
    main()
