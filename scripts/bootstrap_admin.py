#!/usr/bin/env python3
"""Seed the initial admin account.

Usage:
    # Using environment variables:
    ADMIN_USERNAME=admin ADMIN_PASSWORD=changeme123 python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --username admin --password changeme123

Environment Variables:
    ADMIN_USERNAME: Username for the admin account (default: admin)
    ADMIN_PASSWORD: Password for the admin account (at least 6 characters)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
    ACCESS_TOKEN_SECRET / REFRESH_TOKEN_SECRET: required by the service settings
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys

MIN_PASSWORD_LENGTH = 6


async def bootstrap_admin(username: str, password: str, dry_run: bool = False) -> dict:
    """Create the admin account unless ``username`` already exists.

    Returns:
        dict with user_id, username and status ('created', 'exists' or 'dry_run')
    """
    # Import here so env defaults below apply before settings load
    from tokengate.service.runtime import get_runtime

    runtime = get_runtime()

    if dry_run:
        existing = await asyncio.to_thread(runtime.store.find_user_by_username, username)
        status = "exists" if existing else "dry_run"
        return {
            "user_id": existing.id if existing else None,
            "username": username,
            "role": existing.role.value if existing else None,
            "status": status,
        }

    user, created = await runtime.auth.ensure_admin(username, password)
    return {
        "user_id": user.id,
        "username": user.username,
        "role": user.role.value,
        "status": "created" if created else "exists",
    }


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Seed the initial tokengate admin account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--username",
        default=os.environ.get("ADMIN_USERNAME", "admin"),
        help="Admin username (or set ADMIN_USERNAME env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Admin password (or set ADMIN_PASSWORD env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args(argv)

    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        return 1
    if len(args.password) < MIN_PASSWORD_LENGTH:
        print(f"Error: password must be at least {MIN_PASSWORD_LENGTH} characters")
        return 1

    if not os.environ.get("DATABASE_URL"):
        os.environ.setdefault("USE_MEMORY_STORE", "true")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    try:
        result = asyncio.run(bootstrap_admin(args.username, args.password, args.dry_run))
    except Exception as exc:
        print(f"Error: {exc}")
        return 1

    if result["status"] == "created":
        print(f"Created admin user: {result['username']} (id: {result['user_id']})")
    elif result["status"] == "exists":
        print(
            f"User {result['username']} already exists "
            f"(id: {result['user_id']}, role: {result['role']}); nothing to do."
        )
    else:
        print(f"[DRY RUN] Would create admin user: {result['username']}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
