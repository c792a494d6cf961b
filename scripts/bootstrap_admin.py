#!/usr/bin/env python3
"""Create an admin account, or promote an existing one, for initial setup.

Usage:
    ADMIN_HANDLE=admin ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=SecurePassword123! \
        python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --handle admin --email admin@example.com \
        --password SecurePassword123!

Environment Variables:
    ADMIN_HANDLE: Handle for the admin account
    ADMIN_EMAIL: Email for the admin account
    ADMIN_PASSWORD: Password for the admin account (must meet complexity requirements)
    DATABASE_URL: PostgreSQL connection string (the memory store is used if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys


def validate_password(password: str) -> bool:
    """Require 12+ characters from at least three character classes."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(c in "!@#$%^&*()_+-=[]{}|;':\",./<>?" for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


async def bootstrap_admin(handle: str, email: str, password: str, dry_run: bool = False) -> dict:
    """Create or promote the admin account.

    Returns:
        dict with account_id, email and status ('created', 'promoted',
        'already_admin' or 'dry_run')
    """
    # imported late so the environment defaults below apply to settings
    from accountcore.service.result import Err
    from accountcore.service.runtime import get_runtime
    from accountcore.storage.errors import AccountNotFound
    from accountcore.storage.models import AccountRole

    runtime = get_runtime()

    try:
        existing = runtime.store.find_account("email", email)
    except AccountNotFound:
        existing = None

    if existing:
        if existing.role == AccountRole.ADMIN:
            print(f"Account {email} is already an admin (id: {existing.id})")
            return {"account_id": existing.id, "email": email, "status": "already_admin"}
        if dry_run:
            print(f"[DRY RUN] Would promote existing account {email} to admin")
            return {"account_id": existing.id, "email": email, "status": "dry_run"}
        runtime.store.update_fields(existing.id, role=AccountRole.ADMIN, is_email_verified=True)
        print(f"Promoted existing account {email} to admin (id: {existing.id})")
        return {"account_id": existing.id, "email": email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create admin account: {handle} <{email}>")
        return {"account_id": None, "email": email, "status": "dry_run"}

    created = await runtime.auth.admin_create_account(handle, email, password)
    if isinstance(created, Err):
        raise RuntimeError(created.message)
    account_id = created.value["id"]

    print(f"Created admin account: {handle} <{email}> (id: {account_id})")
    return {"account_id": account_id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin account for AccountCore",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--handle",
        default=os.environ.get("ADMIN_HANDLE", "admin"),
        help="Admin handle (or set ADMIN_HANDLE env var)",
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Admin email (or set ADMIN_EMAIL env var)",
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

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)

    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        print("       (uppercase, lowercase, digits, special characters)")
        sys.exit(1)

    os.environ.setdefault("SHARED_FS_ROOT", "/tmp/accountcore-bootstrap")
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using the file-backed memory store (set DATABASE_URL for PostgreSQL)")

    try:
        result = asyncio.run(
            bootstrap_admin(args.handle, args.email, args.password, args.dry_run)
        )
    except (RuntimeError, ValueError) as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin account created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  Account ID: {result['account_id']}")
    elif result["status"] == "promoted":
        print("\nExisting account promoted to admin!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - account is already an admin.")


if __name__ == "__main__":
    main()
