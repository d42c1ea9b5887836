#!/usr/bin/env python3
"""Create or promote an admin account in the persisted auth store.

Usage:
    STATE_PATH=/var/lib/telemed/auth.json \\
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Secure-Password-123' \\
        python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email admin@example.com --password ... --state-path auth.json

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password for the admin user (must meet complexity requirements)
    STATE_PATH: JSON state file of the memory store (required; otherwise nothing is kept)
    JWT_SECRET / JWT_REFRESH_SECRET: signing keys, validated on startup
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def validate_password(password: str) -> bool:
    """Admin passwords: 12+ characters drawn from at least three character classes."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(not c.isalnum() for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


def bootstrap_admin(runtime, email: str, password: str, dry_run: bool = False) -> dict:
    """Create or promote an admin user.

    Returns:
        dict with user_id, email, and status
        ('created', 'promoted', 'already_admin' or 'dry_run')
    """
    from telemed_auth.storage.models import UserRole

    store = runtime.store
    now = runtime.clock.now()
    existing_user = store.get_user_by_email(email)

    if existing_user:
        if existing_user.role == UserRole.ADMIN.value:
            return {"user_id": existing_user.id, "email": existing_user.email, "status": "already_admin"}
        if dry_run:
            return {"user_id": existing_user.id, "email": existing_user.email, "status": "dry_run"}
        store.update_user_role(existing_user.id, UserRole.ADMIN.value, now)
        return {"user_id": existing_user.id, "email": existing_user.email, "status": "promoted"}

    if dry_run:
        return {"user_id": None, "email": email, "status": "dry_run"}

    user = store.create_user(
        email,
        runtime.verifier.hash(password),
        now,
        role=UserRole.ADMIN.value,
    )
    return {"user_id": user.id, "email": user.email, "status": "created"}


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for the telemedicine auth store",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
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
        "--state-path",
        default=os.environ.get("STATE_PATH"),
        help="Memory store state file (or set STATE_PATH env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args(argv)

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        return 1
    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        return 1
    if not args.state_path:
        print("Error: --state-path or STATE_PATH environment variable required")
        return 1
    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        print("       (uppercase, lowercase, digits, special characters)")
        return 1

    os.environ["STATE_PATH"] = args.state_path

    from telemed_auth.service.errors import ConfigurationError
    from telemed_auth.service.runtime import Runtime
    from telemed_auth.storage.errors import ConstraintViolation, StoreUnavailable

    try:
        runtime = Runtime()
        result = bootstrap_admin(runtime, args.email, args.password, args.dry_run)
    except (ConfigurationError, ConstraintViolation, StoreUnavailable, OSError, ValueError) as exc:
        print(f"Error: {exc}")
        return 1

    status = result["status"]
    if status == "created":
        print(f"Created admin user: {result['email']} (id: {result['user_id']})")
    elif status == "promoted":
        print(f"Promoted existing user {result['email']} to admin (id: {result['user_id']})")
    elif status == "already_admin":
        print(f"No changes needed: {result['email']} is already an admin.")
    else:
        print(f"[DRY RUN] No changes written for {result['email']}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
