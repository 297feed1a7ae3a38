#!/usr/bin/env python3
"""Create an administrator account and open an admin session for it.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Secure#Pass123' python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email admin@example.com --password 'Secure#Pass123'

The printed session token goes in the X-Admin-Session header. It slides for
ADMIN_SESSION_TIMEOUT_MINUTES on every use.

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password for the admin user (must meet complexity requirements)
    DATABASE_URL: PostgreSQL connection string (memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys


def bootstrap_admin(email: str, password: str, dry_run: bool = False) -> dict:
    """Create the admin user if needed and return a fresh admin session token."""
    # Imported late so the environment defaults below apply to Settings.
    from keyward.service.account import validate_password_strength
    from keyward.service.runtime import get_runtime

    validate_password_strength(password)
    runtime = get_runtime()

    existing = runtime.store.get_user_by_email(email)
    if existing and not existing.is_admin:
        raise RuntimeError(f"{email} exists without the admin role")

    if dry_run:
        status = "dry_run_existing" if existing else "dry_run"
        print(f"[DRY RUN] Would open an admin session for {email}")
        return {"user_id": existing.id if existing else None, "email": email, "status": status}

    if existing:
        user = existing
        status = "session_opened"
    else:
        user = runtime.store.create_user(email, role="admin")
        runtime.store.save_password(
            user.id, runtime.hasher.hash(password), runtime.hasher.algorithm
        )
        status = "created"

    token = runtime.admin_sessions.create(user.id, origin_addr="bootstrap", user_agent="cli")
    return {"user_id": user.id, "email": email, "status": status, "session_token": token}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for Keyward",
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

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("SHARED_FS_ROOT", "/tmp/keyward-bootstrap")
        print("Note: Using the file-backed memory store (set DATABASE_URL for Postgres)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    from keyward.service.errors import ServiceError

    try:
        result = bootstrap_admin(args.email.strip().lower(), args.password, args.dry_run)
    except (ServiceError, RuntimeError) as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin user created.")
    print(f"  Email: {result['email']}")
    print(f"  User ID: {result['user_id']}")
    if result.get("session_token"):
        print(f"  X-Admin-Session: {result['session_token']}")


if __name__ == "__main__":
    main()
