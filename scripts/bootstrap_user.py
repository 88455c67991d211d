#!/usr/bin/env python3
"""Create a verified user for testing and initial setup.

The account skips the emailed code, so it can log in as soon as it exists
(login still sends a code, as for every other account).

Usage:
    BOOTSTRAP_EMAIL=ops@example.com BOOTSTRAP_PASSWORD=change-me-now python scripts/bootstrap_user.py

    python scripts/bootstrap_user.py --email ops@example.com --password change-me-now

Environment Variables:
    BOOTSTRAP_EMAIL: Email for the user
    BOOTSTRAP_PASSWORD: Password for the user
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_user(email: str, password: str, dry_run: bool = False) -> dict:
    """Create the user, or mark an existing one verified and reset its password.

    Returns:
        dict with user_id, email, and status ('created', 'updated' or 'dry_run')
    """
    # Import here so the env defaults below apply before settings load
    from stepauth.service.errors import ConflictError
    from stepauth.storage.errors import ConstraintViolation
    from stepauth.service.runtime import get_runtime

    runtime = get_runtime()
    auth = runtime.auth
    normalized = auth._normalize_email(email)
    auth._validate_new_password(password)

    existing = runtime.store.get_user_by_email(normalized)
    if dry_run:
        action = "update" if existing else "create"
        print(f"[DRY RUN] Would {action} verified user {normalized}")
        return {"user_id": existing.id if existing else None, "email": normalized, "status": "dry_run"}

    if existing:
        auth.save_password(existing.id, password)
        runtime.store.mark_user_verified(existing.id)
        print(f"Updated existing user {normalized} (id: {existing.id})")
        return {"user_id": existing.id, "email": normalized, "status": "updated"}

    try:
        user = runtime.store.create_user(normalized, meta={"bootstrap": True})
    except ConstraintViolation as exc:
        raise ConflictError(exc.message, detail=exc.detail) from exc
    auth.save_password(user.id, password)
    runtime.store.mark_user_verified(user.id)
    print(f"Created verified user {normalized} (id: {user.id})")
    return {"user_id": user.id, "email": normalized, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a verified user for stepauth",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("BOOTSTRAP_EMAIL"),
        help="User email (or set BOOTSTRAP_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("BOOTSTRAP_PASSWORD"),
        help="User password (or set BOOTSTRAP_PASSWORD env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or BOOTSTRAP_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or BOOTSTRAP_PASSWORD environment variable required")
        sys.exit(1)

    if not os.environ.get("JWT_SECRET"):
        import secrets
        os.environ["JWT_SECRET"] = secrets.token_urlsafe(48)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/stepauth-bootstrap"

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using the file-backed memory store (set DATABASE_URL for Postgres)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
    # The script never sends codes
    os.environ.setdefault("ALLOW_OUTBOX_NOTIFIER_DEV", "true")

    from stepauth.service.errors import ServiceError

    try:
        result = bootstrap_user(args.email, args.password, args.dry_run)
    except ServiceError as exc:
        print(f"Error: {exc.message}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nUser created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "updated":
        print("\nExisting user verified and password reset.")


if __name__ == "__main__":
    main()
