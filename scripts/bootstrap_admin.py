#!/usr/bin/env python3
"""Grant the admin role to an already registered user.

Accounts are only created through email confirmation, so register the
address first and then run:

    ADMIN_EMAIL=admin@example.com python scripts/bootstrap_admin.py
    python scripts/bootstrap_admin.py --email admin@example.com --dry-run

Environment Variables:
    ADMIN_EMAIL: Email of the user to promote
    DATABASE_URL: PostgreSQL connection string
    USE_MEMORY_STORE: Use the in-memory store (testing only)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_admin(email: str, dry_run: bool = False) -> dict:
    """Assign the admin role to the user registered under ``email``.

    Returns:
        dict with user_id, email and status
        ('promoted', 'already_admin', 'dry_run' or 'not_found')
    """
    # Import here to avoid loading config before env vars are set
    from passless.service.runtime import get_runtime
    from passless.service.validation import normalize_email
    from passless.storage.models import ADMIN_ROLE

    runtime = get_runtime()
    normalized = normalize_email(email)
    user = runtime.store.get_user_by_email(normalized)
    if not user:
        print(f"No registered user for {normalized}; complete registration first")
        return {"user_id": None, "email": normalized, "status": "not_found"}

    if runtime.store.has_role(user.id, ADMIN_ROLE):
        print(f"User {normalized} already has the admin role (id: {user.id})")
        return {"user_id": user.id, "email": normalized, "status": "already_admin"}

    if dry_run:
        print(f"[DRY RUN] Would grant admin to {normalized}")
        return {"user_id": user.id, "email": normalized, "status": "dry_run"}

    runtime.store.assign_role_to_user(user.id, ADMIN_ROLE)
    print(f"Granted admin to {normalized} (id: {user.id})")
    return {"user_id": user.id, "email": normalized, "status": "promoted"}


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Grant the admin role to a passless user",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="User email (or set ADMIN_EMAIL env var)",
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
    try:
        result = bootstrap_admin(args.email, dry_run=args.dry_run)
    except ValueError as exc:
        print(f"Error: {exc}")
        return 1
    return 0 if result["status"] != "not_found" else 1


if __name__ == "__main__":
    sys.exit(main())
