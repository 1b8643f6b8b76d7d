#!/usr/bin/env python3
"""Create the first storefront administrator, or promote an existing account.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Secure#Pass1' python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email admin@example.com --password 'Secure#Pass1' --name Ops

Environment Variables:
    ADMIN_EMAIL, ADMIN_PASSWORD, ADMIN_NAME: defaults for the flags
    DATABASE_URL: PostgreSQL connection string (memory store when unset)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_admin(email: str, password: str, name: str, dry_run: bool = False) -> dict:
    """Returns a dict with account_id, email and status."""
    # Imported late so the env defaults set in main() are seen by Settings
    from storefront_auth.api.schemas import _validate_email, _validate_password_strength
    from storefront_auth.service.runtime import get_runtime
    from storefront_auth.storage.models import ROLE_ADMIN

    email = _validate_email(email)
    _validate_password_strength(password)
    runtime = get_runtime()

    existing = runtime.store.get_account_by_email(email)
    if existing:
        if existing.role == ROLE_ADMIN:
            return {"account_id": existing.id, "email": email, "status": "already_admin"}
        if dry_run:
            return {"account_id": existing.id, "email": email, "status": "dry_run"}
        runtime.store.update_account(existing.id, role=ROLE_ADMIN)
        return {"account_id": existing.id, "email": email, "status": "promoted"}

    if dry_run:
        return {"account_id": None, "email": email, "status": "dry_run"}

    account = runtime.store.create_account(
        email,
        name,
        password_hash=runtime.auth.passwords.hash(password),
        role=ROLE_ADMIN,
        is_verified=True,
    )
    return {"account_id": account.id, "email": email, "status": "created"}


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Bootstrap a storefront admin account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument("--name", default=os.environ.get("ADMIN_NAME", "Administrator"))
    parser.add_argument(
        "--dry-run", action="store_true", help="Show what would be done without changes"
    )
    args = parser.parse_args()

    if not args.email or not args.password:
        print("Error: --email/ADMIN_EMAIL and --password/ADMIN_PASSWORD are required")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: using the file-backed memory store (set DATABASE_URL for Postgres)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = bootstrap_admin(args.email, args.password, args.name, args.dry_run)
    except ValueError as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    status = result["status"]
    if status == "created":
        print(f"Created admin {result['email']} (id: {result['account_id']})")
    elif status == "promoted":
        print(f"Promoted {result['email']} to admin (id: {result['account_id']})")
    elif status == "already_admin":
        print(f"{result['email']} is already an admin; no changes made")
    else:
        print(f"[DRY RUN] Would create or promote {result['email']}")


if __name__ == "__main__":
    main()
