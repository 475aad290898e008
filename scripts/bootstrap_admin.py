#!/usr/bin/env python3
"""Create the first portal admin, or promote an existing account.

Usage:
    ADMIN_EMAIL=admin@school.test ADMIN_PASSWORD='Str0ng!Pass' python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email admin@school.test --password 'Str0ng!Pass' --name "Head Office"

Environment Variables:
    ADMIN_EMAIL, ADMIN_PASSWORD, ADMIN_NAME: defaults for the flags above
    DATABASE_URL: PostgreSQL connection string (the in-memory store is used when unset)
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
    email: str,
    password: str,
    name: str = "Administrator",
    dry_run: bool = False,
    *,
    runtime=None,
) -> dict:
    """Ensure ``email`` belongs to an admin.

    Returns a dict with ``user_id``, ``email`` and ``status``, one of
    ``created``, ``promoted``, ``already_admin`` or ``dry_run``.
    """
    # imported late so the environment set up in main() is seen by Settings
    from schoolportal.service.permissions import Role
    from schoolportal.service.runtime import get_runtime

    runtime = runtime or get_runtime()
    normalized = email.strip().lower()
    existing = runtime.store.get_user_by_email(normalized)

    if existing:
        if existing.role == Role.ADMIN.value:
            return {"user_id": existing.id, "email": normalized, "status": "already_admin"}
        if dry_run:
            return {"user_id": existing.id, "email": normalized, "status": "dry_run"}
        runtime.store.update_user_role(existing.id, Role.ADMIN.value)
        await runtime.auth.logout_all(existing.id)
        return {"user_id": existing.id, "email": normalized, "status": "promoted"}

    if dry_run:
        return {"user_id": None, "email": normalized, "status": "dry_run"}

    user = runtime.users.create_user(normalized, password, name, Role.ADMIN.value)
    return {"user_id": user.id, "email": normalized, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for the school portal",
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
        "--name",
        default=os.environ.get("ADMIN_NAME", "Administrator"),
        help="Display name (or set ADMIN_NAME env var)",
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

    from schoolportal.api.schemas import _validate_password_strength

    try:
        _validate_password_strength(args.password)
    except ValueError as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("TEST_MODE", "true")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    try:
        result = asyncio.run(
            bootstrap_admin(args.email, args.password, args.name, args.dry_run)
        )
    except Exception as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    messages = {
        "created": f"Created admin user {result['email']} (id: {result['user_id']})",
        "promoted": f"Promoted {result['email']} to admin",
        "already_admin": f"{result['email']} is already an admin; nothing to do",
        "dry_run": f"[DRY RUN] Would create or promote {result['email']}",
    }
    print(messages[result["status"]])


if __name__ == "__main__":
    main()
