#!/usr/bin/env python3
"""Make sure an admin account exists.

Creates the account when the email is unknown, promotes it when it exists
with a lower role, and revokes its refresh tokens after any role change.

    python scripts/bootstrap_admin.py --email ops@example.com --password 'Str0ng!Passw0rd'

``--email``/``--password`` default to ``ADMIN_EMAIL``/``ADMIN_PASSWORD``.
Without ``DATABASE_URL`` the in-memory store under ``SHARED_FS_ROOT`` is used.
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def bootstrap_admin(email: str, password: str, dry_run: bool = False) -> dict:
    """Returns a dict with ``user_id``, ``email`` and ``status``."""
    # Imported late so the env defaults from main() are in place first
    from authgate.service.runtime import get_runtime

    runtime = get_runtime()
    existing_user = runtime.store.get_user_by_email(email)

    if existing_user:
        if existing_user.role == "admin":
            print(f"User {email} already exists as admin (id: {existing_user.id})")
            return {"user_id": existing_user.id, "email": email, "status": "already_admin"}
        if dry_run:
            print(f"[DRY RUN] Would promote existing user {email} to admin")
            return {"user_id": existing_user.id, "email": email, "status": "dry_run"}
        runtime.store.update_user_role(existing_user.id, "admin")
        # Tokens minted before the promotion still carry the old role claim
        await runtime.sessions.revoke_all_refresh_tokens(existing_user.id, reason="role_changed")
        print(f"Promoted existing user {email} to admin (id: {existing_user.id})")
        return {"user_id": existing_user.id, "email": email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create admin user: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    result = await runtime.auth.register(email, password)
    runtime.store.update_user_role(result.user.id, "admin")
    await runtime.sessions.revoke_all_refresh_tokens(result.user.id, reason="role_changed")
    print(f"Created admin user: {email} (id: {result.user.id})")
    return {"user_id": result.user.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for authgate",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="account email, defaults to $ADMIN_EMAIL",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="account password, defaults to $ADMIN_PASSWORD",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="report the action without writing anything",
    )
    args = parser.parse_args()

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        sys.exit(1)
    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)

    from authgate.service.passwords import validate_strength

    strength = validate_strength(args.password)
    if not strength.valid:
        print("Error: password does not meet the policy:")
        for problem in strength.errors:
            print(f"  - {problem}")
        sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/authgate-bootstrap"
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(bootstrap_admin(args.email, args.password, args.dry_run))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin user created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "promoted":
        print("\nExisting user promoted to admin!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - user is already an admin.")


if __name__ == "__main__":
    main()
