#!/usr/bin/env python3
"""Create the first super admin, or promote an existing account.

Usage:
    ADMIN_EMAIL=root@example.com ADMIN_USERNAME=root ADMIN_PASSWORD='Str0ng!Passw0rd' \\
        python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email root@example.com --username root \\
        --password 'Str0ng!Passw0rd' [--role admin] [--dry-run]

The account is created with a verified email so the grace period never
blocks it. DATABASE_URL selects Postgres; without it the memory store under
SHARED_FS_ROOT is used.
"""
from __future__ import annotations

import argparse
import os
import sys

from warden.service.errors import ServiceError


def bootstrap_admin(email: str, username: str, password: str, role: str, dry_run: bool) -> dict:
    # Imported late so the environment defaults below are in place first
    from warden.service.credentials import validate_email, validate_password, validate_username
    from warden.service.runtime import get_runtime

    runtime = get_runtime()
    email = validate_email(email)
    existing = runtime.store.get_user_by_email(email)

    if existing:
        if existing.role == role:
            return {"user_id": existing.id, "email": email, "status": "unchanged"}
        if dry_run:
            return {"user_id": existing.id, "email": email, "status": "dry_run"}
        before = existing.role
        runtime.store.update_user(
            existing.id,
            role=role,
            audit=runtime.audit.entry(
                None,
                "user_role_changed",
                target_type="user",
                target_id=existing.id,
                before={"role": before},
                after={"role": role},
            ),
        )
        return {"user_id": existing.id, "email": email, "status": "promoted"}

    username = validate_username(username)
    validate_password(password)
    if dry_run:
        return {"user_id": None, "email": email, "status": "dry_run"}
    user = runtime.store.create_user(
        email,
        username,
        runtime.credentials.hash_password(password),
        role=role,
        email_verified=True,
    )
    runtime.audit.record(None, "admin_bootstrapped", target_type="user", target_id=user.id)
    return {"user_id": user.id, "email": email, "status": "created"}


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Bootstrap a Warden administrator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--username", default=os.environ.get("ADMIN_USERNAME", "admin"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument("--role", choices=("admin", "super_admin"), default="super_admin")
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()

    if not args.email:
        print("Error: --email or ADMIN_EMAIL is required")
        sys.exit(1)
    if not args.password:
        print("Error: --password or ADMIN_PASSWORD is required")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: using the memory store (set DATABASE_URL for Postgres)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = bootstrap_admin(args.email, args.username, args.password, args.role, args.dry_run)
    except ServiceError as exc:
        print(f"Error: {exc.message}")
        sys.exit(1)

    status = result["status"]
    if status == "created":
        print(f"Created {args.role} {result['email']} (id: {result['user_id']})")
    elif status == "promoted":
        print(f"Promoted {result['email']} to {args.role}")
    elif status == "unchanged":
        print(f"{result['email']} is already {args.role}; nothing to do")
    else:
        print(f"[DRY RUN] No changes written for {result['email']}")


if __name__ == "__main__":
    main()
