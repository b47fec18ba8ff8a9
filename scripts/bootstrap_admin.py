#!/usr/bin/env python3
"""Seed roles and create (or promote) a verified super admin.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=owner@example.com ADMIN_PASSWORD='SecurePassword123!' python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email owner@example.com --password 'SecurePassword123!'

Environment Variables:
    ADMIN_EMAIL: Email for the super admin
    ADMIN_PASSWORD: Password for the super admin (must meet the password policy)
    SHARED_FS_ROOT: Directory holding the persisted store state
"""
from __future__ import annotations

import argparse
import os
import sys

from rbacauth.service.auth import password_policy_violations
from rbacauth.service.permissions import SUPER_ADMIN_ROLE


def bootstrap_admin(
    runtime,
    email: str,
    password: str,
    *,
    first_name: str = "Super",
    last_name: str = "Admin",
    dry_run: bool = False,
) -> dict:
    """Create or promote ``email`` to a verified, active super admin.

    Returns:
        dict with user_id, email, and status ('created', 'promoted',
        'already_admin' or 'dry_run')
    """
    store = runtime.store
    role = store.get_role_by_name(SUPER_ADMIN_ROLE)
    if role is None:
        raise RuntimeError("super admin role is missing; the store was not seeded")

    existing = store.get_user_by_email(email)
    if existing:
        if existing.role_id == role.id and existing.is_email_verified and existing.is_active:
            print(f"User {email} is already a super admin (id: {existing.id})")
            return {"user_id": existing.id, "email": existing.email, "status": "already_admin"}
        if dry_run:
            print(f"[DRY RUN] Would promote existing user {email} to super admin")
            return {"user_id": existing.id, "email": existing.email, "status": "dry_run"}
        store.update_user(
            existing.id,
            role_id=role.id,
            role_name=role.name,
            is_active=True,
            is_email_verified=True,
            otp=None,
        )
        print(f"Promoted existing user {email} to super admin (id: {existing.id})")
        return {"user_id": existing.id, "email": existing.email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create super admin: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    user = store.create_user(
        email,
        first_name=first_name,
        last_name=last_name,
        role_id=role.id,
        role_name=role.name,
        is_email_verified=True,
    )
    runtime.auth.save_password(user.id, password)
    print(f"Created super admin: {email} (id: {user.id})")
    return {"user_id": user.id, "email": user.email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a super admin account",
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
    parser.add_argument("--first-name", default="Super")
    parser.add_argument("--last-name", default="Admin")
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
    violations = password_policy_violations(args.password)
    if violations:
        for message in violations:
            print(f"Error: {message}")
        sys.exit(1)

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    from rbacauth.service.runtime import get_runtime

    try:
        result = bootstrap_admin(
            get_runtime(),
            args.email,
            args.password,
            first_name=args.first_name,
            last_name=args.last_name,
            dry_run=args.dry_run,
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nSuper admin created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "promoted":
        print("\nExisting user promoted to super admin!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - user is already a super admin.")


if __name__ == "__main__":
    main()
