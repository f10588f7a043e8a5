#!/usr/bin/env python3
"""Create or promote an administrator account.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=warden@example.com ADMIN_PASSWORD='Correct123!Horse' python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email warden@example.com --password 'Correct123!Horse' --name "Hall Warden"

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password for the admin user (must satisfy the password policy)
    SHARED_FS_ROOT: Directory holding the persisted identity store
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

ADMIN_ROLE_CHOICES = ("admin", "superadmin")


def bootstrap_admin(
    email: str,
    password: str,
    *,
    name: str = "Administrator",
    role: str = "admin",
    dry_run: bool = False,
) -> dict:
    """Create or promote an admin identity.

    Returns:
        dict with user_id, email, and status ('created', 'promoted',
        'already_admin' or 'dry_run')
    """
    # Import here so env defaults are in place before settings load
    from dormauth.service.runtime import get_runtime

    runtime = get_runtime()
    email = email.strip().lower()

    result = runtime.policy.evaluate(password)
    if not result.valid:
        raise ValueError("password rejected: " + "; ".join(result.violations))

    existing_user = runtime.credentials.lookup(email)
    if existing_user:
        if existing_user.role == role:
            print(f"User {email} already exists as {role} (id: {existing_user.id})")
            return {"user_id": existing_user.id, "email": email, "status": "already_admin"}
        if dry_run:
            print(f"[DRY RUN] Would promote existing user {email} to {role}")
            return {"user_id": existing_user.id, "email": email, "status": "dry_run"}
        runtime.store.update_user(existing_user.id, role=role)
        print(f"Promoted existing user {email} to {role} (id: {existing_user.id})")
        return {"user_id": existing_user.id, "email": email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create {role} user: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    user = runtime.credentials.register(email=email, name=name, password=password, role=role)
    runtime.audit.record("CREATE", "user", user.id, user.name, after={"email": email, "role": role})
    print(f"Created {role} user: {email} (id: {user.id})")
    return {"user_id": user.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for DormAuth",
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
    parser.add_argument("--name", default="Administrator", help="Display name")
    parser.add_argument("--role", default="admin", choices=ADMIN_ROLE_CHOICES)
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

    # Redis is optional for an offline bootstrap
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
    os.environ.setdefault("REDIS_URL", "")

    try:
        result = bootstrap_admin(
            args.email,
            args.password,
            name=args.name,
            role=args.role,
            dry_run=args.dry_run,
        )
    except ValueError as e:
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
