#!/usr/bin/env python3
"""Bootstrap an owner account for initial setup.

Usage:
    # Using environment variables:
    OWNER_NAME=root OWNER_EMAIL=owner@example.com OWNER_PASSWORD='Secure#Pass1' \
        python scripts/bootstrap_owner.py

    # Or with command line args:
    python scripts/bootstrap_owner.py --name root --email owner@example.com --password 'Secure#Pass1'

Environment Variables:
    OWNER_NAME: Display name for the owner (3-20 characters)
    OWNER_EMAIL: Email for the owner
    OWNER_PASSWORD: Password for the owner (must meet the registration policy)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def bootstrap_owner(
    name: str, email: str, password: str, dry_run: bool = False
) -> dict:
    """Create an owner account, or promote the existing account for ``email``.

    Returns:
        dict with user_id, email, and status ('created', 'promoted',
        'already_owner' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from usergate.config import Settings
    from usergate.service.runtime import Runtime

    runtime = Runtime(Settings.from_env())
    try:
        existing_user = runtime.store.get_user_by_email(email)

        if existing_user:
            if existing_user.role == "owner":
                print(f"User {email} already exists as owner (id: {existing_user.id})")
                return {
                    "user_id": existing_user.id,
                    "email": email,
                    "status": "already_owner",
                }

            if dry_run:
                print(f"[DRY RUN] Would promote existing user {email} to owner")
                return {"user_id": existing_user.id, "email": email, "status": "dry_run"}

            runtime.store.update_user(existing_user.id, {"role": "owner"})
            await runtime.users.invalidate_user(existing_user.id)
            print(f"Promoted existing user {email} to owner (id: {existing_user.id})")
            return {"user_id": existing_user.id, "email": email, "status": "promoted"}

        if dry_run:
            print(f"[DRY RUN] Would create owner: {email}")
            return {"user_id": None, "email": email, "status": "dry_run"}

        user = await runtime.users.create_user(
            name=name, email=email, password=password, role="owner"
        )
        print(f"Created owner: {email} (id: {user['id']})")
        return {"user_id": user["id"], "email": email, "status": "created"}
    finally:
        await runtime.close()


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an owner account for usergate",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--name",
        default=os.environ.get("OWNER_NAME", "owner"),
        help="Owner display name (or set OWNER_NAME env var)",
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("OWNER_EMAIL"),
        help="Owner email (or set OWNER_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("OWNER_PASSWORD"),
        help="Owner password (or set OWNER_PASSWORD env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or OWNER_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or OWNER_PASSWORD environment variable required")
        sys.exit(1)

    from usergate.api.schemas import (
        validate_email,
        validate_name,
        validate_password_strength,
    )

    try:
        name = validate_name(args.name)
        email = validate_email(args.email)
        password = validate_password_strength(args.password)
    except ValueError as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    # No token is issued here, so a throwaway signing secret is enough
    if not os.environ.get("JWT_SECRET"):
        import secrets
        os.environ["JWT_SECRET"] = secrets.token_urlsafe(48)

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(bootstrap_owner(name, email, password, args.dry_run))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nOwner created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "promoted":
        print("\nExisting user promoted to owner!")
    elif result["status"] == "already_owner":
        print("\nNo changes needed - user is already an owner.")


if __name__ == "__main__":
    main()
