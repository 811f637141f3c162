#!/usr/bin/env python3
"""Create a Synodic account directly in the credential store.

Usage:
    # Using environment variables:
    USER_NAME=Ava USER_EMAIL=ava@example.com USER_PASSWORD=secret1 python scripts/create_user.py

    # Or with command line args:
    python scripts/create_user.py --name Ava --email ava@example.com --password secret1

    # Reset the password of an existing account instead of failing:
    python scripts/create_user.py --email ava@example.com --password newsecret --update

Environment Variables:
    USER_NAME, USER_EMAIL, USER_PASSWORD: account fields
    DATA_DIR: directory holding users.json (default ./data)
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


async def create_user(
    name: str, email: str, password: str, *, update: bool = False, dry_run: bool = False
) -> dict:
    """Create the account, or reset its password when ``update`` is set.

    Returns:
        dict with user_id, email, and status ('created', 'updated' or 'dry_run')
    """
    # Import here so configuration is read after argument handling
    from synodic.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        existing = runtime.store.find_by_email(email)
        if existing:
            if not update:
                raise SystemExit(f"Error: {email} already exists (id: {existing.id}); pass --update")
            if dry_run:
                print(f"[DRY RUN] Would reset the password of {email}")
                return {"user_id": existing.id, "email": email, "status": "dry_run"}
            if len(password) < runtime.settings.password_min_length:
                raise SystemExit(
                    f"Error: password must be at least {runtime.settings.password_min_length} characters"
                )
            await runtime.store.update_password(existing.id, await runtime.passwords.hash(password))
            return {"user_id": existing.id, "email": email, "status": "updated"}

        if dry_run:
            print(f"[DRY RUN] Would create user: {email}")
            return {"user_id": None, "email": email, "status": "dry_run"}

        user, _token = await runtime.auth.signup(name, email, password)
        return {"user_id": user.id, "email": user.email, "status": "created"}
    finally:
        await runtime.close()


def main():
    parser = argparse.ArgumentParser(
        description="Create a Synodic account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--name", default=os.environ.get("USER_NAME"), help="Display name")
    parser.add_argument("--email", default=os.environ.get("USER_EMAIL"), help="Account email")
    parser.add_argument(
        "--password", default=os.environ.get("USER_PASSWORD"), help="Account password"
    )
    parser.add_argument(
        "--update",
        action="store_true",
        help="Reset the password when the account already exists",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or USER_EMAIL environment variable required")
        sys.exit(1)
    if not args.password:
        print("Error: --password or USER_PASSWORD environment variable required")
        sys.exit(1)
    if not args.name and not args.update:
        print("Error: --name or USER_NAME environment variable required")
        sys.exit(1)

    from synodic.service.errors import ServiceError

    try:
        result = asyncio.run(
            create_user(
                args.name or "",
                args.email,
                args.password,
                update=args.update,
                dry_run=args.dry_run,
            )
        )
    except ServiceError as e:
        print(f"Error: {e.message}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nUser created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "updated":
        print(f"\nPassword updated for {result['email']}.")


if __name__ == "__main__":
    main()
