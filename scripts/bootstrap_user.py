#!/usr/bin/env python3
"""Create a Rollt user from the command line.

Usage:
    # Using environment variables:
    ROLLT_USERNAME=alice ROLLT_EMAIL=alice@example.com ROLLT_PASSWORD='Secure#Pass1' python scripts/bootstrap_user.py

    # Or with command line args:
    python scripts/bootstrap_user.py --username alice --email alice@example.com --password 'Secure#Pass1'

Environment Variables:
    ROLLT_USERNAME: Username for the new account
    ROLLT_EMAIL: Email for the new account
    ROLLT_PASSWORD: Password (must satisfy the account password policy)
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


async def bootstrap_user(
    username: str, email: str, password: str, dry_run: bool = False
) -> dict:
    """Create the user unless the email is already registered.

    Returns:
        dict with user_id, email, and status ('created', 'exists' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from rollt.service.runtime import get_runtime

    runtime = get_runtime()

    existing_user = runtime.store.get_user_by_email(email)
    if existing_user:
        print(f"User {email} already exists (id: {existing_user.id})")
        return {"user_id": existing_user.id, "email": email, "status": "exists"}

    if dry_run:
        print(f"[DRY RUN] Would create user: {username} <{email}>")
        return {"user_id": None, "email": email, "status": "dry_run"}

    # No login session is opened and no token is issued
    user = runtime.store.create_user(username, email)
    await runtime.auth.save_password(user.id, password)
    print(f"Created user: {username} <{email}> (id: {user.id})")
    return {"user_id": user.id, "email": user.email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Create a user account for Rollt",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--username",
        default=os.environ.get("ROLLT_USERNAME"),
        help="Username (or set ROLLT_USERNAME env var)",
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ROLLT_EMAIL"),
        help="Email (or set ROLLT_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ROLLT_PASSWORD"),
        help="Password (or set ROLLT_PASSWORD env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    for name in ("username", "email", "password"):
        if not getattr(args, name):
            print(f"Error: --{name} or ROLLT_{name.upper()} environment variable required")
            sys.exit(1)

    from rollt.service.password_policy import POLICY_MESSAGE, meets_policy

    if not meets_policy(args.password):
        print(f"Error: {POLICY_MESSAGE}")
        sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/rollt-bootstrap"

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(
            bootstrap_user(args.username, args.email, args.password, args.dry_run)
        )
        if result["status"] == "created":
            print("\nUser created successfully!")
            print(f"  Email: {result['email']}")
            print(f"  User ID: {result['user_id']}")
        elif result["status"] == "exists":
            print("\nNo changes needed - the email is already registered.")
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
