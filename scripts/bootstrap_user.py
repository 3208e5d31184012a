#!/usr/bin/env python3
"""Seed a user with a password and roles, e.g. the first admin.

Usage:
    # Using environment variables:
    BOOTSTRAP_IDENTIFIER=admin@example.com BOOTSTRAP_PASSWORD=SecurePassword123! \
        python scripts/bootstrap_user.py --role admin

    # Or with command line args:
    python scripts/bootstrap_user.py --identifier +15550001111 --password hunter2hunter2 --role user

Environment Variables:
    BOOTSTRAP_IDENTIFIER: Email address or phone number of the user
    BOOTSTRAP_PASSWORD: Password for the user (at least 8 characters)
    SHARED_FS_ROOT: Directory holding the user store (default /tmp/authgate)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path
from typing import List

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_user(
    identifier: str, password: str, roles: List[str], dry_run: bool = False
) -> dict:
    """Create the user or update its password and roles.

    Returns:
        dict with user_id, identifier, roles and status
        ('created', 'updated' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from authgate.service.password import MIN_PASSWORD_LENGTH, normalize_login_identifier
    from authgate.service.runtime import get_runtime

    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"password must be at least {MIN_PASSWORD_LENGTH} characters")

    normalized = normalize_login_identifier(identifier)
    if not normalized:
        raise ValueError("identifier must not be empty")

    runtime = get_runtime()
    existing = runtime.users.get_user_by_identifier(normalized)

    if dry_run:
        action = "update" if existing else "create"
        print(f"[DRY RUN] Would {action} user {normalized} with roles {roles}")
        return {
            "user_id": existing.id if existing else None,
            "identifier": normalized,
            "roles": roles,
            "status": "dry_run",
        }

    if existing:
        user = runtime.users.set_user_roles(existing.id, roles) or existing
        status = "updated"
    else:
        is_email = "@" in normalized
        user = runtime.users.create_user(
            normalized,
            email=normalized if is_email else None,
            phone=None if is_email else normalized,
            roles=roles,
        )
        status = "created"

    runtime.passwords.store_password(user.id, password)
    return {
        "user_id": user.id,
        "identifier": normalized,
        "roles": list(user.roles),
        "status": status,
    }


def main():
    parser = argparse.ArgumentParser(
        description="Seed an authgate user with a password and roles",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--identifier",
        default=os.environ.get("BOOTSTRAP_IDENTIFIER"),
        help="Email or phone (or set BOOTSTRAP_IDENTIFIER env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("BOOTSTRAP_PASSWORD"),
        help="Password (or set BOOTSTRAP_PASSWORD env var)",
    )
    parser.add_argument(
        "--role",
        dest="roles",
        action="append",
        help="Role to grant; repeat for several (default: user)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.identifier:
        print("Error: --identifier or BOOTSTRAP_IDENTIFIER environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or BOOTSTRAP_PASSWORD environment variable required")
        sys.exit(1)

    roles = list(dict.fromkeys(args.roles or ["user"]))

    # Users live on disk; Redis state is not touched here
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = bootstrap_user(args.identifier, args.password, roles, args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nUser created successfully!")
    elif result["status"] == "updated":
        print("\nExisting user updated!")
    if result["status"] != "dry_run":
        print(f"  Identifier: {result['identifier']}")
        print(f"  User ID: {result['user_id']}")
        print(f"  Roles: {', '.join(result['roles'])}")


if __name__ == "__main__":
    main()
