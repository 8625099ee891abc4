#!/usr/bin/env python3
"""Create or promote an administrator in the persisted account store.

Usage:
    STATE_DIR=/srv/sessionward python scripts/bootstrap_admin.py \\
        --email admin@example.com --name "Site Admin" --password 'S3cure-enough!'

Environment Variables:
    STATE_DIR: Directory holding the account state the server loads (required)
    ADMIN_EMAIL, ADMIN_NAME, ADMIN_PASSWORD: Defaults for the matching flags

Accounts created here are marked verified, so they can sign in without an
emailed code. An existing account is promoted instead; its password is left
unchanged.
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def validate_password(password: str, min_length: int = 12) -> bool:
    """Require length plus three of: upper, lower, digit, symbol."""
    if len(password) < min_length:
        return False
    classes = [
        any(c.isupper() for c in password),
        any(c.islower() for c in password),
        any(c.isdigit() for c in password),
        any(not c.isalnum() for c in password),
    ]
    return sum(classes) >= 3


def bootstrap_admin(store, hasher, *, email: str, name: str, password: str, dry_run: bool = False) -> dict:
    from sessionward.service.clock import IdentifierSource
    from sessionward.storage.models import Role

    existing = store.find_user_by_email(email)
    if existing:
        if existing.role == Role.ADMIN:
            return {"user_id": existing.id, "email": existing.email, "status": "already_admin"}
        if dry_run:
            return {"user_id": existing.id, "email": existing.email, "status": "dry_run"}
        store.update_user(existing.id, {"role": Role.ADMIN})
        return {"user_id": existing.id, "email": existing.email, "status": "promoted"}

    if dry_run:
        return {"user_id": None, "email": email, "status": "dry_run"}

    user = store.create_user(
        {
            "id": IdentifierSource().new_id(),
            "name": name,
            "email": email,
            "password_hash": hasher.hash(password),
            "role": Role.ADMIN,
            "email_verified": True,
        }
    )
    return {"user_id": user.id, "email": user.email, "status": "created"}


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        description="Bootstrap an administrator account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--name", default=os.environ.get("ADMIN_NAME", "Administrator"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument(
        "--state-dir",
        default=os.environ.get("STATE_DIR"),
        help="Account state directory (or set STATE_DIR)",
    )
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args(argv)

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        return 1
    if not args.state_dir:
        print("Error: --state-dir or STATE_DIR required; accounts would not outlive this process")
        return 1

    from sessionward.service.passwords import PasswordHasher
    from sessionward.storage.memory import MemoryStore

    store = MemoryStore(fs_root=args.state_dir)
    existing = store.find_user_by_email(args.email)
    if not existing:
        if not args.password:
            print("Error: --password or ADMIN_PASSWORD environment variable required")
            return 1
        if not validate_password(args.password):
            print("Error: Password must be at least 12 characters with 3+ character classes")
            return 1

    result = bootstrap_admin(
        store,
        PasswordHasher(),
        email=args.email.strip().lower(),
        name=args.name,
        password=args.password or "",
        dry_run=args.dry_run,
    )
    messages = {
        "created": "Admin account created",
        "promoted": "Existing account promoted to admin",
        "already_admin": "No changes needed; account is already an admin",
        "dry_run": "[DRY RUN] No changes written",
    }
    print(f"{messages[result['status']]}: {result['email']} (id: {result['user_id']})")
    return 0


if __name__ == "__main__":
    sys.exit(main())
