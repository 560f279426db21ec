#!/usr/bin/env python3
"""Grant or revoke a profile at a hospital for an existing user.

Users are created on their first Azure AD login, so run this after the
person has signed in once.

Usage:
    python scripts/grant_access.py --email ana@example.com \\
        --hospital hospital_demo_003 --profile profile_auditor_002

    python scripts/grant_access.py --email ana@example.com \\
        --hospital hospital_demo_003 --profile profile_auditor_002 --revoke

Environment Variables:
    DATABASE_URL: PostgreSQL connection string (uses memory store if not set)
    GRANTED_BY: Actor recorded on the grant (defaults to "system")
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def change_access(
    email: str,
    hospital_id: str,
    profile_id: str,
    *,
    actor: str = "system",
    revoke: bool = False,
    dry_run: bool = False,
) -> dict:
    """Apply the grant change and report what happened.

    Returns:
        dict with user_id, hospital_id, profile_id and a status of
        ``granted``, ``revoked``, ``dry_run`` or ``unknown_user``
    """
    # Import here to avoid loading config before env vars are set
    from msusers.service.runtime import get_runtime

    runtime = get_runtime()
    result = {"user_id": None, "hospital_id": hospital_id, "profile_id": profile_id}

    user = runtime.users.get_user_by_email(email)
    if not user:
        print(f"No user with email {email}; they must log in once first")
        return {**result, "status": "unknown_user"}
    result["user_id"] = user.id

    action = "revoke" if revoke else "grant"
    if dry_run:
        print(f"[DRY RUN] Would {action} {profile_id} at {hospital_id} for {email}")
        return {**result, "status": "dry_run"}

    if revoke:
        runtime.grants.revoke(user.id, hospital_id, profile_id, revoked_by=actor)
        print(f"Revoked {profile_id} at {hospital_id} for {email}")
        return {**result, "status": "revoked"}

    runtime.grants.grant(user.id, hospital_id, profile_id, granted_by=actor)
    print(f"Granted {profile_id} at {hospital_id} to {email}")
    return {**result, "status": "granted"}


def main():
    parser = argparse.ArgumentParser(
        description="Grant or revoke hospital access for a user",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", required=True, help="Email of the user")
    parser.add_argument("--hospital", required=True, help="Hospital id")
    parser.add_argument("--profile", required=True, help="Profile id")
    parser.add_argument(
        "--revoke", action="store_true", help="Revoke instead of grant"
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("SHARED_FS_ROOT", "/tmp/msusers-cli")
        print("Note: Using in-memory store (set DATABASE_URL to target Postgres)")

    try:
        result = change_access(
            args.email,
            args.hospital,
            args.profile,
            actor=os.environ.get("GRANTED_BY", "system"),
            revoke=args.revoke,
            dry_run=args.dry_run,
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "unknown_user":
        sys.exit(2)


if __name__ == "__main__":
    main()
