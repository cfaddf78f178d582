#!/usr/bin/env python3
"""Mark an identity as entitled directly in the users file.

Offline counterpart of ``POST /markEntitled``; run it while the server is
stopped, since a running server rewrites the file from its own copy.

Usage:
    python scripts/mark_entitled.py --identity someone@example.com
    USERS_DB_PATH=/srv/luaspark/users.json python scripts/mark_entitled.py --identity someone@example.com

    # Create a credential-less record when the identity has not signed up yet:
    python scripts/mark_entitled.py --identity someone@example.com --create
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def mark_entitled(path: str, identity: str, *, create: bool = False, dry_run: bool = False) -> dict:
    """Entitle ``identity`` in the store at ``path``.

    Returns:
        dict with identity and status ('entitled', 'already_entitled',
        'created', 'missing' or 'dry_run')
    """
    # Import here to avoid configuring logging before env vars are set
    from luaspark.storage.credentials import CredentialStore

    store = CredentialStore(path)
    record = store.get(identity)

    if record is None and not create:
        print(f"Identity {identity} not found in {path} (use --create to add it)")
        return {"identity": identity, "status": "missing"}

    if record is not None and record.entitled:
        print(f"Identity {record.identity} is already entitled")
        return {"identity": record.identity, "status": "already_entitled"}

    if dry_run:
        print(f"[DRY RUN] Would entitle {identity}")
        return {"identity": identity, "status": "dry_run"}

    created = False
    if record is None:
        record, created = store.ensure(identity)
    record = store.mark_entitled(record.identity)
    return {"identity": record.identity, "status": "created" if created else "entitled"}


def main():
    parser = argparse.ArgumentParser(
        description="Mark a LuaSpark identity as entitled",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--identity", required=True, help="Identity (e-mail) to entitle")
    parser.add_argument(
        "--path",
        default=os.environ.get("USERS_DB_PATH", "./users.json"),
        help="Users file (or set USERS_DB_PATH env var)",
    )
    parser.add_argument(
        "--create",
        action="store_true",
        help="Create a credential-less record if the identity is unknown",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    try:
        result = mark_entitled(args.path, args.identity, create=args.create, dry_run=args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "missing":
        sys.exit(1)
    if result["status"] in ("entitled", "created"):
        print(f"\n{result['identity']} is now entitled.")


if __name__ == "__main__":
    main()
