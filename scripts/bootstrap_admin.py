#!/usr/bin/env python3
"""Promote the first administrator of a fresh deployment.

Usage:
    INITIAL_ADMIN_EMAIL=admin@example.com python scripts/bootstrap_admin.py
    python scripts/bootstrap_admin.py --email admin@example.com

The user must already exist (sign up first). Promotion only happens while
no administrator exists, so running this twice is harmless.

Exit codes:
    0  promoted, or the user is already an admin
    1  missing arguments or configuration
    2  another admin already exists
    3  no user with that email
"""
from __future__ import annotations

import argparse
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

EXIT_CODES = {
    "promoted": 0,
    "already_admin": 0,
    "admin_exists": 2,
    "user_missing": 3,
}


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        description="Promote the first KOauth administrator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        help="Email of an existing user (defaults to the INITIAL_ADMIN_EMAIL setting)",
    )
    args = parser.parse_args(argv)

    # Imported late so the parsed arguments are validated before config loads
    from koauth.service.runtime import get_runtime

    try:
        runtime = get_runtime()
    except ValueError as exc:
        print(f"Error: {exc}")
        return 1

    try:
        email = args.email or runtime.settings.initial_admin_email
        if not email:
            print("Error: --email or INITIAL_ADMIN_EMAIL required")
            return 1
        result = runtime.users.bootstrap_admin(email)
    finally:
        runtime.close()

    if result.status == "promoted":
        print(f"Promoted {email} to admin (id: {result.user.id})")
    elif result.status == "already_admin":
        print(f"{email} is already an admin, nothing to do")
    elif result.status == "admin_exists":
        print("An administrator already exists; refusing to promote another")
    else:
        print(f"No user registered with email {email}")
    return EXIT_CODES[result.status]


if __name__ == "__main__":
    sys.exit(main())
