#!/usr/bin/env python3
"""
AttendX Session Script
======================
Mints a signed session for a principal, for local testing against a service
running with REQUIRE_SIGNED_SESSION=true.

Usage:
  python attendx/scripts/issue_session.py --user-id u1 --tenant-id acme --role manager

Output:
  Authorization: Bearer <session>   ← printed ONCE; it is not stored anywhere

The session is an HS256 JWT signed with SESSION_SECRET (env var or --secret).
Use the same secret the service runs with, or the service will answer 401.
"""

import argparse
import os
import sys
from datetime import timedelta

from attendx.services.shared.auth import encode_session
from attendx.services.shared.identity import HUMAN_ROLES, Principal


def main():
    parser = argparse.ArgumentParser(
        description="Mint an AttendX session token",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--user-id", required=True, help="Principal id (e.g. 'u1')")
    parser.add_argument("--tenant-id", required=True, help="Tenant identifier (e.g. 'acme')")
    parser.add_argument("--role", default="member", choices=[r.value for r in HUMAN_ROLES])
    parser.add_argument("--super-admin", action="store_true", help="Mark the principal as super-admin")
    parser.add_argument("--ttl-hours", type=float, default=8.0, help="Session lifetime in hours (default 8)")
    parser.add_argument(
        "--secret",
        default=os.getenv("SESSION_SECRET"),
        help="Signing secret (default: SESSION_SECRET env var)",
    )
    args = parser.parse_args()

    if not args.secret:
        print("ERROR: --secret or SESSION_SECRET is required", file=sys.stderr)
        sys.exit(1)

    principal = Principal(
        id=args.user_id,
        tenant_id=args.tenant_id,
        role=args.role,
        is_super_admin=args.super_admin,
    )
    token = encode_session(principal, ttl=timedelta(hours=args.ttl_hours), secret=args.secret)

    print(f"\nSession for '{principal.id}' in tenant '{principal.tenant_id}' (role={principal.role.value}"
          f"{', super-admin' if principal.is_super_admin else ''}):\n")
    print(f"  Authorization: Bearer {token}")
    print(f"\nExpires in {args.ttl_hours:g} hours. This value will NOT be shown again.")


if __name__ == "__main__":
    main()
