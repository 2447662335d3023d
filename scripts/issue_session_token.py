from __future__ import annotations

import argparse
import sys
from datetime import timedelta

from signplane.services.tokens import issue_session_token


_ROLES = ("owner", "admin", "viewer")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Issue a dashboard session token for an account")
    parser.add_argument("--account", required=True, help="Account identifier")
    parser.add_argument("--subject", required=True, help="User identifier recorded as the actor")
    parser.add_argument("--role", default="admin", choices=_ROLES, help="Role: owner|admin|viewer")
    parser.add_argument("--ttl-hours", type=int, default=None, help="Override the configured token lifetime")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    ttl = timedelta(hours=args.ttl_hours) if args.ttl_hours else None
    token = issue_session_token(subject=args.subject, account_id=args.account, role=args.role, ttl=ttl)
    # Print once; the token is not stored anywhere.
    print(token)
    return 0


if __name__ == "__main__":
    sys.exit(main())
