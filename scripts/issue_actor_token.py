#!/usr/bin/env python3
"""
Mint an actor token for local development and manual testing.

In a deployment, tokens come from the credential service. This script
signs ``<user_id>.<expires>`` with ACTOR_TOKEN_SECRET exactly the way the
API verifies it.

Usage:
    python scripts/issue_actor_token.py 7d0c1f1e-5b7a-4a52-9f6d-1d2c3b4a5e6f
    python scripts/issue_actor_token.py <user_id> --ttl 600
    python scripts/issue_actor_token.py <user_id> --curl POST /api/crises/<id>/request-help
    python scripts/issue_actor_token.py --new-secrets      # .env lines for a fresh deployment

Environment:
    ACTOR_TOKEN_SECRET: signing secret (required, or pass --secret)
"""
import argparse
import os
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from app.transport.security import generate_secure_token, issue_actor_token  # noqa: E402


def main():
    parser = argparse.ArgumentParser(
        description="Issue a signed actor token",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )
    parser.add_argument("user_id", nargs="?", help="User id (UUID) the token authenticates")
    parser.add_argument("--ttl", type=int, default=None, help="Lifetime in seconds (default: ACTOR_TOKEN_TTL_SECONDS)")
    parser.add_argument("--secret", "-s", help="Signing secret (or use ACTOR_TOKEN_SECRET env var)")
    parser.add_argument("--curl", nargs=2, metavar=("METHOD", "PATH"), help="Output as curl command")
    parser.add_argument("--host", "-H", default="http://localhost:8099", help="Host URL for curl")
    parser.add_argument("--new-secrets", action="store_true", help="Print fresh secrets in .env format and exit")

    args = parser.parse_args()

    if args.new_secrets:
        for name in ("ACTOR_TOKEN_SECRET", "METRICS_TOKEN", "NOTIFICATION_WEBHOOK_TOKEN"):
            print(f"{name}={generate_secure_token(32)}")
        return

    if not args.user_id:
        parser.error("user_id is required")

    secret = args.secret or os.environ.get("ACTOR_TOKEN_SECRET")
    if not secret:
        print("Error: ACTOR_TOKEN_SECRET environment variable not set", file=sys.stderr)
        print("Generate one with: python scripts/issue_actor_token.py --new-secrets", file=sys.stderr)
        sys.exit(1)

    try:
        token = issue_actor_token(args.user_id, ttl_seconds=args.ttl, secret=secret)
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)

    if args.curl:
        method, path = args.curl
        cmd_parts = [
            "curl",
            f"-X {method.upper()}",
            f'-H "Authorization: Bearer {token}"',
        ]
        if method.upper() == "POST":
            cmd_parts.append('-H "Content-Type: application/json"')
        cmd_parts.append(f'"{args.host}{path}"')
        print(" \\\n  ".join(cmd_parts))
    else:
        print(token)


if __name__ == "__main__":
    main()
