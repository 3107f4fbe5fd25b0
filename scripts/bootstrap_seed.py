#!/usr/bin/env python3
"""Write a seed file with a superuser and a demo organization.

Usage:
    SUPERUSER_EMAIL=root@example.com SUPERUSER_PASSWORD='S3cure!pass' \
        python scripts/bootstrap_seed.py --out seed.json

    # Then start the service with SEED_FILE=seed.json

Environment Variables:
    SUPERUSER_EMAIL: Email for the superuser
    SUPERUSER_PASSWORD: Password for the superuser (must meet complexity requirements)
"""
from __future__ import annotations

import argparse
import json
import os
import secrets
import sys
from dataclasses import asdict
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def validate_password(password: str) -> bool:
    """Check password meets complexity requirements."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(c in "!@#$%^&*()_+-=[]{}|;':\",./<>?" for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


def build_seed(email: str, password: str, tenant_id: str, app_url: str) -> dict:
    from argon2 import PasswordHasher, Type

    from tenantgate.service.redirection import enforce_single_default
    from tenantgate.service.tenants import generate_api_key
    from tenantgate.storage.models import RedirectionRule, RedirectionUrl, Role

    hasher = PasswordHasher(type=Type.ID)
    rules = enforce_single_default(
        [
            RedirectionRule(
                auth_page_url=app_url,
                role_slug="admin",
                urls=[RedirectionUrl(f"{app_url}/admin")],
            ),
            RedirectionRule(
                auth_page_url=app_url,
                role_slug="any",
                urls=[RedirectionUrl(f"{app_url}/home"), RedirectionUrl(f"{app_url}/dashboard")],
            ),
        ],
        "production",
        "any",
        f"{app_url}/dashboard",
    )
    roles = [
        Role(name="User", slug="user", permissions=["profile:read"], is_default=True),
        Role(
            name="Admin",
            slug="admin",
            permissions=["profile:read", "users:manage"],
            show_on_signup=False,
        ),
    ]
    return {
        "superusers": [
            {
                "email": email,
                "password_hash": hasher.hash(password),
                "name": "Superuser",
            }
        ],
        "tenants": [
            {
                "id": tenant_id,
                "name": tenant_id.replace("-", " ").title(),
                "api_key": generate_api_key(),
                "signing": {
                    "algorithm": "HS256",
                    "secret": secrets.token_urlsafe(48),
                    "expires_in": "24h",
                },
                "roles": [asdict(role) for role in roles],
                "redirection_rules": [asdict(rule) for rule in rules],
            }
        ],
    }


def main():
    parser = argparse.ArgumentParser(
        description="Write a TenantGate seed file",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("SUPERUSER_EMAIL"),
        help="Superuser email (or set SUPERUSER_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("SUPERUSER_PASSWORD"),
        help="Superuser password (or set SUPERUSER_PASSWORD env var)",
    )
    parser.add_argument("--tenant-id", default="demo-org", help="Demo organization id")
    parser.add_argument(
        "--app-url", default="http://localhost:3000", help="Front-end URL users sign in from"
    )
    parser.add_argument("--out", default="seed.json", help="Seed file to write")

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or SUPERUSER_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or SUPERUSER_PASSWORD environment variable required")
        sys.exit(1)

    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        print("       (uppercase, lowercase, digits, special characters)")
        sys.exit(1)

    seed = build_seed(args.email, args.password, args.tenant_id, args.app_url.rstrip("/"))
    Path(args.out).write_text(json.dumps(seed, indent=2))
    tenant = seed["tenants"][0]
    print(f"Seed written to {args.out}")
    print(f"  Superuser: {args.email}")
    print(f"  Organization: {tenant['id']}")
    print(f"  API key: {tenant['api_key']}")


if __name__ == "__main__":
    main()
