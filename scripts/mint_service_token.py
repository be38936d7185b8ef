#!/usr/bin/env python3
"""Operator tool for service tokens.

Usage:
    # Create an organization with its first admin and print a token for them:
    python scripts/mint_service_token.py bootstrap --org "Acme" --email admin@acme.test --password '...'

    # Mint a token for an existing account (debugging an internal API call):
    python scripts/mint_service_token.py mint --email admin@acme.test [--mfa]

    # Verify a token and print its claims:
    python scripts/mint_service_token.py inspect <token>

Environment Variables:
    SERVICE_TOKEN_SECRET: signing key shared with the internal API
    SECRET_ENCRYPTION_KEY: key for secrets encrypted at rest
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set)
"""
from __future__ import annotations

import argparse
import json
import os
import sys

from trustcore.service.errors import ServiceError
from trustcore.service.service_tokens import ServiceClaims
from trustcore.storage.errors import ConstraintViolation
from trustcore.storage.models import Role


def bootstrap_organization(runtime, org_name: str, email: str, password: str) -> dict:
    """Create an organization and its first admin account."""
    if len(password) < runtime.settings.password_min_length:
        raise ValueError(
            f"password must be at least {runtime.settings.password_min_length} characters"
        )
    organization = runtime.store.create_organization(org_name)
    account = runtime.store.create_account(
        email,
        organization_id=organization.id,
        role=Role.ADMIN,
        email_verified_at=runtime.clock(),
    )
    password_hash, algo = runtime.hasher.hash_with_algo(password)
    runtime.store.save_password(account.id, password_hash, algo)
    return {
        "organization_id": organization.id,
        "account_id": account.id,
        "token": mint_for_email(runtime, email, second_factor_verified=False),
    }


def mint_for_email(runtime, email: str, *, second_factor_verified: bool) -> str:
    account = runtime.store.get_account_by_email(email)
    if not account or not account.is_active:
        raise ValueError(f"no active account for {email}")
    return runtime.service_tokens.mint(
        ServiceClaims(
            subject=account.id,
            email=account.email,
            name=account.name,
            role=account.role.value,
            organization_id=account.organization_id,
            second_factor_verified=second_factor_verified,
        )
    )


def inspect_token(runtime, token: str) -> dict:
    claims = runtime.service_tokens.verify(token)
    return {
        "account_id": claims.subject,
        "email": claims.email,
        "role": claims.role,
        "organization_id": claims.organization_id,
        "second_factor_verified": claims.second_factor_verified,
        "issued_at": claims.issued_at.isoformat() if claims.issued_at else None,
        "expires_at": claims.expires_at.isoformat() if claims.expires_at else None,
    }


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Mint and inspect trustcore service tokens",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    boot = sub.add_parser("bootstrap", help="create an organization and its first admin")
    boot.add_argument("--org", required=True, help="Organization name")
    boot.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    boot.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))

    mint = sub.add_parser("mint", help="mint a token for an existing account")
    mint.add_argument("--email", required=True)
    mint.add_argument(
        "--mfa",
        action="store_true",
        help="Mark the second factor as verified (debugging only)",
    )

    inspect = sub.add_parser("inspect", help="verify a token and print its claims")
    inspect.add_argument("token")

    args = parser.parse_args(argv)

    if not os.environ.get("DATABASE_URL"):
        os.environ.setdefault("USE_MEMORY_STORE", "true")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)", file=sys.stderr)

    # Import here so the environment above is in place before settings load
    from trustcore.service.runtime import get_runtime

    try:
        runtime = get_runtime()
        if args.command == "bootstrap":
            if not args.email or not args.password:
                print("Error: --email and --password (or ADMIN_EMAIL/ADMIN_PASSWORD) required")
                return 1
            result = bootstrap_organization(runtime, args.org, args.email, args.password)
        elif args.command == "mint":
            result = {"token": mint_for_email(runtime, args.email, second_factor_verified=args.mfa)}
        else:
            result = inspect_token(runtime, args.token)
    except (ServiceError, ConstraintViolation, ValueError) as exc:
        print(f"Error: {exc}")
        return 1

    print(json.dumps(result, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
