#!/usr/bin/env python3
"""Seed a system administrator account.

Usage:
    ADMIN_EMAIL=root@example.com python scripts/bootstrap_admin.py
    python scripts/bootstrap_admin.py --email root@example.com --password 'S3cure-enough'

A password is generated and printed once when none is supplied. An existing
account with the same email is promoted to system_admin and reactivated.
Uses the store selected by DATABASE_URL / USE_MEMORY_STORE.
"""
from __future__ import annotations

import argparse
import os
import re
import secrets
import sys
from typing import Optional


def validate_password(password: str) -> bool:
    """Same rule as self-service registration: 8+ chars, a letter and a digit."""
    return (
        8 <= len(password) <= 128
        and re.search(r"[A-Za-z]", password) is not None
        and re.search(r"\d", password) is not None
    )


def generate_password() -> str:
    while True:
        candidate = secrets.token_urlsafe(18)
        if validate_password(candidate):
            return candidate


def bootstrap_admin(
    email: str, password: Optional[str], name: Optional[str] = None, dry_run: bool = False
) -> dict:
    """Create or promote an active system administrator.

    Returns:
        dict with user_id, email, status ('created', 'promoted', 'already_admin'
        or 'dry_run'), the generated password when one was created, and
        password_ignored when a password was given for an existing account
    """
    from officegate.service.roles import Role
    from officegate.service.runtime import get_runtime
    from officegate.storage.common import normalize_email
    from officegate.storage.models import UserStatus

    runtime = get_runtime()
    email = normalize_email(email)
    existing = runtime.store.get_user_by_email(email)

    if existing:
        # Existing credentials are never overwritten
        result = {"user_id": existing.id, "email": email}
        if password:
            result["password_ignored"] = True
        if existing.role == Role.SYSTEM_ADMIN.value and existing.status == UserStatus.ACTIVE:
            return {**result, "status": "already_admin"}
        if dry_run:
            return {**result, "status": "dry_run"}
        runtime.store.set_user_role(existing.id, Role.SYSTEM_ADMIN.value)
        runtime.store.set_user_status(existing.id, UserStatus.ACTIVE)
        return {**result, "status": "promoted"}

    if dry_run:
        return {"user_id": None, "email": email, "status": "dry_run"}

    generated = None
    if not password:
        password = generated = generate_password()
    user = runtime.store.create_user(
        email,
        runtime.auth.passwords.hash_password(password),
        role=Role.SYSTEM_ADMIN.value,
        status=UserStatus.ACTIVE,
        name=name,
    )
    result = {"user_id": user.id, "email": email, "status": "created"}
    if generated:
        result["generated_password"] = generated
    return result


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Seed an officegate system administrator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument("--name", default=None)
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args(argv)

    if not args.email:
        print("Error: --email or ADMIN_EMAIL is required", file=sys.stderr)
        return 1
    if args.password and not validate_password(args.password):
        print(
            "Error: password needs at least 8 characters with a letter and a digit",
            file=sys.stderr,
        )
        return 1

    from officegate.storage.errors import StoreError

    try:
        result = bootstrap_admin(args.email, args.password, args.name, args.dry_run)
    except (StoreError, RuntimeError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    print(f"{result['status']}: {result['email']} (id: {result['user_id']})")
    if result.get("generated_password"):
        print(f"  Generated password: {result['generated_password']}")
    if result.get("password_ignored"):
        print("  Existing password kept; --password was not applied", file=sys.stderr)
    return 0


if __name__ == "__main__":
    sys.exit(main())
