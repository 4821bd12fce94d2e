#!/usr/bin/env python3
"""Generate TOTP secrets and check codes from the command line.

Usage:
    # New secret and otpauth:// enrollment URI for an account:
    python scripts/totp_enroll.py new --account alice@example.com

    # Current code for an existing secret:
    python scripts/totp_enroll.py code --secret JBSWY3DPEHPK3PXP

    # Check a code (exit status 0 when accepted, 1 otherwise):
    python scripts/totp_enroll.py verify --secret JBSWY3DPEHPK3PXP --code 123456

Environment Variables:
    APP_NAME: Issuer shown in authenticator apps (default SessionGuard)
    TOTP_SECRET: Secret used when --secret is omitted
"""
from __future__ import annotations

import argparse
import os
import sys
from typing import Optional, Sequence

from sessionguard.service.errors import ValidationError
from sessionguard.service.totp import DEFAULT_WINDOW, TOTPService


def _service(issuer: Optional[str]) -> TOTPService:
    return TOTPService(issuer=issuer or os.environ.get("APP_NAME") or "SessionGuard")


def cmd_new(args: argparse.Namespace) -> int:
    enrollment = _service(args.issuer).begin_enrollment(args.account)
    print(f"Secret:      {enrollment.secret}")
    print(f"Enroll URI:  {enrollment.otpauth_url}")
    if args.backup_codes:
        print("Backup codes:")
        for code in TOTPService.generate_backup_codes():
            print(f"  {code}")
    return 0


def cmd_code(args: argparse.Namespace) -> int:
    service = _service(args.issuer)
    counter = service.counter_at(args.at)
    print(service.generate_totp(args.secret, counter=counter))
    return 0


def cmd_verify(args: argparse.Namespace) -> int:
    accepted = _service(args.issuer).verify_totp(
        args.code, args.secret, window=args.window, at=args.at
    )
    print("accepted" if accepted else "rejected")
    return 0 if accepted else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="TOTP enrollment helper for SessionGuard",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--issuer", help="Issuer label (or set APP_NAME env var)")
    sub = parser.add_subparsers(dest="command", required=True)

    new = sub.add_parser("new", help="Generate a secret and enrollment URI")
    new.add_argument("--account", required=True, help="Account label, usually an email")
    new.add_argument(
        "--backup-codes", action="store_true", help="Also print a set of backup codes"
    )
    new.set_defaults(func=cmd_new)

    for name, func, helptext in (
        ("code", cmd_code, "Print the code for a secret"),
        ("verify", cmd_verify, "Check a code against a secret"),
    ):
        p = sub.add_parser(name, help=helptext)
        p.add_argument(
            "--secret",
            default=os.environ.get("TOTP_SECRET"),
            help="Base32 secret (or set TOTP_SECRET env var)",
        )
        p.add_argument("--at", type=float, default=None, help="Unix time instead of now")
        p.set_defaults(func=func)
        if name == "verify":
            p.add_argument("--code", required=True)
            p.add_argument("--window", type=int, default=DEFAULT_WINDOW)
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    if args.command != "new" and not args.secret:
        print("Error: --secret or TOTP_SECRET environment variable required")
        return 1
    try:
        return args.func(args)
    except ValidationError as e:
        print(f"Error: {e.message}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
