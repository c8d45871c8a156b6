#!/usr/bin/env python3
"""
Identity service admin CLI.

Usage:
  python main.py create-account "Ada Lovelace" ada@example.com ada
  python main.py create-account "Ada Lovelace" ada@example.com ada --password s3cret --verified
  python main.py expire-codes
  python main.py delete-code email 482913
  python main.py delete-code forgot 482913

Configuration comes from the same environment variables / .env file as the
API (SECRET_KEY, DATABASE_URL, BCRYPT_ROUNDS, ...). See core/config.py.
"""

import argparse
import getpass
import logging
import sys

from auth.accounts import AccountService
from auth.codes import EmailVerificationService, ForgotPasswordService
from auth.passwords import PasswordHasher
from auth.store import AccountDetailStore, AccountStore, CodeStore, Database
from auth.tokens import TokenService
from core.config import Settings, get_settings
from core.errors import IdentityError

logger = logging.getLogger("identity.cli")


def _account_service(settings: Settings, db: Database) -> AccountService:
    hasher = PasswordHasher(rounds=settings.bcrypt_rounds)
    tokens = TokenService(settings.secret_key, settings.token_expire_seconds, hasher)
    return AccountService(
        db,
        AccountStore(db),
        AccountDetailStore(db),
        tokens,
        hasher,
        default_role=settings.default_role,
        phone_country_code=settings.phone_country_code,
    )


def _code_services(settings: Settings, db: Database, accounts: AccountService) -> dict:
    return {
        "email": EmailVerificationService(
            accounts, CodeStore(db, "email_verification"), ttl_seconds=settings.code_ttl_seconds
        ),
        "forgot": ForgotPasswordService(accounts, CodeStore(db, "forgot_password"), ttl_seconds=settings.code_ttl_seconds),
    }


def _create_account(args: argparse.Namespace, settings: Settings, db: Database) -> int:
    password = args.password or getpass.getpass("Password: ")
    accounts = _account_service(settings, db)
    account = accounts.create(args.name, args.email, args.username, password, is_email_verified=args.verified)
    print(f"Created account {account.id} ({account.email})")
    return 0


def _expire_codes(args: argparse.Namespace, settings: Settings, db: Database) -> int:
    services = _code_services(settings, db, _account_service(settings, db))
    for kind, service in services.items():
        print(f"{kind}: {service.expire_overdue()} code(s) expired")
    return 0


def _delete_code(args: argparse.Namespace, settings: Settings, db: Database) -> int:
    services = _code_services(settings, db, _account_service(settings, db))
    services[args.kind].delete_by_code(args.code)
    print(f"Deleted {args.kind} code rows matching {args.code}")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="identity",
        description="Administrative tasks for the identity service.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    create = sub.add_parser("create-account", help="Create an account (with its empty profile)")
    create.add_argument("name")
    create.add_argument("email")
    create.add_argument("username")
    create.add_argument("--password", help="Password (prompted for when omitted)")
    create.add_argument("--verified", action="store_true", help="Mark the email as already verified")
    create.set_defaults(handler=_create_account)

    expire = sub.add_parser("expire-codes", help="Flag every overdue single-use code as expired")
    expire.set_defaults(handler=_expire_codes)

    delete = sub.add_parser("delete-code", help="Delete single-use code rows by code value")
    delete.add_argument("kind", choices=["email", "forgot"])
    delete.add_argument("code", type=int)
    delete.set_defaults(handler=_delete_code)

    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s %(name)s %(message)s")

    settings = get_settings()
    db = Database(settings.database_url)
    try:
        return args.handler(args, settings, db)
    except IdentityError as exc:
        print(f"  [!] {exc.kind.value}: {exc.message}", file=sys.stderr)
        return 1
    finally:
        db.close()


if __name__ == "__main__":
    sys.exit(main())
