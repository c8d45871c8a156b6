"""
auth/accounts.py -- Account lifecycle: sign-up, sign-in, password change,
profile details.

AccountService is the only writer of Account and AccountDetail records. The
code services and the external auth service go through it for every account
mutation (mark_email_verified, set_password, create).

Error contract (core.errors.ErrorKind):
  VALIDATION          empty email/username/password, unchanged new password
  CONFLICT            email or username already used by a live account
  INVALID_CREDENTIALS wrong password *or* unknown login -- the two are
                      indistinguishable to the caller, including in timing
  NOT_FOUND           account/detail lookups by id or email
  INTERNAL            unclassified store failures (logged, never retried)

Account creation writes the account row and its empty detail row in one
transaction: either both exist afterwards or neither does.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import re
import secrets

from auth.models import Account, AccountDetail, AccountWithDetail, AuthenticatedAccount
from auth.passwords import PasswordHasher
from auth.store import AccountDetailStore, AccountStore, Database
from auth.tokens import TokenService
from core.errors import ErrorKind, IdentityError, store_errors

logger = logging.getLogger("identity.accounts")

_PHONE_STRIP_RE = re.compile(r"[^\d+]")
_USERNAME_STRIP_RE = re.compile(r"[^a-z0-9._-]+")
_USERNAME_ATTEMPTS = 5


def normalize_phone(raw: str | None, country_code: str = "62") -> str | None:
    """Canonicalize a phone number to international form.

    Whitespace and every character other than digits and "+" are removed; a
    "+" is only kept in the leading position. A local-format leading "0" is
    replaced by "+<country_code>".

        normalize_phone("08123456789")      -> "+628123456789"
        normalize_phone("+62 812-3456-789") -> "+628123456789"

    Returns None for None or input with no digits left.
    """
    if raw is None:
        return None
    cleaned = _PHONE_STRIP_RE.sub("", raw)
    leading_plus = cleaned.startswith("+")
    digits = cleaned.replace("+", "")
    if not digits:
        return None
    if leading_plus:
        return f"+{digits}"
    if digits.startswith("0"):
        return f"+{country_code}{digits[1:]}"
    return digits


def _clean(value: str | None) -> str:
    return (value or "").strip()


def _email(value: str | None) -> str:
    # Stored and matched lowercased, so Ada@Example.com and ada@example.com are one account.
    return _clean(value).lower()


class AccountService:
    """Owns the Account/AccountDetail write path.

    Usage:
        service = AccountService(db, AccountStore(db), AccountDetailStore(db), tokens, hasher)
        account = service.create("Ada", "ada@example.com", "ada", "s3cret")
        auth = service.validate("ada@example.com", "s3cret")
    """

    def __init__(
        self,
        db: Database,
        accounts: AccountStore,
        details: AccountDetailStore,
        tokens: TokenService,
        hasher: PasswordHasher,
        default_role: str = "user",
        phone_country_code: str = "62",
    ) -> None:
        self._db = db
        self._accounts = accounts
        self._details = details
        self._tokens = tokens
        self._hasher = hasher
        self.default_role = default_role
        self.phone_country_code = phone_country_code

    # ------------------------------------------------------------------
    # Sign-up / sign-in
    # ------------------------------------------------------------------

    def create(
        self,
        name: str,
        email: str,
        username: str,
        password: str,
        is_email_verified: bool = False,
    ) -> Account:
        """Create an account and its empty detail row atomically.

        The returned Account carries the bcrypt digest, never the plaintext.
        Callers that hand the account to a client should use .redacted().
        """
        email = _email(email)
        username = _clean(username)
        if not email or not username or not password:
            raise IdentityError(ErrorKind.VALIDATION, "Email, username and password are required.")

        # Fast path for the common duplicate; the unique index below is what
        # actually guarantees uniqueness under concurrency.
        with store_errors("create_account.lookup"):
            if self._accounts.get_by_email(email) is not None:
                raise IdentityError(ErrorKind.CONFLICT, "Email already registered.")

        account = Account(
            name=_clean(name),
            email=email,
            username=username,
            password_hash=self._hasher.hash(password),
            role=self.default_role,
            is_email_verified=is_email_verified,
        )
        with store_errors("create_account"):
            with self._db.transaction() as conn:
                self._accounts.create(account, conn=conn)
                self._details.create(AccountDetail(account_id=account.id), conn=conn)
        logger.info("Account created (account_id=%s)", account.id)
        return account

    def register(self, name: str, email: str, password: str, username: str | None = None) -> AuthenticatedAccount:
        """Sign up and sign in. Without a username one is derived from the email."""
        email = _email(email)
        if not email or not password:
            raise IdentityError(ErrorKind.VALIDATION, "Email and password are required.")
        if not _clean(username):
            username = self.available_username(email.split("@", 1)[0])
        account = self.create(name, email, username, password)
        return AuthenticatedAccount(account=account.redacted(), token=self._tokens.issue(account.id))

    def validate(self, login: str, password: str) -> AuthenticatedAccount:
        """Authenticate by email or username plus password; issue a token.

        Email lookup runs first and ignores case; usernames match exactly.
        Only a clean miss falls back to the username lookup; store failures
        propagate as INTERNAL rather than being read as "no such account".

        An unknown login still runs one bcrypt check so response time does
        not reveal whether the account exists.
        """
        login = _clean(login)
        with store_errors("validate_credentials"):
            account = self._accounts.get_by_email(login.lower())
            if account is None:
                account = self._accounts.get_by_username(login)
        if account is None:
            self._hasher.burn(password)
            raise IdentityError(ErrorKind.INVALID_CREDENTIALS)
        self._tokens.verify_password(account.password_hash, password)
        token = self._tokens.issue(account.id)
        logger.info("Credentials validated (account_id=%s)", account.id)
        return AuthenticatedAccount(account=account.redacted(), token=token)

    # ------------------------------------------------------------------
    # Password
    # ------------------------------------------------------------------

    def change_password(self, account_id: str, old_password: str, new_password: str) -> AuthenticatedAccount:
        """Replace the password after checking the old one; re-issue a token.

        Wrong old password -> INVALID_CREDENTIALS, unknown account -> NOT_FOUND.
        """
        if not new_password:
            raise IdentityError(ErrorKind.VALIDATION, "New password is required.")
        if new_password == old_password:
            raise IdentityError(ErrorKind.VALIDATION, "New password must differ from the old one.")
        account = self.get_by_id(account_id)
        if not self._hasher.verify(account.password_hash, old_password):
            raise IdentityError(ErrorKind.INVALID_CREDENTIALS, "Old password is incorrect.")
        account.password_hash = self._hasher.hash(new_password)
        with store_errors("change_password", account_id):
            if not self._accounts.update(account_id, password_hash=account.password_hash):
                raise IdentityError(ErrorKind.NOT_FOUND, "Account not found.")
        logger.info("Password changed (account_id=%s)", account_id)
        return AuthenticatedAccount(account=account.redacted(), token=self._tokens.issue(account_id))

    def set_password(self, account_id: str, new_password: str) -> None:
        """Overwrite the password without the old one. Used by password reset."""
        if not new_password or not new_password.strip():
            raise IdentityError(ErrorKind.VALIDATION, "New password is required.")
        digest = self._hasher.hash(new_password)
        with store_errors("set_password", account_id):
            if not self._accounts.update(account_id, password_hash=digest):
                raise IdentityError(ErrorKind.NOT_FOUND, "Account not found.")
        logger.info("Password reset (account_id=%s)", account_id)

    # ------------------------------------------------------------------
    # Lookups and flags
    # ------------------------------------------------------------------

    def get_by_id(self, account_id: str) -> Account:
        with store_errors("get_account", account_id):
            account = self._accounts.get_by_id(account_id)
        if account is None:
            raise IdentityError(ErrorKind.NOT_FOUND, "Account not found.")
        return account

    def get_by_email(self, email: str) -> Account:
        with store_errors("get_account_by_email"):
            account = self._accounts.get_by_email(_email(email))
        if account is None:
            raise IdentityError(ErrorKind.NOT_FOUND, "Account not found.")
        return account

    def mark_email_verified(self, account_id: str) -> None:
        """Unverified -> Verified. There is no transition back."""
        with store_errors("mark_email_verified", account_id):
            if not self._accounts.update(account_id, is_email_verified=True):
                raise IdentityError(ErrorKind.NOT_FOUND, "Account not found.")
        logger.info("Email verified (account_id=%s)", account_id)

    def available_username(self, base: str) -> str:
        """Return a username derived from base that no live account uses yet.

        The result is only a good guess: a concurrent sign-up can still take
        it, in which case create() raises CONFLICT.
        """
        stem = _USERNAME_STRIP_RE.sub("", base.strip().lower().replace(" ", ".")) or "user"
        candidate = stem
        with store_errors("available_username"):
            for _ in range(_USERNAME_ATTEMPTS):
                if self._accounts.get_by_username(candidate) is None:
                    return candidate
                candidate = f"{stem}-{secrets.token_hex(3)}"
        raise IdentityError(ErrorKind.CONFLICT, "Could not derive a free username.")

    def delete(self, account_id: str) -> None:
        """Soft-delete the account and its detail row together."""
        with store_errors("delete_account", account_id):
            with self._db.transaction() as conn:
                if not self._accounts.soft_delete(account_id, conn=conn):
                    raise IdentityError(ErrorKind.NOT_FOUND, "Account not found.")
                self._details.soft_delete(account_id, conn=conn)
        logger.info("Account deleted (account_id=%s)", account_id)

    # ------------------------------------------------------------------
    # Details
    # ------------------------------------------------------------------

    def get_detail(self, account_id: str) -> AccountWithDetail:
        """Return the account (password redacted) joined with its detail row."""
        account = self.get_by_id(account_id)
        with store_errors("get_detail", account_id):
            detail = self._details.get_by_account_id(account_id)
        if detail is None:
            raise IdentityError(ErrorKind.NOT_FOUND, "Account detail not found.")
        return AccountWithDetail(account=account.redacted(), detail=detail)

    def update_detail(self, detail: AccountDetail) -> AccountWithDetail:
        """Replace the profile fields and recompute is_detail_completed.

        The phone number is normalized before it is stored. The detail write
        and the flag write share one transaction.
        """
        account = self.get_by_id(detail.account_id)
        detail.phone_number = normalize_phone(detail.phone_number, self.phone_country_code)
        completed = detail.is_complete()
        with store_errors("update_detail", detail.account_id):
            with self._db.transaction() as conn:
                if not self._details.update(detail, conn=conn):
                    raise IdentityError(ErrorKind.NOT_FOUND, "Account detail not found.")
                self._accounts.update(detail.account_id, conn=conn, is_detail_completed=completed)
                stored = self._details.get_by_account_id(detail.account_id, conn=conn)
        account.is_detail_completed = completed
        return AccountWithDetail(account=account.redacted(), detail=stored)
