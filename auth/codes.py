"""
auth/codes.py -- Time-boxed single-use numeric codes.

Two flows share one protocol:
  EmailVerificationService  request -> validate(email, code) -> account verified
  ForgotPasswordService     request -> reset(code, new_password) -> password replaced

Protocol:
  request()   Resolve the account by email (NOT_FOUND if absent) and store a
              new active code, due 15 minutes from now unless told otherwise.
  validate    Find the newest active row for the code. Missing -> INVALID_CODE,
              unless the sweep retired it unused while past due: then the row
              is deleted and the answer is EXPIRED_CODE, same as below.
              Past due -> flag it expired, delete it, EXPIRED_CODE.
              Current -> flag it expired (compare-and-set), then apply the
              flow's effect. Losing the compare-and-set to a concurrent request
              is INVALID_CODE: a code is never used twice.

The services never invent codes. Callers pass them in (the HTTP layer uses
generate_code()), so tests can inject deterministic values.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import secrets
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from auth.accounts import AccountService
from auth.models import SingleUseCode
from auth.passwords import check_password_length
from auth.store import CodeStore
from core.errors import ErrorKind, IdentityError, store_errors

logger = logging.getLogger("identity.codes")

CODE_MIN = 100000
CODE_MAX = 999999
DEFAULT_TTL_SECONDS = 15 * 60


def generate_code() -> int:
    """Return a uniformly random 6-digit code (100000-999999)."""
    return CODE_MIN + secrets.randbelow(CODE_MAX - CODE_MIN + 1)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SingleUseCodeService:
    """Shared request/consume/expire logic; subclasses add the flow's effect."""

    kind = ""

    def __init__(
        self,
        accounts: AccountService,
        codes: CodeStore,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._accounts = accounts
        self._codes = codes
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    def request(self, email: str, code: int, due_at: datetime | None = None) -> SingleUseCode:
        """Store a new active code for the account that owns email."""
        if not CODE_MIN <= code <= CODE_MAX:
            raise IdentityError(ErrorKind.VALIDATION, "Code must be a 6-digit number.")
        account = self._accounts.get_by_email(email)
        if due_at is None:
            due_at = self._clock() + timedelta(seconds=self.ttl_seconds)
        record = SingleUseCode(account_id=account.id, code=code, expired_at=due_at)
        with store_errors(f"{self.kind}.request", account.id):
            self._codes.create(record)
        logger.info("%s code issued (account_id=%s, due=%s)", self.kind, account.id, due_at.isoformat())
        return record

    def delete_by_code(self, code: int) -> None:
        """Administrative cleanup. A code with no rows is a no-op."""
        with store_errors(f"{self.kind}.delete_by_code"):
            removed = self._codes.delete_by_code(code)
        logger.info("%s rows deleted by code: %d", self.kind, removed)

    def expire_overdue(self, now: datetime | None = None) -> int:
        """Flag every active code past its due time. Returns the number flagged."""
        with store_errors(f"{self.kind}.expire_overdue"):
            count = self._codes.expire_all_overdue(now or self._clock())
        if count:
            logger.info("%s codes expired by sweep: %d", self.kind, count)
        return count

    def _find(self, code: int, account_id: str | None = None) -> SingleUseCode | None:
        """Newest active row for the code, optionally scoped to one account.

        A miss that matches a row the sweep retired unused is still a late
        use of that code: the row is deleted and EXPIRED_CODE raised.
        """
        with store_errors(f"{self.kind}.lookup", account_id):
            if account_id is not None:
                record = self._codes.get_active_by_account_and_code(account_id, code)
            else:
                record = self._codes.get_active_by_code(code)
            if record is not None:
                return record
            now = self._clock()
            if account_id is not None:
                swept = self._codes.get_swept_by_account_and_code(account_id, code, now)
            else:
                swept = self._codes.get_swept_by_code(code, now)
            if swept is None:
                return None
            self._codes.delete(swept.id)
        logger.info("%s code used after sweep (account_id=%s)", self.kind, swept.account_id)
        raise IdentityError(ErrorKind.EXPIRED_CODE)

    def _consume(self, record: SingleUseCode | None) -> SingleUseCode:
        """Check freshness and burn the code. Raises INVALID_CODE / EXPIRED_CODE."""
        if record is None:
            raise IdentityError(ErrorKind.INVALID_CODE)
        with store_errors(f"{self.kind}.consume", record.account_id):
            now = self._clock()
            if now >= record.expired_at:
                self._codes.mark_expired(record.id)
                self._codes.delete(record.id)
                logger.info("%s code used after due time (account_id=%s)", self.kind, record.account_id)
                raise IdentityError(ErrorKind.EXPIRED_CODE)
            if not self._codes.mark_expired(record.id, used_at=now):
                raise IdentityError(ErrorKind.INVALID_CODE)
        record.is_expired = True
        record.used_at = now
        return record


class EmailVerificationService(SingleUseCodeService):
    kind = "email_verification"

    def validate(self, email: str, code: int) -> None:
        """Consume the code and flip the account's email-verified flag."""
        account = self._accounts.get_by_email(email)
        self._consume(self._find(code, account.id))
        self._accounts.mark_email_verified(account.id)


class ForgotPasswordService(SingleUseCodeService):
    kind = "forgot_password"

    def reset(self, code: int, new_password: str, email: str | None = None) -> None:
        """Consume the code and replace the owning account's password.

        With email, only that account's codes match. Without it, the newest
        active row carrying the code is used.
        """
        if not new_password or not new_password.strip():
            raise IdentityError(ErrorKind.VALIDATION, "New password is required.")
        # Checked before the code is burned, so a too-long password can be retried.
        check_password_length(new_password)
        account_id = self._accounts.get_by_email(email).id if email is not None else None
        record = self._consume(self._find(code, account_id))
        self._accounts.set_password(record.account_id, new_password)
