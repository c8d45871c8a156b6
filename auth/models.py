"""
auth/models.py -- Domain dataclasses for identity entities.

Pattern: Data class (pure data container, zero logic). Stores own persistence
and services own the rules; these classes only describe shape.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime

# Substituted for the password hash whenever an Account leaves the service.
REDACTED = "[REDACTED]"


@dataclass
class Account:
    """An identity record.

    id is None before the record is written; the store assigns a uuid hex.
    password_hash holds a bcrypt digest, never plaintext. Accounts provisioned
    by external sign-in carry a digest of a random secret nobody knows, so
    they cannot be used for password login.
    """

    name: str
    email: str
    username: str
    password_hash: str
    role: str = "user"
    id: str | None = None
    is_email_verified: bool = False
    is_detail_completed: bool = False
    created_at: str | None = None
    deleted_at: str | None = None

    def redacted(self) -> Account:
        """Return a copy safe to hand to callers outside the service."""
        return replace(self, password_hash=REDACTED)


@dataclass
class AccountDetail:
    """1:1 profile extension of an Account, created empty with the account."""

    account_id: str
    id: str | None = None
    full_name: str | None = None
    school_name: str | None = None
    province: str | None = None
    city: str | None = None
    avatar: str | None = None
    phone_number: str | None = None
    deleted_at: str | None = None

    def is_complete(self) -> bool:
        """True iff full name, phone, school, province and city are all non-empty."""
        required = (self.full_name, self.phone_number, self.school_name, self.province, self.city)
        return all(value is not None and value.strip() != "" for value in required)


@dataclass
class SingleUseCode:
    """A numeric code bound to one account (email verification or password reset).

    Usable only while is_expired is False and now < expired_at. Flipping
    is_expired to True is terminal. used_at is set only when the code was
    actually redeemed, so a row flagged by the overdue sweep (used_at None)
    can still be told apart from a spent one.
    """

    account_id: str
    code: int
    expired_at: datetime
    id: str | None = None
    is_expired: bool = False
    created_at: datetime | None = None
    used_at: datetime | None = None


@dataclass
class ExternalAuthLink:
    """Binds an (provider, subject) external identity to a local account."""

    account_id: str
    provider: str  # "google"
    subject: str  # provider's stable user ID (the "sub" claim)
    id: str | None = None


@dataclass(frozen=True)
class ExternalIdentity:
    """What a verified third-party assertion tells us about the user."""

    subject: str
    email: str
    name: str


@dataclass(frozen=True)
class AuthenticatedAccount:
    """Result of any successful sign-in: redacted account plus bearer token."""

    account: Account
    token: str


@dataclass(frozen=True)
class AccountWithDetail:
    account: Account
    detail: AccountDetail
