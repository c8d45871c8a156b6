"""
auth/passwords.py -- One-way password hashing (bcrypt).

Using bcrypt directly rather than passlib[bcrypt] because passlib's internal
wrap-bug detection creates a password longer than 72 bytes, which bcrypt 4.x
rejects with an explicit error. Direct bcrypt usage is simpler and actively
maintained.

Work factor: 14 rounds by default (Settings.bcrypt_rounds). Tests lower it to
4 through BCRYPT_ROUNDS so the suite stays fast; production never should.

Plaintext passwords are never logged, stored, or returned.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import bcrypt

from core.errors import ErrorKind, IdentityError

DEFAULT_ROUNDS = 14
# bcrypt only reads the first 72 bytes; bcrypt 5 refuses longer input.
MAX_PASSWORD_BYTES = 72


def check_password_length(plain: str) -> None:
    """Raise IdentityError(VALIDATION) if plain is over bcrypt's byte limit."""
    if len(plain.encode("utf-8")) > MAX_PASSWORD_BYTES:
        raise IdentityError(ErrorKind.VALIDATION, f"Password must be at most {MAX_PASSWORD_BYTES} bytes.")


class PasswordHasher:
    """Salted, adaptive hashing with a fixed work factor.

    Usage:
        hasher = PasswordHasher(rounds=14)
        digest = hasher.hash("secret")
        hasher.verify(digest, "secret")  # True
    """

    def __init__(self, rounds: int = DEFAULT_ROUNDS) -> None:
        self.rounds = rounds
        # Timing equalization: lookups that miss still run one bcrypt check
        # against this digest so response time does not reveal whether an
        # account exists.
        self._dummy_hash = self.hash("identity_timing_dummy")

    def hash(self, plain: str) -> str:
        """Return a bcrypt digest of the plaintext.

        Raises IdentityError(VALIDATION) for passwords over 72 UTF-8 bytes.
        The limit is in bytes, not characters: 40 accented letters exceed it.
        """
        check_password_length(plain)
        return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=self.rounds)).decode("utf-8")

    def verify(self, digest: str, plain: str) -> bool:
        """Return True if the plaintext matches the digest.

        A malformed digest (e.g. the redaction sentinel) counts as a mismatch.
        """
        try:
            return bcrypt.checkpw(plain.encode("utf-8"), digest.encode("utf-8"))
        except ValueError:
            return False

    def burn(self, plain: str) -> None:
        """Spend one verification's worth of time without a real digest."""
        self.verify(self._dummy_hash, plain)
