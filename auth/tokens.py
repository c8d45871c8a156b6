"""
auth/tokens.py -- Signed bearer tokens (JWT, HS256).

Security design decisions:
  JWT: python-jose with HS256. Tokens carry exactly one application claim,
       account_id (a string), plus the registered iat and exp claims. Every
       token expires after Settings.token_expire_seconds.

  Algorithm pinning: decode() is called with algorithms=["HS256"], so a token
       whose header names another algorithm (none, RS256 with the secret as a
       public key, ...) is rejected before its signature is even considered.

  Secret: injected into TokenService at construction and kept for the life of
       the instance. Nothing in this module reads configuration.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from auth.passwords import PasswordHasher
from core.errors import ErrorKind, IdentityError

logger = logging.getLogger("identity.tokens")

ALGORITHM = "HS256"
ACCOUNT_CLAIM = "account_id"


class TokenService:
    """Issues and validates stateless bearer tokens for account ids.

    Usage:
        tokens = TokenService(secret_key, expire_seconds=3600, hasher=PasswordHasher())
        token = tokens.issue(account.id)
        tokens.validate(token)  # -> account.id
    """

    def __init__(self, secret_key: str, expire_seconds: int, hasher: PasswordHasher) -> None:
        self._secret_key = secret_key
        self.expire_seconds = expire_seconds
        self._hasher = hasher

    def issue(self, account_id: str) -> str:
        """Encode a signed JWT for account_id.

        Raises IdentityError(INTERNAL) if signing fails, which only happens
        when the key or payload is unusable.
        """
        now = datetime.now(timezone.utc)
        payload = {
            ACCOUNT_CLAIM: str(account_id),
            "iat": now,
            "exp": now + timedelta(seconds=self.expire_seconds),
        }
        try:
            return jwt.encode(payload, self._secret_key, algorithm=ALGORITHM)
        except JWTError as exc:
            logger.exception("Token signing failed (account_id=%s)", account_id)
            raise IdentityError(ErrorKind.INTERNAL) from exc

    def validate(self, token: str) -> str:
        """Verify signature, algorithm and expiry; return the account id claim.

        Raises IdentityError(INVALID_TOKEN) when the token is malformed, badly
        signed, signed with another algorithm, expired, or when the claim is
        missing or not a non-empty string.
        """
        try:
            payload = jwt.decode(token, self._secret_key, algorithms=[ALGORITHM])
        except JWTError as exc:
            raise IdentityError(ErrorKind.INVALID_TOKEN) from exc
        account_id = payload.get(ACCOUNT_CLAIM)
        if not isinstance(account_id, str) or not account_id:
            raise IdentityError(ErrorKind.INVALID_TOKEN)
        return account_id

    def verify_password(self, digest: str, plain: str) -> None:
        """Raise IdentityError(INVALID_CREDENTIALS) unless plain matches digest."""
        if not self._hasher.verify(digest, plain):
            raise IdentityError(ErrorKind.INVALID_CREDENTIALS)
