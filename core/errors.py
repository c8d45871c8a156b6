"""
core/errors.py -- The closed set of failure kinds the identity core can raise.

Every public service operation either returns a domain value or raises
IdentityError. Callers branch on error.kind, never on message text. The API
layer maps each kind to an HTTP status in one table (api/main.py).

Store exceptions (SQLAlchemy) never cross a service boundary. Services wrap
their store calls in store_errors(), which turns a unique-constraint violation
into CONFLICT and anything else into INTERNAL after logging it.

Layer rule: core/ is the kernel. Imports only stdlib + third-party libraries.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from enum import Enum

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

logger = logging.getLogger("identity.errors")


class ErrorKind(str, Enum):
    VALIDATION = "validation_error"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    INVALID_CREDENTIALS = "invalid_credentials"
    INVALID_CODE = "invalid_code"
    EXPIRED_CODE = "expired_code"
    INVALID_TOKEN = "invalid_token"
    UNAUTHORIZED = "unauthorized"
    INTERNAL = "internal_error"


_DEFAULT_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.VALIDATION: "Invalid request.",
    ErrorKind.NOT_FOUND: "No data matches the given parameters.",
    ErrorKind.CONFLICT: "An account with these details already exists.",
    ErrorKind.INVALID_CREDENTIALS: "Invalid credentials.",
    ErrorKind.INVALID_CODE: "Invalid code.",
    ErrorKind.EXPIRED_CODE: "Code has expired. Request a new one.",
    ErrorKind.INVALID_TOKEN: "Invalid authentication token.",
    ErrorKind.UNAUTHORIZED: "Authentication required.",
    ErrorKind.INTERNAL: "An unexpected error occurred.",
}


class IdentityError(Exception):
    """A classified failure. kind is the contract; message is for humans."""

    def __init__(self, kind: ErrorKind, message: str | None = None) -> None:
        self.kind = kind
        self.message = message or _DEFAULT_MESSAGES[kind]
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"code": self.kind.value, "message": self.message}

    def __repr__(self) -> str:
        return f"IdentityError({self.kind.value!r}, {self.message!r})"


@contextmanager
def store_errors(operation: str, account_id: str | None = None) -> Iterator[None]:
    """Translate store exceptions raised inside the block into IdentityError.

    IntegrityError  -> CONFLICT (unique email/username/link violated).
    SQLAlchemyError -> INTERNAL, logged with operation and account id.

    Only SQLAlchemy exceptions are translated. IdentityError raised inside the
    block passes through untouched, and cancellation (KeyboardInterrupt,
    asyncio.CancelledError) is never caught.
    """
    try:
        yield
    except IntegrityError as exc:
        logger.info("Unique constraint violated during %s (account_id=%s)", operation, account_id)
        raise IdentityError(ErrorKind.CONFLICT) from exc
    except SQLAlchemyError as exc:
        logger.exception("Store failure during %s (account_id=%s)", operation, account_id)
        raise IdentityError(ErrorKind.INTERNAL) from exc
