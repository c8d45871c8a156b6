"""
auth/dependencies.py -- FastAPI Depends() helpers for bearer-token authentication.

Clients send "Authorization: Bearer <token>". The token is validated by the
TokenService held on app.state; the account id claim is what routes receive.

get_current_account_id() raises IdentityError(UNAUTHORIZED) when
no token was sent, or IdentityError(INVALID_TOKEN) when the token is bad. The
API exception handler turns both into 401.

auth/dependencies.py may import from fastapi because this module is part of
the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import Request

from auth.tokens import TokenService
from core.errors import ErrorKind, IdentityError


def _bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def get_current_account_id(request: Request) -> str:
    """Require a valid bearer token.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(account_id: str = Depends(get_current_account_id)): ...
    """
    token = _bearer_token(request)
    if token is None:
        raise IdentityError(ErrorKind.UNAUTHORIZED)
    tokens: TokenService = request.app.state.tokens
    return tokens.validate(token)
