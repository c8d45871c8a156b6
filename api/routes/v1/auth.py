"""
api/routes/v1/auth.py -- Sign-up and sign-in endpoints.

Routes:
  POST /api/v1/auth/register  -- create account (+ empty profile), returns token
  POST /api/v1/auth/login     -- email-or-username + password, returns token
  POST /api/v1/auth/google    -- exchange a Google ID token for a local token

Security:
  [C1] AccountService.validate() equalizes timing for unknown logins and
       answers wrong-password and unknown-login with the same
       invalid_credentials error. Do NOT inline lookups + bcrypt here.
  [M5] Cache-Control: no-store on every response that carries a token.
"""

from __future__ import annotations

from fastapi import APIRouter, Request, Response

from api.models import AccountResponse, AuthResponse, ExternalAuthRequest, LoginRequest, RegisterRequest
from auth.accounts import AccountService
from auth.external import ExternalAuthService
from auth.models import AuthenticatedAccount
from core.errors import ErrorKind, IdentityError

# Auth policy: every route here is public -- they are how a caller gets a token.
router = APIRouter()


@router.post("/auth/register", response_model=AuthResponse, status_code=201)
def register(request: Request, response: Response, body: RegisterRequest) -> AuthResponse:
    """Create an account and sign it in. 409 if the email or username is taken."""
    accounts: AccountService = request.app.state.accounts
    auth = accounts.register(body.name, str(body.email), body.password, username=body.username)
    return token_response(request, response, auth)


@router.post("/auth/login", response_model=AuthResponse)
def login(request: Request, response: Response, body: LoginRequest) -> AuthResponse:
    """Authenticate with email or username and password."""
    accounts: AccountService = request.app.state.accounts
    auth = accounts.validate(body.login, body.password)
    return token_response(request, response, auth)


@router.post("/auth/google", response_model=AuthResponse)
def google(request: Request, response: Response, body: ExternalAuthRequest) -> AuthResponse:
    """Sign in with a Google ID token; first sight provisions a verified account.

    404 when no Google client ID is configured on this server.
    """
    external: ExternalAuthService | None = request.app.state.external_auth
    if external is None:
        raise IdentityError(ErrorKind.NOT_FOUND, "Google sign-in is not configured.")
    auth = external.authenticate(body.id_token)
    return token_response(request, response, auth)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def token_response(request: Request, response: Response, auth: AuthenticatedAccount) -> AuthResponse:
    response.headers["Cache-Control"] = "no-store"  # [M5]
    return AuthResponse(
        account=AccountResponse.from_account(auth.account),
        access_token=auth.token,
        token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
        expires_in=request.app.state.tokens.expire_seconds,
    )
