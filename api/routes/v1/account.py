"""
api/routes/v1/account.py -- The signed-in account and its profile.

Routes (all require a bearer token):
  GET    /api/v1/account/me        -- account + profile details
  PUT    /api/v1/account/me        -- replace profile details
  POST   /api/v1/account/password  -- change password, returns a fresh token
  DELETE /api/v1/account/me        -- soft-delete the account

The account id always comes from the token, never from the request body, so a
caller can only read or modify their own account.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response

from api.models import (
    AccountDetailResponse,
    AccountResponse,
    AuthResponse,
    ChangePasswordRequest,
    DetailResponse,
    UpdateDetailRequest,
)
from api.routes.v1.auth import token_response
from auth.accounts import AccountService
from auth.dependencies import get_current_account_id
from auth.models import AccountDetail, AccountWithDetail

router = APIRouter()


@router.get("/account/me", response_model=AccountDetailResponse)
def get_me(request: Request, account_id: str = Depends(get_current_account_id)) -> AccountDetailResponse:
    accounts: AccountService = request.app.state.accounts
    return _detail_response(accounts.get_detail(account_id))


@router.put("/account/me", response_model=AccountDetailResponse)
def update_me(
    request: Request,
    body: UpdateDetailRequest,
    account_id: str = Depends(get_current_account_id),
) -> AccountDetailResponse:
    """Replace the profile. is_detail_completed is recomputed from the result."""
    accounts: AccountService = request.app.state.accounts
    detail = AccountDetail(account_id=account_id, **body.model_dump())
    return _detail_response(accounts.update_detail(detail))


@router.post("/account/password", response_model=AuthResponse)
def change_password(
    request: Request,
    response: Response,
    body: ChangePasswordRequest,
    account_id: str = Depends(get_current_account_id),
) -> AuthResponse:
    """401 when old_password is wrong; 422 when the new password is empty or unchanged."""
    accounts: AccountService = request.app.state.accounts
    auth = accounts.change_password(account_id, body.old_password, body.new_password)
    return token_response(request, response, auth)


@router.delete("/account/me", status_code=204)
def delete_me(request: Request, account_id: str = Depends(get_current_account_id)) -> Response:
    accounts: AccountService = request.app.state.accounts
    accounts.delete(account_id)
    return Response(status_code=204)


def _detail_response(result: AccountWithDetail) -> AccountDetailResponse:
    return AccountDetailResponse(
        account=AccountResponse.from_account(result.account),
        details=DetailResponse.from_detail(result.detail),
    )
