"""
api/routes/v1/codes.py -- Email verification and forgot-password code flows.

Routes (public):
  POST /api/v1/email/create-verification  -- issue an email verification code
  POST /api/v1/email/verify               -- consume it; account becomes verified
  POST /api/v1/forgot-password            -- issue a password reset code
  POST /api/v1/forgot-password/reset      -- consume it with a new password

Codes are generated here (6 digits, secrets-based) and handed to the services.
Delivery (mail/SMS) is outside this service; with DEBUG=true the code is
echoed in the response for local testing.

Error mapping: unknown email 404, wrong/used code 400 invalid_code,
stale code 410 expired_code (the caller must request a new one).
"""

from __future__ import annotations

from fastapi import APIRouter, Request

from api.models import CodeIssuedResponse, EmailRequest, MessageResponse, ResetPasswordRequest, VerifyEmailRequest
from auth.codes import EmailVerificationService, ForgotPasswordService, SingleUseCodeService, generate_code

router = APIRouter()


@router.post("/email/create-verification", response_model=CodeIssuedResponse, status_code=201)
def create_verification(request: Request, body: EmailRequest) -> CodeIssuedResponse:
    service: EmailVerificationService = request.app.state.email_verification
    return _issue(request, service, str(body.email))


@router.post("/email/verify", response_model=MessageResponse)
def verify_email(request: Request, body: VerifyEmailRequest) -> MessageResponse:
    service: EmailVerificationService = request.app.state.email_verification
    service.validate(str(body.email), body.code)
    return MessageResponse(message="Email verified.")


@router.post("/forgot-password", response_model=CodeIssuedResponse, status_code=201)
def request_reset(request: Request, body: EmailRequest) -> CodeIssuedResponse:
    service: ForgotPasswordService = request.app.state.forgot_password
    return _issue(request, service, str(body.email))


@router.post("/forgot-password/reset", response_model=MessageResponse)
def reset_password(request: Request, body: ResetPasswordRequest) -> MessageResponse:
    service: ForgotPasswordService = request.app.state.forgot_password
    email = str(body.email) if body.email is not None else None
    service.reset(body.code, body.new_password, email=email)
    return MessageResponse(message="Password updated.")


def _issue(request: Request, service: SingleUseCodeService, email: str) -> CodeIssuedResponse:
    record = service.request(email, generate_code())
    return CodeIssuedResponse(
        email=email,
        expires_at=record.expired_at.isoformat(),
        code=record.code if request.app.state.settings.debug else None,
    )
