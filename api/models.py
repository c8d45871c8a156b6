"""
API request and response models for the identity REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

No response model has a password field. The account mapping below is the one
place an Account turns into JSON, so a digest can never leak through a route.
"""

from typing import Annotated, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, EmailStr, Field

from auth.models import Account, AccountDetail
from auth.passwords import MAX_PASSWORD_BYTES


def _within_bcrypt_limit(value: str) -> str:
    # Measured in UTF-8 bytes: bcrypt's limit is not a character count.
    if len(value.encode("utf-8")) > MAX_PASSWORD_BYTES:
        raise ValueError(f"Password must be at most {MAX_PASSWORD_BYTES} bytes.")
    return value


Password = Annotated[str, Field(min_length=1), AfterValidator(_within_bcrypt_limit)]
_CODE_FIELD = Field(ge=100000, le=999999, description="6-digit single-use code.")


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register.

    username is optional; when omitted one is derived from the email.
    Name and username are trimmed by the service; the password is taken
    as sent.
    """

    name: str = Field(min_length=1, max_length=255)
    email: EmailStr
    username: Optional[str] = Field(default=None, min_length=1, max_length=255)
    password: Password


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login. login is an email or a username."""

    login: str = Field(min_length=1, max_length=255)
    password: Password


class ExternalAuthRequest(BaseModel):
    """Request body for POST /api/v1/auth/google."""

    id_token: str = Field(min_length=1)


class ChangePasswordRequest(BaseModel):
    old_password: Password
    new_password: Password


class UpdateDetailRequest(BaseModel):
    """Request body for PUT /api/v1/account/me. Replaces every profile field."""

    model_config = ConfigDict(str_strip_whitespace=True)

    full_name: Optional[str] = Field(default=None, max_length=255)
    school_name: Optional[str] = Field(default=None, max_length=255)
    province: Optional[str] = Field(default=None, max_length=255)
    city: Optional[str] = Field(default=None, max_length=255)
    avatar: Optional[str] = Field(default=None, max_length=2048)
    phone_number: Optional[str] = Field(default=None, max_length=32)


class EmailRequest(BaseModel):
    """Request body for code issuance (email verification, forgot password)."""

    email: EmailStr


class VerifyEmailRequest(BaseModel):
    email: EmailStr
    code: int = _CODE_FIELD


class ResetPasswordRequest(BaseModel):
    """Request body for POST /api/v1/forgot-password/reset. email narrows the match."""

    code: int = _CODE_FIELD
    new_password: Password
    email: Optional[EmailStr] = None


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class AccountResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    email: str
    username: str
    role: str
    is_email_verified: bool
    is_detail_completed: bool
    created_at: str

    @classmethod
    def from_account(cls, account: Account) -> "AccountResponse":
        """Factory Method: the single Account -> JSON mapping."""
        return cls(
            id=account.id,
            name=account.name,
            email=account.email,
            username=account.username,
            role=account.role,
            is_email_verified=account.is_email_verified,
            is_detail_completed=account.is_detail_completed,
            created_at=account.created_at or "",
        )


class AuthResponse(BaseModel):
    """Response for every sign-in flavor (register, login, google, password change)."""

    model_config = ConfigDict(frozen=True)

    account: AccountResponse
    access_token: str
    token_type: str = "bearer"
    expires_in: int


class DetailResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    full_name: Optional[str]
    school_name: Optional[str]
    province: Optional[str]
    city: Optional[str]
    avatar: Optional[str]
    phone_number: Optional[str]

    @classmethod
    def from_detail(cls, detail: AccountDetail) -> "DetailResponse":
        return cls(
            full_name=detail.full_name,
            school_name=detail.school_name,
            province=detail.province,
            city=detail.city,
            avatar=detail.avatar,
            phone_number=detail.phone_number,
        )


class AccountDetailResponse(BaseModel):
    """Response for GET/PUT /api/v1/account/me."""

    model_config = ConfigDict(frozen=True)

    account: AccountResponse
    details: DetailResponse


class CodeIssuedResponse(BaseModel):
    """Response for code issuance.

    code is only filled in when the server runs with DEBUG=true, so local
    development works without a mail relay. In production it is always null.
    """

    model_config = ConfigDict(frozen=True)

    email: str
    expires_at: str
    code: Optional[int] = None


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class ErrorDetail(BaseModel):
    """Structured error body. code is one of core.errors.ErrorKind's values."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Standard error envelope: every error response has this shape."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str]
