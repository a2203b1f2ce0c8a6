"""
API request and response models for Inkwell Auth REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.
"""

from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from auth.models import IssuedTokens, Principal, TokenPayload, User
from auth.roles import Role

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

USERNAME_PATTERN = r"^[A-Za-z0-9_.-]{3,32}$"
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=1, max_length=64)
    password: str = Field(min_length=1, max_length=255)


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register.

    Password length bounds (6-64) match the rules existing accounts were
    created under.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(pattern=USERNAME_PATTERN)
    email: str = Field(pattern=EMAIL_PATTERN, max_length=255)
    password: str = Field(min_length=6, max_length=64)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(min_length=1, max_length=4096)


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=4096)


class PasswordChange(BaseModel):
    current_password: str = Field(min_length=1, max_length=255)
    new_password: str = Field(min_length=6, max_length=64)


class UserCreate(BaseModel):
    """Request body for POST /api/v1/auth/users (admin only)."""

    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(pattern=USERNAME_PATTERN)
    email: str = Field(pattern=EMAIL_PATTERN, max_length=255)
    password: str = Field(min_length=6, max_length=64)
    role: Role = Role.user


class UserPatch(BaseModel):
    role: Optional[Role] = None
    is_active: Optional[bool] = None


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class TokenResponse(BaseModel):
    """Token pair returned by login and registration."""

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    username: str
    role: str

    @classmethod
    def from_issued(cls, tokens: IssuedTokens, user: User) -> "TokenResponse":
        return cls(
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            expires_in=tokens.expires_in,
            username=user.username,
            role=user.role,
        )


class RefreshResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int


class MeResponse(BaseModel):
    user_id: int
    username: str
    email: str
    role: str

    @classmethod
    def from_principal(cls, principal: Principal) -> "MeResponse":
        return cls(
            user_id=principal.id,
            username=principal.username,
            email=principal.email,
            role=principal.role,
        )


class TokenClaims(BaseModel):
    """Decoded claims of a verified access token, as returned by GET /auth/verify."""

    user_id: Union[int, str]
    username: str
    email: str
    role: str
    type: Optional[str] = None
    jti: Optional[str] = None
    iat: int
    exp: int

    @classmethod
    def from_payload(cls, payload: TokenPayload) -> "TokenClaims":
        return cls(
            user_id=payload.user_id,
            username=payload.subject,
            email=payload.email,
            role=payload.role,
            type=payload.token_type.value if payload.token_type is not None else None,
            jti=payload.jti,
            iat=payload.issued_at,
            exp=payload.expires_at,
        )


class VerifyResponse(BaseModel):
    user: MeResponse
    payload: TokenClaims


class UserResponse(BaseModel):
    id: int
    username: str
    email: str
    role: str
    is_active: bool
    created_at: str
    last_login: Optional[str] = None


class RevokedResponse(BaseModel):
    message: str
    revoked: int


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str]
