"""
API request and response models for knowstack REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

JSON field names are camelCase on the wire (accessToken, refreshToken,
isSuccess) for compatibility with existing clients; Python attributes stay
snake_case via the to_camel alias generator.

Email fields use EmailStr (email-validator): malformed local parts and
domains are rejected with 400 before any service code runs.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class _FrozenCamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(_CamelModel):
    """Request body for POST /api/v1/users/register."""

    username: str = Field(min_length=3, max_length=30)
    email: EmailStr
    password: str = Field(min_length=8, max_length=72)

    @field_validator("username")
    @classmethod
    def username_alphanumeric(cls, value: str) -> str:
        if not value.isalnum():
            raise ValueError("username must be alphanumeric")
        return value


class LoginRequest(_CamelModel):
    """Request body for POST /api/v1/users/login.

    remember=True selects the long refresh-token lifetime.
    """

    email: EmailStr
    password: str = Field(min_length=8, max_length=72)
    remember: bool = False


class RefreshRequest(_CamelModel):
    refresh_token: str = Field(min_length=1)


class LogoutRequest(_CamelModel):
    refresh_token: str = Field(min_length=1)


class PasswordResetRequest(_CamelModel):
    email: EmailStr


class SetClaimsRequest(BaseModel):
    """Request body for POST /api/v1/users/claims. Keys are snake_case on the wire."""

    user_id: int = Field(gt=0)
    claim_ids: list[int]


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class RegisterResponse(_FrozenCamelModel):
    id: int
    username: str
    email: str


class LoginResponse(_FrozenCamelModel):
    access_token: str
    refresh_token: str


class RefreshResponse(_FrozenCamelModel):
    access_token: str


class SuccessResponse(_FrozenCamelModel):
    is_success: bool = True


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class MeResponse(_FrozenCamelModel):
    """Identity carried by the caller's verified access token."""

    user_id: str
    email: str
    username: str
    role_id: int
    claims: list[str]


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
