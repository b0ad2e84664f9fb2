"""
API request and response models for the storefront auth endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Wire names are camelCase (accessToken, refreshToken, createdAt) because the
storefront web client already speaks that dialect; Python attribute names stay
snake_case and the aliases do the translation.

Request bodies only enforce shape and size here. Semantic checks (phone
format, "email and password are required") live in auth/sessions.py so they
apply to every caller, not just HTTP.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.models import Identity
from auth.sessions import AuthResult

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/users/register."""

    model_config = ConfigDict(str_strip_whitespace=True)

    phone: str = Field(min_length=1, max_length=32)
    password: Optional[str] = Field(default=None, min_length=6, max_length=128)
    email: Optional[str] = Field(default=None, max_length=255)
    name: str = Field(default="", max_length=100)


class LoginRequest(BaseModel):
    """Request body for POST /api/users/login.

    Both fields are optional at this layer so a missing one yields the
    domain's "Email and password are required" message.
    """

    email: Optional[str] = Field(default=None, max_length=255)
    password: Optional[str] = Field(default=None, max_length=128)


class RefreshTokenRequest(BaseModel):
    """Request body for POST /api/users/refresh-token and POST /api/users/logout."""

    model_config = ConfigDict(populate_by_name=True)

    refresh_token: Optional[str] = Field(default=None, alias="refreshToken", max_length=4096)


class SendCodeRequest(BaseModel):
    """Request body for POST /api/auth/send-otp."""

    phone: str = Field(default="", max_length=32)


class VerifyCodeRequest(BaseModel):
    """Request body for POST /api/auth/verify-otp."""

    phone: str = Field(default="", max_length=32)
    otp: str = Field(default="", max_length=16)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserView(BaseModel):
    """Public projection of an Identity.

    There is no field for the password hash or the refresh tokens, so they
    cannot leak through serialization.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    name: str
    email: Optional[str]
    phone: str
    created_at: Optional[str] = Field(default=None, alias="createdAt")
    updated_at: Optional[str] = Field(default=None, alias="updatedAt")

    @classmethod
    def from_identity(cls, identity: Identity) -> "UserView":
        return cls(
            id=identity.id,
            name=identity.name,
            email=identity.email,
            phone=identity.phone,
            created_at=identity.created_at,
            updated_at=identity.updated_at,
        )


class AuthData(BaseModel):
    """The data member of a login-style success envelope."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    user: Optional[UserView] = None
    access_token: Optional[str] = Field(default=None, alias="accessToken")
    refresh_token: Optional[str] = Field(default=None, alias="refreshToken")

    @classmethod
    def from_result(cls, result: AuthResult) -> "AuthData":
        return cls(
            user=UserView.from_identity(result.identity),
            access_token=result.access_token,
            refresh_token=result.refresh_token,
        )


class SuccessResponse(BaseModel):
    """Top-level success envelope: {success, message?, data?}."""

    model_config = ConfigDict(frozen=True)

    success: bool = True
    message: Optional[str] = None
    data: Optional[AuthData] = None

    def to_json(self) -> dict[str, Any]:
        """Serialize with wire aliases, dropping members that were never set.

        A user's null email survives: exclude_unset only drops fields the
        constructor did not receive.
        """
        payload = self.model_dump(by_alias=True, exclude_unset=True)
        payload["success"] = self.success
        return payload


class ErrorResponse(BaseModel):
    """Top-level failure envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    success: bool = False
    message: str
    errors: Optional[list[Any]] = None

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


class HealthResponse(BaseModel):
    """Response for GET /api/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    message: str = "Server is running"
    version: str
