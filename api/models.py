"""
API request and response models for the retail-auth REST endpoints.

These Pydantic v2 models define the HTTP transport contract. They are
intentionally separate from the dataclasses in auth/models.py, which own the
internal domain representation. Route handlers map between the two.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

# ---------------------------------------------------------------------------
# Errors / health
# ---------------------------------------------------------------------------


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
    components: dict[str, str] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


class DeviceInfo(BaseModel):
    """Client-reported signals that headers do not carry."""

    model_config = ConfigDict(str_strip_whitespace=True)

    screen_resolution: Optional[str] = Field(default=None, max_length=32, pattern=r"^\d{1,5}x\d{1,5}$")
    timezone: Optional[str] = Field(default=None, max_length=64)


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login.

    Only email is stripped. The password is passed through byte for byte;
    leading and trailing spaces are part of it.
    """

    email: str = Field(min_length=3, max_length=255)
    password: str = Field(min_length=1, max_length=255)
    device: DeviceInfo = Field(default_factory=DeviceInfo)

    @field_validator("email")
    @classmethod
    def _strip_email(cls, v: str) -> str:
        return v.strip()


class MFAVerifyRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    mfa_token: str = Field(min_length=1, max_length=2048)
    code: str = Field(min_length=4, max_length=10)
    device: DeviceInfo = Field(default_factory=DeviceInfo)


class MFAResendRequest(BaseModel):
    mfa_token: str = Field(min_length=1, max_length=2048)


class TouchRequest(BaseModel):
    current_page: Optional[str] = Field(default=None, max_length=255)


class MFAPolicyUpdate(BaseModel):
    """Body for PUT /api/v1/auth/mfa-policy. Omitted fields are left unchanged."""

    require_mfa: Optional[bool] = None
    mfa_roles: Optional[list[str]] = Field(default=None, max_length=50)


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


class SessionInfo(BaseModel):
    id: str
    created_at: str
    expires_at: str
    login_method: str
    mfa_used: bool
    risk_tier: str


class PrincipalResponse(BaseModel):
    """Response for a successful login, MFA verification or GET /auth/me."""

    user_id: int
    email: str
    display_name: str
    role: str
    sections: list[str]
    session: SessionInfo
    access_token: Optional[str] = None
    token_type: Optional[str] = None


class MFAChallengeResponse(BaseModel):
    """202 body returned when a second factor is owed. No session exists yet."""

    code: str = "mfa_required"
    requires_mfa: bool = True
    user_id: int
    email: str
    display_name: str
    user_role: str
    mfa_token: str


class SectionsResponse(BaseModel):
    role: str
    sections: list[str]


class SectionAccessResponse(BaseModel):
    section: str
    allowed: bool


class SessionHistoryRow(BaseModel):
    id: str
    created_at: str
    expires_at: str
    last_activity: str
    logout_at: Optional[str] = None
    status: str
    login_method: str
    mfa_used: bool
    risk_tier: str
    device: dict
    location: dict
    current_page: Optional[str] = None


class MFAPolicyResponse(BaseModel):
    require_mfa: bool
    mfa_roles: list[str]


class OAuthProviderInfo(BaseModel):
    name: str
    label: str


class MessageResponse(BaseModel):
    message: str
