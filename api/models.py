"""
API request and response models for the auth service REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.models import Session

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class RoleEnum(str, Enum):
    admin = "admin"
    gso_staff = "gso_staff"
    department_rep = "department_rep"


# ---------------------------------------------------------------------------
# Shared pieces
# ---------------------------------------------------------------------------


class LocationModel(BaseModel):
    """Client-reported or looked-up geolocation. Every field is optional."""

    model_config = ConfigDict(str_strip_whitespace=True)

    country: Optional[str] = Field(default=None, max_length=100)
    city: Optional[str] = Field(default=None, max_length=100)
    region: Optional[str] = Field(default=None, max_length=100)


class DeviceInfoModel(BaseModel):
    platform: str
    browser: str
    user_agent: str


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    email: str = Field(min_length=3, max_length=255)
    password: str = Field(min_length=1, max_length=128)
    location: Optional[LocationModel] = None


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register.

    role defaults to department_rep. Any other role requires the caller to be
    an authenticated admin.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=255)
    email: str = Field(min_length=3, max_length=255, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    password: str = Field(min_length=8, max_length=128)
    role: RoleEnum = RoleEnum.department_rep


class PasswordResetRequest(BaseModel):
    email: str = Field(min_length=3, max_length=255)


class PasswordResetConfirm(BaseModel):
    token: str = Field(min_length=1, max_length=256)
    new_password: str = Field(min_length=8, max_length=128)


class VerifyEmailRequest(BaseModel):
    token: str = Field(min_length=1, max_length=256)


class ResendVerificationRequest(BaseModel):
    email: str = Field(min_length=3, max_length=255)


class SessionCreateRequest(BaseModel):
    """Optional body for POST /api/v1/sessions."""

    location: Optional[LocationModel] = None


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserSummary(BaseModel):
    id: int
    email: str
    name: str
    role: str


class SessionSummary(BaseModel):
    id: int
    expires_at: str


class LoginResponse(BaseModel):
    access_token: str
    token_type: str
    expires_in: int
    session: SessionSummary
    user: UserSummary


class MessageResponse(BaseModel):
    message: str


class RegisterResponse(BaseModel):
    message: str
    user: UserSummary


class MeResponse(BaseModel):
    id: int
    email: str
    role: str
    session_id: int


class SessionResponse(BaseModel):
    """One session as shown to its owner. The raw token is never returned."""

    id: int
    device_info: DeviceInfoModel
    ip_address: Optional[str] = None
    location: LocationModel
    created_at: str
    last_activity: str
    expires_at: str
    current: bool = False

    @classmethod
    def from_session(cls, session: Session, current_token: str = "") -> "SessionResponse":
        return cls(
            id=session.id,
            device_info=DeviceInfoModel(**session.device.as_dict()),
            ip_address=session.ip_address,
            location=LocationModel(
                country=session.location.country,
                city=session.location.city,
                region=session.location.region,
            ),
            created_at=session.created_at or "",
            last_activity=session.last_activity or "",
            expires_at=session.expires_at,
            current=bool(current_token) and session.token == current_token,
        )


class SessionListResponse(BaseModel):
    sessions: list[SessionResponse]


class SessionTokenResponse(BaseModel):
    """Response for POST /api/v1/sessions: a fresh token bound to this device."""

    access_token: str
    token_type: str
    expires_in: int
    session: SessionResponse


class LogoutAllResponse(BaseModel):
    message: str
    revoked: int


class AuditEntryResponse(BaseModel):
    id: int
    user_id: Optional[int] = None
    action: str
    details: dict
    created_at: str


class AuditPage(BaseModel):
    entries: list[AuditEntryResponse]
    total: int
    limit: int
    offset: int


class HealthResponse(BaseModel):
    """Response model for GET /api/v1/health.

    components reports each dependency as "ok" or "error".
    """

    status: str = "healthy"
    version: str
    components: dict[str, str] = {}


# ---------------------------------------------------------------------------
# Error envelope
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    error: ErrorDetail
