"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic beyond derived keys).
Stores and routes do the work; these own the domain shape.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class Role(str, Enum):
    admin = "admin"
    gso_staff = "gso_staff"
    department_rep = "department_rep"


@dataclass
class User:
    """An account in the identity store.

    The auth core only mutates activity timestamps, the password hash (reset
    flow), the verified flag (verification flow) and creation (registration).
    Soft-deleted users are treated as absent everywhere in this package.
    """

    email: str
    role: str  # Role value
    id: int | None = None
    name: str = ""
    password_hash: str | None = None
    is_active: bool = True
    is_verified: bool = False
    is_deleted: bool = False
    deleted_at: str | None = None
    created_at: str | None = None
    last_login: str | None = None
    last_activity: str | None = None


@dataclass(frozen=True)
class DeviceFingerprint:
    """Normalized (platform, browser) pair plus the raw user-agent.

    key is the session deduplication key. The raw user-agent is carried for
    display only and deliberately excluded from the key so client-hint version
    bumps do not fragment a user's sessions.
    """

    platform: str = "Unknown"
    browser: str = "Unknown"
    user_agent: str = ""

    @property
    def key(self) -> str:
        return f"{self.platform}|{self.browser}"

    def as_dict(self) -> dict:
        return {"platform": self.platform, "browser": self.browser, "user_agent": self.user_agent}


@dataclass(frozen=True)
class GeoLocation:
    country: str | None = None
    city: str | None = None
    region: str | None = None

    def is_empty(self) -> bool:
        return not (self.country or self.city or self.region)


@dataclass
class Session:
    """A persisted binding of user, device fingerprint and current token."""

    user_id: int
    token: str
    device: DeviceFingerprint
    expires_at: str
    id: int | None = None
    ip_address: str | None = None
    location: GeoLocation = field(default_factory=GeoLocation)
    created_at: str | None = None
    last_activity: str | None = None


@dataclass(frozen=True)
class TokenClaims:
    """Verified claims of an access token."""

    user_id: int
    role: str
    expires_at: int  # epoch seconds
    token_id: str = ""


@dataclass
class AuditEntry:
    user_id: int | None
    action: str
    details: dict = field(default_factory=dict)
    id: int | None = None
    created_at: str | None = None


@dataclass
class OneTimeToken:
    """A password-reset or email-verification token row (hash only)."""

    user_id: int
    token_hash: str
    expires_at: str
    id: int | None = None
    used_at: str | None = None
    created_at: str | None = None
