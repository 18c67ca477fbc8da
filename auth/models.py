"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data containers). Stores and services do the work;
the only logic here is derived, read-only properties.

Timestamps are ISO 8601 strings in UTC, the same representation the store
writes, so a row maps onto a dataclass without conversion.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Union

# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class AccountStatus(str, Enum):
    pending_activation = "pending_activation"
    active = "active"
    inactive = "inactive"
    suspended = "suspended"


class LoginMethod(str, Enum):
    password = "password"
    mfa = "mfa"
    sso = "sso"


class RiskTier(str, Enum):
    low = "low"
    medium = "medium"
    high = "high"


class PresenceStatus(str, Enum):
    online = "online"
    away = "away"
    offline = "offline"


# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------


@dataclass
class User:
    """Identity and authorization anchor.

    password_hash is None until the account is activated. role holds the name
    of a row in the roles table; None (or a name with no row) means the user
    gets the DefaultRole at login.

    current_session_id is the denormalized pointer to the one "current"
    session. Older session rows stay in storage for audit but are never
    referenced from here.
    """

    email: str
    id: Optional[int] = None
    password_hash: Optional[str] = None
    first_name: str = ""
    last_name: str = ""
    phone: Optional[str] = None
    branch_id: Optional[str] = None
    is_active: bool = True
    account_status: str = AccountStatus.pending_activation.value
    email_verified: bool = False
    failed_login_attempts: int = 0
    locked_until: Optional[str] = None
    mfa_enabled: bool = False
    role: Optional[str] = None
    last_login: Optional[str] = None
    last_activity: Optional[str] = None
    status: str = PresenceStatus.offline.value
    current_session_id: Optional[str] = None
    created_at: Optional[str] = None

    @property
    def display_name(self) -> str:
        name = f"{self.first_name} {self.last_name}".strip()
        return name or self.email


@dataclass(frozen=True)
class Role:
    """A role row from the roles table.

    sections is not stored: it is resolved from the static table in
    auth/roles.py when the role is loaded, keyed by name.
    """

    name: str  # system key, e.g. "super-admin", "cashier"
    display_name: str = ""
    id: Optional[int] = None
    description: str = ""
    is_active: bool = True
    is_system_role: bool = False
    sections: tuple[str, ...] = ()


@dataclass(frozen=True)
class DefaultRole:
    """Substituted when a user has no resolvable role row."""

    name: str = "user"
    display_name: str = "User"
    sections: tuple[str, ...] = ("overview",)
    is_active: bool = True
    is_system_role: bool = False


RoleRef = Union[Role, DefaultRole]


# ---------------------------------------------------------------------------
# Device and location signals
# ---------------------------------------------------------------------------


@dataclass
class DeviceSignals:
    """Raw client environment signals, as reported by the connecting client."""

    user_agent: Optional[str] = None
    language: Optional[str] = None
    screen_resolution: Optional[str] = None  # "1920x1080"
    timezone: Optional[str] = None  # IANA name, e.g. "Asia/Manila"


@dataclass
class DeviceDescriptor:
    """Derived, non-authoritative description of the client device."""

    device_type: str = "desktop"  # "desktop" | "mobile" | "tablet"
    device_name: str = "Unknown Device"
    browser: str = "Unknown Browser"
    os: str = "Unknown OS"
    screen_resolution: Optional[str] = None
    timezone: Optional[str] = None
    user_agent: Optional[str] = None
    fingerprint: str = ""

    def to_dict(self) -> dict:
        return {
            "device_type": self.device_type,
            "device_name": self.device_name,
            "browser": self.browser,
            "os": self.os,
            "screen_resolution": self.screen_resolution,
            "timezone": self.timezone,
            "user_agent": self.user_agent,
        }


@dataclass
class LocationDescriptor:
    """Best-effort network location. Only ip is guaranteed ("Unknown" if absent)."""

    ip: str = "Unknown"
    city: Optional[str] = None
    region: Optional[str] = None
    country: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    timezone: Optional[str] = None

    @property
    def label(self) -> str:
        parts = [p for p in (self.city, self.region, self.country) if p]
        return ", ".join(parts) if parts else self.ip

    def to_dict(self) -> dict:
        return {
            "ip": self.ip,
            "label": self.label,
            "city": self.city,
            "region": self.region,
            "country": self.country,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "timezone": self.timezone,
        }


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


@dataclass
class Session:
    """A single authenticated client context.

    State machine: Created -> Active (touch*) -> Expired | Revoked.
    touch() only moves last_activity; expires_at is fixed at creation.
    """

    id: str
    user_id: int
    access_token: str
    created_at: str
    expires_at: str
    last_activity: str
    is_active: bool = True
    device: dict = field(default_factory=dict)
    location: dict = field(default_factory=dict)
    device_fingerprint: str = ""
    login_method: str = LoginMethod.password.value
    mfa_used: bool = False
    risk_tier: str = RiskTier.low.value
    current_page: Optional[str] = None
    logout_at: Optional[str] = None


# ---------------------------------------------------------------------------
# Login outcomes
# ---------------------------------------------------------------------------


@dataclass
class Principal:
    """The authenticated identity + role + session returned by a successful login."""

    user: User
    role: RoleRef
    session: Session

    @property
    def user_id(self) -> int:
        return self.user.id  # type: ignore[return-value]

    @property
    def role_name(self) -> str:
        return self.role.name

    @property
    def token(self) -> str:
        return self.session.access_token

    @property
    def sections(self) -> tuple[str, ...]:
        return self.role.sections

    @property
    def mfa_used(self) -> bool:
        return self.session.mfa_used


@dataclass(frozen=True)
class MFAChallenge:
    """Returned in place of a Principal when a second factor is still owed.

    No session exists for the user while a challenge is outstanding.
    """

    user_id: int
    email: str
    display_name: str
    role: str
    requires_mfa: bool = True

    def to_dict(self) -> dict:
        return {
            "requiresMFA": self.requires_mfa,
            "userId": self.user_id,
            "email": self.email,
            "displayName": self.display_name,
            "userRole": self.role,
        }


@dataclass
class VerifiedDevice:
    """A device fingerprint that has completed a second factor for a user."""

    user_id: int
    device_fingerprint: str
    device_name: str = "Unknown Device"
    browser_info: dict = field(default_factory=dict)
    id: Optional[int] = None
    verified_at: Optional[str] = None
    last_used_at: Optional[str] = None
