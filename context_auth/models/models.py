"""
Domain Models and Data Structures
"""
from enum import Enum
from typing import Dict, Any, Optional, Tuple
from dataclasses import dataclass, fields, asdict

UNKNOWN = "unknown"


class DeviceClass(str, Enum):
    """Coarse device class derived from the user-agent flags"""
    MOBILE = "Mobile"
    DESKTOP = "Desktop"
    TABLET = "Tablet"
    UNKNOWN = UNKNOWN

    @classmethod
    def from_value(cls, value: Optional[str]) -> "DeviceClass":
        for member in cls:
            if member.value == value:
                return member
        return cls.UNKNOWN


@dataclass(frozen=True)
class Fingerprint:
    """Normalized environment fingerprint of a sign-in request"""
    network_origin: str = UNKNOWN
    country: str = UNKNOWN
    city: str = UNKNOWN
    browser: str = UNKNOWN
    platform: str = UNKNOWN
    os: str = UNKNOWN
    device: str = UNKNOWN
    device_class: DeviceClass = DeviceClass.UNKNOWN

    @classmethod
    def field_names(cls) -> Tuple[str, ...]:
        return tuple(f.name for f in fields(cls))

    def as_tuple(self) -> Tuple[str, ...]:
        return tuple(self.value_of(name) for name in self.field_names())

    def value_of(self, name: str) -> str:
        value = getattr(self, name)
        return value.value if isinstance(value, DeviceClass) else value

    def mismatched_fields(self, other: "Fingerprint") -> Tuple[str, ...]:
        """Names of the fields whose values differ from `other`, in declaration order"""
        return tuple(name for name in self.field_names()
                     if self.value_of(name) != other.value_of(name))

    def to_public_dict(self) -> Dict[str, str]:
        """Projection with the wire names used by the listing endpoints"""
        return {
            "ip": self.network_origin,
            "country": self.country,
            "city": self.city,
            "browser": self.browser,
            "platform": self.platform,
            "os": self.os,
            "device": self.device,
            "deviceType": self.device_class.value,
        }


@dataclass(frozen=True)
class CanonicalContext:
    """The single known-good fingerprint of a user"""
    id: int
    user_id: str
    email: Optional[str]
    fingerprint: Fingerprint
    first_recorded_at: int
    updated_at: int


@dataclass(frozen=True)
class PendingLoginRecord:
    """A fingerprint seen for a user that did not match the canonical context"""
    id: int
    user_id: str
    email: Optional[str]
    fingerprint: Fingerprint
    is_trusted: bool
    is_blocked: bool
    unverified_attempts: int
    created_at: int
    updated_at: int

    @property
    def awaiting_verification(self) -> bool:
        return not self.is_trusted and not self.is_blocked


@dataclass(frozen=True)
class SecurityLogEntry:
    """Audit entry for security relevant events (blocking, admin actions)"""
    id: int
    user_id: Optional[str]
    email: Optional[str]
    context: Optional[Dict[str, Any]]
    message: str
    type: str
    level: str
    created_at: int


@dataclass
class ParsedUserAgent:
    """Output of the user-agent parsing collaborator"""
    raw: str = ""
    browser: Optional[str] = None
    version: Optional[str] = None
    platform: Optional[str] = None
    os: Optional[str] = None
    device: Optional[str] = None
    is_mobile: bool = False
    is_desktop: bool = False
    is_tablet: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
