"""
Domain models for delegated uploads.

These models describe what a device uploads and what we record about it.
They have no dependencies on FastAPI, boto3 or Snowflake. The wire format
lives in schemas.py; this module only knows about validated values.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


VIDEO_PREFIX = "videos"
VIDEO_EXTENSION = "mp4"


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def build_object_path(asset_id: str) -> str:
    """
    Object path for an asset's video.

    Derived only from the asset ID. Finalize trusts the path the device
    reports and only checks that an object exists there.
    """
    return f"{VIDEO_PREFIX}/{asset_id}.{VIDEO_EXTENSION}"


class CapabilityPermission(Enum):
    """Operations a capability may grant on its object."""
    READ = "read"
    WRITE = "write"
    CREATE = "create"
    APPEND = "append"
    LIST = "list"
    DELETE = "delete"


WRITE_PERMISSIONS = frozenset({
    CapabilityPermission.WRITE,
    CapabilityPermission.CREATE,
    CapabilityPermission.APPEND,
})


class FinalizationState(Enum):
    """Lifecycle of one finalize request."""
    RECEIVED = "received"
    VALIDATED = "validated"
    OBJECT_VERIFIED = "object_verified"
    COMMITTED = "committed"
    FAILED = "failed"


@dataclass(frozen=True)
class Capability:
    """
    A signed, time-bounded grant on exactly one object path.

    The URL is the only part the client needs. The remaining fields record
    what the signature was scoped to, so tests and logs can reason about it
    without parsing the URL.
    """
    url: str
    object_path: str
    permissions: frozenset
    starts_at: datetime
    expires_at: datetime
    https_only: bool = True

    def __post_init__(self) -> None:
        if self.expires_at <= self.starts_at:
            raise ValueError("Capability must expire after it starts")

    def is_valid_at(self, moment: datetime) -> bool:
        return self.starts_at <= moment <= self.expires_at

    def allows(self, permission: CapabilityPermission) -> bool:
        return permission in self.permissions


@dataclass(frozen=True)
class UploadIntent:
    """
    An asset the client has been allowed to upload but not yet finalized.

    Never persisted. Its lifetime ends at expires_at.
    """
    asset_id: str
    object_path: str
    issued_at: datetime
    expires_at: datetime
    device_id: Optional[str] = None


@dataclass(frozen=True)
class IssuedCapability:
    """What the capability endpoint hands back to a device."""
    intent: UploadIntent
    capability: Capability

    @property
    def asset_id(self) -> str:
        return self.intent.asset_id

    @property
    def object_path(self) -> str:
        return self.intent.object_path

    @property
    def write_url(self) -> str:
        return self.capability.url

    @property
    def expires_at(self) -> datetime:
        return self.intent.expires_at


@dataclass(frozen=True)
class AssetRecord:
    """A finalized video, one row per asset."""
    asset_id: str
    start_time: datetime
    duration_seconds: int
    object_path: str
    device_id: Optional[str] = None
    finalized_at: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        if self.duration_seconds <= 0:
            raise ValueError("Duration must be a positive number of seconds")
        if self.start_time.tzinfo is None:
            raise ValueError("Start time must be timezone-aware")


@dataclass(frozen=True)
class TelemetryPoint:
    """
    One GPS sample with an absolute timestamp.

    relative_offset_seconds is only set when the timestamp was derived
    from the asset's start time.
    """
    asset_id: str
    timestamp: datetime
    latitude: float
    longitude: float
    relative_offset_seconds: Optional[int] = None

    def __post_init__(self) -> None:
        if not -90.0 <= self.latitude <= 90.0:
            raise ValueError("Latitude must be within [-90, 90]")
        if not -180.0 <= self.longitude <= 180.0:
            raise ValueError("Longitude must be within [-180, 180]")
        if self.relative_offset_seconds is not None and self.relative_offset_seconds < 0:
            raise ValueError("Relative offset cannot be negative")


@dataclass(frozen=True)
class FinalizationResult:
    """Outcome of a successful finalize call."""
    asset_id: str
    telemetry_count: int
    already_finalized: bool = False
    state: FinalizationState = FinalizationState.COMMITTED

    def to_payload(self) -> dict:
        return {
            "status": "ok",
            "message": "Already finalized" if self.already_finalized else "Finalized",
            "assetId": self.asset_id,
            "telemetryCount": self.telemetry_count,
            "alreadyFinalized": self.already_finalized,
        }
