"""
Capability issuing for direct-to-storage uploads.

A device that wants to upload a video first asks for a capability: a new
asset ID, the object path the video must be written to, and a signed URL
that allows writing that one object for a short window. The video bytes
then go straight to storage and never pass through the API.

Nothing is written to the database here. An asset only exists once the
device calls finalize.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol
from uuid import uuid4

from .models import (
    Capability,
    IssuedCapability,
    UploadIntent,
    build_object_path,
    utc_now,
)

logger = logging.getLogger(__name__)

DEFAULT_LIFETIME = timedelta(minutes=15)
DEFAULT_SKEW = timedelta(minutes=1)


# ---------------------------------------------------------------------------
# Protocols (interfaces)
# ---------------------------------------------------------------------------

class CapabilitySigner(Protocol):
    """
    The slice of object storage the issuer needs.

    S3, R2 and the in-memory mock all satisfy it.
    """

    @property
    def container(self) -> str:
        ...

    async def ensure_container(self, name: Optional[str] = None) -> None:
        ...

    async def generate_write_url(
        self,
        path: str,
        starts_at: datetime,
        expires_at: datetime,
    ) -> Capability:
        ...


# ---------------------------------------------------------------------------
# Issuer Service
# ---------------------------------------------------------------------------

class CapabilityIssuer:
    """
    Issues write-only, time-boxed upload capabilities.

    The window opens slightly before "now" so a storage service whose clock
    runs a little behind ours still accepts the URL immediately.
    """

    def __init__(
        self,
        storage: CapabilitySigner,
        lifetime: timedelta = DEFAULT_LIFETIME,
        skew: timedelta = DEFAULT_SKEW,
        clock: Callable[[], datetime] = utc_now,
        id_factory: Callable[[], str] = lambda: str(uuid4()),
    ) -> None:
        if lifetime <= timedelta(0):
            raise ValueError("Capability lifetime must be positive")
        if skew < timedelta(0):
            raise ValueError("Clock skew tolerance cannot be negative")

        self._storage = storage
        self._lifetime = lifetime
        self._skew = skew
        self._clock = clock
        self._id_factory = id_factory

    async def issue(self, device_id: Optional[str] = None) -> IssuedCapability:
        """
        Issue a capability for a new asset.

        Raises:
            ConfigurationError: storage credentials are missing
            StorageUnavailable: the container can't be checked or created
        """
        asset_id = self._id_factory()
        object_path = build_object_path(asset_id)

        await self._storage.ensure_container(self._storage.container)

        issued_at = self._clock()
        expires_at = issued_at + self._lifetime

        capability = await self._storage.generate_write_url(
            object_path,
            starts_at=issued_at - self._skew,
            expires_at=expires_at,
        )

        intent = UploadIntent(
            asset_id=asset_id,
            object_path=object_path,
            issued_at=issued_at,
            expires_at=expires_at,
            device_id=device_id,
        )

        logger.info(
            "Issued upload capability",
            extra={
                "asset_id": asset_id,
                "object_path": object_path,
                "device_id": device_id,
                "expires_at": expires_at.isoformat(),
            }
        )

        return IssuedCapability(intent=intent, capability=capability)
