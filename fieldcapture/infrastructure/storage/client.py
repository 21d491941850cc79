"""
Object storage gateway for device video uploads.

Devices never send video through the API. They ask for a capability (a
presigned write URL scoped to one object), upload straight to storage, and
then call finalize. This module is everything the API needs from storage
for that flow: make sure the container exists, sign write/read URLs, and
probe whether an uploaded object landed and how big it is.

Supports any S3-compatible service (AWS S3, Cloudflare R2, MinIO) through
boto3, plus an in-memory mock for local development and tests. The mock
checks capability signatures, windows and permissions on simulated uploads,
so the whole issue/upload/finalize flow can be exercised without a bucket.
"""

import asyncio
import hashlib
import hmac
import logging
import math
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Protocol
from urllib.parse import parse_qs, quote, unquote, urlencode, urlsplit

from ...core.errors import ConfigurationError, StorageUnavailable
from ...core.uploads.models import (
    WRITE_PERMISSIONS,
    Capability,
    CapabilityPermission,
    utc_now,
)

logger = logging.getLogger(__name__)

# S3 reports a missing key or bucket with any of these codes depending on
# the operation and provider
NOT_FOUND_CODES = frozenset({"404", "NoSuchKey", "NotFound", "NoSuchBucket"})
ALREADY_OWNED_CODES = frozenset({"BucketAlreadyOwnedByYou", "BucketAlreadyExists"})
# Regions where create_bucket must not carry a LocationConstraint
DEFAULT_REGIONS = frozenset({"", "auto", "us-east-1"})


@dataclass
class StorageConfig:
    """
    Configuration for S3-compatible storage.

    Timeouts are per network call. They should be derived from the
    platform's invocation timeout so a stuck probe fails the request
    instead of hanging it.
    """
    access_key_id: str
    secret_access_key: str
    container: str
    endpoint_url: str
    region: str = "auto"  # R2 uses 'auto' for region
    connect_timeout: float = 5.0
    read_timeout: float = 20.0
    max_attempts: int = 2


class StorageClient(Protocol):
    """
    Protocol for the object storage operations the upload flow needs.

    Missing objects are reported as False/0, never as exceptions. Any
    transport or auth failure raises StorageUnavailable.
    """

    @property
    def container(self) -> str:
        ...

    async def ensure_container(self, name: Optional[str] = None) -> None:
        """Create the container if it doesn't exist. Idempotent."""
        ...

    async def object_exists(self, path: str) -> bool:
        ...

    async def object_size(self, path: str) -> int:
        """Size in bytes, 0 if the object doesn't exist."""
        ...

    async def generate_write_url(
        self,
        path: str,
        starts_at: datetime,
        expires_at: datetime,
    ) -> Capability:
        """Sign a write-only URL for exactly one object path."""
        ...

    async def generate_read_url(
        self,
        path: str,
        expiry_seconds: int = 3600,
    ) -> str:
        """Sign a temporary download URL."""
        ...


class S3StorageClient:
    """
    S3-compatible object storage client.

    boto3 is synchronous, so every call runs in a worker thread to keep
    the event loop free while we wait on the network.
    """

    def __init__(self, config: StorageConfig) -> None:
        if not config.access_key_id or not config.secret_access_key:
            raise ConfigurationError("Object storage credentials are not configured")
        if not config.endpoint_url or not config.endpoint_url.startswith("https://"):
            raise ConfigurationError("Object storage endpoint must use HTTPS")
        if not config.container:
            raise ConfigurationError("Object storage container is not configured")

        import boto3
        from botocore.config import Config

        self._config = config

        # R2 requires v4 signatures and path-style addressing
        boto_config = Config(
            signature_version='s3v4',
            s3={'addressing_style': 'path'},
            connect_timeout=config.connect_timeout,
            read_timeout=config.read_timeout,
            retries={'max_attempts': config.max_attempts, 'mode': 'standard'},
        )

        self._s3_client = boto3.client(
            's3',
            endpoint_url=config.endpoint_url,
            aws_access_key_id=config.access_key_id,
            aws_secret_access_key=config.secret_access_key,
            region_name=config.region,
            config=boto_config,
        )

        logger.info(
            "Initialized S3 storage client",
            extra={
                "container": config.container,
                "endpoint": config.endpoint_url,
            }
        )

    @property
    def container(self) -> str:
        return self._config.container

    async def ensure_container(self, name: Optional[str] = None) -> None:
        """
        Create the bucket if it's missing.

        Losing a creation race to another request is fine: the bucket
        exists either way.
        """
        from botocore.exceptions import BotoCoreError, ClientError

        bucket = name or self._config.container

        try:
            await asyncio.to_thread(self._s3_client.head_bucket, Bucket=bucket)
            return
        except ClientError as e:
            if _error_code(e) not in NOT_FOUND_CODES:
                logger.error(
                    "Failed to check container",
                    extra={"container": bucket, "error": str(e)}
                )
                raise StorageUnavailable("Object storage rejected the container check")
        except BotoCoreError as e:
            logger.error(
                "Failed to reach object storage",
                extra={"container": bucket, "error": str(e)}
            )
            raise StorageUnavailable("Object storage is unreachable")

        create_kwargs = {"Bucket": bucket}
        if self._config.region not in DEFAULT_REGIONS:
            create_kwargs["CreateBucketConfiguration"] = {
                "LocationConstraint": self._config.region,
            }

        try:
            await asyncio.to_thread(self._s3_client.create_bucket, **create_kwargs)
            logger.info("Created container", extra={"container": bucket})
        except ClientError as e:
            if _error_code(e) in ALREADY_OWNED_CODES:
                return
            logger.error(
                "Failed to create container",
                extra={"container": bucket, "error": str(e)}
            )
            raise StorageUnavailable("Object storage container could not be created")
        except BotoCoreError as e:
            logger.error(
                "Failed to create container",
                extra={"container": bucket, "error": str(e)}
            )
            raise StorageUnavailable("Object storage is unreachable")

    async def object_exists(self, path: str) -> bool:
        return await self._head_object(path) is not None

    async def object_size(self, path: str) -> int:
        head = await self._head_object(path)
        if head is None:
            return 0
        return int(head.get('ContentLength', 0))

    async def generate_write_url(
        self,
        path: str,
        starts_at: datetime,
        expires_at: datetime,
    ) -> Capability:
        """
        Presign a PUT for one key.

        A presigned put_object URL only authorizes writing that exact key,
        which covers write/create/append and nothing else. SigV4 has no
        separate start time: the signature is valid from signing, and
        starts_at only documents the skew we tolerate.
        """
        now = utc_now()
        expires_in = max(1, math.ceil((expires_at - now).total_seconds()))

        try:
            url = await asyncio.to_thread(
                self._s3_client.generate_presigned_url,
                'put_object',
                Params={
                    'Bucket': self._config.container,
                    'Key': path,
                },
                ExpiresIn=expires_in,
            )
        except Exception as e:
            logger.error(
                "Failed to sign write URL",
                extra={"object_path": path, "error": str(e)}
            )
            raise StorageUnavailable("Could not sign an upload URL")

        if not url.startswith("https://"):
            raise ConfigurationError("Signed upload URL is not HTTPS")

        return Capability(
            url=url,
            object_path=path,
            permissions=WRITE_PERMISSIONS,
            starts_at=starts_at,
            expires_at=expires_at,
            https_only=True,
        )

    async def generate_read_url(
        self,
        path: str,
        expiry_seconds: int = 3600,
    ) -> str:
        """
        Generate a temporary download URL.

        Lets a reviewer stream the video straight from storage.
        """
        try:
            return await asyncio.to_thread(
                self._s3_client.generate_presigned_url,
                'get_object',
                Params={
                    'Bucket': self._config.container,
                    'Key': path,
                },
                ExpiresIn=expiry_seconds,
            )
        except Exception as e:
            logger.error(
                "Failed to generate presigned URL",
                extra={"object_path": path, "error": str(e)}
            )
            raise StorageUnavailable("Could not sign a download URL")

    async def _head_object(self, path: str) -> Optional[dict]:
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            return await asyncio.to_thread(
                self._s3_client.head_object,
                Bucket=self._config.container,
                Key=path,
            )
        except ClientError as e:
            if _error_code(e) in NOT_FOUND_CODES:
                return None
            logger.error(
                "Failed to probe object",
                extra={"object_path": path, "error": str(e)}
            )
            raise StorageUnavailable("Object storage rejected the probe")
        except BotoCoreError as e:
            logger.error(
                "Failed to reach object storage",
                extra={"object_path": path, "error": str(e)}
            )
            raise StorageUnavailable("Object storage is unreachable")


def _error_code(error) -> str:
    return str(error.response.get('Error', {}).get('Code', ''))


# ---------------------------------------------------------------------------
# Mock Storage for Local Development
# ---------------------------------------------------------------------------

class CapabilityRejected(Exception):
    """Raised by mock storage when an upload URL is expired, forged or out of scope."""
    pass


MOCK_ENDPOINT = "https://mock-storage.local"

_PERMISSION_CODES = {
    CapabilityPermission.READ: "r",
    CapabilityPermission.WRITE: "w",
    CapabilityPermission.CREATE: "c",
    CapabilityPermission.APPEND: "a",
    CapabilityPermission.LIST: "l",
    CapabilityPermission.DELETE: "d",
}


class MockStorageClient:
    """
    In-memory storage for local development.

    Objects live in a dict keyed by (container, path). Signed URLs carry
    the permission set, window and an HMAC over both, and uploads through
    upload_with_capability are checked against them the way real storage
    would check a SAS or SigV4 signature.

    Not suitable for production, but perfect for development and testing.
    """

    def __init__(self, container: str = "video-signage") -> None:
        self._container = container
        self._containers: set[str] = set()
        self._objects: dict[tuple[str, str], bytes] = {}
        self._secret = secrets.token_bytes(32)
        self._unavailable = False
        self.probe_count = 0
        logger.info("Initialized mock storage client (in-memory)")

    @property
    def container(self) -> str:
        return self._container

    async def ensure_container(self, name: Optional[str] = None) -> None:
        self._check_available()
        self._containers.add(name or self._container)

    async def object_exists(self, path: str) -> bool:
        self._check_available()
        self.probe_count += 1
        return (self._container, path) in self._objects

    async def object_size(self, path: str) -> int:
        self._check_available()
        self.probe_count += 1
        return len(self._objects.get((self._container, path), b""))

    async def generate_write_url(
        self,
        path: str,
        starts_at: datetime,
        expires_at: datetime,
    ) -> Capability:
        self._check_available()
        url = self._sign(path, WRITE_PERMISSIONS, starts_at, expires_at)
        return Capability(
            url=url,
            object_path=path,
            permissions=WRITE_PERMISSIONS,
            starts_at=starts_at,
            expires_at=expires_at,
            https_only=True,
        )

    async def generate_read_url(
        self,
        path: str,
        expiry_seconds: int = 3600,
    ) -> str:
        self._check_available()
        now = utc_now()
        expires_at = datetime.fromtimestamp(now.timestamp() + expiry_seconds, timezone.utc)
        return self._sign(path, frozenset({CapabilityPermission.READ}), now, expires_at)

    def upload_with_capability(
        self,
        url: str,
        data: bytes,
        at: Optional[datetime] = None,
    ) -> str:
        """
        Simulate a device PUT against a signed URL.

        Returns the object path written.

        Raises:
            CapabilityRejected: the URL is forged, outside its window,
                not HTTPS, or lacks write permission
        """
        moment = at or utc_now()
        parts = urlsplit(url)
        if parts.scheme != "https":
            raise CapabilityRejected("Capability requires HTTPS")

        container, _, path = unquote(parts.path.lstrip("/")).partition("/")
        query = {key: values[0] for key, values in parse_qs(parts.query).items()}

        try:
            codes = query["sp"]
            starts_at = datetime.fromisoformat(query["st"])
            expires_at = datetime.fromisoformat(query["se"])
            signature = query["sig"]
        except (KeyError, ValueError):
            raise CapabilityRejected("Capability is malformed")

        expected = self._signature(container, path, codes, query["st"], query["se"])
        if not hmac.compare_digest(signature, expected):
            raise CapabilityRejected("Capability signature mismatch")
        if not starts_at <= moment <= expires_at:
            raise CapabilityRejected("Capability is outside its validity window")
        if _PERMISSION_CODES[CapabilityPermission.WRITE] not in codes:
            raise CapabilityRejected("Capability does not grant write access")
        if container not in self._containers:
            raise CapabilityRejected("Container does not exist")

        self._objects[(container, path)] = data
        logger.debug(
            "Stored object in mock storage",
            extra={"object_path": path, "size_bytes": len(data)}
        )
        return path

    # Helper methods for testing
    def _put_object(self, path: str, data: bytes) -> None:
        """Write an object directly, bypassing capabilities (for test setup)."""
        self._containers.add(self._container)
        self._objects[(self._container, path)] = data

    def _set_unavailable(self, unavailable: bool = True) -> None:
        """Make every call fail as if storage were down (for error-path tests)."""
        self._unavailable = unavailable

    def _has_container(self, name: str) -> bool:
        return name in self._containers

    def _check_available(self) -> None:
        if self._unavailable:
            raise StorageUnavailable("Object storage is unreachable")

    def _sign(
        self,
        path: str,
        permissions: frozenset,
        starts_at: datetime,
        expires_at: datetime,
    ) -> str:
        codes = "".join(
            code for permission, code in _PERMISSION_CODES.items()
            if permission in permissions
        )
        start = starts_at.astimezone(timezone.utc).isoformat()
        end = expires_at.astimezone(timezone.utc).isoformat()
        query = urlencode({
            "sp": codes,
            "st": start,
            "se": end,
            "spr": "https",
            "sig": self._signature(self._container, path, codes, start, end),
        })
        return f"{MOCK_ENDPOINT}/{self._container}/{quote(path)}?{query}"

    def _signature(self, container: str, path: str, codes: str, start: str, end: str) -> str:
        message = "\n".join((container, path, codes, start, end)).encode("utf-8")
        return hmac.new(self._secret, message, hashlib.sha256).hexdigest()


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------

def create_storage_client(
    config: Optional[StorageConfig] = None,
    mock_mode: bool = False,
) -> StorageClient:
    """
    Create storage client based on configuration.

    Args:
        config: Storage configuration (required if not mock_mode)
        mock_mode: If True, return mock client for testing

    Returns:
        StorageClient implementation (S3 or Mock)

    Raises:
        ConfigurationError: not in mock mode and config is missing or incomplete
    """
    if mock_mode:
        return MockStorageClient(container=config.container if config else "video-signage")

    if config is None:
        raise ConfigurationError("Object storage is not configured")

    return S3StorageClient(config)
