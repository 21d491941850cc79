"""
Unit tests for capability issuing and the storage gateways.

The issuer runs against MockStorageClient, which signs URLs and enforces
their window and permissions on simulated uploads the way real storage
would.
"""

from datetime import datetime, timedelta, timezone
from uuid import UUID

import pytest

from fieldcapture.core.errors import ConfigurationError, StorageUnavailable
from fieldcapture.core.uploads.capability import CapabilityIssuer
from fieldcapture.core.uploads.models import CapabilityPermission, build_object_path
from fieldcapture.infrastructure.storage.client import (
    CapabilityRejected,
    MockStorageClient,
    S3StorageClient,
    StorageConfig,
    create_storage_client,
)

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def fixed_issuer(storage, **kwargs) -> CapabilityIssuer:
    return CapabilityIssuer(storage=storage, clock=lambda: NOW, **kwargs)


def storage_config(**overrides) -> StorageConfig:
    values = {
        "access_key_id": "AKIAEXAMPLE",
        "secret_access_key": "secret",
        "container": "video-signage",
        "endpoint_url": "https://example.r2.cloudflarestorage.com",
    }
    values.update(overrides)
    return StorageConfig(**values)


# ---------------------------------------------------------------------------
# Capability Issuer
# ---------------------------------------------------------------------------

class TestCapabilityIssuer:
    """Tests for CapabilityIssuer.issue."""

    async def test_asset_id_is_a_uuid4(self, storage):
        issued = await CapabilityIssuer(storage=storage).issue()
        assert UUID(issued.asset_id).version == 4

    async def test_object_path_is_derived_from_asset_id(self, storage):
        issued = await fixed_issuer(storage).issue()

        assert issued.object_path == f"videos/{issued.asset_id}.mp4"
        assert issued.object_path == build_object_path(issued.asset_id)
        assert issued.capability.object_path == issued.object_path

    async def test_every_call_issues_a_new_asset(self, storage):
        issuer = fixed_issuer(storage)
        first = await issuer.issue()
        second = await issuer.issue()
        assert first.asset_id != second.asset_id

    async def test_window_opens_before_now_and_closes_after_lifetime(self, storage):
        """Default window: one minute of skew, fifteen minutes of lifetime."""
        issued = await fixed_issuer(storage).issue()

        assert issued.capability.starts_at == NOW - timedelta(minutes=1)
        assert issued.capability.expires_at == NOW + timedelta(minutes=15)
        assert issued.expires_at == NOW + timedelta(minutes=15)
        assert issued.intent.issued_at == NOW

    async def test_custom_window(self, storage):
        issuer = fixed_issuer(storage, lifetime=timedelta(minutes=5), skew=timedelta(0))
        issued = await issuer.issue()

        assert issued.capability.starts_at == NOW
        assert issued.capability.expires_at == NOW + timedelta(minutes=5)

    async def test_capability_is_write_only(self, storage):
        capability = (await fixed_issuer(storage).issue()).capability

        assert capability.allows(CapabilityPermission.WRITE)
        assert capability.allows(CapabilityPermission.CREATE)
        assert capability.allows(CapabilityPermission.APPEND)
        for permission in (CapabilityPermission.READ, CapabilityPermission.LIST, CapabilityPermission.DELETE):
            assert not capability.allows(permission)

    async def test_capability_is_https_only(self, storage):
        issued = await fixed_issuer(storage).issue()
        assert issued.capability.https_only
        assert issued.write_url.startswith("https://")

    async def test_container_is_created_on_demand(self, storage):
        assert not storage._has_container("video-signage")

        await fixed_issuer(storage).issue()

        assert storage._has_container("video-signage")

    async def test_device_id_is_carried_on_the_intent(self, storage):
        issued = await fixed_issuer(storage).issue(device_id="dev-1")
        assert issued.intent.device_id == "dev-1"

    async def test_storage_outage_is_reported(self, storage):
        storage._set_unavailable()
        with pytest.raises(StorageUnavailable):
            await fixed_issuer(storage).issue()

    def test_rejects_non_positive_lifetime(self, storage):
        with pytest.raises(ValueError, match="lifetime"):
            CapabilityIssuer(storage=storage, lifetime=timedelta(0))


# ---------------------------------------------------------------------------
# Capability Enforcement (mock storage)
# ---------------------------------------------------------------------------

class TestCapabilityEnforcement:
    """Uploads through a capability are accepted only inside its scope."""

    async def test_upload_inside_window_is_stored(self, storage):
        issued = await fixed_issuer(storage).issue()

        path = storage.upload_with_capability(issued.write_url, b"video", at=NOW + timedelta(minutes=1))

        assert path == issued.object_path
        assert await storage.object_size(issued.object_path) == 5

    async def test_upload_within_skew_is_accepted(self, storage):
        issued = await fixed_issuer(storage).issue()
        storage.upload_with_capability(issued.write_url, b"v", at=NOW - timedelta(seconds=30))
        assert await storage.object_exists(issued.object_path)

    async def test_upload_after_expiry_is_rejected(self, storage):
        """Given a 15 minute capability, a write at minute 16 is refused."""
        issued = await fixed_issuer(storage).issue()

        with pytest.raises(CapabilityRejected, match="window"):
            storage.upload_with_capability(issued.write_url, b"late", at=NOW + timedelta(minutes=16))

        assert not await storage.object_exists(issued.object_path)

    async def test_tampered_url_is_rejected(self, storage):
        issued = await fixed_issuer(storage).issue()
        tampered = issued.write_url.replace(issued.asset_id, "someone-else")

        with pytest.raises(CapabilityRejected, match="signature"):
            storage.upload_with_capability(tampered, b"x", at=NOW)

    async def test_read_url_cannot_be_used_to_write(self, storage):
        storage._put_object("videos/a.mp4", b"existing")
        read_url = await storage.generate_read_url("videos/a.mp4")

        with pytest.raises(CapabilityRejected, match="write"):
            storage.upload_with_capability(read_url, b"overwrite")

    async def test_plain_http_is_rejected(self, storage):
        issued = await fixed_issuer(storage).issue()
        insecure = issued.write_url.replace("https://", "http://", 1)

        with pytest.raises(CapabilityRejected, match="HTTPS"):
            storage.upload_with_capability(insecure, b"x", at=NOW)


# ---------------------------------------------------------------------------
# Storage Gateway
# ---------------------------------------------------------------------------

class TestMockStorage:
    """Probe semantics shared by every StorageClient."""

    async def test_missing_object_is_false_not_an_error(self, storage):
        assert await storage.object_exists("videos/doesnotexist.mp4") is False
        assert await storage.object_size("videos/doesnotexist.mp4") == 0

    async def test_probes_do_not_change_state(self, storage):
        storage._put_object("videos/a.mp4", b"abc")

        for _ in range(3):
            assert await storage.object_exists("videos/a.mp4")
            assert await storage.object_size("videos/a.mp4") == 3

        assert storage.probe_count == 6

    async def test_ensure_container_is_idempotent(self, storage):
        await storage.ensure_container()
        await storage.ensure_container()
        assert storage._has_container("video-signage")

    async def test_outage_raises_storage_unavailable(self, storage):
        storage._set_unavailable()
        with pytest.raises(StorageUnavailable):
            await storage.object_exists("videos/a.mp4")


class TestStorageConfiguration:
    """Misconfiguration fails before any network call."""

    def test_missing_credentials_raise_configuration_error(self):
        with pytest.raises(ConfigurationError, match="credentials"):
            S3StorageClient(storage_config(access_key_id=""))

    def test_missing_secret_raises_configuration_error(self):
        with pytest.raises(ConfigurationError):
            S3StorageClient(storage_config(secret_access_key=""))

    def test_plain_http_endpoint_is_refused(self):
        with pytest.raises(ConfigurationError, match="HTTPS"):
            S3StorageClient(storage_config(endpoint_url="http://localhost:9000"))

    def test_factory_requires_config_outside_mock_mode(self):
        with pytest.raises(ConfigurationError):
            create_storage_client(config=None)

    def test_factory_mock_mode_uses_configured_container(self):
        client = create_storage_client(config=storage_config(container="other"), mock_mode=True)
        assert isinstance(client, MockStorageClient)
        assert client.container == "other"


class RecordingS3:
    """Stands in for the boto3 client: the bucket is missing, creation is recorded."""

    def __init__(self):
        self.created = []

    def head_bucket(self, **kwargs):
        from botocore.exceptions import ClientError
        raise ClientError({"Error": {"Code": "404", "Message": "Not Found"}}, "HeadBucket")

    def create_bucket(self, **kwargs):
        self.created.append(kwargs)


class TestContainerCreation:
    """Bucket creation outside the provider's default region."""

    @pytest.fixture
    def s3(self):
        return RecordingS3()

    async def test_regional_bucket_carries_location_constraint(self, s3):
        client = S3StorageClient(storage_config(region="eu-west-1"))
        client._s3_client = s3

        await client.ensure_container()

        assert s3.created == [{
            "Bucket": "video-signage",
            "CreateBucketConfiguration": {"LocationConstraint": "eu-west-1"},
        }]

    @pytest.mark.parametrize("region", ["auto", "us-east-1"])
    async def test_default_region_sends_no_constraint(self, s3, region):
        client = S3StorageClient(storage_config(region=region))
        client._s3_client = s3

        await client.ensure_container("other")

        assert s3.created == [{"Bucket": "other"}]
