"""
Unit tests for the finalization coordinator.

The coordinator is wired to MockStorageClient and an AssetRepository over
MockSnowflakeConnection, so these tests see exactly what would have been
committed, or rolled back.
"""

import asyncio
import time
from datetime import datetime, timezone

import pytest

from fieldcapture.core.errors import PersistenceError, StorageUnavailable, ValidationError
from fieldcapture.core.uploads.finalization import FinalizationCoordinator
from fieldcapture.core.uploads.models import FinalizationState

START = datetime(2024, 1, 1, 0, 0, tzinfo=timezone.utc)
ASSET_ID = "7d0e5b32-aaaa-4bbb-8ccc-ddddeeeeffff"
OBJECT_PATH = f"videos/{ASSET_ID}.mp4"

TELEMETRY = [
    {"lat": 47.6062, "lon": -122.3321, "relativeOffsetSeconds": 0},
    {"lat": 47.6063, "lon": -122.3322, "relativeOffsetSeconds": 30},
]


@pytest.fixture
def coordinator(storage, repository) -> FinalizationCoordinator:
    return FinalizationCoordinator(storage=storage, assets=repository)


@pytest.fixture
def uploaded(storage):
    """An object that has landed in storage."""
    storage._put_object(OBJECT_PATH, b"\x00\x00\x00\x18ftypmp42")
    return OBJECT_PATH


# ---------------------------------------------------------------------------
# Happy Path
# ---------------------------------------------------------------------------

class TestFinalize:
    """Tests for a successful finalize."""

    async def test_commits_asset_and_telemetry(self, coordinator, repository, connection, uploaded):
        result = await coordinator.finalize(
            asset_id=ASSET_ID,
            object_path=uploaded,
            start_utc=START,
            duration_seconds=42,
            device_id="dev-1",
            telemetry=TELEMETRY,
        )

        assert result.asset_id == ASSET_ID
        assert result.telemetry_count == 2
        assert result.already_finalized is False
        assert result.state == FinalizationState.COMMITTED

        assert connection._count("assets") == 1
        assert connection._count("telemetry_points") == 2

        asset = repository.get_asset(ASSET_ID)
        assert asset.duration_seconds == 42
        assert asset.device_id == "dev-1"
        assert asset.object_path == OBJECT_PATH

        timestamps = [point.timestamp for point in repository.list_telemetry(ASSET_ID)]
        assert timestamps == [
            datetime(2024, 1, 1, 0, 0, 0, tzinfo=timezone.utc),
            datetime(2024, 1, 1, 0, 0, 30, tzinfo=timezone.utc),
        ]

    async def test_payload_shape(self, coordinator, uploaded):
        result = await coordinator.finalize(
            asset_id=ASSET_ID,
            object_path=uploaded,
            start_utc=START,
            duration_seconds=42,
        )

        assert result.to_payload() == {
            "status": "ok",
            "message": "Finalized",
            "assetId": ASSET_ID,
            "telemetryCount": 0,
            "alreadyFinalized": False,
        }

    async def test_without_telemetry_only_the_asset_is_written(self, coordinator, connection, uploaded):
        result = await coordinator.finalize(
            asset_id=ASSET_ID,
            object_path=uploaded,
            start_utc=START,
            duration_seconds=10,
        )

        assert result.telemetry_count == 0
        assert connection._count("assets") == 1
        assert connection._count("telemetry_points") == 0

    async def test_unusable_samples_are_dropped_not_fatal(self, coordinator, connection, uploaded):
        result = await coordinator.finalize(
            asset_id=ASSET_ID,
            object_path=uploaded,
            start_utc=START,
            duration_seconds=10,
            telemetry=TELEMETRY + [{"lat": 1.0, "lon": 2.0}, {"lat": 200, "lon": 0, "tRelSec": 1}],
        )

        assert result.telemetry_count == 2
        assert connection._count("telemetry_points") == 2

    async def test_accepts_iso_string_start(self, coordinator, repository, uploaded):
        await coordinator.finalize(
            asset_id=ASSET_ID,
            object_path=uploaded,
            start_utc="2024-01-01T00:00:00Z",
            duration_seconds=10,
        )
        assert repository.get_asset(ASSET_ID).start_time == START

    async def test_duplicate_finalize_is_a_no_op(self, coordinator, connection, uploaded):
        """Given a committed asset, a second finalize succeeds and writes nothing."""
        await coordinator.finalize(
            asset_id=ASSET_ID, object_path=uploaded, start_utc=START,
            duration_seconds=42, telemetry=TELEMETRY,
        )

        again = await coordinator.finalize(
            asset_id=ASSET_ID, object_path=uploaded, start_utc=START,
            duration_seconds=42, telemetry=TELEMETRY,
        )

        assert again.already_finalized is True
        assert again.telemetry_count == 0
        assert again.to_payload()["message"] == "Already finalized"
        assert connection._count("assets") == 1
        assert connection._count("telemetry_points") == 2

    async def test_stored_object_is_left_untouched(self, coordinator, storage, uploaded):
        await coordinator.finalize(
            asset_id=ASSET_ID, object_path=uploaded, start_utc=START, duration_seconds=1,
        )
        assert await storage.object_size(uploaded) == 12


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

class TestValidation:
    """The first failing check wins and nothing is written."""

    async def test_missing_fields_are_reported_together(self, coordinator, connection):
        with pytest.raises(ValidationError, match="missing required field") as exc_info:
            await coordinator.finalize(asset_id=ASSET_ID)

        assert len(exc_info.value.errors) == 3
        assert {error["type"] for error in exc_info.value.errors} == {"missing"}
        assert connection._count("assets") == 0

    async def test_validation_runs_before_storage(self, coordinator, storage):
        with pytest.raises(ValidationError):
            await coordinator.finalize(asset_id=ASSET_ID, object_path=OBJECT_PATH)
        assert storage.probe_count == 0

    @pytest.mark.parametrize("duration", [0, -3])
    async def test_non_positive_duration_is_invalid(self, coordinator, uploaded, duration):
        with pytest.raises(ValidationError, match="invalid request field"):
            await coordinator.finalize(
                asset_id=ASSET_ID, object_path=uploaded, start_utc=START,
                duration_seconds=duration,
            )

    async def test_telemetry_must_be_an_array(self, coordinator, uploaded):
        with pytest.raises(ValidationError) as exc_info:
            await coordinator.finalize(
                asset_id=ASSET_ID, object_path=uploaded, start_utc=START,
                duration_seconds=5, telemetry="lat=1,lon=2",
            )
        assert exc_info.value.status_code == 400

    async def test_missing_object_is_rejected(self, coordinator, connection):
        with pytest.raises(ValidationError, match="object not found"):
            await coordinator.finalize(
                asset_id="doesnotexist",
                object_path="videos/doesnotexist.mp4",
                start_utc=START,
                duration_seconds=42,
            )
        assert connection._count("assets") == 0

    async def test_empty_object_is_rejected(self, coordinator, storage, connection):
        storage._put_object(OBJECT_PATH, b"")

        with pytest.raises(ValidationError, match="empty object"):
            await coordinator.finalize(
                asset_id=ASSET_ID, object_path=OBJECT_PATH, start_utc=START, duration_seconds=42,
            )
        assert connection._count("assets") == 0

    async def test_legacy_field_names_are_accepted(self, coordinator, uploaded):
        request = FinalizationCoordinator.validate({
            "videoID": ASSET_ID,
            "blobPath": uploaded,
            "startUtc": "2024-01-01T00:00:00Z",
            "durationSec": 42,
            "gps": [{"lat": 1.0, "lon": 2.0, "tRelSec": 3}],
        })

        result = await coordinator.finalize_request(request)

        assert result.telemetry_count == 1


# ---------------------------------------------------------------------------
# Dependency Failures
# ---------------------------------------------------------------------------

class SlowStorage:
    """Storage whose probes never come back in time."""

    async def object_exists(self, path):
        await asyncio.sleep(5)
        return True

    async def object_size(self, path):
        return 1


class SlowAssets:
    def save_finalized(self, asset, points):
        time.sleep(0.5)


class TestDependencyFailures:
    """Storage and database failures are retryable and leave no partial rows."""

    async def test_storage_outage(self, coordinator, storage, connection, uploaded):
        storage._set_unavailable()

        with pytest.raises(StorageUnavailable) as exc_info:
            await coordinator.finalize(
                asset_id=ASSET_ID, object_path=uploaded, start_utc=START, duration_seconds=1,
            )

        assert exc_info.value.retryable
        assert connection._count("assets") == 0

    async def test_storage_timeout(self, repository):
        coordinator = FinalizationCoordinator(
            storage=SlowStorage(), assets=repository, storage_timeout=0.05,
        )

        with pytest.raises(StorageUnavailable, match="in time"):
            await coordinator.finalize(
                asset_id=ASSET_ID, object_path=OBJECT_PATH, start_utc=START, duration_seconds=1,
            )

    async def test_database_timeout(self, storage, uploaded):
        coordinator = FinalizationCoordinator(
            storage=storage, assets=SlowAssets(), database_timeout=0.05,
        )

        with pytest.raises(PersistenceError, match="in time"):
            await coordinator.finalize(
                asset_id=ASSET_ID, object_path=uploaded, start_utc=START, duration_seconds=1,
            )

    async def test_telemetry_insert_failure_rolls_back_everything(self, coordinator, connection, uploaded):
        """Given the batch insert fails, neither the asset nor any point is committed."""
        connection._fail_next("telemetry_points")

        with pytest.raises(PersistenceError) as exc_info:
            await coordinator.finalize(
                asset_id=ASSET_ID, object_path=uploaded, start_utc=START,
                duration_seconds=42, telemetry=TELEMETRY,
            )

        assert exc_info.value.retryable
        assert connection._count("assets") == 0
        assert connection._count("telemetry_points") == 0
        assert connection.rollback_count == 1

    async def test_retry_after_rollback_succeeds(self, coordinator, connection, uploaded):
        connection._fail_next("telemetry_points")
        with pytest.raises(PersistenceError):
            await coordinator.finalize(
                asset_id=ASSET_ID, object_path=uploaded, start_utc=START,
                duration_seconds=42, telemetry=TELEMETRY,
            )

        result = await coordinator.finalize(
            asset_id=ASSET_ID, object_path=uploaded, start_utc=START,
            duration_seconds=42, telemetry=TELEMETRY,
        )

        assert result.already_finalized is False
        assert connection._count("telemetry_points") == 2
