"""
Snowflake repository for finalized assets and their telemetry.

This module implements the repository pattern for the two tables the
upload flow writes:

- assets: one row per finalized video
- telemetry_points: many GPS rows per asset, keyed on asset_id

The application code never writes SQL directly. The coordinator hands the
repository an AssetRecord and its reconciled points and gets back whether
anything was written.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from ....core.errors import PersistenceError
from ....core.uploads.models import AssetRecord, TelemetryPoint
from ..client import RelationalStore, SnowflakeConnection

logger = logging.getLogger(__name__)


SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS assets (
        asset_id VARCHAR(36) NOT NULL PRIMARY KEY,
        start_time TIMESTAMP_TZ NOT NULL,
        duration_seconds INTEGER NOT NULL,
        object_path VARCHAR(1024) NOT NULL,
        device_id VARCHAR(255),
        finalized_at TIMESTAMP_TZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS telemetry_points (
        asset_id VARCHAR(36) NOT NULL REFERENCES assets (asset_id),
        sequence_number INTEGER NOT NULL,
        recorded_at TIMESTAMP_TZ NOT NULL,
        latitude FLOAT NOT NULL,
        longitude FLOAT NOT NULL,
        relative_offset_seconds INTEGER,
        PRIMARY KEY (asset_id, sequence_number)
    )
    """,
)

# Insert-if-absent. A second finalize for the same asset matches and
# inserts nothing, which the caller reads as "already finalized".
INSERT_ASSET = """
    MERGE INTO assets AS target
    USING (SELECT %s AS asset_id) AS source
    ON target.asset_id = source.asset_id
    WHEN NOT MATCHED THEN INSERT (
        asset_id, start_time, duration_seconds, object_path,
        device_id, finalized_at
    ) VALUES (%s, %s, %s, %s, %s, %s)
"""

INSERT_TELEMETRY_POINT = """
    INSERT INTO telemetry_points (
        asset_id, sequence_number, recorded_at, latitude, longitude,
        relative_offset_seconds
    ) VALUES (%s, %s, %s, %s, %s, %s)
"""

SELECT_ASSET = """
    SELECT asset_id, start_time, duration_seconds, object_path,
           device_id, finalized_at
    FROM assets
    WHERE asset_id = %s
"""

SELECT_TELEMETRY = """
    SELECT asset_id, sequence_number, recorded_at, latitude, longitude,
           relative_offset_seconds
    FROM telemetry_points
    WHERE asset_id = %s
    ORDER BY sequence_number
"""


@dataclass(frozen=True)
class SaveOutcome:
    """What a save actually wrote."""
    inserted: bool
    telemetry_count: int


class AssetRepository:
    """
    Repository for finalized asset persistence.

    save_finalized is the only write path. It runs the asset insert and the
    telemetry batch in one transaction, so readers either see an asset with
    all of its points or nothing at all.
    """

    def __init__(self, connection: SnowflakeConnection) -> None:
        self._store = RelationalStore(connection)

    def create_schema(self) -> None:
        """Create both tables if they don't exist."""
        with self._store.transaction() as cursor:
            for statement in SCHEMA_STATEMENTS:
                self._store.execute(cursor, statement)
        logger.info("Ensured upload schema")

    def save_finalized(
        self,
        asset: AssetRecord,
        points: Iterable[TelemetryPoint],
    ) -> SaveOutcome:
        """
        Persist an asset and its telemetry atomically.

        The asset row is written before the telemetry batch, inside the
        same transaction. If the asset already exists nothing is written.

        Raises:
            PersistenceError: anything failed; the transaction was rolled back
        """
        try:
            with self._store.transaction() as cursor:
                inserted = self._store.execute(cursor, INSERT_ASSET, (
                    asset.asset_id,
                    asset.asset_id,
                    asset.start_time,
                    asset.duration_seconds,
                    asset.object_path,
                    asset.device_id,
                    asset.finalized_at,
                ))

                if not inserted:
                    logger.info(
                        "Asset already finalized",
                        extra={"asset_id": asset.asset_id}
                    )
                    return SaveOutcome(inserted=False, telemetry_count=0)

                count = self._store.insert_batch(
                    cursor,
                    INSERT_TELEMETRY_POINT,
                    self._telemetry_rows(asset.asset_id, points),
                )

        except PersistenceError:
            raise
        except Exception as e:
            logger.error(
                "Failed to save asset",
                extra={"asset_id": asset.asset_id, "error": str(e)}
            )
            raise PersistenceError("Could not record the upload; nothing was saved") from e

        logger.info(
            "Saved asset",
            extra={"asset_id": asset.asset_id, "telemetry_count": count}
        )
        return SaveOutcome(inserted=True, telemetry_count=count)

    def get_asset(self, asset_id: str) -> Optional[AssetRecord]:
        """Load one asset, or None if it was never finalized."""
        with self._store.read() as cursor:
            cursor.execute(SELECT_ASSET, (asset_id,))
            row = cursor.fetchone()

        if not row:
            return None

        return AssetRecord(
            asset_id=row[0],
            start_time=row[1],
            duration_seconds=row[2],
            object_path=row[3],
            device_id=row[4],
            finalized_at=row[5],
        )

    def list_telemetry(self, asset_id: str) -> list[TelemetryPoint]:
        """Telemetry for an asset, in the order the device sent it."""
        with self._store.read() as cursor:
            cursor.execute(SELECT_TELEMETRY, (asset_id,))
            rows = cursor.fetchall()

        return [
            TelemetryPoint(
                asset_id=row[0],
                timestamp=row[2],
                latitude=row[3],
                longitude=row[4],
                relative_offset_seconds=row[5],
            )
            for row in rows
        ]

    def ping(self) -> bool:
        """Cheap round trip for readiness checks."""
        with self._store.read() as cursor:
            cursor.execute("SELECT 1")
            return cursor.fetchone() is not None

    def _telemetry_rows(self, asset_id: str, points: Iterable[TelemetryPoint]):
        for sequence, point in enumerate(points, start=1):
            yield (
                asset_id,
                sequence,
                point.timestamp,
                point.latitude,
                point.longitude,
                point.relative_offset_seconds,
            )
