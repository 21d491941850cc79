"""
Telemetry batch reconciliation.

Devices report GPS samples in two shapes: with an absolute ISO-8601
timestamp, or with a relative offset in seconds from the start of the
recording. Reconciliation turns both into TelemetryPoints with absolute
UTC timestamps so the database only ever stores one representation.

Samples that can't be anchored in time, or that carry no usable position,
are dropped. A bad sample never fails the whole batch; a batch that isn't a
list at all does.
"""

import logging
import math
from collections.abc import Iterator, Mapping, Sequence
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import pydantic
from pydantic import TypeAdapter

from ..errors import MalformedPayload
from .models import TelemetryPoint
from .schemas import looks_like_iso8601

logger = logging.getLogger(__name__)

LATITUDE_KEYS = ("lat", "latitude")
LONGITUDE_KEYS = ("lon", "lng", "longitude")
TIMESTAMP_KEYS = ("timestamp",)
OFFSET_KEYS = ("relativeOffsetSeconds", "tRelSec")

_datetime_adapter = TypeAdapter(datetime)


def _first_present(sample: Mapping, keys: tuple[str, ...]) -> Any:
    for key in keys:
        value = sample.get(key)
        if value is not None:
            return value
    return None


def _coordinate(value: Any, limit: float) -> Optional[float]:
    """Parse a coordinate, returning None when unusable."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError, OverflowError):
        return None
    if math.isnan(number) or not -limit <= number <= limit:
        return None
    return number


def _offset(value: Any) -> Optional[int]:
    """Parse a relative offset; only whole, non-negative seconds are accepted."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        seconds = value
    elif isinstance(value, float) and value.is_integer():
        seconds = int(value)
    elif isinstance(value, str) and value.strip().isdecimal():
        try:
            seconds = int(value.strip())
        except ValueError:
            # Past the interpreter's int string-conversion limit
            return None
    else:
        return None
    return seconds if seconds >= 0 else None


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse an ISO-8601 timestamp into an aware UTC datetime.

    Naive timestamps are read as UTC. Returns None if the value doesn't parse,
    including epoch numbers and numeric strings.
    """
    if not (isinstance(value, datetime) or looks_like_iso8601(value)):
        return None
    try:
        parsed = _datetime_adapter.validate_python(value)
    except pydantic.ValidationError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    try:
        return parsed.astimezone(timezone.utc)
    except OverflowError:
        # Offset pushes the instant outside the datetime range
        return None


def reconcile_point(
    asset_id: str,
    start_time: datetime,
    sample: Any,
) -> Optional[TelemetryPoint]:
    """Reconcile one raw sample, or return None if it must be dropped."""
    if not isinstance(sample, Mapping):
        return None

    latitude = _coordinate(_first_present(sample, LATITUDE_KEYS), 90.0)
    longitude = _coordinate(_first_present(sample, LONGITUDE_KEYS), 180.0)
    if latitude is None or longitude is None:
        return None

    raw_timestamp = _first_present(sample, TIMESTAMP_KEYS)
    if raw_timestamp is not None:
        timestamp = parse_timestamp(raw_timestamp)
        if timestamp is None:
            return None
        return TelemetryPoint(
            asset_id=asset_id,
            timestamp=timestamp,
            latitude=latitude,
            longitude=longitude,
        )

    raw_offset = _first_present(sample, OFFSET_KEYS)
    if raw_offset is not None:
        offset = _offset(raw_offset)
        if offset is None:
            return None
        try:
            timestamp = start_time + timedelta(seconds=offset)
        except (OverflowError, ValueError):
            # Offset runs past datetime.max
            return None
        return TelemetryPoint(
            asset_id=asset_id,
            timestamp=timestamp,
            latitude=latitude,
            longitude=longitude,
            relative_offset_seconds=offset,
        )

    # No temporal anchor
    return None


class TelemetryBatch:
    """
    Lazy view over a reconciled batch.

    Iterating runs reconciliation from the start each time, so the batch can
    be consumed more than once (for example to count it and then insert it)
    without holding every point in memory.
    """

    def __init__(
        self,
        asset_id: str,
        start_time: datetime,
        raw_points: Sequence,
    ) -> None:
        self._asset_id = asset_id
        self._start_time = start_time
        self._raw_points = raw_points

    def __iter__(self) -> Iterator[TelemetryPoint]:
        for sample in self._raw_points:
            point = reconcile_point(self._asset_id, self._start_time, sample)
            if point is not None:
                yield point

    @property
    def raw_count(self) -> int:
        return len(self._raw_points)

    def count(self) -> int:
        return sum(1 for _ in self)


def reconcile(
    asset_id: str,
    start_time: datetime,
    raw_points: Any,
) -> TelemetryBatch:
    """
    Normalize raw GPS samples into absolute-timestamped points.

    Per sample, in input order:
    1. Drop it if latitude or longitude is missing or out of range.
    2. An explicit timestamp wins and leaves the relative offset unset.
    3. Otherwise start_time + relativeOffsetSeconds.
    4. Otherwise drop it.

    Raises:
        MalformedPayload: raw_points is not a list of samples
    """
    if isinstance(raw_points, (str, bytes, Mapping)) or not isinstance(raw_points, Sequence):
        raise MalformedPayload(
            "telemetry must be an array of samples",
            errors=[{
                "field": "telemetry",
                "message": "expected an array",
                "type": "list_type",
            }],
        )

    if start_time.tzinfo is None:
        start_time = start_time.replace(tzinfo=timezone.utc)

    batch = TelemetryBatch(asset_id, start_time, raw_points)
    logger.debug(
        "Prepared telemetry batch",
        extra={"asset_id": asset_id, "raw_count": batch.raw_count},
    )
    return batch
