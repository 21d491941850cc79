"""
Upload finalization.

After a device has written its video straight to storage it calls finalize
with the asset ID, object path, recording start, duration and optional GPS
samples. The coordinator:

1. validates the whole request in one schema pass, before any I/O;
2. confirms the object exists in storage and is not empty;
3. commits the asset row and its telemetry in a single transaction.

A request moves RECEIVED -> VALIDATED -> OBJECT_VERIFIED -> COMMITTED, or
to FAILED from any of the first three. There are no retries in here:
every failure is reported with a kind that tells the caller whether
retrying makes sense.
"""

import asyncio
import logging
from collections.abc import Iterable, Mapping
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, Protocol, TypeVar

import pydantic

from ..errors import PersistenceError, StorageUnavailable, UploadError, ValidationError
from .models import (
    AssetRecord,
    FinalizationResult,
    FinalizationState,
    TelemetryPoint,
    utc_now,
)
from .schemas import FinalizeRequest, field_errors, has_missing_field
from .telemetry import reconcile

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Protocols (interfaces)
# ---------------------------------------------------------------------------

class ObjectProbe(Protocol):
    """Storage probes the coordinator relies on."""

    async def object_exists(self, path: str) -> bool:
        ...

    async def object_size(self, path: str) -> int:
        ...


class SaveResult(Protocol):
    inserted: bool
    telemetry_count: int


class AssetStore(Protocol):
    """
    Transactional persistence for an asset and its telemetry.

    Blocking: the coordinator calls it from a worker thread.
    """

    def save_finalized(
        self,
        asset: AssetRecord,
        points: Iterable[TelemetryPoint],
    ) -> SaveResult:
        ...


# ---------------------------------------------------------------------------
# Coordinator Service
# ---------------------------------------------------------------------------

class FinalizationCoordinator:
    """
    Orchestrates validation, storage verification and the database commit.

    Stateless between calls; one instance can serve any number of requests.
    Timeouts bound each network wait so a slow dependency fails the request
    well inside the platform's invocation timeout.
    """

    def __init__(
        self,
        storage: ObjectProbe,
        assets: AssetStore,
        storage_timeout: float = 20.0,
        database_timeout: float = 60.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._storage = storage
        self._assets = assets
        self._storage_timeout = storage_timeout
        self._database_timeout = database_timeout
        self._clock = clock

    async def finalize(
        self,
        asset_id: Optional[str] = None,
        object_path: Optional[str] = None,
        start_utc: Any = None,
        duration_seconds: Any = None,
        device_id: Optional[str] = None,
        telemetry: Any = None,
    ) -> FinalizationResult:
        """
        Finalize an upload from loose arguments.

        Raises:
            ValidationError: a field is missing or invalid, or the object
                is missing or empty in storage
            StorageUnavailable: storage could not be probed
            PersistenceError: the transaction failed and was rolled back
        """
        fields = {
            "asset_id": asset_id,
            "object_path": object_path,
            "start_utc": start_utc,
            "duration_seconds": duration_seconds,
            "device_id": device_id,
            "telemetry": telemetry,
        }
        request = self.validate({key: value for key, value in fields.items() if value is not None})
        return await self.finalize_request(request)

    @staticmethod
    def validate(payload: Mapping[str, Any]) -> FinalizeRequest:
        """
        Run the single schema pass over a raw request body.

        Raises:
            ValidationError: with every field-level problem listed in errors
        """
        try:
            return FinalizeRequest.model_validate(payload)
        except pydantic.ValidationError as e:
            errors = field_errors(e.errors())
            message = "missing required field" if has_missing_field(errors) else "invalid request field"
            raise ValidationError(message, errors=errors) from None

    async def finalize_request(self, request: FinalizeRequest) -> FinalizationResult:
        """Finalize an already-validated request."""
        asset_id = request.asset_id
        state = FinalizationState.VALIDATED
        self._log_transition(asset_id, state)

        try:
            await self._verify_object(request.object_path)
            state = FinalizationState.OBJECT_VERIFIED
            self._log_transition(asset_id, state)

            asset = AssetRecord(
                asset_id=asset_id,
                start_time=request.start_utc,
                duration_seconds=request.duration_seconds,
                object_path=request.object_path,
                device_id=request.device_id,
                finalized_at=self._clock(),
            )

            points: Iterable[TelemetryPoint] = ()
            if request.telemetry is not None:
                points = reconcile(asset_id, request.start_utc, request.telemetry)

            outcome = await self._bounded(
                asyncio.to_thread(self._assets.save_finalized, asset, points),
                self._database_timeout,
                PersistenceError("Database did not respond in time; the upload was not recorded"),
            )

        except UploadError as e:
            logger.warning(
                "Finalization failed",
                extra={
                    "asset_id": asset_id,
                    "state": FinalizationState.FAILED.value,
                    "failed_after": state.value,
                    "error_kind": e.kind.value,
                    "error": e.message,
                }
            )
            raise

        result = FinalizationResult(
            asset_id=asset_id,
            telemetry_count=outcome.telemetry_count,
            already_finalized=not outcome.inserted,
        )
        self._log_transition(asset_id, result.state, telemetry_count=result.telemetry_count)
        return result

    async def _verify_object(self, object_path: str) -> None:
        """The existence check must finish before anything touches the database."""
        unavailable = StorageUnavailable("Object storage did not respond in time")

        exists = await self._bounded(
            self._storage.object_exists(object_path),
            self._storage_timeout,
            unavailable,
        )
        if not exists:
            raise ValidationError(
                "object not found",
                errors=[{"field": "objectPath", "message": f"no object at {object_path}", "type": "not_found"}],
            )

        size = await self._bounded(
            self._storage.object_size(object_path),
            self._storage_timeout,
            unavailable,
        )
        if size <= 0:
            raise ValidationError(
                "empty object",
                errors=[{"field": "objectPath", "message": f"object at {object_path} has zero bytes", "type": "empty"}],
            )

    async def _bounded(
        self,
        awaitable: Awaitable[T],
        timeout: float,
        on_timeout: UploadError,
    ) -> T:
        # A timed-out to_thread call keeps running; the transaction inside
        # still ends in a commit or a rollback
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except asyncio.TimeoutError:
            raise on_timeout from None

    def _log_transition(self, asset_id: str, state: FinalizationState, **extra: Any) -> None:
        logger.info(
            "Finalization state changed",
            extra={"asset_id": asset_id, "state": state.value, **extra}
        )
