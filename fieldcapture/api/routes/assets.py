"""
Finalized asset endpoints.

Read side of the upload flow: fetch an asset with its GPS track and a
short-lived URL for playing the video straight from storage.
"""

import asyncio
import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ..dependencies import (
    AssetRepositoryDep,
    AuthenticatedUser,
    SettingsDep,
    StorageClientDep,
)

logger = logging.getLogger(__name__)

router = APIRouter()


class TelemetryPointResponse(BaseModel):
    """One GPS sample."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    timestamp: datetime
    lat: float
    lon: float
    relative_offset_seconds: Optional[int] = None


class AssetResponse(BaseModel):
    """A finalized asset and its telemetry."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    asset_id: str
    object_path: str
    start_utc: datetime
    duration_seconds: int
    device_id: Optional[str] = None
    finalized_at: datetime
    read_url: str = Field(description="Temporary download URL for the video")
    telemetry: list[TelemetryPointResponse] = Field(default_factory=list)


@router.get(
    "/{asset_id}",
    response_model=AssetResponse,
    status_code=status.HTTP_200_OK,
    summary="Get a finalized asset",
    description="Return asset metadata, telemetry in recorded order, and a playback URL",
)
async def get_asset(
    asset_id: str,
    api_key: AuthenticatedUser,
    repository: AssetRepositoryDep,
    storage: StorageClientDep,
    settings: SettingsDep,
) -> AssetResponse:
    asset = await asyncio.to_thread(repository.get_asset, asset_id)
    if asset is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Asset {asset_id} not found",
        )

    points = await asyncio.to_thread(repository.list_telemetry, asset_id)
    read_url = await storage.generate_read_url(
        asset.object_path,
        expiry_seconds=settings.read_url_expiry_seconds,
    )

    return AssetResponse(
        asset_id=asset.asset_id,
        object_path=asset.object_path,
        start_utc=asset.start_time,
        duration_seconds=asset.duration_seconds,
        device_id=asset.device_id,
        finalized_at=asset.finalized_at,
        read_url=read_url,
        telemetry=[
            TelemetryPointResponse(
                timestamp=point.timestamp,
                lat=point.latitude,
                lon=point.longitude,
                relative_offset_seconds=point.relative_offset_seconds,
            )
            for point in points
        ],
    )
