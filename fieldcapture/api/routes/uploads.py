"""
Delegated upload endpoints.

The flow a device follows:
1. POST /capability → asset ID, object path and a signed write URL
2. PUT the video bytes to the write URL (straight to storage, not here)
3. POST /finalize → we check the object landed and record it with its GPS track

Errors come back as {error, detail, retryable, errors?}. 400 means fix the
request; 500 with retryable=true means try the same call again later.
"""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, status
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ...core.uploads.schemas import CapabilityRequest, FinalizeRequest
from ..dependencies import (
    AuthenticatedUser,
    CapabilityIssuerDep,
    FinalizationCoordinatorDep,
)

logger = logging.getLogger(__name__)

router = APIRouter()

ERROR_RESPONSES = {
    400: {"description": "Request is invalid or the uploaded object is missing/empty"},
    500: {"description": "Configuration, storage or database failure"},
}


# ---------------------------------------------------------------------------
# Response Models
# ---------------------------------------------------------------------------

class CapabilityResponse(BaseModel):
    """A signed write URL for one new asset."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    asset_id: str = Field(description="Identifier to send back on finalize")
    object_path: str = Field(description="Object path the video must be written to")
    write_url: str = Field(description="Signed, write-only HTTPS URL")
    expires_at: datetime = Field(description="When the write URL stops working")
    issued_at: datetime = Field(description="When the capability was issued")
    device_id: Optional[str] = Field(default=None, description="Echo of the requesting device")


class FinalizeResponse(BaseModel):
    """Confirmation that an upload was recorded."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    status: str = Field(description="Always 'ok' on success")
    message: str = Field(description="'Finalized' or 'Already finalized'")
    asset_id: str = Field(description="Finalized asset")
    telemetry_count: int = Field(description="Telemetry points recorded")
    already_finalized: bool = Field(description="True if an earlier call already recorded this asset")


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post(
    "/capability",
    response_model=CapabilityResponse,
    status_code=status.HTTP_200_OK,
    summary="Request an upload capability",
    description="Issue a write-only, short-lived URL for uploading one video directly to storage",
    responses={500: ERROR_RESPONSES[500]},
)
async def issue_capability(
    api_key: AuthenticatedUser,
    issuer: CapabilityIssuerDep,
    request: Optional[CapabilityRequest] = None,
) -> CapabilityResponse:
    """
    Issue a capability for a new asset.

    The device should upload before expiresAt; if it misses the window it
    can simply ask for a new capability.
    """
    device_id = request.device_id if request else None

    issued = await issuer.issue(device_id=device_id)

    return CapabilityResponse(
        asset_id=issued.asset_id,
        object_path=issued.object_path,
        write_url=issued.write_url,
        expires_at=issued.expires_at,
        issued_at=issued.intent.issued_at,
        device_id=issued.intent.device_id,
    )


@router.post(
    "/finalize",
    response_model=FinalizeResponse,
    status_code=status.HTTP_200_OK,
    summary="Finalize an upload",
    description="Verify the uploaded object and record it with its telemetry in one transaction",
    responses=ERROR_RESPONSES,
)
async def finalize_upload(
    request: FinalizeRequest,
    api_key: AuthenticatedUser,
    coordinator: FinalizationCoordinatorDep,
) -> FinalizeResponse:
    """
    Record a completed upload.

    Safe to retry: a repeat call for an asset that's already recorded
    succeeds without writing anything.
    """
    logger.info(
        "Finalize request received",
        extra={
            "asset_id": request.asset_id,
            "object_path": request.object_path,
            "telemetry_samples": len(request.telemetry) if request.telemetry else 0,
        }
    )

    result = await coordinator.finalize_request(request)

    return FinalizeResponse(**result.to_payload())
