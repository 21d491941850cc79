"""
Request schemas for the upload protocol.

A single pydantic pass turns a raw request body into a fully-typed request,
or into a list of field-level errors, before any storage or database I/O.
Field names follow the device wire format (camelCase); the legacy names
sent by older device builds are accepted as aliases.
"""

import re
from collections.abc import Iterable, Mapping
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

# ISO-8601 values lead with a calendar date; epoch numbers never do
ISO8601_PREFIX = re.compile(r"\d{4}-\d{2}-\d{2}")


def looks_like_iso8601(value: Any) -> bool:
    return isinstance(value, str) and ISO8601_PREFIX.match(value.strip()) is not None


class CapabilityRequest(BaseModel):
    """Body of POST /capability."""
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    device_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("deviceId", "device_id"),
        description="Identifier of the capturing device",
    )

    @field_validator("device_id")
    @classmethod
    def _blank_device_is_none(cls, value: Optional[str]) -> Optional[str]:
        return value or None


class FinalizeRequest(BaseModel):
    """
    Body of POST /finalize.

    telemetry is kept loosely typed on purpose: individual samples are
    reconciled later and malformed ones are dropped, but the field itself
    must be an array when present.
    """
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    asset_id: str = Field(
        min_length=1,
        validation_alias=AliasChoices("assetId", "videoID", "asset_id"),
    )
    object_path: str = Field(
        min_length=1,
        validation_alias=AliasChoices("objectPath", "blobPath", "object_path"),
    )
    start_utc: datetime = Field(
        validation_alias=AliasChoices("startUtc", "start_utc"),
    )
    duration_seconds: int = Field(
        gt=0,
        validation_alias=AliasChoices("durationSeconds", "durationSec", "duration_seconds"),
    )
    device_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("deviceId", "device_id"),
    )
    telemetry: Optional[list[Any]] = Field(
        default=None,
        validation_alias=AliasChoices("telemetry", "gps"),
    )

    @field_validator("start_utc", mode="before")
    @classmethod
    def _require_iso8601(cls, value: Any) -> Any:
        if isinstance(value, datetime) or looks_like_iso8601(value):
            return value
        raise ValueError("startUtc must be an ISO-8601 timestamp")

    @field_validator("start_utc")
    @classmethod
    def _normalize_to_utc(cls, value: datetime) -> datetime:
        # Naive values are read as UTC, matching the field name
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        try:
            return value.astimezone(timezone.utc)
        except OverflowError:
            raise ValueError("startUtc is outside the supported date range")

    @field_validator("device_id")
    @classmethod
    def _blank_device_is_none(cls, value: Optional[str]) -> Optional[str]:
        return value or None


def field_errors(raw_errors: Iterable[Mapping[str, Any]]) -> list[dict[str, Any]]:
    """
    Flatten pydantic errors into {field, message, type} entries.

    Accepts the output of pydantic.ValidationError.errors() or FastAPI's
    RequestValidationError.errors(), which share a shape.
    """
    errors = []
    for error in raw_errors:
        location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        errors.append({
            "field": location or "body",
            "message": error.get("msg", "invalid value"),
            "type": error.get("type", "value_error"),
        })
    return errors


def has_missing_field(errors: list[dict[str, Any]]) -> bool:
    return any(error["type"] == "missing" for error in errors)
