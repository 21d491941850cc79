"""
Health check endpoints.

We provide two endpoints:
- /health: Basic liveness check (is the process running?)
- /health/ready: Readiness check (can we reach storage and the database?)

The distinction matters in orchestration systems where liveness and
readiness have different behaviors.
"""

import asyncio
import logging
from contextlib import closing
from typing import Any

from fastapi import APIRouter, Response, status
from pydantic import BaseModel

from ... import __version__
from ...core.errors import UploadError
from ..dependencies import SettingsDep, get_asset_repository, get_storage_client

logger = logging.getLogger(__name__)

router = APIRouter()

PROBE_PATH = "health/.probe"


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    details: dict[str, Any] = {}


class ReadinessCheck(BaseModel):
    """Individual readiness check result."""
    name: str
    status: str  # "ok" or "error"
    error: str | None = None


class ReadinessResponse(BaseModel):
    """Readiness check response with details."""
    status: str  # "ready" or "not_ready"
    version: str
    checks: list[ReadinessCheck]


@router.get(
    "",
    response_model=HealthResponse,
    status_code=status.HTTP_200_OK,
    summary="Basic health check",
    description="Returns 200 if the service is running. Does not check dependencies.",
)
async def health_check(settings: SettingsDep) -> HealthResponse:
    """Liveness check - is the process alive?"""
    return HealthResponse(
        status="ok",
        version=__version__,
        details={
            "mock_mode": {
                "snowflake": settings.snowflake_mock_mode,
                "storage": settings.storage_mock_mode,
            }
        }
    )


@router.get(
    "/ready",
    response_model=ReadinessResponse,
    status_code=status.HTTP_200_OK,
    summary="Readiness check",
    description="Returns 200 if the service can handle traffic. Checks external dependencies.",
    responses={
        503: {
            "description": "Service not ready",
            "model": ReadinessResponse,
        }
    },
)
async def readiness_check(
    settings: SettingsDep,
    response: Response,
) -> ReadinessResponse:
    """
    Readiness check - can we serve traffic?

    Checks configuration first; storage and database are only probed when
    the configuration is complete. Returns 503 if any check fails.
    """
    checks: list[ReadinessCheck] = []

    missing_fields = settings.validate_required_fields()
    if missing_fields:
        checks.append(ReadinessCheck(
            name="configuration",
            status="error",
            error=f"Missing required fields: {', '.join(missing_fields)}"
        ))
    else:
        checks.append(ReadinessCheck(name="configuration", status="ok"))
        checks.append(await _check_storage(settings))
        checks.append(await _check_database(settings))

    all_ok = all(check.status == "ok" for check in checks)
    if not all_ok:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        logger.warning(
            "Readiness check failed",
            extra={
                "checks": [
                    {"name": c.name, "status": c.status, "error": c.error}
                    for c in checks
                ]
            }
        )

    return ReadinessResponse(
        status="ready" if all_ok else "not_ready",
        version=__version__,
        checks=checks,
    )


async def _check_storage(settings) -> ReadinessCheck:
    try:
        storage = get_storage_client(settings)
        await asyncio.wait_for(
            storage.object_exists(PROBE_PATH),
            timeout=settings.storage_timeout_seconds,
        )
    except (UploadError, asyncio.TimeoutError) as e:
        logger.error("Storage health check failed", extra={"error": str(e)})
        return ReadinessCheck(name="storage", status="error", error="storage unreachable")
    return ReadinessCheck(name="storage", status="ok")


async def _check_database(settings) -> ReadinessCheck:
    try:
        with closing(get_asset_repository(settings)) as repositories:
            repository = next(repositories)
            await asyncio.wait_for(
                asyncio.to_thread(repository.ping),
                timeout=settings.database_timeout_seconds,
            )
    except Exception as e:
        logger.error("Database health check failed", extra={"error": str(e)})
        return ReadinessCheck(name="database", status="error", error="database unreachable")
    return ReadinessCheck(name="database", status="ok")
