"""
Request wiring for the upload API.

Settings are read once and turned into gateway configs here; the issuer
and coordinator are then assembled from those gateways per request. Route
handlers only ever see the finished services, and tests swap any layer
through app.dependency_overrides.

The database dependency is a generator so the connection is closed when
the request ends, including when finalize fails.
"""

import logging
from datetime import timedelta
from typing import Annotated, Generator

from fastapi import Depends, HTTPException, Security, status
from fastapi.security import APIKeyHeader

from ..config.settings import Settings, get_settings
from ..core.uploads.capability import CapabilityIssuer
from ..core.uploads.finalization import FinalizationCoordinator
from ..infrastructure.snowflake.client import (
    MockSnowflakeConnection,
    SnowflakeConfig,
    create_snowflake_connection,
)
from ..infrastructure.snowflake.repositories.assets import AssetRepository
from ..infrastructure.storage.client import StorageClient, StorageConfig, create_storage_client

logger = logging.getLogger(__name__)

# API Key security scheme
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)

# Global mock instances (shared across requests so uploads persist in dev)
_mock_storage_client = None
_mock_snowflake_connection = None


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------

async def verify_api_key(
    settings: Annotated[Settings, Depends(get_settings)],
    api_key: str = Security(api_key_header),
) -> str:
    """
    Check the device's X-API-Key against the configured keys.

    403 when the header is absent or the key is unknown.
    """
    if not api_key:
        logger.warning("Request missing API key")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="API key required. Provide X-API-Key header.",
        )

    if api_key not in settings.api_keys_list:
        logger.warning(
            "Invalid API key attempt",
            extra={"key_prefix": api_key[:4]}
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid API key",
        )

    return api_key


# ---------------------------------------------------------------------------
# Gateway Dependencies
# ---------------------------------------------------------------------------

def get_storage_client(
    settings: Annotated[Settings, Depends(get_settings)],
) -> StorageClient:
    """
    Provide the object storage gateway.

    The mock is shared by every request of the process, otherwise an
    object written through one capability would be gone by finalize.

    Raises ConfigurationError if storage credentials are missing.
    """
    global _mock_storage_client

    if settings.storage_mock_mode:
        if _mock_storage_client is None:
            _mock_storage_client = create_storage_client(
                config=_storage_config(settings),
                mock_mode=True,
            )
            logger.info("Created shared mock storage client for session")
        return _mock_storage_client

    client = create_storage_client(config=_storage_config(settings))
    logger.debug("Created S3 storage client")
    return client


def get_asset_repository(
    settings: Annotated[Settings, Depends(get_settings)],
) -> Generator[AssetRepository, None, None]:
    """
    Provide AssetRepository over a per-request Snowflake connection.

    In mock mode one in-memory connection backs every request, with the
    schema created on first use, so finalized assets can be read back
    by GET /assets. Concurrent finalize calls take turns on its
    transaction lock.
    """
    global _mock_snowflake_connection

    if settings.snowflake_mock_mode:
        if _mock_snowflake_connection is None:
            _mock_snowflake_connection = MockSnowflakeConnection()
            repo = AssetRepository(_mock_snowflake_connection)
            repo.create_schema()
            logger.info("Created shared mock Snowflake connection for session")

        yield AssetRepository(_mock_snowflake_connection)
        return

    config = SnowflakeConfig(
        account=settings.snowflake_account,
        user=settings.snowflake_user,
        password=settings.snowflake_password or None,
        private_key_path=settings.snowflake_private_key_path,
        private_key_base64=settings.snowflake_private_key_base64,
        database=settings.snowflake_database,
        schema=settings.snowflake_schema,
        warehouse=settings.snowflake_warehouse,
        role=settings.snowflake_role,
        network_timeout=int(settings.database_timeout_seconds),
    )

    with create_snowflake_connection(config=config) as conn:
        logger.debug("Created AssetRepository with Snowflake connection")
        yield AssetRepository(conn)


# ---------------------------------------------------------------------------
# Service Dependencies
# ---------------------------------------------------------------------------

def get_capability_issuer(
    settings: Annotated[Settings, Depends(get_settings)],
    storage: Annotated[StorageClient, Depends(get_storage_client)],
) -> CapabilityIssuer:
    """Provide the capability issuer. Stateless, so one per request is fine."""
    return CapabilityIssuer(
        storage=storage,
        lifetime=timedelta(minutes=settings.capability_lifetime_minutes),
        skew=timedelta(minutes=settings.capability_skew_minutes),
    )


def get_finalization_coordinator(
    settings: Annotated[Settings, Depends(get_settings)],
    storage: Annotated[StorageClient, Depends(get_storage_client)],
    repository: Annotated[AssetRepository, Depends(get_asset_repository)],
) -> FinalizationCoordinator:
    """Provide the finalization coordinator wired to storage and the database."""
    return FinalizationCoordinator(
        storage=storage,
        assets=repository,
        storage_timeout=settings.storage_timeout_seconds,
        database_timeout=settings.database_timeout_seconds,
    )


def _storage_config(settings: Settings) -> StorageConfig:
    timeout = settings.storage_timeout_seconds
    return StorageConfig(
        access_key_id=settings.storage_access_key_id,
        secret_access_key=settings.storage_secret_access_key,
        container=settings.storage_container,
        endpoint_url=settings.storage_endpoint_url,
        region=settings.storage_region,
        connect_timeout=min(5.0, timeout),
        read_timeout=timeout,
    )


# ---------------------------------------------------------------------------
# Convenience Type Aliases
# ---------------------------------------------------------------------------

# These type aliases make route signatures cleaner
AuthenticatedUser = Annotated[str, Depends(verify_api_key)]
StorageClientDep = Annotated[StorageClient, Depends(get_storage_client)]
AssetRepositoryDep = Annotated[AssetRepository, Depends(get_asset_repository)]
CapabilityIssuerDep = Annotated[CapabilityIssuer, Depends(get_capability_issuer)]
FinalizationCoordinatorDep = Annotated[FinalizationCoordinator, Depends(get_finalization_coordinator)]
SettingsDep = Annotated[Settings, Depends(get_settings)]
