"""
Shared fixtures.

Everything runs against the in-memory gateways: MockStorageClient for
object storage and MockSnowflakeConnection for the database. Both keep
enough real behavior (signature checks, commit/rollback) that the upload
protocol can be exercised end to end without network access.
"""

import pytest

from fieldcapture.infrastructure.snowflake.client import MockSnowflakeConnection
from fieldcapture.infrastructure.snowflake.repositories.assets import AssetRepository
from fieldcapture.infrastructure.storage.client import MockStorageClient


@pytest.fixture
def storage() -> MockStorageClient:
    return MockStorageClient(container="video-signage")


@pytest.fixture
def connection() -> MockSnowflakeConnection:
    return MockSnowflakeConnection()


@pytest.fixture
def repository(connection) -> AssetRepository:
    repo = AssetRepository(connection)
    repo.create_schema()
    return repo
