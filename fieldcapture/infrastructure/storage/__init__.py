"""
Object storage integration for device video uploads.

Supports S3-compatible services (AWS S3, Cloudflare R2) via boto3.
Includes mock mode for local development without credentials.
"""

from .client import (
    CapabilityRejected,
    MockStorageClient,
    S3StorageClient,
    StorageClient,
    StorageConfig,
    create_storage_client,
)

__all__ = [
    "CapabilityRejected",
    "MockStorageClient",
    "S3StorageClient",
    "StorageClient",
    "StorageConfig",
    "create_storage_client",
]
