"""
Application configuration using Pydantic settings.

Configuration is loaded from environment variables once, at process start,
and passed by reference into the gateway factories. Request code never
reads the environment itself.

Mock modes enable local development without object storage or Snowflake.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Upload service settings, one environment variable per field.

    Names are case-insensitive (STORAGE_CONTAINER or storage_container).
    List-valued settings such as api_keys are comma-separated strings.
    """

    # API Configuration
    api_title: str = "FieldCapture Upload API"
    api_version: str = "v1"
    api_keys: str = Field(
        default="dev-key-1,dev-key-2",
        description="Comma-separated API keys. Using a list enables key rotation without downtime."
    )

    # Object Storage Configuration (S3-compatible)
    storage_access_key_id: str = Field(
        default="",
        description="Object storage access key ID"
    )
    storage_secret_access_key: str = Field(
        default="",
        description="Object storage secret access key"
    )
    storage_endpoint_url: str = Field(
        default="",
        description="HTTPS endpoint of the S3-compatible service, e.g. https://<account>.r2.cloudflarestorage.com"
    )
    storage_region: str = Field(
        default="auto",
        description="Storage region. R2 uses 'auto'."
    )
    storage_container: str = Field(
        default="video-signage",
        description="Container (bucket) that device videos are uploaded to"
    )
    storage_mock_mode: bool = Field(
        default=False,
        description="Use in-memory mock instead of real object storage."
    )

    # Snowflake Configuration
    snowflake_account: str = Field(
        default="",
        description="Snowflake account identifier"
    )
    snowflake_user: str = Field(
        default="",
        description="Snowflake service account username"
    )
    snowflake_password: str = Field(
        default="",
        description="Snowflake service account password"
    )
    snowflake_private_key_path: Optional[str] = Field(
        default=None,
        description="Path to RSA private key file for key-pair authentication"
    )
    snowflake_private_key_base64: Optional[str] = Field(
        default=None,
        description="Base64-encoded private key (for deployment, alternative to file path)"
    )
    snowflake_database: str = Field(
        default="FIELDCAPTURE",
        description="Snowflake database name"
    )
    snowflake_schema: str = Field(
        default="UPLOADS",
        description="Snowflake schema name"
    )
    snowflake_warehouse: str = Field(
        default="COMPUTE_WH",
        description="Snowflake warehouse for query execution"
    )
    snowflake_role: Optional[str] = Field(
        default=None,
        description="Snowflake role to use (optional)"
    )
    snowflake_mock_mode: bool = Field(
        default=False,
        description="Use in-memory mock instead of real Snowflake connection. Enables local dev without DB."
    )

    # Upload Protocol
    capability_lifetime_minutes: int = Field(
        default=15,
        gt=0,
        description="How long an upload URL stays valid."
    )
    capability_skew_minutes: int = Field(
        default=1,
        ge=0,
        description="How far before issuance the upload URL becomes valid, to absorb clock skew."
    )
    read_url_expiry_seconds: int = Field(
        default=3600,
        gt=0,
        description="Lifetime of playback URLs returned by the asset endpoint."
    )
    invocation_timeout_seconds: float = Field(
        default=230.0,
        gt=0,
        description="Platform request timeout. Storage and database waits are budgeted from it."
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )

    # CORS
    cors_origins: str = Field(
        default="http://localhost:3000",
        description="Comma-separated list of allowed CORS origins. Use * for development only."
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @property
    def api_keys_list(self) -> list[str]:
        """Parse comma-separated API keys into a list."""
        return [key.strip() for key in self.api_keys.split(",") if key.strip()]

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse comma-separated CORS origins into a list."""
        if self.cors_origins == "*":
            return ["*"]
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def storage_timeout_seconds(self) -> float:
        """
        Budget for one storage probe.

        Finalize makes two probes and one transaction; together they must
        fit inside the invocation timeout with room to spare.
        """
        return max(1.0, self.invocation_timeout_seconds * 0.1)

    @property
    def database_timeout_seconds(self) -> float:
        """Budget for the finalize transaction."""
        return max(1.0, self.invocation_timeout_seconds * 0.5)

    def validate_required_fields(self) -> list[str]:
        """
        Names of the environment variables that still need a value.

        A gateway in mock mode needs no credentials, so this can only be
        decided after loading, not by field validation.
        """
        missing = []

        if not self.storage_mock_mode:
            if not self.storage_access_key_id:
                missing.append("STORAGE_ACCESS_KEY_ID")
            if not self.storage_secret_access_key:
                missing.append("STORAGE_SECRET_ACCESS_KEY")
            if not self.storage_endpoint_url:
                missing.append("STORAGE_ENDPOINT_URL")

        if not self.snowflake_mock_mode:
            if not self.snowflake_account:
                missing.append("SNOWFLAKE_ACCOUNT")
            if not self.snowflake_user:
                missing.append("SNOWFLAKE_USER")
            # Need either password or private key
            if not (
                self.snowflake_password
                or self.snowflake_private_key_path
                or self.snowflake_private_key_base64
            ):
                missing.append("SNOWFLAKE_PASSWORD or SNOWFLAKE_PRIVATE_KEY_PATH")

        return missing


@lru_cache()
def get_settings() -> Settings:
    """
    Settings for this process, loaded on first call.

    Tests override it through app.dependency_overrides or reset it with
    get_settings.cache_clear().
    """
    return Settings()
