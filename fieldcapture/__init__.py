"""
FieldCapture - delegated video and GPS telemetry upload for field devices.

This package contains the complete application:
- core: Framework-agnostic upload protocol (capabilities, telemetry, finalization)
- infrastructure: Object storage and Snowflake gateways
- api: FastAPI routes and dependencies
- config: Application configuration
"""

__version__ = "0.1.0"
