"""
Repository pattern implementations for Snowflake.

Repositories translate between domain models and database representations.
"""

from .assets import AssetRepository, SaveOutcome

__all__ = ["AssetRepository", "SaveOutcome"]
