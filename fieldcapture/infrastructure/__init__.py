"""
Infrastructure layer - external service integrations.

Each subdirectory wraps an external dependency:
- snowflake: Database persistence and the relational store gateway
- storage: Object storage (S3/R2) and capability signing

These wrappers translate between external formats and our domain models.
"""
