"""
Snowflake persistence for finalized uploads.

client: connection factory, RelationalStore gateway, mock connection
repositories: SQL for the assets and telemetry_points tables
"""
