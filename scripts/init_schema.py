#!/usr/bin/env python3
"""
Create the upload tables in Snowflake.

Creates assets and telemetry_points if they don't already exist. Safe to
run repeatedly.

Usage:
    python scripts/init_schema.py
    python scripts/init_schema.py --dry-run

Requires:
    - .env file with Snowflake credentials
"""

import sys
from pathlib import Path

# Add the project root to path so we can import our modules
sys.path.insert(0, str(Path(__file__).parent.parent))

from dotenv import load_dotenv

# Load environment variables
load_dotenv()

from fieldcapture.config.settings import get_settings
from fieldcapture.core.errors import UploadError
from fieldcapture.infrastructure.snowflake.client import SnowflakeConfig, create_snowflake_connection
from fieldcapture.infrastructure.snowflake.repositories.assets import SCHEMA_STATEMENTS, AssetRepository


def main():
    import argparse

    parser = argparse.ArgumentParser(description='Create upload tables in Snowflake')
    parser.add_argument('--dry-run', action='store_true', help='Print the DDL, don\'t execute it')
    args = parser.parse_args()

    if args.dry_run:
        for statement in SCHEMA_STATEMENTS:
            print(statement.strip() + ";\n")
        sys.exit(0)

    settings = get_settings()
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
    )

    print(f"Creating tables in {config.database}.{config.schema}")

    try:
        with create_snowflake_connection(config=config) as conn:
            AssetRepository(conn).create_schema()
    except UploadError as e:
        print(f"ERROR: {e.message}")
        sys.exit(1)

    print("Schema ready")
    sys.exit(0)


if __name__ == '__main__':
    main()
