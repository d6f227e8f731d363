"""
Create the DynamoDB preferences table (e.g. on DynamoDB Local) if missing.
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from prefstore.dynamo_store import DynamoPreferenceStore
from prefstore.errors import StoreError

logger = logging.getLogger(__name__)


def main() -> int:
    parser = argparse.ArgumentParser(description="Create the preferences table")
    parser.add_argument(
        "--endpoint",
        type=str,
        default=os.environ.get("DYNAMODB_ENDPOINT", "http://localhost:8000"),
        help="DynamoDB endpoint URL",
    )
    parser.add_argument(
        "--table-name",
        type=str,
        default=os.environ.get("DYNAMODB_TABLE_NAME", "user-preferences"),
        help="Table to create",
    )
    parser.add_argument(
        "--region",
        type=str,
        default=os.environ.get("AWS_REGION", "us-east-1"),
        help="AWS region",
    )
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(levelname)s:%(message)s")

    store = DynamoPreferenceStore(
        table_name=args.table_name,
        region=args.region,
        endpoint_url=args.endpoint,
    )
    logger.info("Creating table '%s' at %s", args.table_name, args.endpoint)
    try:
        created = store.ensure_table()
    except StoreError as exc:
        logger.error("Table creation failed: %s", exc)
        return 1

    if created:
        logger.info("Table created.")
    else:
        logger.info("Table already exists.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
