"""
DynamoDB-backed preference store.

Each user owns a single item::

    {"PK": "USER#<userId>", "preferences": {M: {key: {S: value}}},
     "createdAt": <RFC 3339>, "updatedAt": <RFC 3339>}

All writes are single ``UpdateItem``/``DeleteItem`` requests evaluated by
DynamoDB, so concurrent writers for the same user never overwrite each
other's keys.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from prefstore.errors import (
    PreferenceLimitError,
    StoreDataError,
    StoreUnavailableError,
)
from prefstore.store import check_set_size, record_key, utc_timestamp

logger = logging.getLogger(__name__)

PARTITION_KEY = "PK"
PREFERENCES_ATTR = "preferences"
CONDITION_FAILED = "ConditionalCheckFailedException"
VALIDATION_FAILED = "ValidationException"

# Merge alternates between "set exists" and "create set" requests; a third
# party can only flip the outcome by creating or deleting the whole set.
MERGE_ROUNDS = 5


class _ConditionFailed(Exception):
    pass


def _string_map(preferences: Dict[str, str]) -> dict:
    return {"M": {key: {"S": value} for key, value in preferences.items()}}


def unmarshal_preferences(item: Optional[dict]) -> Optional[Dict[str, str]]:
    """Extract the preference map from a raw DynamoDB item."""
    if not item or PREFERENCES_ATTR not in item:
        return None
    attr = item[PREFERENCES_ATTR]
    if not isinstance(attr, dict) or "M" not in attr:
        raise StoreDataError(
            f"{PREFERENCES_ATTR} attribute of {item.get(PARTITION_KEY)} is not a map"
        )
    result: Dict[str, str] = {}
    for key, value in attr["M"].items():
        if not isinstance(value, dict) or "S" not in value:
            logger.warning(
                "Skipping non-string preference %r in %s", key, item.get(PARTITION_KEY)
            )
            continue
        result[key] = value["S"]
    return result


@dataclass
class DynamoPreferenceStore:
    """
    Preference store on a DynamoDB table with a string hash key ``PK``.
    """

    table_name: str
    region: str = "us-east-1"
    endpoint_url: Optional[str] = None
    connect_timeout: float = 2.0
    read_timeout: float = 5.0
    max_attempts: int = 3
    client: Any = None

    def __post_init__(self):
        if self.client is None:
            # Retries are the client's business; the store surfaces the
            # final error as-is.
            config = Config(
                connect_timeout=self.connect_timeout,
                read_timeout=self.read_timeout,
                retries={"max_attempts": self.max_attempts, "mode": "standard"},
            )
            self.client = boto3.client(
                "dynamodb",
                region_name=self.region,
                endpoint_url=self.endpoint_url or None,
                config=config,
            )

    @classmethod
    def from_settings(cls, settings) -> "DynamoPreferenceStore":
        return cls(
            table_name=settings.dynamodb_table_name,
            region=settings.aws_region,
            endpoint_url=settings.dynamodb_endpoint,
            connect_timeout=settings.backend_connect_timeout,
            read_timeout=settings.backend_read_timeout,
            max_attempts=settings.backend_max_attempts,
        )

    def _key(self, user_id: str) -> dict:
        return {PARTITION_KEY: {"S": record_key(user_id)}}

    def _request(self, operation: str, document_path: bool = False, **params) -> dict:
        """
        Run one client call, mapping failures onto the store error kinds.

        ``document_path`` marks writes addressing ``preferences.<key>``; a
        ValidationException there means the stored attribute is not a map.
        """
        method = getattr(self.client, operation)
        try:
            return method(TableName=self.table_name, **params)
        except ClientError as exc:
            error = exc.response.get("Error", {})
            code = error.get("Code")
            if code == CONDITION_FAILED:
                raise _ConditionFailed() from exc
            if code == VALIDATION_FAILED:
                if "item size" in error.get("Message", "").lower():
                    raise PreferenceLimitError(
                        "preference set exceeds the item size limit"
                    ) from exc
                if document_path:
                    raise StoreDataError(f"{operation}: {exc}") from exc
            raise StoreUnavailableError(f"{operation}: {exc}") from exc
        except BotoCoreError as exc:
            raise StoreUnavailableError(f"{operation}: {exc}") from exc

    def get_all(self, user_id: str) -> Optional[Dict[str, str]]:
        response = self._request(
            "get_item", Key=self._key(user_id), ConsistentRead=True
        )
        return unmarshal_preferences(response.get("Item"))

    def get(self, user_id: str, key: str) -> Optional[str]:
        preferences = self.get_all(user_id)
        if preferences is None:
            return None
        return preferences.get(key)

    def replace_all(self, user_id: str, preferences: Dict[str, str]) -> None:
        check_set_size(preferences)
        self._request(
            "update_item",
            Key=self._key(user_id),
            UpdateExpression=(
                "SET preferences = :prefs, updatedAt = :now, "
                "createdAt = if_not_exists(createdAt, :now)"
            ),
            ExpressionAttributeValues={
                ":prefs": _string_map(preferences),
                ":now": {"S": utc_timestamp()},
            },
        )

    def merge_request(self, user_id: str, preferences: Dict[str, str]) -> dict:
        """UpdateItem parameters setting each key inside an existing map."""
        now = utc_timestamp()
        names: Dict[str, str] = {}
        values: Dict[str, dict] = {":now": {"S": now}}
        assignments = []
        for i, (key, value) in enumerate(preferences.items()):
            names[f"#k{i}"] = key
            values[f":v{i}"] = {"S": value}
            assignments.append(f"preferences.#k{i} = :v{i}")
        assignments.append("updatedAt = :now")

        params = dict(
            Key=self._key(user_id),
            UpdateExpression="SET " + ", ".join(assignments),
            ConditionExpression="attribute_exists(preferences)",
            ExpressionAttributeValues=values,
            ReturnValues="ALL_NEW",
        )
        if names:
            params["ExpressionAttributeNames"] = names
        return params

    def _merge_into_existing(self, user_id: str, preferences: Dict[str, str]) -> dict:
        return self._request(
            "update_item", document_path=True, **self.merge_request(user_id, preferences)
        )

    def _create_with(self, user_id: str, preferences: Dict[str, str]) -> dict:
        return self._request(
            "update_item",
            Key=self._key(user_id),
            UpdateExpression=(
                "SET preferences = :prefs, updatedAt = :now, "
                "createdAt = if_not_exists(createdAt, :now)"
            ),
            ConditionExpression="attribute_not_exists(preferences)",
            ExpressionAttributeValues={
                ":prefs": _string_map(preferences),
                ":now": {"S": utc_timestamp()},
            },
            ReturnValues="ALL_NEW",
        )

    def update(self, user_id: str, preferences: Dict[str, str]) -> Dict[str, str]:
        for _ in range(MERGE_ROUNDS):
            try:
                response = self._merge_into_existing(user_id, preferences)
            except _ConditionFailed:
                pass
            else:
                return unmarshal_preferences(response.get("Attributes")) or {}

            try:
                response = self._create_with(user_id, preferences)
            except _ConditionFailed:
                logger.debug("Preferences for %s created concurrently; retrying merge", user_id)
                continue
            return unmarshal_preferences(response.get("Attributes")) or {}

        raise StoreUnavailableError(
            f"update_item: merge for {record_key(user_id)} kept conflicting"
        )

    def delete_all(self, user_id: str) -> None:
        self._request("delete_item", Key=self._key(user_id))

    def delete(self, user_id: str, key: str) -> None:
        try:
            self._request(
                "update_item",
                document_path=True,
                Key=self._key(user_id),
                UpdateExpression="REMOVE preferences.#key SET updatedAt = :now",
                ConditionExpression="attribute_exists(preferences)",
                ExpressionAttributeNames={"#key": key},
                ExpressionAttributeValues={":now": {"S": utc_timestamp()}},
            )
        except _ConditionFailed:
            # No preference set; nothing to remove.
            return

    def ensure_table(self) -> bool:
        """Create the table if it does not exist. Returns True if created."""
        try:
            self.client.describe_table(TableName=self.table_name)
            return False
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") != "ResourceNotFoundException":
                raise StoreUnavailableError(f"describe_table: {exc}") from exc
        except BotoCoreError as exc:
            raise StoreUnavailableError(f"describe_table: {exc}") from exc

        self._request(
            "create_table",
            AttributeDefinitions=[
                {"AttributeName": PARTITION_KEY, "AttributeType": "S"}
            ],
            KeySchema=[{"AttributeName": PARTITION_KEY, "KeyType": "HASH"}],
            BillingMode="PAY_PER_REQUEST",
        )
        self.client.get_waiter("table_exists").wait(TableName=self.table_name)
        return True
