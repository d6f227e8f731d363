import os
import unittest
import uuid

import boto3
from botocore.stub import ANY, Stubber

from prefstore.config import Settings
from prefstore.dynamo_store import DynamoPreferenceStore, unmarshal_preferences
from prefstore.errors import PreferenceLimitError, StoreDataError, StoreUnavailableError
from prefstore.store import MAX_SET_BYTES

TABLE = "user-preferences"
# DynamoDB rejects expressions longer than 4 KB.
MAX_EXPRESSION_LENGTH = 4096
ALICE_KEY = {"PK": {"S": "USER#alice"}}


def _item(preferences: dict) -> dict:
    return {
        "PK": {"S": "USER#alice"},
        "preferences": {"M": {k: {"S": v} for k, v in preferences.items()}},
        "createdAt": {"S": "2024-01-01T00:00:00Z"},
        "updatedAt": {"S": "2024-01-01T00:00:00Z"},
    }


class DynamoPreferenceStoreTests(unittest.TestCase):
    """
    Asserts the exact requests sent to DynamoDB using botocore's Stubber.
    """

    def setUp(self):
        client = boto3.client(
            "dynamodb",
            region_name="us-east-1",
            aws_access_key_id="testing",
            aws_secret_access_key="testing",
        )
        self.stubber = Stubber(client)
        self.stubber.activate()
        self.store = DynamoPreferenceStore(table_name=TABLE, client=client)

    def tearDown(self):
        self.stubber.deactivate()

    def _expect_get(self, response: dict):
        self.stubber.add_response(
            "get_item",
            response,
            {"TableName": TABLE, "Key": ALICE_KEY, "ConsistentRead": True},
        )

    def _condition_failed(self, expected_params=None):
        self.stubber.add_client_error(
            "update_item",
            service_error_code="ConditionalCheckFailedException",
            service_message="The conditional request failed",
            http_status_code=400,
            expected_params=expected_params,
        )

    def test_get_all_absent(self):
        self._expect_get({})
        self.assertIsNone(self.store.get_all("alice"))
        self.stubber.assert_no_pending_responses()

    def test_get_all_present(self):
        self._expect_get({"Item": _item({"theme": "dark"})})
        self.assertEqual(self.store.get_all("alice"), {"theme": "dark"})

    def test_get_all_empty_map_is_not_absent(self):
        self._expect_get({"Item": _item({})})
        self.assertEqual(self.store.get_all("alice"), {})

    def test_get_single_key(self):
        self._expect_get({"Item": _item({"theme": "dark"})})
        self._expect_get({"Item": _item({"theme": "dark"})})
        self._expect_get({})
        self.assertEqual(self.store.get("alice", "theme"), "dark")
        self.assertIsNone(self.store.get("alice", "lang"))
        self.assertIsNone(self.store.get("alice", "theme"))

    def test_malformed_preferences_attribute(self):
        item = _item({})
        item["preferences"] = {"S": "oops"}
        self._expect_get({"Item": item})
        with self.assertRaises(StoreDataError):
            self.store.get_all("alice")

    def test_non_string_entries_skipped(self):
        item = _item({"theme": "dark"})
        item["preferences"]["M"]["count"] = {"N": "3"}
        self._expect_get({"Item": item})
        self.assertEqual(self.store.get_all("alice"), {"theme": "dark"})

    def test_replace_all_is_single_update(self):
        self.stubber.add_response(
            "update_item",
            {},
            {
                "TableName": TABLE,
                "Key": ALICE_KEY,
                "UpdateExpression": (
                    "SET preferences = :prefs, updatedAt = :now, "
                    "createdAt = if_not_exists(createdAt, :now)"
                ),
                "ExpressionAttributeValues": {
                    ":prefs": {"M": {"theme": {"S": "dark"}, "lang": {"S": "en"}}},
                    ":now": {"S": ANY},
                },
            },
        )
        self.store.replace_all("alice", {"theme": "dark", "lang": "en"})
        self.stubber.assert_no_pending_responses()

    def test_update_existing_uses_attribute_paths(self):
        self.stubber.add_response(
            "update_item",
            {"Attributes": _item({"theme": "dark", "lang": "fr"})},
            {
                "TableName": TABLE,
                "Key": ALICE_KEY,
                "UpdateExpression": (
                    "SET preferences.#k0 = :v0, preferences.#k1 = :v1, "
                    "updatedAt = :now"
                ),
                "ConditionExpression": "attribute_exists(preferences)",
                "ExpressionAttributeNames": {"#k0": "lang", "#k1": "tz"},
                "ExpressionAttributeValues": {
                    ":v0": {"S": "fr"},
                    ":v1": {"S": "UTC"},
                    ":now": {"S": ANY},
                },
                "ReturnValues": "ALL_NEW",
            },
        )
        merged = self.store.update("alice", {"lang": "fr", "tz": "UTC"})
        self.assertEqual(merged, {"theme": "dark", "lang": "fr"})
        self.stubber.assert_no_pending_responses()

    def test_update_absent_creates_set(self):
        self._condition_failed()
        self.stubber.add_response(
            "update_item",
            {"Attributes": _item({"lang": "fr"})},
            {
                "TableName": TABLE,
                "Key": ALICE_KEY,
                "UpdateExpression": (
                    "SET preferences = :prefs, updatedAt = :now, "
                    "createdAt = if_not_exists(createdAt, :now)"
                ),
                "ConditionExpression": "attribute_not_exists(preferences)",
                "ExpressionAttributeValues": {
                    ":prefs": {"M": {"lang": {"S": "fr"}}},
                    ":now": {"S": ANY},
                },
                "ReturnValues": "ALL_NEW",
            },
        )
        self.assertEqual(self.store.update("alice", {"lang": "fr"}), {"lang": "fr"})
        self.stubber.assert_no_pending_responses()

    def test_update_retries_when_set_created_concurrently(self):
        self._condition_failed()
        self._condition_failed()
        self.stubber.add_response(
            "update_item", {"Attributes": _item({"theme": "dark", "lang": "fr"})}
        )
        merged = self.store.update("alice", {"lang": "fr"})
        self.assertEqual(merged, {"theme": "dark", "lang": "fr"})
        self.stubber.assert_no_pending_responses()

    def test_update_gives_up_after_repeated_conflicts(self):
        from prefstore.dynamo_store import MERGE_ROUNDS

        for _ in range(MERGE_ROUNDS * 2):
            self._condition_failed()
        with self.assertRaises(StoreUnavailableError):
            self.store.update("alice", {"lang": "fr"})

    def test_delete_key(self):
        self.stubber.add_response(
            "update_item",
            {},
            {
                "TableName": TABLE,
                "Key": ALICE_KEY,
                "UpdateExpression": "REMOVE preferences.#key SET updatedAt = :now",
                "ConditionExpression": "attribute_exists(preferences)",
                "ExpressionAttributeNames": {"#key": "theme"},
                "ExpressionAttributeValues": {":now": {"S": ANY}},
            },
        )
        self.store.delete("alice", "theme")
        self.stubber.assert_no_pending_responses()

    def test_delete_key_on_absent_set_is_noop(self):
        self._condition_failed()
        self.store.delete("alice", "theme")
        self.stubber.assert_no_pending_responses()

    def test_delete_all(self):
        self.stubber.add_response(
            "delete_item", {}, {"TableName": TABLE, "Key": ALICE_KEY}
        )
        self.store.delete_all("alice")
        self.stubber.assert_no_pending_responses()

    def test_backend_errors_are_unavailable(self):
        self.stubber.add_client_error(
            "get_item",
            service_error_code="ProvisionedThroughputExceededException",
            http_status_code=400,
        )
        with self.assertRaises(StoreUnavailableError):
            self.store.get_all("alice")

        self.stubber.add_client_error(
            "delete_item",
            service_error_code="InternalServerError",
            http_status_code=500,
        )
        with self.assertRaises(StoreUnavailableError):
            self.store.delete_all("alice")

    def _validation_error(self, operation: str, message: str):
        self.stubber.add_client_error(
            operation,
            service_error_code="ValidationException",
            service_message=message,
            http_status_code=400,
        )

    def test_merge_request_for_max_preferences_fits_expression_limit(self):
        limit = Settings(_env_file=None, jwt_secret="s").max_preferences
        preferences = {f"key-{i:03d}" * 10: "v" * 4096 for i in range(limit)}
        params = self.store.merge_request("alice", preferences)
        self.assertLessEqual(len(params["UpdateExpression"]), MAX_EXPRESSION_LENGTH)
        self.assertLessEqual(
            len(params["ConditionExpression"]), MAX_EXPRESSION_LENGTH
        )
        self.assertEqual(len(params["ExpressionAttributeNames"]), limit)

    def test_update_on_non_map_preferences_is_data_error(self):
        self._validation_error(
            "update_item",
            "The document path provided in the update expression is invalid for update",
        )
        with self.assertRaises(StoreDataError):
            self.store.update("alice", {"lang": "fr"})

    def test_delete_key_on_non_map_preferences_is_data_error(self):
        self._validation_error(
            "update_item",
            "The document path provided in the update expression is invalid for update",
        )
        with self.assertRaises(StoreDataError):
            self.store.delete("alice", "theme")

    def test_item_size_error_is_limit_error(self):
        self._validation_error(
            "update_item", "Item size to update has exceeded the maximum allowed size"
        )
        with self.assertRaises(PreferenceLimitError):
            self.store.update("alice", {"lang": "fr"})

    def test_other_validation_errors_are_unavailable(self):
        self._validation_error("get_item", "One or more parameter values were invalid")
        with self.assertRaises(StoreUnavailableError):
            self.store.get_all("alice")

    def test_replace_all_over_set_limit_sends_nothing(self):
        with self.assertRaises(PreferenceLimitError):
            self.store.replace_all("alice", {"big": "x" * (MAX_SET_BYTES + 1)})
        self.stubber.assert_no_pending_responses()

    def test_ensure_table_existing(self):
        self.stubber.add_response(
            "describe_table",
            {"Table": {"TableName": TABLE, "TableStatus": "ACTIVE"}},
            {"TableName": TABLE},
        )
        self.assertFalse(self.store.ensure_table())


class UnmarshalPreferencesTests(unittest.TestCase):
    def test_missing_item_or_attribute(self):
        self.assertIsNone(unmarshal_preferences(None))
        self.assertIsNone(unmarshal_preferences({"PK": {"S": "USER#alice"}}))

    def test_string_map(self):
        item = {"preferences": {"M": {"a": {"S": "1"}}}}
        self.assertEqual(unmarshal_preferences(item), {"a": "1"})


@unittest.skipUnless(
    os.environ.get("DYNAMODB_ENDPOINT"),
    "DYNAMODB_ENDPOINT not set; skipping integration test",
)
class DynamoIntegrationTests(unittest.TestCase):
    """
    Runs against DynamoDB Local, e.g.
    DYNAMODB_ENDPOINT=http://localhost:8000 pytest -k Integration
    """

    @classmethod
    def setUpClass(cls):
        os.environ.setdefault("AWS_ACCESS_KEY_ID", "test")
        os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "test")
        cls.store = DynamoPreferenceStore(
            table_name=os.environ.get("DYNAMODB_TABLE_NAME", TABLE),
            endpoint_url=os.environ["DYNAMODB_ENDPOINT"],
        )
        cls.store.ensure_table()

    def setUp(self):
        self.user = f"it-{uuid.uuid4().hex}"

    def tearDown(self):
        self.store.delete_all(self.user)

    def test_put_and_get_all(self):
        self.assertIsNone(self.store.get_all(self.user))
        self.store.replace_all(self.user, {"theme": "dark", "lang": "en"})
        self.assertEqual(
            self.store.get_all(self.user), {"theme": "dark", "lang": "en"}
        )
        self.assertEqual(self.store.get(self.user, "theme"), "dark")

    def test_update_creates_then_merges(self):
        self.assertEqual(self.store.update(self.user, {"a": "1"}), {"a": "1"})
        self.assertEqual(
            self.store.update(self.user, {"b": "2"}), {"a": "1", "b": "2"}
        )

    def test_delete_key_and_all(self):
        self.store.delete(self.user, "missing")
        self.assertIsNone(self.store.get_all(self.user))
        self.store.replace_all(self.user, {"a": "1", "b": "2"})
        self.store.delete(self.user, "a")
        self.assertEqual(self.store.get_all(self.user), {"b": "2"})
        self.store.delete_all(self.user)
        self.store.delete_all(self.user)
        self.assertIsNone(self.store.get_all(self.user))


if __name__ == "__main__":
    unittest.main()
