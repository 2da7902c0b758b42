"""test_repositories.py — Tests for the user / issue / revoked-token repositories.

Covers the in-memory and JSON file backends directly and the DynamoDB backend
against a mocked client. All locally runnable without AWS credentials.

Run from the repository root:
    python3 -m pytest backend/lambda/shared_layer/test_repositories.py -v
"""

from __future__ import annotations

import base64
import json
import os
import sys
import tempfile
import unittest
from unittest.mock import MagicMock, patch

from botocore.exceptions import ClientError

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "python"))

from issue_tracker_shared import config, repositories
from issue_tracker_shared.errors import ConflictError, NotFoundError, ValidationError
from issue_tracker_shared.repositories import (
    DynamoIssueRepository,
    DynamoRevocationList,
    DynamoUserRepository,
    InMemoryIssueRepository,
    InMemoryRevocationList,
    InMemoryUserRepository,
    JsonFileStore,
)


def _user(user_id="u-1", email="a@b.com"):
    return {
        "userId": user_id,
        "email": email,
        "firstName": "A",
        "lastName": "B",
        "role": "END_USER",
        "status": "PENDING_VERIFICATION",
    }


def _issue(issue_id, created_at="2025-08-12T10:00:00Z", status="OPEN"):
    return {
        "issueId": issue_id,
        "title": f"Issue {issue_id}",
        "status": status,
        "priority": "MEDIUM",
        "tags": ["ui"],
        "createdAt": created_at,
        "updatedAt": created_at,
    }


def _conditional_failure(operation="PutItem"):
    return ClientError(
        {"Error": {"Code": "ConditionalCheckFailedException", "Message": "condition failed"}},
        operation,
    )


def _transaction_cancelled(reason_codes):
    return ClientError(
        {
            "Error": {"Code": "TransactionCanceledException", "Message": "cancelled"},
            "CancellationReasons": [{"Code": code} for code in reason_codes],
        },
        "TransactWriteItems",
    )


def _cursor(key):
    return base64.urlsafe_b64encode(json.dumps(key).encode("utf-8")).decode("ascii")


class InMemoryUserRepositoryTests(unittest.TestCase):
    def setUp(self):
        self.repo = InMemoryUserRepository()

    def test_insert_and_lookup(self):
        self.repo.insert(_user())
        self.assertEqual(self.repo.get_by_id("u-1")["email"], "a@b.com")
        self.assertEqual(self.repo.get_by_email("a@b.com")["userId"], "u-1")
        self.assertIsNone(self.repo.get_by_email("A@B.com"))

    def test_duplicate_email_conflicts(self):
        self.repo.insert(_user())
        with self.assertRaises(ConflictError):
            self.repo.insert(_user(user_id="u-2"))

    def test_returned_records_are_copies(self):
        self.repo.insert(_user())
        user = self.repo.get_by_id("u-1")
        user["status"] = "ACTIVE"
        self.assertEqual(self.repo.get_by_id("u-1")["status"], "PENDING_VERIFICATION")
        self.repo.update(user)
        self.assertEqual(self.repo.get_by_id("u-1")["status"], "ACTIVE")

    def test_update_missing_raises(self):
        with self.assertRaises(NotFoundError):
            self.repo.update(_user())

    def test_delete(self):
        self.repo.insert(_user())
        self.assertTrue(self.repo.delete("u-1"))
        self.assertFalse(self.repo.delete("u-1"))


class InMemoryIssueRepositoryTests(unittest.TestCase):
    def setUp(self):
        self.repo = InMemoryIssueRepository()
        for n in range(5):
            self.repo.insert(_issue(f"i-{n}", created_at=f"2025-08-12T10:00:0{n}Z"))

    def test_pages_cover_all_issues_once(self):
        seen = []
        token = None
        pages = 0
        while True:
            items, token = self.repo.list(limit=2, next_token=token)
            seen.extend(i["issueId"] for i in items)
            pages += 1
            if token is None:
                break
        self.assertEqual(seen, ["i-0", "i-1", "i-2", "i-3", "i-4"])
        self.assertEqual(pages, 3)

    def test_exact_page_has_no_next_token(self):
        items, token = self.repo.list(limit=5)
        self.assertEqual(len(items), 5)
        self.assertIsNone(token)

    def test_status_filter(self):
        issue = self.repo.get("i-3")
        issue["status"] = "CLOSED"
        self.repo.update(issue)
        items, _token = self.repo.list(limit=10, status="CLOSED")
        self.assertEqual([i["issueId"] for i in items], ["i-3"])

    def test_cursor_survives_deleted_issue(self):
        _items, token = self.repo.list(limit=2)
        self.repo.delete("i-1")
        items, _token = self.repo.list(limit=10, next_token=token)
        self.assertEqual([i["issueId"] for i in items], ["i-2", "i-3", "i-4"])

    def test_invalid_cursor(self):
        with self.assertRaises(ValidationError):
            self.repo.list(limit=2, next_token="%%%not-a-cursor")


class InMemoryRevocationListTests(unittest.TestCase):
    def test_revoke_and_expire(self):
        revocations = InMemoryRevocationList()
        revocations.revoke("live", repositories._unix_now() + 60)
        revocations.revoke("dead", repositories._unix_now() - 1)
        self.assertTrue(revocations.is_revoked("live"))
        self.assertFalse(revocations.is_revoked("dead"))
        self.assertFalse(revocations.is_revoked("never"))


class JsonFileStoreTests(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.path = os.path.join(self.tmpdir.name, "nested", "local-db.json")

    def tearDown(self):
        self.tmpdir.cleanup()

    def test_changes_persist_across_stores(self):
        store = JsonFileStore(self.path)
        store.users().insert(_user())
        store.issues().insert(_issue("i-1"))

        reopened = JsonFileStore(self.path)
        self.assertEqual(reopened.users().get_by_email("a@b.com")["userId"], "u-1")
        self.assertEqual(reopened.issues().get("i-1")["title"], "Issue i-1")

        with open(self.path, "r", encoding="utf-8") as fh:
            data = json.load(fh)
        self.assertEqual(set(data), {"users", "issues", "revokedTokens"})

    def test_delete_persists(self):
        store = JsonFileStore(self.path)
        store.issues().insert(_issue("i-1"))
        store.issues().delete("i-1")
        self.assertIsNone(JsonFileStore(self.path).issues().get("i-1"))

    def test_failed_save_leaves_no_phantom_insert(self):
        issues = JsonFileStore(self.path).issues()

        with patch.object(repositories.os, "replace", side_effect=OSError("disk full")):
            with self.assertRaises(OSError):
                issues.insert(_issue("x1"))

        self.assertIsNone(issues.get("x1"))
        self.assertFalse(os.path.exists(self.path))

    def test_failed_save_restores_previous_record(self):
        store = JsonFileStore(self.path)
        issues = store.issues()
        issues.insert(_issue("i-1"))
        changed = issues.get("i-1")
        changed["status"] = "CLOSED"

        with patch.object(repositories.os, "replace", side_effect=OSError("disk full")):
            with self.assertRaises(OSError):
                issues.update(changed)
            with self.assertRaises(OSError):
                issues.delete("i-1")

        self.assertEqual(issues.get("i-1")["status"], "OPEN")
        self.assertEqual(JsonFileStore(self.path).issues().get("i-1")["status"], "OPEN")
        leftovers = [n for n in os.listdir(os.path.dirname(self.path)) if n.startswith(".local-db-")]
        self.assertEqual(leftovers, [])


@patch.object(repositories, "_get_ddb")
class DynamoUserRepositoryTests(unittest.TestCase):
    def test_get_by_email_uses_gsi_then_table(self, mock_ddb):
        fake = MagicMock()
        mock_ddb.return_value = fake
        fake.query.return_value = {"Items": [{"userId": {"S": "u-1"}}]}
        fake.get_item.return_value = {
            "Item": {"userId": {"S": "u-1"}, "email": {"S": "a@b.com"}}
        }

        user = DynamoUserRepository(table="Users").get_by_email("a@b.com")

        self.assertEqual(user, {"userId": "u-1", "email": "a@b.com"})
        query_kwargs = fake.query.call_args.kwargs
        self.assertEqual(query_kwargs["IndexName"], config.USERS_EMAIL_INDEX)
        self.assertEqual(query_kwargs["ExpressionAttributeValues"], {":e": {"S": "a@b.com"}})

    def test_insert_claims_email_in_same_transaction(self, mock_ddb):
        fake = MagicMock()
        mock_ddb.return_value = fake

        DynamoUserRepository(table="Users").insert(_user())

        fake.put_item.assert_not_called()
        items = fake.transact_write_items.call_args.kwargs["TransactItems"]
        user_put, claim_put = items[0]["Put"], items[1]["Put"]
        self.assertEqual(user_put["TableName"], "Users")
        self.assertEqual(user_put["Item"]["email"], {"S": "a@b.com"})
        self.assertEqual(user_put["ConditionExpression"], "attribute_not_exists(userId)")
        self.assertEqual(claim_put["Item"]["userId"], {"S": "EMAIL#a@b.com"})
        self.assertEqual(claim_put["Item"]["ownerId"], {"S": "u-1"})
        self.assertNotIn("email", claim_put["Item"])
        self.assertEqual(claim_put["ConditionExpression"], "attribute_not_exists(userId)")

    def test_concurrent_registrations_with_same_email_conflict(self, mock_ddb):
        fake = MagicMock()
        mock_ddb.return_value = fake
        # The stale email index reports no match for either caller; the second
        # transaction is cancelled on the email claim.
        fake.query.return_value = {"Items": []}
        fake.transact_write_items.side_effect = [
            {},
            _transaction_cancelled(["None", "ConditionalCheckFailed"]),
        ]
        repo = DynamoUserRepository()

        repo.insert(_user(user_id="u-1"))
        with self.assertRaises(ConflictError) as ctx:
            repo.insert(_user(user_id="u-2"))

        self.assertEqual(ctx.exception.error, "User already exists")
        self.assertEqual(fake.transact_write_items.call_count, 2)
        fake.put_item.assert_not_called()

    def test_duplicate_user_id_conflicts(self, mock_ddb):
        fake = MagicMock()
        mock_ddb.return_value = fake
        fake.transact_write_items.side_effect = _transaction_cancelled(
            ["ConditionalCheckFailed", "None"]
        )

        with self.assertRaises(ConflictError) as ctx:
            DynamoUserRepository().insert(_user())
        self.assertEqual(ctx.exception.error, "Conflict")

    def test_delete_releases_email_claim(self, mock_ddb):
        fake = MagicMock()
        mock_ddb.return_value = fake
        fake.get_item.return_value = {
            "Item": {"userId": {"S": "u-1"}, "email": {"S": "a@b.com"}}
        }

        self.assertTrue(DynamoUserRepository().delete("u-1"))

        items = fake.transact_write_items.call_args.kwargs["TransactItems"]
        keys = [item["Delete"]["Key"]["userId"]["S"] for item in items]
        self.assertEqual(keys, ["u-1", "EMAIL#a@b.com"])

    def test_delete_missing_user(self, mock_ddb):
        fake = MagicMock()
        mock_ddb.return_value = fake
        fake.get_item.return_value = {}

        self.assertFalse(DynamoUserRepository().delete("ghost"))
        fake.transact_write_items.assert_not_called()

    def test_update_missing_user_raises_not_found(self, mock_ddb):
        fake = MagicMock()
        mock_ddb.return_value = fake
        fake.put_item.side_effect = _conditional_failure()

        with self.assertRaises(NotFoundError):
            DynamoUserRepository().update(_user())

    def test_other_client_errors_propagate(self, mock_ddb):
        fake = MagicMock()
        mock_ddb.return_value = fake
        fake.put_item.side_effect = ClientError(
            {"Error": {"Code": "ProvisionedThroughputExceededException", "Message": "slow down"}},
            "PutItem",
        )

        with self.assertRaises(ClientError):
            DynamoUserRepository().update(_user())


@patch.object(repositories, "_get_ddb")
class DynamoIssueRepositoryTests(unittest.TestCase):
    def test_get_missing_returns_none(self, mock_ddb):
        fake = MagicMock()
        mock_ddb.return_value = fake
        fake.get_item.return_value = {}

        self.assertIsNone(DynamoIssueRepository().get("nope"))

    def test_list_returns_cursor_from_last_evaluated_key(self, mock_ddb):
        fake = MagicMock()
        mock_ddb.return_value = fake
        fake.scan.return_value = {
            "Items": [{"issueId": {"S": "i-1"}, "status": {"S": "OPEN"}}],
            "LastEvaluatedKey": {"issueId": {"S": "i-1"}},
        }

        items, token = DynamoIssueRepository(table="Issues").list(limit=1, status="OPEN")

        self.assertEqual(items, [{"issueId": "i-1", "status": "OPEN"}])
        self.assertIsNotNone(token)
        kwargs = fake.scan.call_args.kwargs
        self.assertEqual(kwargs["Limit"], 1)
        self.assertEqual(kwargs["FilterExpression"], "#s = :s")

        fake.scan.reset_mock()
        fake.scan.return_value = {"Items": []}
        items, token = DynamoIssueRepository(table="Issues").list(limit=1, next_token=token)
        self.assertEqual(items, [])
        self.assertIsNone(token)
        self.assertEqual(
            fake.scan.call_args.kwargs["ExclusiveStartKey"], {"issueId": {"S": "i-1"}}
        )

    def test_list_keeps_scanning_until_page_is_full(self, mock_ddb):
        fake = MagicMock()
        mock_ddb.return_value = fake
        fake.scan.side_effect = [
            {"Items": [], "LastEvaluatedKey": {"issueId": {"S": "i-1"}}},
            {"Items": [{"issueId": {"S": "i-2"}}]},
        ]

        items, token = DynamoIssueRepository().list(limit=2, status="CLOSED")

        self.assertEqual([i["issueId"] for i in items], ["i-2"])
        self.assertIsNone(token)
        self.assertEqual(fake.scan.call_count, 2)

    def test_cursor_with_extra_attributes_is_rejected(self, mock_ddb):
        fake = MagicMock()
        mock_ddb.return_value = fake

        with self.assertRaises(ValidationError):
            DynamoIssueRepository().list(limit=5, next_token=_cursor({"issueId": "a", "bogus": 1}))
        fake.scan.assert_not_called()

    def test_cursor_rejected_by_dynamodb_is_a_validation_error(self, mock_ddb):
        fake = MagicMock()
        mock_ddb.return_value = fake
        fake.scan.side_effect = ClientError(
            {"Error": {"Code": "ValidationException", "Message": "The provided starting key is invalid"}},
            "Scan",
        )

        with self.assertRaises(ValidationError):
            DynamoIssueRepository().list(limit=5, next_token=_cursor({"issueId": "a"}))

    def test_scan_validation_error_without_cursor_propagates(self, mock_ddb):
        fake = MagicMock()
        mock_ddb.return_value = fake
        fake.scan.side_effect = ClientError(
            {"Error": {"Code": "ValidationException", "Message": "bad table"}},
            "Scan",
        )

        with self.assertRaises(ClientError):
            DynamoIssueRepository().list(limit=5)

    def test_update_missing_issue_raises_not_found(self, mock_ddb):
        fake = MagicMock()
        mock_ddb.return_value = fake
        fake.put_item.side_effect = _conditional_failure()

        with self.assertRaises(NotFoundError):
            DynamoIssueRepository().update(_issue("i-1"))

    def test_delete_reports_prior_existence(self, mock_ddb):
        fake = MagicMock()
        mock_ddb.return_value = fake
        fake.delete_item.return_value = {}

        self.assertFalse(DynamoIssueRepository().delete("ghost"))


@patch.object(repositories, "_get_ddb")
class DynamoRevocationListTests(unittest.TestCase):
    def test_expired_rows_are_not_revoked(self, mock_ddb):
        fake = MagicMock()
        mock_ddb.return_value = fake
        fake.get_item.return_value = {
            "Item": {"tokenId": {"S": "t"}, "expiresAt": {"N": "1"}}
        }

        self.assertFalse(DynamoRevocationList().is_revoked("t"))

    def test_revoke_writes_ttl(self, mock_ddb):
        fake = MagicMock()
        mock_ddb.return_value = fake

        DynamoRevocationList(table="UserSessions").revoke("t", 2_000_000_000)

        item = fake.put_item.call_args.kwargs["Item"]
        self.assertEqual(item["tokenId"], {"S": "t"})
        self.assertEqual(item["expiresAt"], {"N": "2000000000"})


class SingletonTests(unittest.TestCase):
    def tearDown(self):
        repositories._reset_repositories()

    def test_unknown_backend_rejected(self):
        repositories._reset_repositories()
        with patch.object(config, "STORAGE_BACKEND", "cassandra"):
            with self.assertRaises(ValueError):
                repositories._get_issue_repository()

    def test_memory_backend_is_cached(self):
        repositories._reset_repositories()
        with patch.object(config, "STORAGE_BACKEND", "memory"):
            first = repositories._get_issue_repository()
            self.assertIs(first, repositories._get_issue_repository())
            self.assertIsInstance(first, InMemoryIssueRepository)


if __name__ == "__main__":
    unittest.main()
