"""issue_tracker_shared.repositories — User, issue and revoked-token storage.

Three interchangeable backends selected by ``STORAGE_BACKEND``:

    memory    process-local dicts guarded by a lock (default, tests, local dev)
    file      the memory repositories bound to one JSON document on disk
    dynamodb  the Users / Issues / UserSessions tables

Records are plain dicts keyed by their wire names (``userId``, ``issueId``).
Repositories return copies; callers mutate and write back with ``update``.
"""

from __future__ import annotations

import base64
import copy
import json
import logging
import os
import tempfile
import threading
from typing import Any, Callable, Dict, List, Optional, Tuple

from botocore.exceptions import ClientError

from issue_tracker_shared import config
from issue_tracker_shared.aws_clients import _get_ddb
from issue_tracker_shared.errors import ConflictError, NotFoundError, ValidationError
from issue_tracker_shared.serialization import (
    _deserialize,
    _serialize,
    _serialize_item,
    _unix_now,
)

logger = logging.getLogger(__name__)

__all__ = [
    "DynamoIssueRepository",
    "DynamoRevocationList",
    "DynamoUserRepository",
    "InMemoryIssueRepository",
    "InMemoryRevocationList",
    "InMemoryUserRepository",
    "IssueRepository",
    "JsonFileStore",
    "RevocationList",
    "UserRepository",
    "_get_issue_repository",
    "_get_revocation_list",
    "_get_user_repository",
    "_reset_repositories",
]


# ---------------------------------------------------------------------------
# Pagination cursors
# ---------------------------------------------------------------------------


def _encode_cursor(key: Dict[str, Any]) -> str:
    return base64.urlsafe_b64encode(json.dumps(key, sort_keys=True).encode("utf-8")).decode("ascii")


def _decode_cursor(token: str) -> Dict[str, Any]:
    try:
        key = json.loads(base64.urlsafe_b64decode(token.encode("ascii")).decode("utf-8"))
    except (ValueError, UnicodeError) as exc:
        raise ValidationError("Invalid pagination cursor.") from exc
    if not isinstance(key, dict) or not isinstance(key.get("issueId"), str):
        raise ValidationError("Invalid pagination cursor.")
    return key


def _is_conditional_failure(exc: ClientError) -> bool:
    return exc.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException"


def _email_claim_key(email: str) -> str:
    return f"EMAIL#{email}"


# ---------------------------------------------------------------------------
# Interfaces
# ---------------------------------------------------------------------------


class UserRepository:
    def get_by_id(self, user_id: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def get_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def insert(self, user: Dict[str, Any]) -> None:
        """Persist a new user. Raises ConflictError when the email is taken."""
        raise NotImplementedError

    def update(self, user: Dict[str, Any]) -> None:
        """Replace an existing user. Raises NotFoundError when it is gone."""
        raise NotImplementedError

    def delete(self, user_id: str) -> bool:
        raise NotImplementedError


class IssueRepository:
    def get(self, issue_id: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def list(
        self,
        *,
        limit: int,
        next_token: Optional[str] = None,
        status: Optional[str] = None,
    ) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        """Return one page of issues and the token for the next page (or None)."""
        raise NotImplementedError

    def insert(self, issue: Dict[str, Any]) -> None:
        raise NotImplementedError

    def update(self, issue: Dict[str, Any]) -> None:
        raise NotImplementedError

    def delete(self, issue_id: str) -> bool:
        """Remove an issue. Returns whether it existed."""
        raise NotImplementedError


class RevocationList:
    def revoke(self, token_id: str, expires_at: int) -> None:
        raise NotImplementedError

    def is_revoked(self, token_id: str) -> bool:
        raise NotImplementedError


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------


class _LockedCollection:
    def __init__(
        self,
        records: Optional[Dict[str, Dict[str, Any]]] = None,
        lock: Optional[threading.RLock] = None,
        persist: Optional[Callable[[], None]] = None,
    ) -> None:
        self._records = records if records is not None else {}
        self._lock = lock or threading.RLock()
        self._persist = persist

    def _changed(self) -> None:
        if self._persist is not None:
            self._persist()

    def _put(self, key: str, record: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        """Set (or, with ``record=None``, remove) one record and persist it.

        Caller holds the lock. When persisting fails the previous record is
        restored before the error propagates. Returns the previous record.
        """
        previous = self._records.get(key)
        if record is None:
            self._records.pop(key, None)
        else:
            self._records[key] = copy.deepcopy(record)
        try:
            self._changed()
        except Exception:
            if previous is None:
                self._records.pop(key, None)
            else:
                self._records[key] = previous
            raise
        return previous


class InMemoryUserRepository(_LockedCollection, UserRepository):
    def get_by_id(self, user_id):
        with self._lock:
            user = self._records.get(user_id)
            return copy.deepcopy(user) if user else None

    def get_by_email(self, email):
        with self._lock:
            for user in self._records.values():
                if user.get("email") == email:
                    return copy.deepcopy(user)
        return None

    def insert(self, user):
        with self._lock:
            if any(u.get("email") == user["email"] for u in self._records.values()):
                raise ConflictError(
                    "A user with this email already exists", error="User already exists"
                )
            if user["userId"] in self._records:
                raise ConflictError(f"User '{user['userId']}' already exists")
            self._put(user["userId"], user)

    def update(self, user):
        with self._lock:
            if user["userId"] not in self._records:
                raise NotFoundError(f"User '{user['userId']}' not found")
            self._put(user["userId"], user)

    def delete(self, user_id):
        with self._lock:
            if user_id not in self._records:
                return False
            self._put(user_id, None)
            return True


def _issue_sort_key(issue: Dict[str, Any]) -> Tuple[str, str]:
    return (str(issue.get("createdAt") or ""), str(issue.get("issueId") or ""))


class InMemoryIssueRepository(_LockedCollection, IssueRepository):
    def get(self, issue_id):
        with self._lock:
            issue = self._records.get(issue_id)
            return copy.deepcopy(issue) if issue else None

    def list(self, *, limit, next_token=None, status=None):
        after = None
        if next_token:
            cursor = _decode_cursor(next_token)
            after = (str(cursor.get("createdAt") or ""), cursor["issueId"])

        with self._lock:
            issues = sorted(self._records.values(), key=_issue_sort_key)
            if status:
                issues = [i for i in issues if i.get("status") == status]
            if after is not None:
                issues = [i for i in issues if _issue_sort_key(i) > after]
            page = copy.deepcopy(issues[:limit])

        token = None
        if len(issues) > limit and page:
            last = page[-1]
            token = _encode_cursor({"createdAt": last.get("createdAt"), "issueId": last["issueId"]})
        return page, token

    def insert(self, issue):
        with self._lock:
            if issue["issueId"] in self._records:
                raise ConflictError(f"Issue '{issue['issueId']}' already exists")
            self._put(issue["issueId"], issue)

    def update(self, issue):
        with self._lock:
            if issue["issueId"] not in self._records:
                raise NotFoundError(f"Issue '{issue['issueId']}' not found")
            self._put(issue["issueId"], issue)

    def delete(self, issue_id):
        with self._lock:
            if issue_id not in self._records:
                return False
            self._put(issue_id, None)
            return True


class InMemoryRevocationList(_LockedCollection, RevocationList):
    """Revoked token ids mapped to their expiry epoch; expired ids are evicted."""

    def _evict_expired(self) -> bool:
        now = _unix_now()
        expired = [jti for jti, rec in self._records.items() if int(rec.get("expiresAt", 0)) <= now]
        for jti in expired:
            del self._records[jti]
        return bool(expired)

    def revoke(self, token_id, expires_at):
        with self._lock:
            self._evict_expired()
            self._put(token_id, {"tokenId": token_id, "expiresAt": int(expires_at)})

    def is_revoked(self, token_id):
        with self._lock:
            if self._evict_expired():
                self._changed()
            return token_id in self._records


# ---------------------------------------------------------------------------
# JSON file backend
# ---------------------------------------------------------------------------


class JsonFileStore:
    """One JSON document holding every collection, rewritten atomically on change."""

    COLLECTIONS = ("users", "issues", "revokedTokens")

    def __init__(self, path: str) -> None:
        self.path = path
        self.lock = threading.RLock()
        self._data = self._load()

    def _load(self) -> Dict[str, Dict[str, Any]]:
        data: Dict[str, Any] = {}
        if os.path.exists(self.path):
            with open(self.path, "r", encoding="utf-8") as fh:
                raw = fh.read()
            if raw.strip():
                data = json.loads(raw)
            if not isinstance(data, dict):
                raise ValueError(f"{self.path}: expected a JSON object")
        for name in self.COLLECTIONS:
            if not isinstance(data.get(name), dict):
                data[name] = {}
        return data

    def collection(self, name: str) -> Dict[str, Dict[str, Any]]:
        return self._data[name]

    def save(self) -> None:
        with self.lock:
            directory = os.path.dirname(os.path.abspath(self.path))
            os.makedirs(directory, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(prefix=".local-db-", suffix=".json", dir=directory)
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    json.dump(self._data, fh, indent=2, sort_keys=True)
                os.replace(tmp_path, self.path)
            except OSError:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise

    def users(self) -> InMemoryUserRepository:
        return InMemoryUserRepository(self.collection("users"), self.lock, self.save)

    def issues(self) -> InMemoryIssueRepository:
        return InMemoryIssueRepository(self.collection("issues"), self.lock, self.save)

    def revocations(self) -> InMemoryRevocationList:
        return InMemoryRevocationList(self.collection("revokedTokens"), self.lock, self.save)


# ---------------------------------------------------------------------------
# DynamoDB backend
# ---------------------------------------------------------------------------


class DynamoUserRepository(UserRepository):
    def __init__(self, table: str = "", email_index: str = "") -> None:
        self.table = table or config.USERS_TABLE
        self.email_index = email_index or config.USERS_EMAIL_INDEX

    def get_by_id(self, user_id):
        resp = _get_ddb().get_item(
            TableName=self.table,
            Key={"userId": _serialize(user_id)},
            ConsistentRead=True,
        )
        raw = resp.get("Item")
        return _deserialize(raw) if raw else None

    def get_by_email(self, email):
        resp = _get_ddb().query(
            TableName=self.table,
            IndexName=self.email_index,
            KeyConditionExpression="email = :e",
            ExpressionAttributeValues={":e": _serialize(email)},
            ProjectionExpression="userId",
            Limit=1,
        )
        items = resp.get("Items") or []
        if not items:
            return None
        user_id = _deserialize(items[0]).get("userId")
        return self.get_by_id(user_id) if user_id else None

    def insert(self, user):
        # The email GSI is eventually consistent, so uniqueness is claimed through
        # an EMAIL#<email> row written in the same transaction as the user.
        # The claim row has no email attribute and stays out of the GSI.
        try:
            _get_ddb().transact_write_items(
                TransactItems=[
                    {
                        "Put": {
                            "TableName": self.table,
                            "Item": _serialize_item(user),
                            "ConditionExpression": "attribute_not_exists(userId)",
                        }
                    },
                    {
                        "Put": {
                            "TableName": self.table,
                            "Item": {
                                "userId": _serialize(_email_claim_key(user["email"])),
                                "ownerId": _serialize(user["userId"]),
                            },
                            "ConditionExpression": "attribute_not_exists(userId)",
                        }
                    },
                ]
            )
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") != "TransactionCanceledException":
                raise
            reasons = [r.get("Code") for r in exc.response.get("CancellationReasons") or []]
            if len(reasons) > 1 and reasons[1] == "ConditionalCheckFailed":
                raise ConflictError(
                    "A user with this email already exists", error="User already exists"
                )
            if reasons and reasons[0] == "ConditionalCheckFailed":
                raise ConflictError(f"User '{user['userId']}' already exists")
            raise

    def update(self, user):
        try:
            _get_ddb().put_item(
                TableName=self.table,
                Item=_serialize_item(user),
                ConditionExpression="attribute_exists(userId)",
            )
        except ClientError as exc:
            if _is_conditional_failure(exc):
                raise NotFoundError(f"User '{user['userId']}' not found")
            raise

    def delete(self, user_id):
        user = self.get_by_id(user_id)
        if user is None:
            return False
        _get_ddb().transact_write_items(
            TransactItems=[
                {"Delete": {"TableName": self.table, "Key": {"userId": _serialize(user_id)}}},
                {
                    "Delete": {
                        "TableName": self.table,
                        "Key": {"userId": _serialize(_email_claim_key(user["email"]))},
                    }
                },
            ]
        )
        return True


class DynamoIssueRepository(IssueRepository):
    def __init__(self, table: str = "") -> None:
        self.table = table or config.ISSUES_TABLE

    def get(self, issue_id):
        resp = _get_ddb().get_item(
            TableName=self.table,
            Key={"issueId": _serialize(issue_id)},
            ConsistentRead=True,
        )
        raw = resp.get("Item")
        return _deserialize(raw) if raw else None

    def list(self, *, limit, next_token=None, status=None):
        ddb = _get_ddb()
        params: Dict[str, Any] = {"TableName": self.table}
        if status:
            params["FilterExpression"] = "#s = :s"
            params["ExpressionAttributeNames"] = {"#s": "status"}
            params["ExpressionAttributeValues"] = {":s": _serialize(status)}
        start_key = None
        if next_token:
            start_key = _decode_cursor(next_token)
            # ExclusiveStartKey must be exactly the table key.
            if set(start_key) != {"issueId"}:
                raise ValidationError("Invalid pagination cursor.")
        from_client = start_key is not None

        items: List[Dict[str, Any]] = []
        last_key = None
        while True:
            # Limit caps evaluated items, so a page never overshoots and
            # LastEvaluatedKey always lines up with the last returned item.
            params["Limit"] = limit - len(items)
            if start_key:
                params["ExclusiveStartKey"] = _serialize_item(start_key)
            else:
                params.pop("ExclusiveStartKey", None)
            try:
                resp = ddb.scan(**params)
            except ClientError as exc:
                code = exc.response.get("Error", {}).get("Code")
                if from_client and code == "ValidationException":
                    raise ValidationError("Invalid pagination cursor.") from exc
                raise
            from_client = False
            items.extend(_deserialize(raw) for raw in resp.get("Items", []))
            last_key = resp.get("LastEvaluatedKey")
            if not last_key or len(items) >= limit:
                break
            start_key = _deserialize(last_key)

        token = _encode_cursor(_deserialize(last_key)) if last_key else None
        return items, token

    def insert(self, issue):
        try:
            _get_ddb().put_item(
                TableName=self.table,
                Item=_serialize_item(issue),
                ConditionExpression="attribute_not_exists(issueId)",
            )
        except ClientError as exc:
            if _is_conditional_failure(exc):
                raise ConflictError(f"Issue '{issue['issueId']}' already exists")
            raise

    def update(self, issue):
        try:
            _get_ddb().put_item(
                TableName=self.table,
                Item=_serialize_item(issue),
                ConditionExpression="attribute_exists(issueId)",
            )
        except ClientError as exc:
            if _is_conditional_failure(exc):
                raise NotFoundError(f"Issue '{issue['issueId']}' not found")
            raise

    def delete(self, issue_id):
        resp = _get_ddb().delete_item(
            TableName=self.table,
            Key={"issueId": _serialize(issue_id)},
            ReturnValues="ALL_OLD",
        )
        return bool(resp.get("Attributes"))


class DynamoRevocationList(RevocationList):
    """Revoked token ids in the sessions table; ``expiresAt`` doubles as the TTL attribute."""

    def __init__(self, table: str = "") -> None:
        self.table = table or config.SESSIONS_TABLE

    def revoke(self, token_id, expires_at):
        _get_ddb().put_item(
            TableName=self.table,
            Item={
                "tokenId": _serialize(token_id),
                "expiresAt": _serialize(int(expires_at)),
                "revokedAt": _serialize(_unix_now()),
            },
        )

    def is_revoked(self, token_id):
        resp = _get_ddb().get_item(
            TableName=self.table,
            Key={"tokenId": _serialize(token_id)},
            ConsistentRead=True,
        )
        raw = resp.get("Item")
        if not raw:
            return False
        # TTL deletion is lazy; expired rows may still be present.
        return int(_deserialize(raw).get("expiresAt", 0)) > _unix_now()


# ---------------------------------------------------------------------------
# Process-wide singletons (reused across warm Lambda invocations)
# ---------------------------------------------------------------------------

_singleton_lock = threading.Lock()
_file_store: Optional[JsonFileStore] = None
_users: Optional[UserRepository] = None
_issues: Optional[IssueRepository] = None
_revocations: Optional[RevocationList] = None


def _backend() -> str:
    backend = config.STORAGE_BACKEND
    if backend not in ("memory", "file", "dynamodb"):
        raise ValueError(f"Unknown STORAGE_BACKEND '{backend}'")
    return backend


def _get_file_store() -> JsonFileStore:
    global _file_store
    if _file_store is None:
        _file_store = JsonFileStore(config.LOCAL_DB_FILE)
        logger.info("using local JSON store at %s", config.LOCAL_DB_FILE)
    return _file_store


def _get_user_repository() -> UserRepository:
    global _users
    with _singleton_lock:
        if _users is None:
            backend = _backend()
            if backend == "dynamodb":
                _users = DynamoUserRepository()
            elif backend == "file":
                _users = _get_file_store().users()
            else:
                _users = InMemoryUserRepository()
        return _users


def _get_issue_repository() -> IssueRepository:
    global _issues
    with _singleton_lock:
        if _issues is None:
            backend = _backend()
            if backend == "dynamodb":
                _issues = DynamoIssueRepository()
            elif backend == "file":
                _issues = _get_file_store().issues()
            else:
                _issues = InMemoryIssueRepository()
        return _issues


def _get_revocation_list() -> RevocationList:
    global _revocations
    with _singleton_lock:
        if _revocations is None:
            backend = _backend()
            if backend == "dynamodb":
                _revocations = DynamoRevocationList()
            elif backend == "file":
                _revocations = _get_file_store().revocations()
            else:
                _revocations = InMemoryRevocationList()
        return _revocations


def _reset_repositories() -> None:
    """Drop cached repositories so the next call rebuilds them from config."""
    global _file_store, _users, _issues, _revocations
    with _singleton_lock:
        _file_store = None
        _users = None
        _issues = None
        _revocations = None
