"""Versioned key-value stores for state blobs and lock records.

Every store supports conditional writes keyed on a per-key version number:

* ``expected_version=None`` writes unconditionally,
* ``expected_version=0`` (``MISSING``) only succeeds if the key does not exist,
* ``expected_version=n`` only succeeds if the stored version is ``n``.

A successful write returns the new version; a conflicting one raises
``VersionConflictError`` without changing anything.
"""

import copy
import fcntl
import json
import os
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, NamedTuple, Optional

from botocore.exceptions import ClientError

from infra_deploy.utils.errors import ErrorContext, StateError, VersionConflictError, error_handler
from infra_deploy.utils.logging import get_logger
from infra_deploy.utils.retry import with_retry

logger = get_logger(__name__)

MISSING = 0


class VersionedValue(NamedTuple):
    """A stored value together with its version."""

    value: Dict[str, Any]
    version: int


class StateStore(ABC):
    """Key-value store with compare-and-swap semantics."""

    @abstractmethod
    def get(self, key: str) -> Optional[VersionedValue]:
        """Read a key, or None if it does not exist."""

    @abstractmethod
    def put(self, key: str, value: Dict[str, Any], expected_version: Optional[int] = None) -> int:
        """Write a key, returning its new version."""

    @abstractmethod
    def delete(self, key: str, expected_version: int) -> None:
        """Delete a key if it is at ``expected_version``."""

    @abstractmethod
    def list_keys(self, prefix: str = "") -> List[str]:
        """List keys starting with ``prefix`` in lexical order."""


def _check_key(key: str) -> str:
    if not key or key.startswith("/") or ".." in key.split("/"):
        raise StateError(f"Invalid state key: {key!r}")
    return key


class InMemoryStateStore(StateStore):
    """Thread-safe in-process store, used for tests and dry runs."""

    def __init__(self):
        self._items: Dict[str, VersionedValue] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[VersionedValue]:
        with self._lock:
            item = self._items.get(key)
            if item is None:
                return None
            return VersionedValue(copy.deepcopy(item.value), item.version)

    def put(self, key: str, value: Dict[str, Any], expected_version: Optional[int] = None) -> int:
        _check_key(key)
        with self._lock:
            current = self._items.get(key)
            actual = current.version if current else MISSING
            if expected_version is not None and expected_version != actual:
                raise VersionConflictError(key, expected_version, actual)
            version = actual + 1
            self._items[key] = VersionedValue(copy.deepcopy(value), version)
            return version

    def delete(self, key: str, expected_version: int) -> None:
        with self._lock:
            current = self._items.get(key)
            actual = current.version if current else MISSING
            if current is None or expected_version != actual:
                raise VersionConflictError(key, expected_version, actual)
            del self._items[key]

    def list_keys(self, prefix: str = "") -> List[str]:
        with self._lock:
            return sorted(key for key in self._items if key.startswith(prefix))


class LocalStateStore(StateStore):
    """Store backed by JSON files in a directory.

    Writes are serialized with an exclusive ``flock`` on a sidecar lock file,
    so several processes sharing the directory get the same compare-and-swap
    guarantees. Each write goes to a temporary file that is atomically renamed
    into place.
    """

    LOCK_FILE = ".store.lock"

    def __init__(self, root: str):
        """
        Initialize LocalStateStore.

        Args:
            root: Directory holding the state files
        """
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self._thread_lock = threading.Lock()

    def _path(self, key: str) -> Path:
        return self.root / f"{_check_key(key)}.json"

    @contextmanager
    def _locked(self) -> Iterator[None]:
        with self._thread_lock:
            fd = os.open(str(self.root / self.LOCK_FILE), os.O_CREAT | os.O_RDWR)
            try:
                fcntl.flock(fd, fcntl.LOCK_EX)
                yield
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
                os.close(fd)

    def _read(self, key: str) -> Optional[VersionedValue]:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            with open(path, "r") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise StateError(f"Failed to parse state file {path}: {e}")
        return VersionedValue(data["value"], int(data["version"]))

    def get(self, key: str) -> Optional[VersionedValue]:
        with self._locked():
            return self._read(key)

    def put(self, key: str, value: Dict[str, Any], expected_version: Optional[int] = None) -> int:
        path = self._path(key)
        with self._locked():
            current = self._read(key)
            actual = current.version if current else MISSING
            if expected_version is not None and expected_version != actual:
                raise VersionConflictError(key, expected_version, actual)

            version = actual + 1
            path.parent.mkdir(parents=True, exist_ok=True)
            temp_path = path.with_suffix(".tmp")
            try:
                with open(temp_path, "w") as f:
                    json.dump({"version": version, "value": value}, f, indent=2, sort_keys=True)
                temp_path.replace(path)
            except (OSError, TypeError, ValueError) as e:
                raise StateError(f"Failed to write state file {path}: {e}", cause=e)
            return version

    def delete(self, key: str, expected_version: int) -> None:
        path = self._path(key)
        with self._locked():
            current = self._read(key)
            actual = current.version if current else MISSING
            if current is None or expected_version != actual:
                raise VersionConflictError(key, expected_version, actual)
            path.unlink()

    def list_keys(self, prefix: str = "") -> List[str]:
        keys = []
        for path in self.root.rglob("*.json"):
            key = path.relative_to(self.root).as_posix()[: -len(".json")]
            if key.startswith(prefix):
                keys.append(key)
        return sorted(keys)


class DynamoDBStateStore(StateStore):
    """Store backed by a DynamoDB table using conditional writes.

    The table needs a string partition key named ``key``. Items carry a
    numeric ``version`` attribute and the JSON-encoded ``value``.
    """

    def __init__(self, table_name: str, client=None, session=None, region: Optional[str] = None):
        """
        Initialize DynamoDBStateStore.

        Args:
            table_name: DynamoDB table name
            client: Optional pre-built boto3 DynamoDB client
            session: Optional boto3 session used to build the client
            region: AWS region for the client
        """
        if client is None:
            import boto3

            session = session or boto3.Session(region_name=region)
            client = session.client("dynamodb")
        self.client = client
        self.table_name = table_name

    @with_retry(max_retries=3, base_delay=0.5, max_delay=5.0)
    def _get_item(self, key: str) -> Dict[str, Any]:
        return self.client.get_item(
            TableName=self.table_name,
            Key={"key": {"S": key}},
            ConsistentRead=True,
        )

    def _current_version(self, key: str) -> int:
        item = self._get_item(key).get("Item")
        return int(item["version"]["N"]) if item else MISSING

    def get(self, key: str) -> Optional[VersionedValue]:
        try:
            item = self._get_item(key).get("Item")
        except ClientError as e:
            raise error_handler.handle_exception(e, ErrorContext(state_key=key))
        if not item:
            return None
        return VersionedValue(json.loads(item["value"]["S"]), int(item["version"]["N"]))

    def put(self, key: str, value: Dict[str, Any], expected_version: Optional[int] = None) -> int:
        _check_key(key)
        body = json.dumps(value, sort_keys=True)
        try:
            if expected_version is None:
                response = self.client.update_item(
                    TableName=self.table_name,
                    Key={"key": {"S": key}},
                    UpdateExpression="SET #val = :val ADD #ver :one",
                    ExpressionAttributeNames={"#val": "value", "#ver": "version"},
                    ExpressionAttributeValues={":val": {"S": body}, ":one": {"N": "1"}},
                    ReturnValues="UPDATED_NEW",
                )
                return int(response["Attributes"]["version"]["N"])

            version = expected_version + 1
            item = {"key": {"S": key}, "version": {"N": str(version)}, "value": {"S": body}}
            if expected_version == MISSING:
                self.client.put_item(
                    TableName=self.table_name,
                    Item=item,
                    ConditionExpression="attribute_not_exists(#k)",
                    ExpressionAttributeNames={"#k": "key"},
                )
            else:
                self.client.put_item(
                    TableName=self.table_name,
                    Item=item,
                    ConditionExpression="#ver = :expected",
                    ExpressionAttributeNames={"#ver": "version"},
                    ExpressionAttributeValues={":expected": {"N": str(expected_version)}},
                )
            return version
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException":
                raise VersionConflictError(key, expected_version, self._current_version(key))
            raise error_handler.handle_exception(e, ErrorContext(state_key=key))

    def delete(self, key: str, expected_version: int) -> None:
        try:
            self.client.delete_item(
                TableName=self.table_name,
                Key={"key": {"S": key}},
                ConditionExpression="#ver = :expected",
                ExpressionAttributeNames={"#ver": "version"},
                ExpressionAttributeValues={":expected": {"N": str(expected_version)}},
            )
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException":
                raise VersionConflictError(key, expected_version, self._current_version(key))
            raise error_handler.handle_exception(e, ErrorContext(state_key=key))

    def list_keys(self, prefix: str = "") -> List[str]:
        keys = []
        kwargs = {
            "TableName": self.table_name,
            "ProjectionExpression": "#k",
            "ExpressionAttributeNames": {"#k": "key"},
            "ConsistentRead": True,
        }
        if prefix:
            kwargs["FilterExpression"] = "begins_with(#k, :prefix)"
            kwargs["ExpressionAttributeValues"] = {":prefix": {"S": prefix}}
        try:
            while True:
                response = self.client.scan(**kwargs)
                keys.extend(item["key"]["S"] for item in response.get("Items", []))
                if "LastEvaluatedKey" not in response:
                    break
                kwargs["ExclusiveStartKey"] = response["LastEvaluatedKey"]
        except ClientError as e:
            raise error_handler.handle_exception(e, ErrorContext(state_key=prefix))
        return sorted(keys)
