"""Deployment history manager backed by the state store."""

from typing import List, Optional, Sequence

from pydantic import ValidationError

from infra_deploy.history.models import DeploymentRecord, RecordedOperation
from infra_deploy.state.models import EnvironmentSnapshot
from infra_deploy.state.store import MISSING, StateStore
from infra_deploy.utils.errors import (
    ErrorContext,
    SnapshotMissingError,
    StateError,
    VersionConflictError,
)
from infra_deploy.utils.logging import get_logger

logger = get_logger(__name__)


class DeploymentHistoryManager:
    """Append-only deployment log per environment.

    Records live at ``history/<environment>/<sequence>.json`` and are written
    create-only, so an existing record is never overwritten. Each record carries
    the SHA-256 of its canonical JSON form, checked again on load. Snapshots
    live at ``snapshots/<environment>/<record id>.json``.
    """

    CHECKSUM_FIELD = "checksum"

    HISTORY_PREFIX = "history"
    SNAPSHOT_PREFIX = "snapshots"
    MAX_APPEND_ATTEMPTS = 10

    def __init__(self, store: StateStore):
        """
        Initialize deployment history manager.

        Args:
            store: Store holding records and snapshots
        """
        self.store = store

    def _record_key(self, environment: str, sequence: int) -> str:
        return f"{self.HISTORY_PREFIX}/{environment}/{sequence:08d}.json"

    def _snapshot_key(self, environment: str, record_id: str) -> str:
        return f"{self.SNAPSHOT_PREFIX}/{environment}/{record_id}.json"

    def _record_keys(self, environment: str) -> List[str]:
        return self.store.list_keys(f"{self.HISTORY_PREFIX}/{environment}/")

    def next_sequence(self, environment: str) -> int:
        keys = self._record_keys(environment)
        if not keys:
            return 1
        return int(keys[-1].rsplit("/", 1)[-1][: -len(".json")]) + 1

    def append(
        self,
        record: DeploymentRecord,
        snapshot: Optional[EnvironmentSnapshot] = None
    ) -> DeploymentRecord:
        """
        Append a record, assigning its sequence and ID.

        Args:
            record: Record to append (sequence and record_id are assigned)
            snapshot: Environment snapshot to store alongside the record

        Returns:
            The stored record

        Raises:
            StateError: If no free sequence could be claimed
        """
        environment = record.environment
        for _ in range(self.MAX_APPEND_ATTEMPTS):
            sequence = self.next_sequence(environment)
            record_id = f"{environment}-{sequence:08d}"
            stored = record.model_copy(update={
                'sequence': sequence,
                'record_id': record_id,
                'snapshot_ref': self._snapshot_key(environment, record_id) if snapshot else None,
            })
            try:
                self.store.put(
                    self._record_key(environment, sequence),
                    {**stored.to_dict(), self.CHECKSUM_FIELD: stored.checksum()},
                    expected_version=MISSING
                )
            except VersionConflictError:
                # Another run claimed this sequence
                continue

            if snapshot is not None:
                self.store.put(stored.snapshot_ref, snapshot.model_dump(mode="json"), expected_version=MISSING)

            logger.info(
                f"Recorded {stored.operation.value} {record_id} ({stored.status.value})",
                extra={'environment': environment, 'operation': stored.operation.value}
            )
            return stored

        raise StateError(
            f"Could not append to history of '{environment}' after "
            f"{self.MAX_APPEND_ATTEMPTS} attempts",
            context=ErrorContext(environment=environment)
        )

    def _load(self, key: str) -> Optional[DeploymentRecord]:
        current = self.store.get(key)
        if current is None:
            return None
        data = dict(current.value)
        checksum = data.pop(self.CHECKSUM_FIELD, None)
        try:
            record = DeploymentRecord.from_dict(data)
        except ValidationError as e:
            raise StateError(f"Corrupted history record {key}: {e}", cause=e)
        if checksum is not None and checksum != record.checksum():
            raise StateError(f"Corrupted history record {key}: checksum mismatch")
        return record

    def list(self, environment: str, limit: Optional[int] = None) -> List[DeploymentRecord]:
        """
        List records, newest first.

        Args:
            environment: Environment name
            limit: Maximum number of records to return

        Returns:
            Records in reverse sequence order
        """
        keys = list(reversed(self._record_keys(environment)))
        if limit is not None:
            keys = keys[:limit]
        return [record for record in (self._load(key) for key in keys) if record is not None]

    def get(self, environment: str, record_id: str) -> Optional[DeploymentRecord]:
        """Look up a record by ID."""
        prefix = f"{environment}-"
        if not record_id.startswith(prefix) or not record_id[len(prefix):].isdigit():
            return None
        return self._load(self._record_key(environment, int(record_id[len(prefix):])))

    def find(self, environment: str, target: str) -> Optional[DeploymentRecord]:
        """Find a record by ID, or the newest record for a version."""
        record = self.get(environment, target)
        if record is not None:
            return record
        for record in self.list(environment):
            if record.version == target:
                return record
        return None

    def latest_successful(
        self,
        environment: str,
        operations: Sequence[RecordedOperation] = (RecordedOperation.APPLY, RecordedOperation.ROLLBACK)
    ) -> Optional[DeploymentRecord]:
        """Most recent fully-successful record of the given operations."""
        for record in self.list(environment):
            if record.is_successful and record.operation in operations:
                return record
        return None

    def load_snapshot(self, record: DeploymentRecord) -> EnvironmentSnapshot:
        """
        Load the snapshot a record refers to.

        Raises:
            SnapshotMissingError: If the record has no snapshot or it is gone
        """
        ref = record.snapshot_ref or self._snapshot_key(record.environment, record.record_id)
        current = self.store.get(ref)
        if current is None:
            raise SnapshotMissingError(
                ref,
                context=ErrorContext(environment=record.environment, state_key=ref)
            )
        return EnvironmentSnapshot.model_validate(current.value)

    def delete(self, record: DeploymentRecord) -> None:
        """Remove a record and its snapshot (retention only)."""
        key = self._record_key(record.environment, record.sequence)
        current = self.store.get(key)
        if current is not None:
            self.store.delete(key, expected_version=current.version)
        if record.snapshot_ref:
            snapshot = self.store.get(record.snapshot_ref)
            if snapshot is not None:
                self.store.delete(record.snapshot_ref, expected_version=snapshot.version)
