"""Retention and cleanup policies for deployment history."""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional

from infra_deploy.history.manager import DeploymentHistoryManager
from infra_deploy.history.models import DeploymentStatus, RecordedOperation
from infra_deploy.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class RetentionPolicy:
    """Retention policy configuration."""

    # Keep the newest N records regardless of status
    keep_last: int = 50

    # Keep last N successful apply/rollback records so rollback stays possible
    keep_last_successful: int = 10

    # Keep all failed records for X days
    keep_failed_days: int = 90

    # Delete records older than X days (0 = never delete by age)
    delete_after_days: int = 365


class RetentionManager:
    """Prunes deployment history according to a retention policy.

    History is otherwise append-only; this is the only code path that
    removes records.
    """

    def __init__(self, history: DeploymentHistoryManager):
        """
        Initialize retention manager.

        Args:
            history: History manager owning the records
        """
        self.history = history

    def apply_retention_policy(
        self,
        policy: RetentionPolicy,
        environment: str,
        now: Optional[datetime] = None,
        dry_run: bool = False
    ) -> Dict[str, List[str]]:
        """
        Apply retention policy to one environment's history.

        Args:
            policy: Retention policy to apply
            environment: Environment name
            now: Reference time (defaults to the current UTC time)
            dry_run: If True, only report what would be deleted

        Returns:
            Dictionary with 'kept' and 'deleted' record IDs
        """
        now = now or datetime.now(timezone.utc)
        records = self.history.list(environment)
        logger.info(
            f"Applying retention policy (dry_run={dry_run}) to {len(records)} records",
            extra={'environment': environment}
        )

        successful = [
            r for r in records
            if r.is_successful and r.operation in (RecordedOperation.APPLY, RecordedOperation.ROLLBACK)
        ]
        keep_ids = {r.record_id for r in records[: policy.keep_last]}
        keep_ids.update(r.record_id for r in successful[: policy.keep_last_successful])

        kept = []
        deleted = []
        for record in records:
            age_days = (now - record.timestamp).days
            if record.record_id in keep_ids:
                should_keep = True
            elif record.status == DeploymentStatus.FAILED:
                should_keep = age_days <= policy.keep_failed_days
            else:
                should_keep = policy.delete_after_days == 0 or age_days <= policy.delete_after_days

            if should_keep:
                kept.append(record.record_id)
                continue

            deleted.append(record.record_id)
            logger.info(
                f"{'Would delete' if dry_run else 'Deleting'} record {record.record_id}",
                extra={'environment': environment}
            )
            if not dry_run:
                self.history.delete(record)

        logger.info(
            f"Retention policy applied: {len(kept)} kept, "
            f"{len(deleted)} {'would be ' if dry_run else ''}deleted",
            extra={'environment': environment}
        )
        return {"kept": kept, "deleted": deleted}
