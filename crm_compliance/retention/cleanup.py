"""
Retention cleanup engine.

Deletes rows that have outlived their table's retention policy. Each run
stamps the policy's ``last_cleanup`` and writes one audit entry per table.
"""

import logging
import time
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import and_, delete, or_, select
from sqlalchemy.sql import ColumnElement

from ..audit.models import AuditAction
from ..audit.sink import AuditSink
from ..exceptions import PolicyNotFoundError
from ..storage.accessor import StorageAccessor
from ..storage.artifacts import ArtifactStore
from ..storage.schema import GovernedTable, get_table, governed_table
from ..utils import utc_now
from .criteria import build_conditions
from .models import (
    PolicyStatistics,
    RetentionPolicy,
    RetentionStatistics,
    SweepResult,
    TableCleanupResult,
)
from .policy_store import RetentionPolicyStore

logger = logging.getLogger(__name__)

TERMINAL_EXPORT_STATUSES = ("completed", "failed")


def build_predicate(
    policy: RetentionPolicy, now: Optional[datetime] = None
) -> Optional[List[ColumnElement]]:
    """
    Build the deletion predicate of a policy.

    Args:
        policy: Policy to evaluate
        now: Reference time, defaults to the current UTC time

    Returns:
        Expressions to AND together, or None when the table has no
        timestamp column to age rows by

    Raises:
        InvalidCriteriaError: The policy criteria are malformed
    """
    now = now or utc_now()
    cutoff = now - timedelta(days=policy.retention_days)
    table = get_table(policy.table_name)
    name = governed_table(policy.table_name)

    if name is GovernedTable.AUDIT_LOGS:
        conditions = [table.c.created_at < cutoff]
    elif name is GovernedTable.DATA_EXPORT_REQUESTS:
        conditions = [
            or_(table.c.created_at < cutoff, table.c.expires_at < now),
            table.c.status.in_(TERMINAL_EXPORT_STATUSES),
        ]
    elif name is GovernedTable.DATA_DELETION_REQUESTS:
        # In-flight requests are compliance evidence
        conditions = [table.c.created_at < cutoff, table.c.status == "completed"]
    elif "created_at" in table.c:
        conditions = [table.c.created_at < cutoff]
    elif "updated_at" in table.c:
        conditions = [table.c.updated_at < cutoff]
    else:
        return None

    return conditions + build_conditions(table, policy.criteria)


class RetentionCleanupEngine:
    """Applies retention policies to the CRM store."""

    def __init__(
        self,
        storage: StorageAccessor,
        policies: RetentionPolicyStore,
        audit: AuditSink,
        artifacts: Optional[ArtifactStore] = None,
    ):
        """
        Initialize the cleanup engine.

        Args:
            storage: Storage accessor
            policies: Policy store supplying the active policies
            audit: Sink for cleanup entries
            artifacts: Store of export files removed with their requests
        """
        self.storage = storage
        self.policies = policies
        self.audit = audit
        self.artifacts = artifacts

    def cleanup_table(self, policy: RetentionPolicy, now: Optional[datetime] = None) -> Optional[int]:
        """
        Delete the rows of one table that the policy no longer retains.

        Returns:
            Rows deleted, or None if the table cannot be aged

        Raises:
            Exception: Any storage or criteria failure
        """
        if policy.retains_forever:
            return 0

        now = now or utc_now()
        predicate = build_predicate(policy, now)
        if predicate is None:
            logger.warning(
                f"Table {policy.table_name} has no created_at or updated_at column, "
                f"skipping retention cleanup"
            )
            return None

        table = get_table(policy.table_name)

        if governed_table(policy.table_name) is GovernedTable.DATA_EXPORT_REQUESTS:
            return self._cleanup_export_requests(predicate)

        return self.storage.execute(delete(table).where(and_(*predicate)))

    def _cleanup_export_requests(self, predicate: List[ColumnElement]) -> int:
        table = get_table(GovernedTable.DATA_EXPORT_REQUESTS)

        with self.storage.transaction() as tx:
            rows = tx.query(select(table.c.id, table.c.file_path).where(and_(*predicate)))
            ids = [row["id"] for row in rows]
            deleted = tx.execute(delete(table).where(table.c.id.in_(ids))) if ids else 0
            tx.commit()

        if self.artifacts is not None:
            for row in rows:
                if not row["file_path"]:
                    continue
                try:
                    self.artifacts.remove(row["file_path"])
                except Exception as e:
                    logger.warning(f"Failed to remove export artifact {row['file_path']}: {e}")

        return deleted

    def run_cleanup(self, policy: RetentionPolicy) -> TableCleanupResult:
        """
        Run the cleanup for one policy, catching failures into the result.

        Args:
            policy: Policy to apply

        Returns:
            Per-table result
        """
        if policy.retains_forever:
            logger.debug(f"Policy for {policy.table_name} retains forever, nothing to do")
            return TableCleanupResult(table=policy.table_name, status="skipped")

        now = utc_now()
        try:
            deleted = self.cleanup_table(policy, now)
        except Exception as e:
            logger.error(f"Retention cleanup failed for {policy.table_name}: {e}")
            return TableCleanupResult(table=policy.table_name, status="error", error=str(e))

        if deleted is None:
            return TableCleanupResult(table=policy.table_name, status="skipped")

        try:
            self.policies.record_cleanup(policy.table_name, now)
        except Exception as e:
            logger.error(f"Failed to record cleanup time for {policy.table_name}: {e}")
            return TableCleanupResult(
                table=policy.table_name, deleted=deleted, status="error", error=str(e)
            )

        self.audit.record(
            AuditAction.RETENTION_CLEANUP,
            policy.table_name,
            record_id=policy.id,
            new_data={
                "deleted_count": deleted,
                "retention_period_days": policy.retention_days,
                "cleanup_date": now,
            },
        )
        logger.info(f"Retention cleanup of {policy.table_name}: {deleted} rows deleted")
        return TableCleanupResult(table=policy.table_name, deleted=deleted)

    def run_sweep(self) -> SweepResult:
        """
        Clean every active auto-delete policy.

        A failing table is reported in the result; the sweep continues with
        the remaining tables.
        """
        started = time.monotonic()
        result = SweepResult()

        for policy in self.policies.list():
            if not policy.auto_delete:
                continue
            table_result = self.run_cleanup(policy)
            result.tables.append(table_result)
            result.processed += 1
            result.deleted += table_result.deleted
            if table_result.status == "error":
                result.errors += 1
            elif table_result.status == "skipped":
                result.skipped += 1

        result.duration_ms = (time.monotonic() - started) * 1000
        if result.partial_failure:
            logger.warning(
                f"Retention sweep finished with {result.errors} failed tables "
                f"({result.deleted} rows deleted)"
            )
        else:
            logger.info(
                f"Retention sweep finished: {result.processed} tables, "
                f"{result.deleted} rows deleted in {result.duration_ms:.0f} ms"
            )
        return result

    def trigger_manual_cleanup(self, table_name: str, user_id: Optional[str] = None) -> int:
        """
        Run the cleanup for one table immediately.

        Args:
            table_name: Governed table to clean
            user_id: Administrator triggering the run

        Returns:
            Rows deleted

        Raises:
            UnknownTableError: Table is not governed
            PolicyNotFoundError: No active policy for the table
        """
        table = str(table_name)

        try:
            table = governed_table(table_name).value
            policy = self.policies.get(table)
            if policy is None:
                raise PolicyNotFoundError(table)

            deleted = self.cleanup_table(policy)
            if deleted is not None and not policy.retains_forever:
                self.policies.record_cleanup(table)
            deleted = deleted or 0
        except Exception as e:
            self.audit.record(
                AuditAction.MANUAL_RETENTION_CLEANUP,
                table,
                user_id=user_id,
                success=False,
                error_message=str(e),
            )
            raise

        self.audit.record(
            AuditAction.MANUAL_RETENTION_CLEANUP,
            table,
            record_id=policy.id,
            new_data={"deleted_count": deleted, "triggered_manually": True},
            user_id=user_id,
        )
        logger.info(f"Manual retention cleanup of {table}: {deleted} rows deleted")
        return deleted

    def cleanup_audit_logs(self) -> int:
        """Apply the ``audit_logs`` policy; returns 0 when there is none."""
        policy = self.policies.get(GovernedTable.AUDIT_LOGS.value)
        if policy is None:
            logger.warning("No retention policy for audit_logs, skipping audit cleanup")
            return 0

        result = self.run_cleanup(policy)
        if result.status == "error":
            raise RuntimeError(f"Audit log cleanup failed: {result.error}")
        return result.deleted

    def get_retention_statistics(self) -> RetentionStatistics:
        """Summarize the active policies and their cleanup times."""
        policies = self.policies.list()
        stats = RetentionStatistics(
            total_policies=len(policies),
            auto_delete_policies=sum(1 for p in policies if p.auto_delete),
            manual_policies=sum(1 for p in policies if not p.auto_delete),
            forever_policies=sum(1 for p in policies if p.retains_forever),
        )

        for policy in policies:
            next_cleanup = None
            if policy.auto_delete and not policy.retains_forever:
                next_cleanup = (
                    policy.last_cleanup + timedelta(days=1) if policy.last_cleanup else None
                )
            stats.policies.append(
                PolicyStatistics(
                    table_name=policy.table_name,
                    retention_days=policy.retention_days,
                    auto_delete=policy.auto_delete,
                    last_cleanup=policy.last_cleanup,
                    next_cleanup=next_cleanup,
                )
            )

        return stats
