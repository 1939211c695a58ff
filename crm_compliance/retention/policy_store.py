"""
Retention policy store.

Keeps an in-memory snapshot of the active policies, keyed by table name,
backed by the ``data_retention_policies`` table. Readers use the snapshot
without locking; writers serialize on one lock and replace the snapshot in a
single assignment.
"""

import logging
import threading
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..audit.models import AuditAction
from ..audit.sink import AuditSink
from ..exceptions import DuplicatePolicyError, PolicyNotFoundError
from ..storage.accessor import StorageAccessor
from ..storage.schema import data_retention_policies, get_table, governed_table
from ..utils import utc_now
from .criteria import validate_criteria
from .models import RETAIN_FOREVER, RetentionPolicy

logger = logging.getLogger(__name__)

# Policies installed by ``seed_defaults``
DEFAULT_POLICIES: List[Dict[str, Any]] = [
    {"table_name": "audit_logs", "retention_days": 2555, "auto_delete": True},
    {"table_name": "user_consents", "retention_days": RETAIN_FOREVER, "auto_delete": False},
    {"table_name": "data_deletion_requests", "retention_days": 1095, "auto_delete": False},
    {"table_name": "data_export_requests", "retention_days": 365, "auto_delete": True},
]


class RetentionPolicyStore:
    """Store of retention policies with a lock-free read snapshot."""

    def __init__(self, storage: StorageAccessor, audit: AuditSink):
        """
        Initialize the store.

        Args:
            storage: Storage accessor holding ``data_retention_policies``
            audit: Sink for policy change entries
        """
        self.storage = storage
        self.audit = audit
        self._lock = threading.Lock()
        self._snapshot: Dict[str, RetentionPolicy] = {}

    def load(self) -> int:
        """
        Reload active policies from storage.

        Returns:
            Number of policies loaded
        """
        rows = self.storage.find(data_retention_policies, {"is_active": True})
        policies: Dict[str, RetentionPolicy] = {}
        for row in rows:
            policy = RetentionPolicy.from_row(row)
            policies[policy.table_name] = policy

        with self._lock:
            self._snapshot = policies

        logger.info(f"Loaded {len(policies)} retention policies")
        return len(policies)

    def get(self, table_name: str) -> Optional[RetentionPolicy]:
        return self._snapshot.get(str(getattr(table_name, "value", table_name)))

    def list(self) -> List[RetentionPolicy]:
        return sorted(self._snapshot.values(), key=lambda p: p.table_name)

    def create(
        self,
        table_name: str,
        retention_days: int,
        criteria: Optional[Dict[str, Any]] = None,
        auto_delete: bool = False,
        created_by: Optional[str] = None,
    ) -> RetentionPolicy:
        """
        Create an active policy for a governed table.

        Raises:
            UnknownTableError: Table is not governed
            DuplicatePolicyError: An active policy already exists
            InvalidCriteriaError: Criteria are malformed
        """
        table = str(table_name)

        with self._lock:
            try:
                table = governed_table(table_name).value
                if table in self._snapshot or self.storage.count(
                    data_retention_policies, {"table_name": table, "is_active": True}
                ):
                    raise DuplicatePolicyError(table)

                criteria = validate_criteria(get_table(table), criteria)
                # Validates retention_days before anything is written
                RetentionPolicy(
                    id="pending",
                    table_name=table,
                    retention_days=retention_days,
                    criteria=criteria,
                )

                row = self.storage.create(
                    data_retention_policies,
                    {
                        "table_name": table,
                        "retention_period_days": retention_days,
                        "retention_criteria": criteria,
                        "auto_delete": auto_delete,
                        "created_by": created_by,
                        "is_active": True,
                    },
                )
                policy = RetentionPolicy.from_row(row)

                snapshot = dict(self._snapshot)
                snapshot[table] = policy
                self._snapshot = snapshot
            except Exception as e:
                self.audit.record(
                    AuditAction.CREATE_RETENTION_POLICY,
                    "data_retention_policies",
                    new_data={"table_name": table, "retention_period_days": retention_days},
                    user_id=created_by,
                    success=False,
                    error_message=str(e),
                )
                raise

        self.audit.record(
            AuditAction.CREATE_RETENTION_POLICY,
            "data_retention_policies",
            record_id=policy.id,
            new_data=policy.to_audit_dict(),
            user_id=created_by,
        )
        logger.info(f"Created retention policy for {table}: {retention_days} days")
        return policy

    def update(
        self,
        table_name: str,
        retention_days: Optional[int] = None,
        criteria: Optional[Dict[str, Any]] = None,
        auto_delete: Optional[bool] = None,
        is_active: Optional[bool] = None,
        updated_by: Optional[str] = None,
    ) -> RetentionPolicy:
        """
        Update the supplied fields of an active policy.

        Setting ``is_active=False`` deactivates the policy and removes it from
        the snapshot.

        Raises:
            UnknownTableError: Table is not governed
            PolicyNotFoundError: No active policy for the table
            InvalidCriteriaError: Criteria are malformed
        """
        table = str(table_name)

        with self._lock:
            current: Optional[RetentionPolicy] = None
            try:
                table = governed_table(table_name).value
                current = self._snapshot.get(table)
                if current is None:
                    raise PolicyNotFoundError(table)

                fields: Dict[str, Any] = {}
                if retention_days is not None:
                    fields["retention_period_days"] = retention_days
                if criteria is not None:
                    fields["retention_criteria"] = validate_criteria(
                        get_table(table), criteria
                    )
                if auto_delete is not None:
                    fields["auto_delete"] = auto_delete
                if is_active is not None:
                    fields["is_active"] = is_active

                # Validates the merged policy before anything is written
                RetentionPolicy(
                    **{
                        **current.model_dump(),
                        "retention_days": fields.get(
                            "retention_period_days", current.retention_days
                        ),
                    }
                )

                row = self.storage.update(data_retention_policies, current.id, fields)
                if row is None:
                    raise PolicyNotFoundError(table)
                policy = RetentionPolicy.from_row(row)

                snapshot = dict(self._snapshot)
                if policy.is_active:
                    snapshot[table] = policy
                else:
                    snapshot.pop(table, None)
                self._snapshot = snapshot
            except Exception as e:
                self.audit.record(
                    AuditAction.UPDATE_RETENTION_POLICY,
                    "data_retention_policies",
                    record_id=current.id if current else None,
                    old_data=current.to_audit_dict() if current else None,
                    new_data={"table_name": table},
                    user_id=updated_by,
                    success=False,
                    error_message=str(e),
                )
                raise

        self.audit.record(
            AuditAction.UPDATE_RETENTION_POLICY,
            "data_retention_policies",
            record_id=policy.id,
            old_data=current.to_audit_dict(),
            new_data=policy.to_audit_dict(),
            user_id=updated_by,
        )
        logger.info(f"Updated retention policy for {table}")
        return policy

    def deactivate(self, table_name: str, updated_by: Optional[str] = None) -> RetentionPolicy:
        """Deactivate the policy of a table; policies are never deleted."""
        return self.update(table_name, is_active=False, updated_by=updated_by)

    def record_cleanup(self, table_name: str, at: Optional[datetime] = None) -> None:
        """Persist and cache the last successful cleanup time."""
        at = at or utc_now()
        with self._lock:
            current = self._snapshot.get(table_name)
            if current is None:
                return
            self.storage.update(data_retention_policies, current.id, {"last_cleanup": at})

            snapshot = dict(self._snapshot)
            snapshot[table_name] = current.model_copy(update={"last_cleanup": at})
            self._snapshot = snapshot

    def seed_defaults(self, created_by: Optional[str] = None) -> List[RetentionPolicy]:
        """
        Install the default policies for tables without an active policy.

        Returns:
            Policies created
        """
        created = []
        for default in DEFAULT_POLICIES:
            if self.get(default["table_name"]) is not None:
                continue
            try:
                created.append(self.create(created_by=created_by, **default))
            except DuplicatePolicyError:
                logger.debug(f"Default policy for {default['table_name']} already exists")
        return created
