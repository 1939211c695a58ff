"""
Audit sink for compliance operations.

Writes append-only entries into the ``audit_logs`` table. Payloads are
sanitized before they are stored.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Mapping, Optional, Union

from sqlalchemy import select

from ..privacy.sanitize import sanitize_record
from ..storage.accessor import StorageAccessor
from ..storage.schema import audit_logs
from .models import AuditAction, AuditRecord

logger = logging.getLogger(__name__)


class AuditSink(ABC):
    """Abstract base class for audit sinks."""

    @abstractmethod
    def record_data_modification(
        self,
        action: Union[AuditAction, str],
        table_name: str,
        record_id: Optional[str] = None,
        old_data: Optional[Mapping[str, Any]] = None,
        new_data: Optional[Mapping[str, Any]] = None,
        user_id: Optional[str] = None,
        success: bool = True,
        error_message: Optional[str] = None,
    ) -> AuditRecord:
        """
        Record a data modification.

        Args:
            action: Audit action
            table_name: Table the action applies to
            record_id: Affected record
            old_data: Values before the change
            new_data: Values after the change or operation details
            user_id: Acting or affected user
            success: Whether the action succeeded
            error_message: Error text for failed actions

        Returns:
            The stored entry
        """
        pass

    def record(self, action: Union[AuditAction, str], table_name: str, **kwargs: Any) -> None:
        """
        Fire-and-forget variant of ``record_data_modification``.

        Failures of the sink are logged and never reach the caller.
        """
        try:
            self.record_data_modification(action, table_name, **kwargs)
        except Exception as e:
            logger.error(f"Failed to write audit entry {action} for {table_name}: {e}")


class SQLAuditSink(AuditSink):
    """Audit sink writing into the ``audit_logs`` table."""

    def __init__(self, storage: StorageAccessor, application_name: Optional[str] = None):
        """
        Initialize the audit sink.

        Args:
            storage: Storage accessor holding ``audit_logs``
            application_name: Name stored with every entry
        """
        self.storage = storage
        self.application_name = application_name

    def record_data_modification(
        self,
        action: Union[AuditAction, str],
        table_name: str,
        record_id: Optional[str] = None,
        old_data: Optional[Mapping[str, Any]] = None,
        new_data: Optional[Mapping[str, Any]] = None,
        user_id: Optional[str] = None,
        success: bool = True,
        error_message: Optional[str] = None,
    ) -> AuditRecord:
        entry = AuditRecord(
            user_id=user_id,
            action=AuditAction(action),
            table_name=str(table_name),
            record_id=str(record_id) if record_id is not None else None,
            old_values=_json_safe(sanitize_record(old_data)),
            new_values=_json_safe(sanitize_record(new_data)),
            success=success,
            error_message=error_message,
            application=self.application_name,
        )
        entry.checksum = entry.calculate_checksum()

        self.storage.create(audit_logs, entry.model_dump())
        return entry

    def entries(
        self,
        action: Optional[Union[AuditAction, str]] = None,
        table_name: Optional[str] = None,
        record_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditRecord]:
        """Query stored entries, newest first."""
        statement = select(audit_logs)
        if action is not None:
            statement = statement.where(audit_logs.c.action == AuditAction(action).value)
        if table_name is not None:
            statement = statement.where(audit_logs.c.table_name == table_name)
        if record_id is not None:
            statement = statement.where(audit_logs.c.record_id == record_id)
        statement = statement.order_by(audit_logs.c.created_at.desc()).limit(limit)

        return [AuditRecord(**row) for row in self.storage.query(statement)]

    def verify_integrity(self, entry_id: str) -> bool:
        """Check the stored checksum of one entry."""
        rows = self.storage.query(select(audit_logs).where(audit_logs.c.id == entry_id))
        if not rows:
            return False
        entry = AuditRecord(**rows[0])
        return entry.checksum is not None and entry.verify_checksum(entry.checksum)


def _json_safe(data: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Convert datetimes and other values so the payload fits a JSON column."""
    if data is None:
        return None
    return {key: _json_value(value) for key, value in data.items()}


def _json_value(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, dict):
        return {str(k): _json_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_json_value(v) for v in value]
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return str(value)
