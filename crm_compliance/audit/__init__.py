"""
Audit trail for retention and privacy operations.

Example:
    >>> from crm_compliance.audit import AuditAction, SQLAuditSink
    >>> sink = SQLAuditSink(storage, application_name="CRM")
    >>> sink.record(AuditAction.RETENTION_CLEANUP, "leads", new_data={"deleted": 3})
"""

from .models import AuditAction, AuditRecord
from .sink import AuditSink, SQLAuditSink

__all__ = [
    "AuditAction",
    "AuditRecord",
    "AuditSink",
    "SQLAuditSink",
]
