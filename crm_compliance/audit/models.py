"""
Data models for compliance audit entries.

Every retention and privacy operation leaves one entry in ``audit_logs``;
entries carry a checksum so tampering can be detected.
"""

import hashlib
import json
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..utils import utc_now


class AuditAction(str, Enum):
    """Audit actions written by the compliance engine."""

    # Retention
    RETENTION_CLEANUP = "RETENTION_CLEANUP"
    MANUAL_RETENTION_CLEANUP = "MANUAL_RETENTION_CLEANUP"
    CREATE_RETENTION_POLICY = "CREATE_RETENTION_POLICY"
    UPDATE_RETENTION_POLICY = "UPDATE_RETENTION_POLICY"

    # Export requests
    DATA_EXPORT_REQUESTED = "DATA_EXPORT_REQUESTED"
    DATA_EXPORT_COMPLETED = "DATA_EXPORT_COMPLETED"
    DATA_EXPORT_FAILED = "DATA_EXPORT_FAILED"
    DATA_EXPORT_DOWNLOADED = "DATA_EXPORT_DOWNLOADED"

    # Deletion requests
    DATA_DELETION_REQUESTED = "DATA_DELETION_REQUESTED"
    DATA_DELETION_VERIFIED = "DATA_DELETION_VERIFIED"
    DATA_DELETION_COMPLETED = "DATA_DELETION_COMPLETED"
    DATA_DELETION_FAILED = "DATA_DELETION_FAILED"


class AuditRecord(BaseModel):
    """One entry of the compliance audit log."""

    model_config = ConfigDict(use_enum_values=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = Field(default_factory=utc_now)

    user_id: Optional[str] = Field(None, description="Acting or affected user")
    action: AuditAction = Field(..., description="Type of action performed")
    table_name: str = Field(..., description="Table the action applies to")
    record_id: Optional[str] = Field(None, description="Affected record")

    old_values: Optional[Dict[str, Any]] = Field(
        None, description="Previous values (for updates)"
    )
    new_values: Optional[Dict[str, Any]] = Field(
        None, description="New values or operation details"
    )

    success: bool = Field(True, description="Whether the action succeeded")
    error_message: Optional[str] = Field(
        None, description="Error message if action failed"
    )
    application: Optional[str] = Field(None, description="Application name")

    checksum: Optional[str] = Field(
        None, description="Checksum of the entry for integrity verification"
    )

    def calculate_checksum(self) -> str:
        """
        Calculate the SHA-256 checksum of the entry.

        Returns:
            Hex digest of the checksum
        """
        data = {
            "id": self.id,
            "created_at": self.created_at.isoformat(),
            "user_id": self.user_id,
            "action": self.action,
            "table_name": self.table_name,
            "record_id": self.record_id,
            "old_values": self.old_values,
            "new_values": self.new_values,
            "success": self.success,
        }
        json_str = json.dumps(data, sort_keys=True, default=str)
        return hashlib.sha256(json_str.encode()).hexdigest()

    def verify_checksum(self, expected_checksum: str) -> bool:
        return self.calculate_checksum() == expected_checksum
