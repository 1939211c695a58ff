"""
Data models for privacy-rights requests.
"""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ExportFormat(str, Enum):
    """Supported export encodings."""

    JSON = "json"
    CSV = "csv"
    XML = "xml"


class ExportStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class DeletionMode(str, Enum):
    """How a subject's data is erased."""

    FULL = "full"
    PARTIAL = "partial"
    ANONYMIZE = "anonymize"


class DeletionStatus(str, Enum):
    PENDING_VERIFICATION = "pending_verification"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class GdprStatus(str, Enum):
    """Compliance status of a subject record."""

    ACTIVE = "active"
    DELETED = "deleted"
    ANONYMIZED = "anonymized"


class ExportTicket(BaseModel):
    """Receipt returned when an export is requested."""

    model_config = ConfigDict(use_enum_values=True)

    export_id: str
    status: ExportStatus = ExportStatus.PENDING
    download_url: str
    expires_at: datetime
    estimated_completion: datetime


class DeletionTicket(BaseModel):
    """Receipt returned when a deletion is requested."""

    model_config = ConfigDict(use_enum_values=True)

    deletion_id: str
    status: DeletionStatus = DeletionStatus.PENDING_VERIFICATION
    verification_required: bool = True
    verification_url: str
    estimated_completion: datetime


class VerificationResult(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    verified: bool
    status: DeletionStatus
    message: str


class ExportDownload(BaseModel):
    """Artifact handed out by a download."""

    export_id: str
    file_path: str
    file_name: str
    export_format: str
    file_size: int
    download_count: int


class TableDeletionResult(BaseModel):
    table: str
    deleted: int = 0
    unassigned: int = Field(0, description="Rows of other owners released from the subject")
    status: str = Field("success", description="success or error")
    error: Optional[str] = None


class CascadeResult(BaseModel):
    """Aggregated outcome of a full or partial deletion."""

    subject_id: str
    mode: DeletionMode
    tables: List[TableDeletionResult] = Field(default_factory=list)
    identity_updated: bool = False
    artifacts_removed: int = 0

    @property
    def deleted(self) -> int:
        return sum(t.deleted for t in self.tables)

    @property
    def unassigned(self) -> int:
        return sum(t.unassigned for t in self.tables)

    @property
    def errors(self) -> int:
        return sum(1 for t in self.tables if t.status == "error")

    @property
    def partial_failure(self) -> bool:
        return self.errors > 0

    def summary(self) -> str:
        """One-line summary stored as completion notes."""
        mode = self.mode.value if isinstance(self.mode, DeletionMode) else self.mode
        parts = [f"{mode} deletion"]
        if self.tables:
            parts.append(f"{self.deleted} rows deleted from {len(self.tables)} tables")
        if self.unassigned:
            parts.append(f"{self.unassigned} rows of other users unassigned")
        if self.errors:
            failed = ", ".join(t.table for t in self.tables if t.status == "error")
            parts.append(f"failed tables: {failed}")
        if self.identity_updated:
            parts.append("identity record updated")
        return "; ".join(parts)


class ComplianceStatus(BaseModel):
    """Privacy overview of one subject."""

    subject_id: str
    status: str
    consent_date: Optional[datetime] = None
    data_retention_until: Optional[datetime] = None
    consents: List[Dict[str, object]] = Field(default_factory=list)
    request_counts: Dict[str, int] = Field(default_factory=dict)
    last_update: Optional[datetime] = None
