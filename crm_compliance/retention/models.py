"""
Data models for retention policies and cleanup results.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

RETAIN_FOREVER = -1


class RetentionPolicy(BaseModel):
    """
    Retention rule for one governed table.

    ``retention_days`` of -1 retains rows forever; any other value must be a
    positive number of days.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Policy identifier")
    table_name: str = Field(..., description="Governed table the policy applies to")
    retention_days: int = Field(..., description="Days to retain rows, -1 for forever")
    criteria: Dict[str, Any] = Field(
        default_factory=dict, description="Extra conditions rows must match"
    )
    auto_delete: bool = Field(False, description="Include in scheduled sweeps")
    last_cleanup: Optional[datetime] = Field(None, description="Last successful run")
    is_active: bool = Field(True, description="Whether the policy is in force")
    created_by: Optional[str] = Field(None, description="Creating user")
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("retention_days")
    @classmethod
    def validate_retention_days(cls, v: int) -> int:
        """Ensure retention is -1 or at least one day."""
        if v != RETAIN_FOREVER and v < 1:
            raise ValueError("retention_days must be -1 (forever) or at least 1")
        return v

    @field_validator("criteria", mode="before")
    @classmethod
    def default_criteria(cls, v: Any) -> Any:
        return {} if v is None else v

    @property
    def retains_forever(self) -> bool:
        return self.retention_days == RETAIN_FOREVER

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "RetentionPolicy":
        """Build a policy from a ``data_retention_policies`` row."""
        return cls(
            id=row["id"],
            table_name=row["table_name"],
            retention_days=row["retention_period_days"],
            criteria=row.get("retention_criteria"),
            auto_delete=bool(row.get("auto_delete")),
            last_cleanup=row.get("last_cleanup"),
            is_active=bool(row.get("is_active", True)),
            created_by=row.get("created_by"),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )

    def to_audit_dict(self) -> Dict[str, Any]:
        return {
            "table_name": self.table_name,
            "retention_period_days": self.retention_days,
            "retention_criteria": self.criteria,
            "auto_delete": self.auto_delete,
            "is_active": self.is_active,
        }


class TableCleanupResult(BaseModel):
    """Outcome of cleaning one table."""

    table: str
    deleted: int = 0
    status: str = Field("success", description="success, error or skipped")
    error: Optional[str] = None


class SweepResult(BaseModel):
    """Aggregated outcome of a scheduled retention sweep."""

    processed: int = 0
    deleted: int = 0
    errors: int = 0
    skipped: int = 0
    tables: List[TableCleanupResult] = Field(default_factory=list)
    duration_ms: float = 0.0

    @property
    def partial_failure(self) -> bool:
        return self.errors > 0


class PolicyStatistics(BaseModel):
    """Per-table statistics entry."""

    table_name: str
    retention_days: int
    auto_delete: bool
    last_cleanup: Optional[datetime] = None
    next_cleanup: Optional[datetime] = None


class RetentionStatistics(BaseModel):
    """Overview of the configured retention policies."""

    total_policies: int = 0
    auto_delete_policies: int = 0
    manual_policies: int = 0
    forever_policies: int = 0
    policies: List[PolicyStatistics] = Field(default_factory=list)
