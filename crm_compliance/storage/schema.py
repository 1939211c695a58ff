"""
Table registry for the CRM store.

Every table the engine may touch is declared here. ``GovernedTable`` is the
closed enumeration of table names accepted from callers; statements are only
ever built from the ``Table`` objects below, never from caller text.
"""

from enum import Enum
from typing import Dict, Tuple

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
)

from ..exceptions import UnknownTableError

metadata = MetaData()


def _id() -> Column:
    return Column("id", String(36), primary_key=True)


def _timestamps() -> Tuple[Column, Column]:
    return (
        Column("created_at", DateTime, nullable=False, index=True),
        Column("updated_at", DateTime, nullable=False),
    )


users = Table(
    "users",
    metadata,
    _id(),
    Column("email", String(255), nullable=False, index=True),
    Column("first_name", String(100)),
    Column("last_name", String(100)),
    Column("company", String(200)),
    Column("password_hash", String(255)),
    Column("session_id", String(255)),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("gdpr_status", String(30), nullable=False, default="active"),
    Column("gdpr_consent_date", DateTime),
    Column("data_retention_until", DateTime),
    Column("anonymization_date", DateTime),
    *_timestamps(),
    Column("deleted_at", DateTime),
)

audit_logs = Table(
    "audit_logs",
    metadata,
    _id(),
    Column("user_id", String(36), index=True),
    Column("action", String(50), nullable=False, index=True),
    Column("table_name", String(100), nullable=False),
    Column("record_id", String(100)),
    Column("old_values", JSON),
    Column("new_values", JSON),
    Column("success", Boolean, nullable=False, default=True),
    Column("error_message", Text),
    Column("application", String(100)),
    Column("checksum", String(128), nullable=False),
    Column("created_at", DateTime, nullable=False, index=True),
    Index("idx_audit_table_record", "table_name", "record_id"),
)

user_consents = Table(
    "user_consents",
    metadata,
    _id(),
    Column("user_id", String(36), nullable=False, index=True),
    Column("consent_type", String(50), nullable=False),
    Column("consent_given", Boolean, nullable=False, default=False),
    Column("consent_text", Text),
    Column("version", String(50), nullable=False, default="1.0"),
    Column("legal_basis", String(50), nullable=False, default="consent"),
    Column("consent_date", DateTime),
    Column("withdrawal_date", DateTime),
    Column("is_active", Boolean, nullable=False, default=True),
    *_timestamps(),
)

privacy_settings = Table(
    "privacy_settings",
    metadata,
    _id(),
    Column("user_id", String(36), nullable=False, index=True),
    Column("setting_key", String(100), nullable=False),
    Column("setting_value", JSON),
    Column("description", Text),
    *_timestamps(),
)

data_retention_policies = Table(
    "data_retention_policies",
    metadata,
    _id(),
    Column("table_name", String(100), nullable=False, index=True),
    Column("retention_period_days", Integer, nullable=False),
    Column("retention_criteria", JSON),
    Column("auto_delete", Boolean, nullable=False, default=False),
    Column("last_cleanup", DateTime),
    Column("created_by", String(36)),
    Column("is_active", Boolean, nullable=False, default=True),
    *_timestamps(),
)

data_export_requests = Table(
    "data_export_requests",
    metadata,
    _id(),
    Column("user_id", String(36), nullable=False, index=True),
    Column("request_type", String(30), nullable=False, default="full_export"),
    Column("status", String(30), nullable=False, default="pending", index=True),
    Column("export_format", String(10), nullable=False, default="json"),
    Column("requested_data", JSON),
    Column("include_deleted", Boolean, nullable=False, default=False),
    Column("verification_token", String(255), index=True),
    Column("file_path", String(500)),
    Column("file_size", BigInteger),
    Column("expires_at", DateTime, index=True),
    Column("download_count", Integer, nullable=False, default=0),
    Column("max_downloads", Integer, nullable=False, default=3),
    Column("error_message", Text),
    Column("ip_address", String(45)),
    Column("user_agent", Text),
    Column("completed_at", DateTime),
    *_timestamps(),
)

data_deletion_requests = Table(
    "data_deletion_requests",
    metadata,
    _id(),
    Column("user_id", String(36), index=True),
    Column("email", String(255), nullable=False, index=True),
    Column("request_type", String(30), nullable=False, default="full"),
    Column(
        "status", String(30), nullable=False, default="pending_verification", index=True
    ),
    Column("requested_data", JSON),
    Column("deletion_reason", Text),
    Column("verification_token", String(255), index=True),
    Column("verified_at", DateTime),
    Column("processed_at", DateTime),
    Column("completion_notes", Text),
    Column("ip_address", String(45)),
    Column("user_agent", Text),
    *_timestamps(),
)

leads = Table(
    "leads",
    metadata,
    _id(),
    Column("first_name", String(100)),
    Column("last_name", String(100)),
    Column("email", String(255)),
    Column("company", String(200)),
    Column("status", String(30), default="new"),
    Column("source", String(50)),
    Column("created_by", String(36), index=True),
    Column("assigned_to", String(36), index=True),
    *_timestamps(),
    Column("deleted_at", DateTime),
)

campaigns = Table(
    "campaigns",
    metadata,
    _id(),
    Column("name", String(200), nullable=False),
    Column("status", String(30), default="draft"),
    Column("budget", Integer),
    Column("created_by", String(36), index=True),
    *_timestamps(),
    Column("deleted_at", DateTime),
)

tasks = Table(
    "tasks",
    metadata,
    _id(),
    Column("title", String(200), nullable=False),
    Column("status", String(30), default="open"),
    Column("priority", String(20)),
    Column("due_date", DateTime),
    Column("assigned_to", String(36), index=True),
    Column("created_by", String(36), index=True),
    *_timestamps(),
    Column("deleted_at", DateTime),
)

calendar_events = Table(
    "calendar_events",
    metadata,
    _id(),
    Column("title", String(200), nullable=False),
    Column("starts_at", DateTime),
    Column("ends_at", DateTime),
    Column("location", String(200)),
    Column("created_by", String(36), index=True),
    *_timestamps(),
    Column("deleted_at", DateTime),
)

# Mailbox connections only track their last synchronisation.
email_accounts = Table(
    "email_accounts",
    metadata,
    _id(),
    Column("user_id", String(36), nullable=False, index=True),
    Column("address", String(255), nullable=False),
    Column("provider", String(50)),
    Column("updated_at", DateTime),
    Column("deleted_at", DateTime),
)

reports = Table(
    "reports",
    metadata,
    _id(),
    Column("name", String(200), nullable=False),
    Column("report_type", String(50)),
    Column("parameters", JSON),
    Column("created_by", String(36), index=True),
    *_timestamps(),
    Column("deleted_at", DateTime),
)

documents = Table(
    "documents",
    metadata,
    _id(),
    Column("file_name", String(255), nullable=False),
    Column("mime_type", String(100)),
    Column("size_bytes", BigInteger),
    Column("created_by", String(36), index=True),
    *_timestamps(),
    Column("deleted_at", DateTime),
)

# Organisation-wide key/value settings carry no timestamps.
settings = Table(
    "settings",
    metadata,
    _id(),
    Column("setting_key", String(100), nullable=False),
    Column("setting_value", JSON),
    Column("scope", String(50)),
)


class GovernedTable(str, Enum):
    """Tables that may carry a retention policy or receive a cascade."""

    USERS = "users"
    AUDIT_LOGS = "audit_logs"
    USER_CONSENTS = "user_consents"
    PRIVACY_SETTINGS = "privacy_settings"
    DATA_EXPORT_REQUESTS = "data_export_requests"
    DATA_DELETION_REQUESTS = "data_deletion_requests"
    LEADS = "leads"
    CAMPAIGNS = "campaigns"
    TASKS = "tasks"
    CALENDAR_EVENTS = "calendar_events"
    EMAIL_ACCOUNTS = "email_accounts"
    REPORTS = "reports"
    DOCUMENTS = "documents"
    SETTINGS = "settings"


# Columns through which a domain table references the user owning a row.
SUBJECT_OWNER_COLUMNS: Dict[str, Tuple[str, ...]] = {
    "user_consents": ("user_id",),
    "privacy_settings": ("user_id",),
    "data_export_requests": ("user_id",),
    "audit_logs": ("user_id",),
    "leads": ("created_by",),
    "campaigns": ("created_by",),
    "tasks": ("created_by",),
    "calendar_events": ("created_by",),
    "email_accounts": ("user_id",),
    "reports": ("created_by",),
    "documents": ("created_by",),
}

# Columns naming a user a row is assigned to; the row belongs to its owner.
SUBJECT_ASSIGNEE_COLUMNS: Dict[str, Tuple[str, ...]] = {
    "leads": ("assigned_to",),
    "tasks": ("assigned_to",),
}


def governed_table(name: str) -> GovernedTable:
    """
    Validate a caller-supplied table name.

    Args:
        name: Table name as received from the caller

    Returns:
        The matching governed table

    Raises:
        UnknownTableError: The name is not a governed table
    """
    if isinstance(name, GovernedTable):
        return name
    try:
        return GovernedTable(name)
    except ValueError:
        raise UnknownTableError(str(name)) from None


def get_table(name: str) -> Table:
    """Return the ``Table`` object for a governed or internal table name."""
    key = name.value if isinstance(name, GovernedTable) else name
    table = metadata.tables.get(key)
    if table is None:
        raise UnknownTableError(str(key))
    return table
