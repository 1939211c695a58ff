"""
Data collector for subject exports.

Gathers everything stored about one subject into a nested bundle. Each
activity domain is read independently; a domain that cannot be read is
left out of the bundle.
"""

import logging
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional

from sqlalchemy import or_, select

from ..exceptions import SubjectNotFoundError
from ..storage.accessor import StorageAccessor
from ..storage.schema import (
    SUBJECT_ASSIGNEE_COLUMNS,
    SUBJECT_OWNER_COLUMNS,
    get_table,
    users,
)
from ..utils import utc_now
from .sanitize import sanitize_record

logger = logging.getLogger(__name__)

# Activity sections of the bundle, in export order
ACTIVITY_DOMAINS = (
    "leads",
    "campaigns",
    "tasks",
    "calendar_events",
    "email_accounts",
    "documents",
)

EXPORT_VERSION = "1.0"


def _serializable(record: Mapping[str, Any]) -> Dict[str, Any]:
    """Sanitize a row and render dates as ISO strings."""
    clean = sanitize_record(record) or {}
    return {
        key: value.isoformat() if isinstance(value, (datetime, date)) else value
        for key, value in clean.items()
    }


class DataCollector:
    """Builds the export bundle of a subject."""

    def __init__(self, storage: StorageAccessor):
        self.storage = storage

    def collect(
        self,
        subject_id: str,
        tables: Optional[Iterable[str]] = None,
        include_deleted: bool = False,
        export_format: str = "json",
    ) -> Dict[str, Any]:
        """
        Collect the data of one subject.

        Args:
            subject_id: Subject to export
            tables: Sections to include; the profile is always included
            include_deleted: Include soft-deleted rows
            export_format: Recorded in the export metadata

        Returns:
            Nested bundle with ``export_metadata``, ``personal_data``,
            ``preferences`` and ``activity_data`` sections

        Raises:
            SubjectNotFoundError: The subject does not exist
        """
        subject = self.storage.find_by_id(users, subject_id, include_deleted=True)
        if subject is None:
            raise SubjectNotFoundError(subject_id)

        wanted = set(tables) if tables else None

        def wants(section: str) -> bool:
            return wanted is None or section in wanted

        bundle: Dict[str, Any] = {
            "export_metadata": {
                "user_id": subject_id,
                "export_date": utc_now().isoformat(),
                "export_format": export_format,
                "include_deleted": include_deleted,
                "version": EXPORT_VERSION,
            },
            "personal_data": {"profile": _serializable(subject)},
            "preferences": {},
            "activity_data": {},
        }

        if wants("user_consents"):
            bundle["personal_data"]["consents"] = self._owned_rows(
                "user_consents", subject_id, include_deleted
            )
        if wants("privacy_settings"):
            bundle["preferences"]["privacy"] = self._owned_rows(
                "privacy_settings", subject_id, include_deleted
            )

        for domain in ACTIVITY_DOMAINS:
            if not wants(domain):
                continue
            try:
                bundle["activity_data"][domain] = self._owned_rows(
                    domain, subject_id, include_deleted
                )
            except Exception as e:
                logger.warning(f"Could not collect {domain} for user {subject_id}: {e}")

        return bundle

    def _owned_rows(
        self, table_name: str, subject_id: str, include_deleted: bool
    ) -> List[Dict[str, Any]]:
        table = get_table(table_name)
        subject_columns = SUBJECT_OWNER_COLUMNS[table_name] + SUBJECT_ASSIGNEE_COLUMNS.get(
            table_name, ()
        )

        statement = select(table).where(
            or_(*(table.c[column] == subject_id for column in subject_columns))
        )
        if not include_deleted and "deleted_at" in table.c:
            statement = statement.where(table.c.deleted_at.is_(None))
        if "created_at" in table.c:
            statement = statement.order_by(table.c.created_at)

        return [_serializable(row) for row in self.storage.query(statement)]
