"""
Deletion executor.

Carries out full deletion, partial deletion and anonymization of a subject.
Full deletion cascades over every table referencing the subject inside one
transaction and scrubs the identity record; a failed scrub rolls the whole
transaction back. Rows owned by other users are kept and only lose their
assignment to the subject.
"""

import logging
import secrets
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from sqlalchemy import Update, and_, delete, or_, select, update
from sqlalchemy.sql import ColumnElement

from ..exceptions import FatalDeletionError, SubjectNotFoundError, UnknownTableError
from ..retention.criteria import build_conditions
from ..storage.accessor import StorageAccessor, TransactionScope
from ..storage.artifacts import ArtifactStore
from ..storage.schema import (
    SUBJECT_ASSIGNEE_COLUMNS,
    SUBJECT_OWNER_COLUMNS,
    data_export_requests,
    get_table,
    users,
)
from ..utils import utc_now
from .models import CascadeResult, DeletionMode, GdprStatus, TableDeletionResult

logger = logging.getLogger(__name__)

# Tables emptied of the subject's rows by a full deletion, in order
CASCADE_TABLES = (
    "user_consents",
    "privacy_settings",
    "data_export_requests",
    "audit_logs",
    "leads",
    "campaigns",
    "tasks",
    "calendar_events",
    "email_accounts",
    "reports",
    "documents",
)

DELETED_FIRST_NAME = "DELETED"
DELETED_LAST_NAME = "USER"
DELETED_CREDENTIAL = "DELETED"

PartialScope = Mapping[str, Union[bool, Mapping[str, Any]]]


def owner_predicate(table_name: str, subject_id: str) -> ColumnElement:
    """Rows of a table owned by the subject."""
    try:
        columns = SUBJECT_OWNER_COLUMNS[table_name]
    except KeyError:
        raise UnknownTableError(table_name) from None
    table = get_table(table_name)
    return or_(*(table.c[column] == subject_id for column in columns))


def release_assignments(
    table_name: str, subject_id: str, conditions: Sequence[ColumnElement] = ()
) -> List[Update]:
    """Statements clearing the subject from rows it is assigned to but does not own."""
    table = get_table(table_name)
    return [
        update(table)
        .where(and_(table.c[column] == subject_id, *conditions))
        .values({column: None})
        for column in SUBJECT_ASSIGNEE_COLUMNS.get(table_name, ())
    ]


def validate_partial_scope(specific_data: Optional[PartialScope]) -> Dict[str, Any]:
    """
    Check a partial deletion scope.

    The scope maps a cascade table to ``True`` (all of the subject's rows) or
    to a criteria mapping narrowing them.

    Raises:
        ValueError: The scope is empty or an entry is neither True nor a mapping
        UnknownTableError: A table does not reference subjects
        InvalidCriteriaError: Criteria are malformed
    """
    if not specific_data:
        raise ValueError("Partial deletion requires specific_data")

    scope: Dict[str, Any] = {}
    for table_name, selector in specific_data.items():
        if table_name not in SUBJECT_OWNER_COLUMNS:
            raise UnknownTableError(table_name)
        if selector is True:
            scope[table_name] = True
        elif isinstance(selector, Mapping):
            build_conditions(get_table(table_name), selector)
            scope[table_name] = dict(selector)
        else:
            raise ValueError(
                f"Scope for '{table_name}' must be true or a criteria mapping"
            )
    return scope


def anonymous_email() -> str:
    return f"anonymous_{secrets.token_hex(8)}@anonymized.local"


class DeletionExecutor:
    """Executes verified deletion requests against the CRM store."""

    def __init__(self, storage: StorageAccessor, artifacts: Optional[ArtifactStore] = None):
        """
        Initialize the executor.

        Args:
            storage: Storage accessor
            artifacts: Store of export files removed with the subject's requests
        """
        self.storage = storage
        self.artifacts = artifacts

    def execute(
        self,
        subject_id: str,
        mode: Union[DeletionMode, str],
        specific_data: Optional[PartialScope] = None,
    ) -> CascadeResult:
        """Dispatch to the operation of the given mode."""
        mode = DeletionMode(mode)
        if mode is DeletionMode.FULL:
            return self.full_delete(subject_id)
        if mode is DeletionMode.PARTIAL:
            return self.partial_delete(subject_id, specific_data)
        return self.anonymize(subject_id)

    def _require_subject(self, subject_id: str) -> Dict[str, Any]:
        subject = self.storage.find_by_id(users, subject_id, include_deleted=True)
        if subject is None:
            raise SubjectNotFoundError(subject_id)
        return subject

    def full_delete(self, subject_id: str) -> CascadeResult:
        """
        Delete all rows referencing the subject and scrub the identity record.

        Each table is deleted inside its own savepoint; a failing table is
        logged and skipped. The identity scrub must update exactly one row,
        otherwise the transaction is rolled back.

        Raises:
            SubjectNotFoundError: The subject does not exist
            FatalDeletionError: The identity scrub failed
        """
        self._require_subject(subject_id)
        result = CascadeResult(subject_id=subject_id, mode=DeletionMode.FULL)
        artifact_names: List[str] = []

        with self.storage.transaction() as tx:
            for table_name in CASCADE_TABLES:
                table = get_table(table_name)
                try:
                    predicate = owner_predicate(table_name, subject_id)
                    with tx.savepoint():
                        if table_name == "data_export_requests":
                            rows = tx.query(
                                select(data_export_requests.c.file_path).where(predicate)
                            )
                            names = [r["file_path"] for r in rows if r["file_path"]]
                        deleted = tx.execute(delete(table).where(predicate))
                        unassigned = sum(
                            tx.execute(statement)
                            for statement in release_assignments(table_name, subject_id)
                        )
                except Exception as e:
                    logger.warning(f"Failed to delete user {subject_id} data from {table_name}: {e}")
                    result.tables.append(
                        TableDeletionResult(table=table_name, status="error", error=str(e))
                    )
                    continue

                if table_name == "data_export_requests":
                    artifact_names.extend(names)
                logger.debug(f"Deleted {deleted} rows of user {subject_id} from {table_name}")
                result.tables.append(
                    TableDeletionResult(table=table_name, deleted=deleted, unassigned=unassigned)
                )

            try:
                self._scrub_identity(tx, subject_id, utc_now())
            except FatalDeletionError:
                tx.rollback()
                raise
            except Exception as e:
                tx.rollback()
                raise FatalDeletionError(subject_id, str(e)) from e

            tx.commit()

        result.identity_updated = True
        result.artifacts_removed = self._remove_artifacts(artifact_names)
        logger.info(f"Full deletion of user {subject_id} completed: {result.summary()}")
        return result

    def _scrub_identity(self, tx: TransactionScope, subject_id: str, at: datetime) -> None:
        """Overwrite the identity record; exactly one row must change."""
        statement = (
            update(users)
            .where(users.c.id == subject_id)
            .values(
                email=f"deleted-{subject_id}@deleted.local",
                first_name=DELETED_FIRST_NAME,
                last_name=DELETED_LAST_NAME,
                password_hash=DELETED_CREDENTIAL,
                session_id=None,
                is_active=False,
                gdpr_status=GdprStatus.DELETED.value,
                anonymization_date=at,
                updated_at=at,
            )
        )
        affected = tx.execute(statement)
        if affected != 1:
            raise FatalDeletionError(
                subject_id, f"identity scrub affected {affected} rows, expected 1"
            )

    def _remove_artifacts(self, names: List[str]) -> int:
        if self.artifacts is None:
            return 0
        removed = 0
        for name in names:
            try:
                if self.artifacts.remove(name):
                    removed += 1
            except Exception as e:
                logger.warning(f"Failed to remove export artifact {name}: {e}")
        return removed

    def partial_delete(
        self, subject_id: str, specific_data: Optional[PartialScope]
    ) -> CascadeResult:
        """
        Delete the subject's rows from the tables named in the scope.

        Each table runs in its own transaction; failures are reported per
        table in the result. Rows of other owners assigned to the subject
        and matching the criteria are released.

        Raises:
            SubjectNotFoundError: The subject does not exist
            ValueError: The scope is empty or malformed
        """
        self._require_subject(subject_id)
        result = CascadeResult(subject_id=subject_id, mode=DeletionMode.PARTIAL)

        for table_name, selector in (specific_data or {}).items():
            try:
                if table_name not in SUBJECT_OWNER_COLUMNS:
                    raise UnknownTableError(table_name)
                table = get_table(table_name)
                criteria: List[ColumnElement] = []
                if isinstance(selector, Mapping):
                    criteria = build_conditions(table, selector)
                elif selector is not True:
                    raise ValueError(f"Invalid scope for {table_name}: {selector!r}")
                with self.storage.transaction() as tx:
                    deleted = tx.execute(
                        delete(table).where(owner_predicate(table_name, subject_id), *criteria)
                    )
                    unassigned = sum(
                        tx.execute(statement)
                        for statement in release_assignments(table_name, subject_id, criteria)
                    )
                    tx.commit()
            except Exception as e:
                logger.warning(f"Partial deletion of {table_name} for user {subject_id} failed: {e}")
                result.tables.append(
                    TableDeletionResult(table=table_name, status="error", error=str(e))
                )
                continue
            result.tables.append(
                TableDeletionResult(table=table_name, deleted=deleted, unassigned=unassigned)
            )

        logger.info(f"Partial deletion of user {subject_id} completed: {result.summary()}")
        return result

    def anonymize(self, subject_id: str) -> CascadeResult:
        """
        Replace the identity fields with anonymous placeholders.

        Domain rows stay attributed to the subject id.

        Raises:
            SubjectNotFoundError: The subject does not exist
        """
        now = utc_now()
        row = self.storage.update(
            users,
            subject_id,
            {
                "email": anonymous_email(),
                "first_name": "Anonymous",
                "last_name": "User",
                "company": None,
                "gdpr_status": GdprStatus.ANONYMIZED.value,
                "anonymization_date": now,
            },
        )
        if row is None:
            raise SubjectNotFoundError(subject_id)

        logger.info(f"User {subject_id} anonymized")
        return CascadeResult(
            subject_id=subject_id, mode=DeletionMode.ANONYMIZE, identity_updated=True
        )
