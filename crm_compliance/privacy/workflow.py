"""
Privacy request workflow.

Handles the two privacy-rights requests of a subject:

* Export: ``pending -> processing -> completed | failed``. The request is
  stored and processed on a worker pool; the caller only gets the ticket.
* Deletion: ``pending_verification -> in_progress -> completed | failed``.
  Nothing is deleted until the request is verified with its token.
"""

import hmac
import logging
import secrets
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import timedelta
from typing import Any, Dict, List, Optional, Union

from sqlalchemy import func, select, update

from ..audit.models import AuditAction
from ..audit.sink import AuditSink
from ..config import ComplianceConfig
from ..exceptions import (
    AlreadyVerifiedError,
    ArtifactNotFoundError,
    DeletionFailedError,
    DeletionRequestNotFoundError,
    DownloadLimitExceededError,
    ExportExpiredError,
    ExportNotReadyError,
    ExportRequestNotFoundError,
    InvalidTokenError,
    SubjectNotFoundError,
)
from ..storage.accessor import StorageAccessor
from ..storage.artifacts import ArtifactStore
from ..storage.schema import (
    data_deletion_requests,
    data_export_requests,
    user_consents,
    users,
)
from ..utils import utc_now
from .collector import DataCollector
from .executor import DeletionExecutor, PartialScope, validate_partial_scope
from .models import (
    ComplianceStatus,
    DeletionMode,
    DeletionStatus,
    DeletionTicket,
    ExportDownload,
    ExportStatus,
    ExportTicket,
    VerificationResult,
)
from .sanitize import sanitize_record
from .serializers import resolve_format, serialize

logger = logging.getLogger(__name__)


def _tokens_match(expected: Optional[str], supplied: Optional[str]) -> bool:
    if not expected or not supplied:
        return False
    return hmac.compare_digest(expected.encode(), supplied.encode())


class PrivacyRequestService:
    """Export and deletion requests of data subjects."""

    def __init__(
        self,
        storage: StorageAccessor,
        audit: AuditSink,
        artifacts: ArtifactStore,
        config: ComplianceConfig,
        collector: Optional[DataCollector] = None,
        executor: Optional[DeletionExecutor] = None,
    ):
        """
        Initialize the service.

        Args:
            storage: Storage accessor
            audit: Sink for request entries
            artifacts: Store for export files
            config: Expiry, download limit, URL prefix and worker settings
            collector: Data collector, built from ``storage`` if omitted
            executor: Deletion executor, built from ``storage`` if omitted
        """
        self.storage = storage
        self.audit = audit
        self.artifacts = artifacts
        self.config = config
        self.collector = collector or DataCollector(storage)
        self.executor = executor or DeletionExecutor(storage, artifacts)

        self._pool = ThreadPoolExecutor(
            max_workers=config.export_workers, thread_name_prefix="privacy-export"
        )
        self._futures: Dict[str, Future] = {}
        self._futures_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Exports
    # ------------------------------------------------------------------

    def request_export(
        self,
        subject_id: str,
        export_format: str = "json",
        tables: Optional[List[str]] = None,
        include_deleted: bool = False,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> ExportTicket:
        """
        Create an export request and queue it for processing.

        Args:
            subject_id: Subject whose data is exported
            export_format: json, csv or xml
            tables: Sections to export, all when omitted
            include_deleted: Include soft-deleted rows
            ip_address: Requesting client address
            user_agent: Requesting client user agent

        Returns:
            Ticket with the download URL

        Raises:
            SubjectNotFoundError: The subject does not exist
            UnsupportedFormatError: The format is not supported
        """
        fmt = resolve_format(export_format)
        if self.storage.find_by_id(users, subject_id) is None:
            raise SubjectNotFoundError(subject_id)

        now = utc_now()
        token = secrets.token_hex(32)
        expires_at = now + timedelta(days=self.config.export_expiry_days)

        row = self.storage.create(
            data_export_requests,
            {
                "user_id": subject_id,
                "request_type": "partial_export" if tables else "full_export",
                "status": ExportStatus.PENDING.value,
                "export_format": fmt.value,
                "requested_data": list(tables) if tables else None,
                "include_deleted": include_deleted,
                "verification_token": token,
                "expires_at": expires_at,
                "download_count": 0,
                "max_downloads": self.config.max_downloads,
                "ip_address": ip_address,
                "user_agent": user_agent,
            },
        )
        export_id = row["id"]

        self.audit.record(
            AuditAction.DATA_EXPORT_REQUESTED,
            "data_export_requests",
            record_id=export_id,
            new_data={"export_format": fmt.value, "tables": tables},
            user_id=subject_id,
        )
        logger.info(f"Export {export_id} requested for user {subject_id} ({fmt.value})")

        future = self._pool.submit(self._process_export, export_id)
        with self._futures_lock:
            self._futures[export_id] = future
        future.add_done_callback(lambda _: self._forget(export_id))

        return ExportTicket(
            export_id=export_id,
            status=ExportStatus.PENDING,
            download_url=(
                f"{self.config.api_prefix}/export/{export_id}/download?token={token}"
            ),
            expires_at=expires_at,
            estimated_completion=now
            + timedelta(minutes=self.config.export_estimated_minutes),
        )

    def _forget(self, export_id: str) -> None:
        with self._futures_lock:
            self._futures.pop(export_id, None)

    def _process_export(self, export_id: str) -> None:
        """Build the artifact of one export request; never raises."""
        claimed = self.storage.update(
            data_export_requests,
            export_id,
            {"status": ExportStatus.PROCESSING.value},
            conditions={"status": ExportStatus.PENDING.value},
        )
        if claimed is None:
            logger.info(f"Export {export_id} is no longer pending, skipping")
            return

        subject_id = claimed["user_id"]
        artifact_name: Optional[str] = None
        try:
            bundle = self.collector.collect(
                subject_id,
                tables=claimed.get("requested_data"),
                include_deleted=bool(claimed.get("include_deleted")),
                export_format=claimed["export_format"],
            )
            content = serialize(bundle, claimed["export_format"])

            name = f"user_{subject_id}_export_{export_id}.{claimed['export_format']}"
            size = self.artifacts.write(name, content)
            artifact_name = name

            completed = self.storage.update(
                data_export_requests,
                export_id,
                {
                    "status": ExportStatus.COMPLETED.value,
                    "file_path": name,
                    "file_size": size,
                    "completed_at": utc_now(),
                },
                conditions={"status": ExportStatus.PROCESSING.value},
            )
            if completed is None:
                raise RuntimeError("export request changed while processing")
        except Exception as e:
            logger.exception(f"Export {export_id} for user {subject_id} failed")
            if artifact_name is not None:
                try:
                    self.artifacts.remove(artifact_name)
                except OSError as remove_error:
                    logger.warning(f"Failed to remove artifact {artifact_name}: {remove_error}")
            try:
                self.storage.update(
                    data_export_requests,
                    export_id,
                    {"status": ExportStatus.FAILED.value, "error_message": str(e)},
                )
            except Exception:
                logger.exception(f"Could not mark export {export_id} as failed")
            self.audit.record(
                AuditAction.DATA_EXPORT_FAILED,
                "data_export_requests",
                record_id=export_id,
                user_id=subject_id,
                success=False,
                error_message=str(e),
            )
            return

        self.audit.record(
            AuditAction.DATA_EXPORT_COMPLETED,
            "data_export_requests",
            record_id=export_id,
            new_data={"file_size": size, "export_format": claimed["export_format"]},
            user_id=subject_id,
        )
        logger.info(f"Export {export_id} completed ({size} bytes)")

    def get_export_status(
        self, export_id: str, subject_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Current state of an export request, without its token.

        Raises:
            ExportRequestNotFoundError: Unknown request, or owned by another subject
        """
        row = self.storage.find_by_id(data_export_requests, export_id)
        if row is None or (subject_id is not None and row["user_id"] != subject_id):
            raise ExportRequestNotFoundError(export_id)
        return sanitize_record(row)

    def wait_for_export(self, export_id: str, timeout: Optional[float] = None) -> Dict[str, Any]:
        """Block until the background processing of an export has finished."""
        with self._futures_lock:
            future = self._futures.get(export_id)
        if future is not None:
            future.result(timeout=timeout)
        return self.get_export_status(export_id)

    def download_export(
        self, export_id: str, token: str, user_id: Optional[str] = None
    ) -> ExportDownload:
        """
        Hand out a completed export artifact.

        Raises:
            ExportRequestNotFoundError: Unknown request
            InvalidTokenError: Token does not match
            ExportNotReadyError: Export is not completed
            ExportExpiredError: Export has expired
            DownloadLimitExceededError: Download limit reached
            ArtifactNotFoundError: Artifact file is missing
        """
        row = self.storage.find_by_id(data_export_requests, export_id)
        if row is None:
            raise ExportRequestNotFoundError(export_id)
        if not _tokens_match(row["verification_token"], token):
            raise InvalidTokenError(export_id)
        if row["status"] != ExportStatus.COMPLETED.value:
            raise ExportNotReadyError(export_id, row["status"])
        if row["expires_at"] is not None and row["expires_at"] < utc_now():
            raise ExportExpiredError(export_id)
        if row["download_count"] >= row["max_downloads"]:
            raise DownloadLimitExceededError(export_id, row["max_downloads"])
        if not row["file_path"] or not self.artifacts.exists(row["file_path"]):
            raise ArtifactNotFoundError(row["file_path"] or export_id)

        table = data_export_requests
        counted = self.storage.execute(
            update(table)
            .where(table.c.id == export_id, table.c.download_count < table.c.max_downloads)
            .values(download_count=table.c.download_count + 1, updated_at=utc_now())
        )
        if not counted:
            raise DownloadLimitExceededError(export_id, row["max_downloads"])

        self.audit.record(
            AuditAction.DATA_EXPORT_DOWNLOADED,
            "data_export_requests",
            record_id=export_id,
            new_data={"download_count": row["download_count"] + 1},
            user_id=user_id or row["user_id"],
        )

        return ExportDownload(
            export_id=export_id,
            file_path=str(self.artifacts.path(row["file_path"])),
            file_name=row["file_path"],
            export_format=row["export_format"],
            file_size=row["file_size"] or 0,
            download_count=row["download_count"] + 1,
        )

    # ------------------------------------------------------------------
    # Deletions
    # ------------------------------------------------------------------

    def _resolve_subject(self, subject_or_email: str) -> Dict[str, Any]:
        subject = self.storage.find_by_id(users, subject_or_email)
        if subject is None and "@" in subject_or_email:
            rows = self.storage.query(
                select(users).where(
                    func.lower(users.c.email) == subject_or_email.strip().lower(),
                    users.c.deleted_at.is_(None),
                )
            )
            subject = rows[0] if rows else None
        if subject is None:
            raise SubjectNotFoundError(subject_or_email)
        return subject

    def request_deletion(
        self,
        subject_or_email: str,
        deletion_type: Union[DeletionMode, str] = DeletionMode.FULL,
        reason: Optional[str] = None,
        specific_data: Optional[PartialScope] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> DeletionTicket:
        """
        Create a deletion request awaiting verification.

        Args:
            subject_or_email: Subject id or email address
            deletion_type: full, partial or anonymize
            reason: Reason given by the subject
            specific_data: Scope of a partial deletion
            ip_address: Requesting client address
            user_agent: Requesting client user agent

        Returns:
            Ticket with the verification URL

        Raises:
            SubjectNotFoundError: No subject with that id or email
            ValueError: Unknown deletion type, or partial deletion without scope
            UnknownTableError: Scope names a table that does not reference subjects
            InvalidCriteriaError: Scope criteria are malformed
        """
        mode = DeletionMode(deletion_type)
        subject = self._resolve_subject(subject_or_email)

        scope = validate_partial_scope(specific_data) if mode is DeletionMode.PARTIAL else None

        now = utc_now()
        token = secrets.token_hex(32)
        row = self.storage.create(
            data_deletion_requests,
            {
                "user_id": subject["id"],
                "email": subject["email"],
                "request_type": mode.value,
                "status": DeletionStatus.PENDING_VERIFICATION.value,
                "requested_data": scope,
                "deletion_reason": reason,
                "verification_token": token,
                "ip_address": ip_address,
                "user_agent": user_agent,
            },
        )
        deletion_id = row["id"]

        self.audit.record(
            AuditAction.DATA_DELETION_REQUESTED,
            "data_deletion_requests",
            record_id=deletion_id,
            new_data={"deletion_type": mode.value, "reason": reason},
            user_id=subject["id"],
        )
        logger.info(f"Deletion {deletion_id} ({mode.value}) requested for user {subject['id']}")

        return DeletionTicket(
            deletion_id=deletion_id,
            status=DeletionStatus.PENDING_VERIFICATION,
            verification_required=True,
            verification_url=(
                f"{self.config.api_prefix}/delete/{deletion_id}/verify?token={token}"
            ),
            estimated_completion=now + timedelta(days=self.config.deletion_estimated_days),
        )

    def verify_deletion(self, deletion_id: str, token: str) -> VerificationResult:
        """
        Verify a deletion request and execute it.

        Raises:
            DeletionRequestNotFoundError: Unknown request
            InvalidTokenError: Token does not match
            AlreadyVerifiedError: Request was verified before
            DeletionFailedError: The deletion ran and failed; the request is
                stored as failed
        """
        row = self.storage.find_by_id(data_deletion_requests, deletion_id)
        if row is None:
            raise DeletionRequestNotFoundError(deletion_id)

        if not _tokens_match(row["verification_token"], token):
            self.audit.record(
                AuditAction.DATA_DELETION_VERIFIED,
                "data_deletion_requests",
                record_id=deletion_id,
                user_id=row["user_id"],
                success=False,
                error_message="Invalid verification token",
            )
            raise InvalidTokenError(deletion_id)

        if row["verified_at"] is not None:
            raise AlreadyVerifiedError(deletion_id)

        claimed = self.storage.update(
            data_deletion_requests,
            deletion_id,
            {"verified_at": utc_now(), "status": DeletionStatus.IN_PROGRESS.value},
            conditions={
                "verified_at": None,
                "status": DeletionStatus.PENDING_VERIFICATION.value,
            },
        )
        if claimed is None:
            raise AlreadyVerifiedError(deletion_id)

        subject_id = claimed["user_id"]
        self.audit.record(
            AuditAction.DATA_DELETION_VERIFIED,
            "data_deletion_requests",
            record_id=deletion_id,
            user_id=subject_id,
        )

        try:
            result = self.executor.execute(
                subject_id, claimed["request_type"], claimed.get("requested_data")
            )
        except Exception as e:
            logger.error(f"Deletion {deletion_id} for user {subject_id} failed: {e}")
            try:
                self.storage.update(
                    data_deletion_requests,
                    deletion_id,
                    {
                        "status": DeletionStatus.FAILED.value,
                        "processed_at": utc_now(),
                        "completion_notes": f"Deletion failed: {e}",
                    },
                )
            except Exception:
                logger.exception(f"Could not mark deletion {deletion_id} as failed")
            self.audit.record(
                AuditAction.DATA_DELETION_FAILED,
                "data_deletion_requests",
                record_id=deletion_id,
                user_id=subject_id,
                success=False,
                error_message=str(e),
            )
            raise DeletionFailedError(deletion_id, str(e)) from e

        notes = result.summary()
        self.storage.update(
            data_deletion_requests,
            deletion_id,
            {
                "status": DeletionStatus.COMPLETED.value,
                "processed_at": utc_now(),
                "completion_notes": notes,
            },
        )
        self.audit.record(
            AuditAction.DATA_DELETION_COMPLETED,
            "data_deletion_requests",
            record_id=deletion_id,
            new_data={
                "deletion_type": claimed["request_type"],
                "deleted_rows": result.deleted,
                "failed_tables": result.errors,
            },
            user_id=subject_id,
        )
        logger.info(f"Deletion {deletion_id} completed: {notes}")

        return VerificationResult(
            verified=True,
            status=DeletionStatus.COMPLETED,
            message=f"Data deletion verified and completed: {notes}",
        )

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_compliance_status(self, subject_id: str) -> ComplianceStatus:
        """
        Privacy overview of one subject.

        Raises:
            SubjectNotFoundError: The subject does not exist
        """
        subject = self.storage.find_by_id(users, subject_id, include_deleted=True)
        if subject is None:
            raise SubjectNotFoundError(subject_id)

        consents = [
            {
                "consent_type": c["consent_type"],
                "consent_given": c["consent_given"],
                "consent_date": c["consent_date"],
                "withdrawal_date": c["withdrawal_date"],
                "legal_basis": c["legal_basis"],
                "version": c["version"],
            }
            for c in self.storage.find(
                user_consents,
                {"user_id": subject_id, "is_active": True},
                order_by="created_at",
            )
        ]

        return ComplianceStatus(
            subject_id=subject_id,
            status=subject["gdpr_status"],
            consent_date=subject["gdpr_consent_date"],
            data_retention_until=subject["data_retention_until"],
            consents=consents,
            request_counts={
                "export_requests": self.storage.count(
                    data_export_requests, {"user_id": subject_id}
                ),
                "deletion_requests": self.storage.count(
                    data_deletion_requests, {"user_id": subject_id}
                ),
            },
            last_update=subject["updated_at"],
        )

    def shutdown(self, wait: bool = True) -> None:
        """Stop the export worker pool."""
        self._pool.shutdown(wait=wait)
