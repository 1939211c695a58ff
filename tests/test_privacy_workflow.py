"""
Tests for the export and deletion request workflow.
"""

import json
import re
from datetime import timedelta
from unittest.mock import patch

import pytest

from crm_compliance.audit.models import AuditAction
from crm_compliance.exceptions import (
    AlreadyVerifiedError,
    ArtifactNotFoundError,
    DeletionFailedError,
    DeletionRequestNotFoundError,
    DownloadLimitExceededError,
    ExportExpiredError,
    ExportNotReadyError,
    ExportRequestNotFoundError,
    FatalDeletionError,
    InvalidTokenError,
    SubjectNotFoundError,
    UnknownTableError,
    UnsupportedFormatError,
)
from crm_compliance.privacy.workflow import PrivacyRequestService
from crm_compliance.storage.schema import (
    data_deletion_requests,
    data_export_requests,
    leads,
    tasks,
    user_consents,
    users,
)
from crm_compliance.utils import utc_now


@pytest.fixture
def service(storage, audit, artifacts, config):
    svc = PrivacyRequestService(storage, audit, artifacts, config)
    yield svc
    svc.shutdown()


def _token(url):
    return url.split("token=")[1]


def _export(service, subject_id, **kwargs):
    ticket = service.request_export(subject_id, **kwargs)
    status = service.wait_for_export(ticket.export_id, timeout=10)
    return ticket, status


@pytest.mark.compliance
class TestExportRequests:
    """Test requesting and processing exports."""

    def test_request_returns_ticket(self, service, subject, audit, config):
        before = utc_now()
        ticket = service.request_export(subject["id"])

        assert ticket.status == "pending"
        assert ticket.download_url.startswith(
            f"/api/gdpr/export/{ticket.export_id}/download?token="
        )
        assert len(_token(ticket.download_url)) == 64
        assert ticket.expires_at >= before + timedelta(days=config.export_expiry_days)
        assert ticket.estimated_completion > before

        service.wait_for_export(ticket.export_id, timeout=10)
        requested = audit.entries(action=AuditAction.DATA_EXPORT_REQUESTED)
        assert requested[0].record_id == ticket.export_id

    def test_export_completes(self, service, subject, artifacts, audit):
        ticket, status = _export(service, subject["id"])

        assert status["status"] == "completed"
        assert status["file_path"] == f"user_{subject['id']}_export_{ticket.export_id}.json"
        assert status["file_size"] > 0
        assert status["completed_at"] is not None
        assert "verification_token" not in status

        bundle = json.loads(artifacts.read(status["file_path"]))
        assert bundle["personal_data"]["profile"]["email"] == "jane.doe@example.com"
        assert "password_hash" not in bundle["personal_data"]["profile"]
        assert audit.entries(action=AuditAction.DATA_EXPORT_COMPLETED)[0].success is True

    @pytest.mark.parametrize("fmt,marker", [("csv", '"Section"'), ("xml", "<UserDataExport>")])
    def test_other_formats(self, service, subject, artifacts, fmt, marker):
        _, status = _export(service, subject["id"], export_format=fmt)

        assert status["file_path"].endswith(f".{fmt}")
        assert marker in artifacts.read(status["file_path"]).decode()

    def test_partial_export(self, service, subject, storage, artifacts):
        storage.create(leads, {"first_name": "Mine", "created_by": subject["id"]})

        _, status = _export(service, subject["id"], tables=["leads"])

        assert status["request_type"] == "partial_export"
        assert status["requested_data"] == ["leads"]
        bundle = json.loads(artifacts.read(status["file_path"]))
        assert list(bundle["activity_data"]) == ["leads"]

    def test_unsupported_format_is_rejected_up_front(self, service, subject, storage):
        with pytest.raises(UnsupportedFormatError):
            service.request_export(subject["id"], export_format="pdf")
        assert storage.count(data_export_requests) == 0

    def test_unknown_subject(self, service, storage):
        with pytest.raises(SubjectNotFoundError):
            service.request_export("missing")
        assert storage.count(data_export_requests) == 0

    def test_failed_export(self, service, subject, artifacts, audit):
        with patch.object(
            service.collector, "collect", side_effect=RuntimeError("store offline")
        ):
            _, status = _export(service, subject["id"])

        assert status["status"] == "failed"
        assert "store offline" in status["error_message"]
        assert status["file_path"] is None
        failed = audit.entries(action=AuditAction.DATA_EXPORT_FAILED)[0]
        assert failed.success is False

    def test_status_of_other_subject(self, service, subject, make_user):
        ticket, _ = _export(service, subject["id"])
        stranger = make_user()

        with pytest.raises(ExportRequestNotFoundError):
            service.get_export_status(ticket.export_id, subject_id=stranger["id"])
        assert service.get_export_status(ticket.export_id, subject_id=subject["id"])

    def test_processing_skips_claimed_request(self, service, subject, storage):
        ticket, _ = _export(service, subject["id"])

        service._process_export(ticket.export_id)

        assert storage.find_by_id(data_export_requests, ticket.export_id)["status"] == "completed"


@pytest.mark.compliance
class TestExportDownload:
    """Test handing out export artifacts."""

    def test_download(self, service, subject, audit):
        ticket, status = _export(service, subject["id"])

        download = service.download_export(ticket.export_id, _token(ticket.download_url))

        assert download.download_count == 1
        assert download.file_name == status["file_path"]
        assert download.file_size == status["file_size"]
        assert download.file_path.endswith(status["file_path"])
        assert audit.entries(action=AuditAction.DATA_EXPORT_DOWNLOADED)[0].success is True

    def test_download_limit(self, service, subject, storage, config):
        ticket, _ = _export(service, subject["id"])
        token = _token(ticket.download_url)

        for _ in range(config.max_downloads):
            service.download_export(ticket.export_id, token)

        with pytest.raises(DownloadLimitExceededError):
            service.download_export(ticket.export_id, token)
        row = storage.find_by_id(data_export_requests, ticket.export_id)
        assert row["download_count"] == config.max_downloads

    def test_wrong_token(self, service, subject):
        ticket, _ = _export(service, subject["id"])
        with pytest.raises(InvalidTokenError):
            service.download_export(ticket.export_id, "0" * 64)

    def test_unknown_export(self, service):
        with pytest.raises(ExportRequestNotFoundError):
            service.download_export("missing", "token")

    def test_not_ready(self, service, subject, storage):
        row = storage.create(
            data_export_requests,
            {"user_id": subject["id"], "status": "pending", "verification_token": "abc"},
        )
        with pytest.raises(ExportNotReadyError) as exc_info:
            service.download_export(row["id"], "abc")
        assert exc_info.value.status == "pending"

    def test_expired(self, service, subject, storage):
        ticket, _ = _export(service, subject["id"])
        storage.update(
            data_export_requests, ticket.export_id, {"expires_at": utc_now() - timedelta(hours=1)}
        )
        with pytest.raises(ExportExpiredError):
            service.download_export(ticket.export_id, _token(ticket.download_url))

    def test_missing_artifact(self, service, subject, artifacts):
        ticket, status = _export(service, subject["id"])
        artifacts.remove(status["file_path"])

        with pytest.raises(ArtifactNotFoundError):
            service.download_export(ticket.export_id, _token(ticket.download_url))


@pytest.mark.compliance
class TestDeletionRequests:
    """Test requesting deletions."""

    def test_request_by_email(self, service, subject, storage, audit):
        ticket = service.request_deletion("Jane.Doe@Example.com", reason="Leaving")

        assert ticket.status == "pending_verification"
        assert ticket.verification_required is True
        assert ticket.verification_url.startswith(
            f"/api/gdpr/delete/{ticket.deletion_id}/verify?token="
        )

        row = storage.find_by_id(data_deletion_requests, ticket.deletion_id)
        assert row["user_id"] == subject["id"]
        assert row["request_type"] == "full"
        assert row["deletion_reason"] == "Leaving"
        assert row["verification_token"] == _token(ticket.verification_url)
        assert storage.find_by_id(users, subject["id"])["gdpr_status"] == "active"
        assert audit.entries(action=AuditAction.DATA_DELETION_REQUESTED)[0].success is True

    def test_request_by_id(self, service, subject):
        ticket = service.request_deletion(subject["id"], "anonymize")
        assert ticket.deletion_id

    def test_unknown_subject(self, service, storage):
        with pytest.raises(SubjectNotFoundError):
            service.request_deletion("nobody@example.com")
        assert storage.count(data_deletion_requests) == 0

    def test_invalid_deletion_type(self, service, subject):
        with pytest.raises(ValueError):
            service.request_deletion(subject["id"], "shred")

    def test_partial_requires_scope(self, service, subject, storage):
        with pytest.raises(ValueError):
            service.request_deletion(subject["id"], "partial")
        with pytest.raises(UnknownTableError):
            service.request_deletion(subject["id"], "partial", specific_data={"users": True})
        assert storage.count(data_deletion_requests) == 0


@pytest.mark.compliance
class TestDeletionVerification:
    """Test verifying and executing deletions."""

    def test_full_deletion(self, service, subject, storage, audit):
        storage.create(leads, {"created_by": subject["id"]})
        ticket = service.request_deletion(subject["id"], "full")

        result = service.verify_deletion(ticket.deletion_id, _token(ticket.verification_url))

        assert result.verified is True
        assert result.status == "completed"
        assert storage.count(leads, {"created_by": subject["id"]}) == 0
        scrubbed = storage.find_by_id(users, subject["id"])
        assert scrubbed["gdpr_status"] == "deleted"
        assert scrubbed["email"] == f"deleted-{subject['id']}@deleted.local"

        row = storage.find_by_id(data_deletion_requests, ticket.deletion_id)
        assert row["status"] == "completed"
        assert row["verified_at"] is not None
        assert row["processed_at"] is not None
        assert row["completion_notes"].startswith("full deletion")
        assert audit.entries(action=AuditAction.DATA_DELETION_COMPLETED)[0].success is True

    def test_partial_deletion(self, service, subject, storage):
        storage.create(leads, {"status": "lost", "created_by": subject["id"]})
        storage.create(leads, {"status": "won", "created_by": subject["id"]})
        ticket = service.request_deletion(
            subject["id"], "partial", specific_data={"leads": {"status": "lost"}}
        )

        service.verify_deletion(ticket.deletion_id, _token(ticket.verification_url))

        remaining = storage.find(leads, {"created_by": subject["id"]})
        assert [r["status"] for r in remaining] == ["won"]
        assert storage.find_by_id(users, subject["id"])["gdpr_status"] == "active"

    def test_anonymization(self, service, subject, storage):
        lead = storage.create(leads, {"first_name": "Acme", "created_by": subject["id"]})
        task = storage.create(tasks, {"title": "Call", "assigned_to": subject["id"]})
        ticket = service.request_deletion("Jane.Doe@Example.com", "anonymize")

        result = service.verify_deletion(ticket.deletion_id, _token(ticket.verification_url))

        assert result.status == "completed"
        row = storage.find_by_id(users, subject["id"])
        assert re.fullmatch(r"anonymous_[0-9a-f]+@anonymized\.local", row["email"])
        assert row["first_name"] == "Anonymous"
        assert row["gdpr_status"] == "anonymized"
        assert storage.find_by_id(leads, lead["id"]) == lead
        assert storage.find_by_id(tasks, task["id"]) == task

    def test_wrong_token(self, service, subject, storage, audit):
        ticket = service.request_deletion(subject["id"])

        with pytest.raises(InvalidTokenError):
            service.verify_deletion(ticket.deletion_id, "f" * 64)

        row = storage.find_by_id(data_deletion_requests, ticket.deletion_id)
        assert row["status"] == "pending_verification"
        assert row["verified_at"] is None
        entry = audit.entries(action=AuditAction.DATA_DELETION_VERIFIED)[0]
        assert entry.success is False

    def test_verify_twice(self, service, subject, storage):
        ticket = service.request_deletion(subject["id"], "anonymize")
        token = _token(ticket.verification_url)
        service.verify_deletion(ticket.deletion_id, token)
        before = storage.find_by_id(data_deletion_requests, ticket.deletion_id)

        with pytest.raises(AlreadyVerifiedError):
            service.verify_deletion(ticket.deletion_id, token)

        after = storage.find_by_id(data_deletion_requests, ticket.deletion_id)
        assert after["status"] == before["status"] == "completed"
        assert after["verified_at"] == before["verified_at"]
        assert after["completion_notes"] == before["completion_notes"]

    def test_unknown_request(self, service):
        with pytest.raises(DeletionRequestNotFoundError):
            service.verify_deletion("missing", "token")

    def test_failed_deletion_is_recorded(self, service, subject, storage, audit):
        ticket = service.request_deletion(subject["id"])

        with patch.object(
            service.executor,
            "execute",
            side_effect=FatalDeletionError(subject["id"], "identity scrub failed"),
        ):
            with pytest.raises(DeletionFailedError):
                service.verify_deletion(ticket.deletion_id, _token(ticket.verification_url))

        row = storage.find_by_id(data_deletion_requests, ticket.deletion_id)
        assert row["status"] == "failed"
        assert "identity scrub failed" in row["completion_notes"]
        assert audit.entries(action=AuditAction.DATA_DELETION_FAILED)[0].success is False
        assert storage.find_by_id(users, subject["id"])["gdpr_status"] == "active"

    def test_failure_survives_status_update_error(self, service, subject, storage, audit, caplog):
        ticket = service.request_deletion(subject["id"])
        original_update = storage.update

        def failing_update(table, record_id, fields, **kwargs):
            if fields.get("status") == "failed":
                raise RuntimeError("database locked")
            return original_update(table, record_id, fields, **kwargs)

        with patch.object(service.executor, "execute", side_effect=RuntimeError("boom")):
            with patch.object(storage, "update", side_effect=failing_update):
                with pytest.raises(DeletionFailedError):
                    service.verify_deletion(
                        ticket.deletion_id, _token(ticket.verification_url)
                    )

        assert f"Could not mark deletion {ticket.deletion_id} as failed" in caplog.text
        entry = audit.entries(action=AuditAction.DATA_DELETION_FAILED)[0]
        assert entry.error_message == "boom"


class TestComplianceStatus:
    """Test the compliance overview."""

    def test_status(self, service, subject, storage):
        storage.create(
            user_consents,
            {"user_id": subject["id"], "consent_type": "marketing", "consent_given": True},
        )
        storage.create(
            user_consents,
            {"user_id": subject["id"], "consent_type": "analytics", "is_active": False},
        )
        _export(service, subject["id"])
        service.request_deletion(subject["id"], "anonymize")

        status = service.get_compliance_status(subject["id"])

        assert status.status == "active"
        assert status.consent_date == subject["gdpr_consent_date"]
        assert [c["consent_type"] for c in status.consents] == ["marketing"]
        assert status.request_counts == {"export_requests": 1, "deletion_requests": 1}

    def test_unknown_subject(self, service):
        with pytest.raises(SubjectNotFoundError):
            service.get_compliance_status("missing")
