"""
Tests for the deletion executor.
"""

from unittest.mock import patch

import pytest

from crm_compliance.exceptions import (
    FatalDeletionError,
    InvalidCriteriaError,
    SubjectNotFoundError,
    UnknownTableError,
)
from crm_compliance.privacy import executor as executor_module
from crm_compliance.privacy.executor import (
    CASCADE_TABLES,
    DeletionExecutor,
    validate_partial_scope,
)
from crm_compliance.privacy.models import DeletionMode
from crm_compliance.storage.schema import (
    audit_logs,
    data_export_requests,
    leads,
    tasks,
    user_consents,
    users,
)


@pytest.fixture
def executor(storage, artifacts):
    return DeletionExecutor(storage, artifacts)


@pytest.fixture
def other(make_user):
    return make_user(email="other@example.com")


@pytest.fixture
def populated(storage, artifacts, subject, other):
    for owner in (subject, other):
        storage.create(user_consents, {"user_id": owner["id"], "consent_type": "marketing"})
        storage.create(leads, {"first_name": "Lead", "created_by": owner["id"]})
        storage.create(tasks, {"title": "Open", "status": "open", "assigned_to": owner["id"]})
        storage.create(
            audit_logs,
            {"user_id": owner["id"], "action": "DATA_EXPORT_REQUESTED", "table_name": "users",
             "checksum": "0" * 64},
        )
    storage.create(tasks, {"title": "Done", "status": "done", "created_by": subject["id"]})
    storage.create(leads, {"first_name": "Assigned", "assigned_to": subject["id"]})

    artifacts.write("subject-export.json", "{}")
    storage.create(
        data_export_requests, {"user_id": subject["id"], "file_path": "subject-export.json"}
    )
    return subject


def _owned(storage, table, column, owner_id):
    return storage.count(table, {column: owner_id})


class TestFullDelete:
    """Test full deletion."""

    def test_cascade_and_identity_scrub(self, storage, executor, artifacts, populated, other):
        subject_id = populated["id"]

        result = executor.full_delete(subject_id)

        assert [t.table for t in result.tables] == list(CASCADE_TABLES)
        assert result.partial_failure is False
        assert result.identity_updated is True
        assert result.artifacts_removed == 1
        assert not artifacts.exists("subject-export.json")

        assert _owned(storage, user_consents, "user_id", subject_id) == 0
        assert _owned(storage, leads, "created_by", subject_id) == 0
        assert _owned(storage, leads, "assigned_to", subject_id) == 0
        assert _owned(storage, tasks, "created_by", subject_id) == 0
        assert _owned(storage, audit_logs, "user_id", subject_id) == 0
        assert _owned(storage, data_export_requests, "user_id", subject_id) == 0

        assert _owned(storage, leads, "created_by", other["id"]) == 1
        assert _owned(storage, user_consents, "user_id", other["id"]) == 1

    def test_rows_owned_by_others_are_only_unassigned(self, storage, executor, subject, other):
        lead = storage.create(
            leads, {"first_name": "Handed over", "created_by": other["id"], "assigned_to": subject["id"]}
        )
        task = storage.create(
            tasks, {"title": "Follow up", "created_by": other["id"], "assigned_to": subject["id"]}
        )

        result = executor.full_delete(subject["id"])

        kept_lead = storage.find_by_id(leads, lead["id"])
        assert kept_lead is not None
        assert kept_lead["created_by"] == other["id"]
        assert kept_lead["assigned_to"] is None
        assert storage.find_by_id(tasks, task["id"])["assigned_to"] is None

        by_table = {t.table: t for t in result.tables}
        assert by_table["leads"].deleted == 0
        assert by_table["leads"].unassigned == 1
        assert by_table["tasks"].unassigned == 1
        assert "2 rows of other users unassigned" in result.summary()

    def test_identity_record_is_scrubbed(self, storage, executor, populated):
        subject_id = populated["id"]
        executor.full_delete(subject_id)

        row = storage.find_by_id(users, subject_id, include_deleted=True)
        assert row["email"] == f"deleted-{subject_id}@deleted.local"
        assert row["first_name"] == "DELETED"
        assert row["last_name"] == "USER"
        assert row["password_hash"] == "DELETED"
        assert row["session_id"] is None
        assert row["is_active"] is False
        assert row["gdpr_status"] == "deleted"
        assert row["anonymization_date"] is not None

    def test_failed_scrub_rolls_back_everything(self, storage, executor, artifacts, populated):
        subject_id = populated["id"]

        with patch.object(executor, "_scrub_identity", side_effect=RuntimeError("locked")):
            with pytest.raises(FatalDeletionError) as exc_info:
                executor.full_delete(subject_id)

        assert exc_info.value.subject_id == subject_id
        assert _owned(storage, leads, "created_by", subject_id) == 1
        assert _owned(storage, user_consents, "user_id", subject_id) == 1
        assert storage.find_by_id(users, subject_id)["email"] == "jane.doe@example.com"
        assert artifacts.exists("subject-export.json")

    def test_failing_table_is_skipped(self, storage, executor, populated):
        subject_id = populated["id"]
        original = executor_module.owner_predicate

        def flaky(table_name, sid):
            if table_name == "tasks":
                raise RuntimeError("tasks unavailable")
            return original(table_name, sid)

        with patch.object(executor_module, "owner_predicate", side_effect=flaky):
            result = executor.full_delete(subject_id)

        assert result.partial_failure is True
        assert [t.table for t in result.tables if t.status == "error"] == ["tasks"]
        assert "failed tables: tasks" in result.summary()
        assert _owned(storage, tasks, "created_by", subject_id) == 1
        assert _owned(storage, leads, "created_by", subject_id) == 0
        assert storage.find_by_id(users, subject_id)["gdpr_status"] == "deleted"

    def test_unknown_subject(self, executor):
        with pytest.raises(SubjectNotFoundError):
            executor.full_delete("missing")


class TestPartialDelete:
    """Test partial deletion."""

    def test_deletes_only_scoped_rows(self, storage, executor, populated, other):
        subject_id = populated["id"]

        result = executor.partial_delete(
            subject_id, {"leads": True, "tasks": {"status": "done"}}
        )

        assert result.partial_failure is False
        assert result.identity_updated is False
        assert {t.table: t.deleted for t in result.tables} == {"leads": 1, "tasks": 1}
        assert {t.table: t.unassigned for t in result.tables} == {"leads": 1, "tasks": 0}
        assert _owned(storage, leads, "assigned_to", subject_id) == 0
        assert _owned(storage, tasks, "assigned_to", subject_id) == 1
        assert _owned(storage, user_consents, "user_id", subject_id) == 1
        assert _owned(storage, leads, "created_by", other["id"]) == 1
        assert storage.find_by_id(users, subject_id)["gdpr_status"] == "active"

    def test_scoped_rows_of_other_owners_are_kept(self, storage, executor, subject, other):
        lost = storage.create(
            leads, {"status": "lost", "created_by": other["id"], "assigned_to": subject["id"]}
        )
        won = storage.create(
            leads, {"status": "won", "created_by": other["id"], "assigned_to": subject["id"]}
        )

        result = executor.partial_delete(subject["id"], {"leads": {"status": "lost"}})

        assert result.tables[0].deleted == 0
        assert result.tables[0].unassigned == 1
        assert storage.find_by_id(leads, lost["id"])["assigned_to"] is None
        assert storage.find_by_id(leads, won["id"])["assigned_to"] == subject["id"]

    def test_failing_table_is_reported(self, executor, populated):
        result = executor.partial_delete(populated["id"], {"leads": True, "users": True})

        by_table = {t.table: t for t in result.tables}
        assert by_table["leads"].status == "success"
        assert by_table["users"].status == "error"

    def test_unknown_subject(self, executor):
        with pytest.raises(SubjectNotFoundError):
            executor.partial_delete("missing", {"leads": True})


class TestValidatePartialScope:
    """Test partial scope validation."""

    def test_valid_scope(self):
        scope = validate_partial_scope({"leads": True, "tasks": {"status": "done"}})
        assert scope == {"leads": True, "tasks": {"status": "done"}}

    @pytest.mark.parametrize("scope", [None, {}])
    def test_empty_scope(self, scope):
        with pytest.raises(ValueError):
            validate_partial_scope(scope)

    @pytest.mark.parametrize("table", ["users", "settings", "passwords"])
    def test_tables_without_subject_reference(self, table):
        with pytest.raises(UnknownTableError):
            validate_partial_scope({table: True})

    def test_invalid_selector(self):
        with pytest.raises(ValueError):
            validate_partial_scope({"leads": "all"})

    def test_invalid_criteria(self):
        with pytest.raises(InvalidCriteriaError):
            validate_partial_scope({"leads": {"colour": "red"}})


class TestAnonymize:
    """Test anonymization."""

    def test_anonymize(self, storage, executor, populated):
        subject_id = populated["id"]

        result = executor.anonymize(subject_id)

        assert result.identity_updated is True
        row = storage.find_by_id(users, subject_id)
        assert row["email"].startswith("anonymous_")
        assert row["email"].endswith("@anonymized.local")
        assert row["first_name"] == "Anonymous"
        assert row["last_name"] == "User"
        assert row["company"] is None
        assert row["gdpr_status"] == "anonymized"
        assert _owned(storage, leads, "created_by", subject_id) == 1

    def test_anonymous_emails_are_unique(self, executor, make_user, storage):
        first, second = make_user(), make_user()
        executor.anonymize(first["id"])
        executor.anonymize(second["id"])

        emails = {storage.find_by_id(users, u["id"])["email"] for u in (first, second)}
        assert len(emails) == 2

    def test_unknown_subject(self, executor):
        with pytest.raises(SubjectNotFoundError):
            executor.anonymize("missing")


class TestExecute:
    """Test mode dispatch."""

    def test_dispatch(self, executor, subject):
        with patch.object(executor, "anonymize") as anonymize:
            executor.execute(subject["id"], "anonymize")
        anonymize.assert_called_once_with(subject["id"])

        with patch.object(executor, "partial_delete") as partial:
            executor.execute(subject["id"], DeletionMode.PARTIAL, {"leads": True})
        partial.assert_called_once_with(subject["id"], {"leads": True})

    def test_invalid_mode(self, executor, subject):
        with pytest.raises(ValueError):
            executor.execute(subject["id"], "shred")
