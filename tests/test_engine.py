"""
End-to-end tests for the compliance engine facade.
"""

from datetime import timedelta

import pytest

from crm_compliance import ComplianceEngine
from crm_compliance.config import set_config
from crm_compliance.storage.schema import leads, users
from crm_compliance.utils import utc_now


@pytest.fixture
def engine(config):
    eng = ComplianceEngine.from_config(config)
    eng.initialize(seed_defaults=True)
    yield eng
    eng.shutdown()


@pytest.fixture
def customer(engine):
    return engine.storage.create(
        users,
        {"email": "customer@example.com", "first_name": "Chris", "password_hash": "secret"},
    )


class TestEngineSetup:
    """Test building and initializing the engine."""

    def test_from_global_config(self, config):
        set_config(config)
        eng = ComplianceEngine.from_config()
        try:
            assert eng.config is config
            eng.initialize()
            assert eng.list_policies() == []
        finally:
            eng.shutdown()

    def test_seeded_policies(self, engine):
        tables = {p.table_name for p in engine.list_policies()}
        assert tables == {
            "audit_logs",
            "user_consents",
            "data_deletion_requests",
            "data_export_requests",
        }

    def test_policies_survive_restart(self, engine, config):
        engine.create_policy("leads", 30, auto_delete=True)

        second = ComplianceEngine.from_config(config)
        try:
            second.initialize(seed_defaults=True)
            assert second.get_policy("leads").retention_days == 30
            assert len(second.list_policies()) == 5
        finally:
            second.shutdown()

    def test_start_and_shutdown(self, config):
        eng = ComplianceEngine.from_config(config)
        eng.initialize()
        eng.start()
        assert eng.scheduler.is_running
        eng.shutdown()
        assert not eng.scheduler.is_running


@pytest.mark.compliance
class TestEngineOperations:
    """Test the facade operations against one store."""

    def test_retention_lifecycle(self, engine):
        engine.create_policy("leads", 30, criteria={"status": "lost"}, auto_delete=True)
        engine.storage.create(leads, {"status": "lost", "created_at": utc_now() - timedelta(days=40)})
        engine.storage.create(leads, {"status": "won", "created_at": utc_now() - timedelta(days=40)})

        result = engine.run_sweep()

        assert result.partial_failure is False
        assert {t.table: t.deleted for t in result.tables}["leads"] == 1
        assert engine.storage.count(leads) == 1

        engine.update_policy("leads", criteria={})
        assert engine.trigger_manual_cleanup("leads") == 1

        engine.deactivate_policy("leads")
        assert engine.get_policy("leads") is None

        stats = engine.get_retention_statistics()
        assert stats.total_policies == 4

    def test_export_and_download(self, engine, customer):
        ticket = engine.request_export(customer["id"], export_format="xml")
        status = engine.privacy.wait_for_export(ticket.export_id, timeout=10)

        assert status["status"] == "completed"
        assert engine.get_export_status(ticket.export_id)["export_format"] == "xml"

        download = engine.download_export(ticket.export_id, ticket.download_url.split("token=")[1])
        assert download.download_count == 1

    def test_deletion_lifecycle(self, engine, customer):
        ticket = engine.request_deletion("customer@example.com", "full", reason="Closing account")
        token = ticket.verification_url.split("token=")[1]

        result = engine.verify_deletion(ticket.deletion_id, token)

        assert result.status == "completed"
        status = engine.get_compliance_status(customer["id"])
        assert status.status == "deleted"
        assert status.request_counts["deletion_requests"] == 1
