"""Pytest configuration for the CRM Compliance Engine."""

from datetime import timedelta

import pytest

from crm_compliance.audit.sink import SQLAuditSink
from crm_compliance.config import ComplianceConfig, set_config
from crm_compliance.retention.cleanup import RetentionCleanupEngine
from crm_compliance.retention.policy_store import RetentionPolicyStore
from crm_compliance.storage.accessor import SQLStorageAccessor
from crm_compliance.storage.artifacts import ArtifactStore
from crm_compliance.storage.schema import users
from crm_compliance.utils import utc_now


def pytest_configure(config):
    """Configure pytest with custom settings."""
    config.addinivalue_line("markers", "compliance: mark test as compliance behaviour test")


# Configure pytest to ignore certain warnings
pytest.mark.filterwarnings("ignore::pytest.PytestCollectionWarning")


@pytest.fixture
def config(tmp_path):
    """Configuration pointing at a temporary SQLite database."""
    return ComplianceConfig(
        application_name="CRM Test",
        environment="test",
        database_url=f"sqlite:///{tmp_path / 'crm.db'}",
        export_dir=str(tmp_path / "exports"),
        export_workers=2,
        scheduler_poll_seconds=0.1,
    )


@pytest.fixture(autouse=True)
def reset_global_config():
    """Keep the global configuration from leaking between tests."""
    set_config(None)
    yield
    set_config(None)


@pytest.fixture
def storage(config):
    """Initialized storage accessor."""
    accessor = SQLStorageAccessor(config.database_url)
    accessor.initialize()
    yield accessor
    accessor.dispose()


@pytest.fixture
def audit(storage):
    return SQLAuditSink(storage, application_name="CRM Test")


@pytest.fixture
def artifacts(config):
    return ArtifactStore(config.export_path)


@pytest.fixture
def policy_store(storage, audit):
    store = RetentionPolicyStore(storage, audit)
    store.load()
    return store


@pytest.fixture
def cleanup_engine(storage, policy_store, audit, artifacts):
    return RetentionCleanupEngine(storage, policy_store, audit, artifacts)


@pytest.fixture
def make_user(storage):
    """Factory for subject records."""
    counter = {"n": 0}

    def _make_user(**fields):
        counter["n"] += 1
        values = {
            "email": f"user{counter['n']}@example.com",
            "first_name": "Jane",
            "last_name": "Doe",
            "company": "Acme Corp",
            "password_hash": "$2b$12$hashedsecret",
            "session_id": "sess-123",
            "is_active": True,
            "gdpr_status": "active",
            "gdpr_consent_date": utc_now() - timedelta(days=30),
        }
        values.update(fields)
        return storage.create(users, values)

    return _make_user


@pytest.fixture
def subject(make_user):
    """One subject with default values."""
    return make_user(email="jane.doe@example.com")
