"""
Compliance engine facade.

Wires storage, audit, retention and privacy request handling from one
configuration object.

Example:
    >>> from crm_compliance import ComplianceConfig, ComplianceEngine
    >>> engine = ComplianceEngine.from_config(ComplianceConfig(environment="test"))
    >>> engine.initialize(seed_defaults=True)
    >>> engine.trigger_manual_cleanup("audit_logs")
    0
"""

import logging
from typing import Any, Dict, List, Optional

from .audit.sink import SQLAuditSink
from .config import ComplianceConfig, get_config
from .privacy.collector import DataCollector
from .privacy.executor import DeletionExecutor, PartialScope
from .privacy.models import (
    ComplianceStatus,
    DeletionMode,
    DeletionTicket,
    ExportDownload,
    ExportTicket,
    VerificationResult,
)
from .privacy.workflow import PrivacyRequestService
from .retention.cleanup import RetentionCleanupEngine
from .retention.models import RetentionPolicy, RetentionStatistics, SweepResult
from .retention.policy_store import RetentionPolicyStore
from .retention.scheduler import RetentionScheduler
from .storage.accessor import SQLStorageAccessor
from .storage.artifacts import ArtifactStore

logger = logging.getLogger(__name__)


class ComplianceEngine:
    """Entry point for retention and privacy-rights operations."""

    def __init__(
        self,
        config: ComplianceConfig,
        storage: SQLStorageAccessor,
        artifacts: Optional[ArtifactStore] = None,
    ):
        self.config = config
        self.storage = storage
        self.artifacts = artifacts or ArtifactStore(config.export_path)
        self.audit = SQLAuditSink(storage, application_name=config.application_name)

        self.policies = RetentionPolicyStore(storage, self.audit)
        self.cleanup = RetentionCleanupEngine(
            storage, self.policies, self.audit, self.artifacts
        )
        self.scheduler = RetentionScheduler(self.cleanup, config)

        self.collector = DataCollector(storage)
        self.executor = DeletionExecutor(storage, self.artifacts)
        self.privacy = PrivacyRequestService(
            storage,
            self.audit,
            self.artifacts,
            config,
            collector=self.collector,
            executor=self.executor,
        )

    @classmethod
    def from_config(cls, config: Optional[ComplianceConfig] = None) -> "ComplianceEngine":
        """Build an engine from configuration, the global one by default."""
        config = config or get_config()
        return cls(config, SQLStorageAccessor(config.database_url))

    def initialize(self, seed_defaults: bool = False) -> None:
        """Create the schema and load the retention policies."""
        self.storage.initialize()
        self.policies.load()
        if seed_defaults:
            self.policies.seed_defaults()

    def start(self) -> None:
        """Start the retention scheduler."""
        self.scheduler.start()

    def shutdown(self, wait: bool = True) -> None:
        """Stop the scheduler and the export workers and release connections."""
        self.scheduler.stop()
        self.privacy.shutdown(wait=wait)
        self.storage.dispose()

    # Retention policies

    def create_policy(
        self,
        table_name: str,
        retention_days: int,
        criteria: Optional[Dict[str, Any]] = None,
        auto_delete: bool = False,
        created_by: Optional[str] = None,
    ) -> RetentionPolicy:
        return self.policies.create(
            table_name, retention_days, criteria, auto_delete, created_by
        )

    def update_policy(self, table_name: str, **fields: Any) -> RetentionPolicy:
        return self.policies.update(table_name, **fields)

    def deactivate_policy(self, table_name: str, updated_by: Optional[str] = None) -> RetentionPolicy:
        return self.policies.deactivate(table_name, updated_by=updated_by)

    def get_policy(self, table_name: str) -> Optional[RetentionPolicy]:
        return self.policies.get(table_name)

    def list_policies(self) -> List[RetentionPolicy]:
        return self.policies.list()

    # Retention runs

    def run_sweep(self) -> SweepResult:
        return self.cleanup.run_sweep()

    def trigger_manual_cleanup(self, table_name: str, user_id: Optional[str] = None) -> int:
        return self.scheduler.trigger_manual(table_name, user_id=user_id)

    def get_retention_statistics(self) -> RetentionStatistics:
        return self.cleanup.get_retention_statistics()

    # Privacy requests

    def request_export(self, subject_id: str, **options: Any) -> ExportTicket:
        return self.privacy.request_export(subject_id, **options)

    def get_export_status(self, export_id: str, subject_id: Optional[str] = None) -> Dict[str, Any]:
        return self.privacy.get_export_status(export_id, subject_id)

    def download_export(self, export_id: str, token: str) -> ExportDownload:
        return self.privacy.download_export(export_id, token)

    def request_deletion(
        self,
        subject_or_email: str,
        deletion_type: str = DeletionMode.FULL.value,
        reason: Optional[str] = None,
        specific_data: Optional[PartialScope] = None,
        **options: Any,
    ) -> DeletionTicket:
        return self.privacy.request_deletion(
            subject_or_email, deletion_type, reason, specific_data, **options
        )

    def verify_deletion(self, deletion_id: str, token: str) -> VerificationResult:
        return self.privacy.verify_deletion(deletion_id, token)

    def get_compliance_status(self, subject_id: str) -> ComplianceStatus:
        return self.privacy.get_compliance_status(subject_id)
