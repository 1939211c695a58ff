"""
Data retention for the CRM store.

Policies are kept by ``RetentionPolicyStore``, applied by
``RetentionCleanupEngine`` and run on a timetable by ``RetentionScheduler``.
"""

from .cleanup import RetentionCleanupEngine, build_predicate
from .criteria import build_conditions, validate_criteria
from .models import (
    RETAIN_FOREVER,
    RetentionPolicy,
    RetentionStatistics,
    SweepResult,
    TableCleanupResult,
)
from .policy_store import DEFAULT_POLICIES, RetentionPolicyStore
from .scheduler import DAILY_CLEANUP_JOB, WEEKLY_AUDIT_CLEANUP_JOB, RetentionScheduler

__all__ = [
    "RETAIN_FOREVER",
    "RetentionPolicy",
    "RetentionStatistics",
    "SweepResult",
    "TableCleanupResult",
    "RetentionPolicyStore",
    "DEFAULT_POLICIES",
    "RetentionCleanupEngine",
    "RetentionScheduler",
    "DAILY_CLEANUP_JOB",
    "WEEKLY_AUDIT_CLEANUP_JOB",
    "build_conditions",
    "build_predicate",
    "validate_criteria",
]
