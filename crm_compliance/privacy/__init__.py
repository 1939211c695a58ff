"""
Privacy-rights processing: data export, deletion and anonymization.

The deletion executor and the request workflow live in
``crm_compliance.privacy.executor`` and ``crm_compliance.privacy.workflow``.
"""

from .collector import DataCollector
from .models import (
    CascadeResult,
    ComplianceStatus,
    DeletionMode,
    DeletionStatus,
    DeletionTicket,
    ExportDownload,
    ExportFormat,
    ExportStatus,
    ExportTicket,
    GdprStatus,
    VerificationResult,
)
from .sanitize import SENSITIVE_FIELDS, sanitize_record
from .serializers import serialize

__all__ = [
    "DataCollector",
    "CascadeResult",
    "ComplianceStatus",
    "DeletionMode",
    "DeletionStatus",
    "DeletionTicket",
    "ExportDownload",
    "ExportFormat",
    "ExportStatus",
    "ExportTicket",
    "GdprStatus",
    "VerificationResult",
    "SENSITIVE_FIELDS",
    "sanitize_record",
    "serialize",
]
