"""
CRM Compliance Engine - data lifecycle and privacy-rights tooling for CRM stores.

The engine enforces per-table data retention policies on a recurring schedule
and processes data-subject requests: export of a subject's data and deletion
or anonymization after token verification.

Key Features
------------
* **Retention Policies**: One policy per governed table, with age and criteria
* **Scheduled Cleanup**: Daily sweeps and a weekly audit log cleanup
* **Data Export**: JSON, CSV and XML exports processed in the background
* **Data Deletion**: Full cascading deletion, partial deletion and anonymization
* **Audit Log**: Checksummed entries for every privileged operation

Quick Start
-----------
>>> from crm_compliance import ComplianceConfig, ComplianceEngine
>>>
>>> engine = ComplianceEngine.from_config(
...     ComplianceConfig(database_url="sqlite:///crm.db", export_dir="./exports")
... )
>>> engine.initialize(seed_defaults=True)
>>>
>>> ticket = engine.request_export("user-id", export_format="csv")
>>> deletion = engine.request_deletion("jane@example.com", "anonymize")
>>> engine.verify_deletion(deletion.deletion_id, token)

Note: Retention periods and deletion semantics must be reviewed against the
regulations that apply to the data being processed.
"""

__version__ = "1.0.0"

from .config import ComplianceConfig, configure, get_config, set_config
from .engine import ComplianceEngine
from .exceptions import ComplianceError

__all__ = [
    "ComplianceEngine",
    # Configuration
    "ComplianceConfig",
    "configure",
    "get_config",
    "set_config",
    # Errors
    "ComplianceError",
]
