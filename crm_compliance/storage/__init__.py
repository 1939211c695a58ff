"""
Storage layer for the compliance engine.

Provides the table registry, the keyed-CRUD storage accessor with
transaction scopes, and the export artifact store.
"""

from .accessor import SQLStorageAccessor, StorageAccessor, TransactionScope
from .artifacts import ArtifactStore
from .schema import (
    SUBJECT_ASSIGNEE_COLUMNS,
    SUBJECT_OWNER_COLUMNS,
    GovernedTable,
    get_table,
    governed_table,
    metadata,
)

__all__ = [
    "StorageAccessor",
    "SQLStorageAccessor",
    "TransactionScope",
    "ArtifactStore",
    "GovernedTable",
    "SUBJECT_OWNER_COLUMNS",
    "SUBJECT_ASSIGNEE_COLUMNS",
    "get_table",
    "governed_table",
    "metadata",
]
