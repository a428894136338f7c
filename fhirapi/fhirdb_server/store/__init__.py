"""
Versioned store module for FHIR DB Server.

The VersionedResourceStore owns resource identity and versioning:
- Assigns id (on create), versionId and lastUpdated on every write
- Writes history before committing the live document
- Rolls history back when the commit fails
"""

from .versioned_store import (
    DEFAULT_PAGE_SIZE,
    QueryResult,
    UpsertOutcome,
    UpsertStatus,
    VersionedResourceStore,
)

__all__ = [
    "VersionedResourceStore",
    "UpsertStatus",
    "UpsertOutcome",
    "QueryResult",
    "DEFAULT_PAGE_SIZE",
]
