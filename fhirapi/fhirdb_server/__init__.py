"""
FHIR DB Server - versioned resource persistence for FHIR APIs.

This package implements the storage engine behind a FHIR REST API:
- Resources identified by (type, id) with a random versionId per write
- An append-only history log of every committed version (blob storage)
- Optimistic concurrency through If-Match style version checks
- Batch bundle submission processed entry by entry
- Search parameters compiled into backend queries from a rule table

Architecture:
    ┌─────────────┐     ┌──────────────────────┐     ┌──────────────┐
    │   Caller    │────▶│ VersionedResource    │────▶│  HistoryLog  │
    │ (REST API)  │     │       Store          │     │ (S3 blobs)   │
    └──────┬──────┘     └──────────┬───────────┘     └──────────────┘
           │                       │ 2. commit / rollback
           │                       ▼
           │            ┌──────────────────────┐
           │            │    DocumentStore     │
           │            │ (SQLite JSON tables) │
           │            └──────────▲───────────┘
           │                       │ query + continuation
    ┌──────▼──────────┐   ┌────────┴─────────┐
    │ SearchQuery     │──▶│    PageCodec     │
    │   Builder       │   └──────────────────┘
    └─────────────────┘

Invariants:
    - History is written before the document commit (write-ahead)
    - A failed commit deletes the history entry it wrote
    - versionId is never reused and never derived from content
    - The search rule table and type registry are immutable once serving

How to change safely:
    - New storage backends must implement the protocols in storage/base.py
    - Never change the history key layout "{type}/{id}/{versionId}"
    - Add search rules to the rule file, not to code

Version: see _version.py.
"""

from ._version import __version__

__all__ = ["__version__"]
