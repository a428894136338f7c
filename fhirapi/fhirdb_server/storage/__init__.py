"""
Storage backends for FHIR DB Server.

This module provides pluggable backends for the two storage roles:
- DocumentStore: live resources (SQLite, in-memory)
- BlobStore: history entries (S3, in-memory)

Invariants:
    - Backends raise DocumentStoreError / BlobStoreError on failure
    - Absent keys are reported as None, never as an error
    - Collections are created lazily by the caller

How to change safely:
    - New backends must implement the protocols in base.py
    - Verify conditional-write behaviour with the versioned store tests
"""

from .base import (
    BlobInfo,
    BlobStore,
    DocumentStore,
    QueryPage,
    UpsertResult,
    create_blob_store,
    create_document_store,
)
from .memory import InMemoryBlobStore, InMemoryDocumentStore
from .s3_blobs import S3BlobStore
from .sqlite_documents import SqliteDocumentStore

__all__ = [
    # Protocols and types
    "DocumentStore",
    "BlobStore",
    "UpsertResult",
    "QueryPage",
    "BlobInfo",
    # Factories
    "create_document_store",
    "create_blob_store",
    # Implementations
    "SqliteDocumentStore",
    "S3BlobStore",
    "InMemoryDocumentStore",
    "InMemoryBlobStore",
]
