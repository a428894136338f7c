"""
Base protocols and types for the storage backends.

This module defines the two physical storage contracts the engine consumes:
- DocumentStore: keyed JSON documents grouped in collections, with an
  indexed query capability and opaque continuation cursors
- BlobStore: keyed byte blobs with prefix listing (history entries)

Invariants:
    - Collection identity is the resource type name
    - upsert() reports whether the document was created or replaced
    - read() and get() return None for absent keys; only real failures raise
    - Backend failures raise DocumentStoreError / BlobStoreError

How to change safely:
    - Protocol changes require updating all implementations
    - Add new methods as optional with default implementations
"""

from __future__ import annotations

from abc import abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import (
    Any,
    Dict,
    List,
    Optional,
    TYPE_CHECKING,
    Protocol,
    runtime_checkable,
)

if TYPE_CHECKING:
    from ..config import ServerConfig


@dataclass(frozen=True)
class UpsertResult:
    """Result of a document upsert.

    Attributes:
        created: True if no document existed under the id before the write
    """
    created: bool


@dataclass
class QueryPage:
    """One page of query results.

    Attributes:
        documents: Documents in backend order
        continuation: Backend-native cursor for the next page (None when done)
        count: Number of documents the backend reported for this page
    """
    documents: List[Dict[str, Any]] = field(default_factory=list)
    continuation: Optional[str] = None
    count: int = 0


@dataclass(frozen=True)
class BlobInfo:
    """Listing entry for a stored blob.

    Attributes:
        key: Full blob key
        size: Size in bytes
        last_modified: Time the blob was written
    """
    key: str
    size: int
    last_modified: datetime


@runtime_checkable
class DocumentStore(Protocol):
    """Protocol for document backends.

    Durability contract:
        - upsert() returns only after the document is committed
        - A failed upsert leaves the previous document (if any) unchanged

    Example:
        >>> store = SqliteDocumentStore("/var/lib/fhirdb")
        >>> await store.create_collection_if_absent("fhirdb", "Patient")
        >>> result = await store.upsert("fhirdb", "Patient", {"id": "p1", ...})
        >>> result.created
        True
    """

    @property
    @abstractmethod
    def select_all_query(self) -> str:
        """Query text selecting every document of a collection."""
        ...

    @abstractmethod
    async def connect(self) -> None:
        """Open the backend. Must be called before any other operation."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release backend resources."""
        ...

    @abstractmethod
    async def create_collection_if_absent(self, database: str, collection: str) -> None:
        """Ensure a collection exists.

        Raises:
            DocumentStoreError: If the collection cannot be created
        """
        ...

    @abstractmethod
    async def upsert(
        self,
        database: str,
        collection: str,
        document: Dict[str, Any],
        if_match: Optional[str] = None,
    ) -> UpsertResult:
        """Insert or replace a document keyed by document["id"].

        Args:
            database: Database name
            collection: Collection name (resource type)
            document: FHIR JSON document
            if_match: When set, the stored meta.versionId must equal this value

        Raises:
            ConflictError: If if_match is set and does not match the stored version
            DocumentStoreError: For any other failure
        """
        ...

    @abstractmethod
    async def read(self, database: str, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        """Read a document, or None if absent.

        Raises:
            DocumentStoreError: If the read fails
        """
        ...

    @abstractmethod
    async def delete(self, database: str, collection: str, doc_id: str) -> bool:
        """Delete a document.

        Returns:
            True if a document was deleted, False if none existed

        Raises:
            DocumentStoreError: If the delete fails
        """
        ...

    @abstractmethod
    async def query(
        self,
        database: str,
        collection: str,
        query: str,
        page_size: int,
        continuation: Optional[str] = None,
    ) -> QueryPage:
        """Execute one page of a query.

        Raises:
            DocumentStoreError: If the backend rejects the query or fails
        """
        ...


@runtime_checkable
class BlobStore(Protocol):
    """Protocol for blob backends used by the history log."""

    @abstractmethod
    async def connect(self) -> None:
        """Open the backend. Must be called before any other operation."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release backend resources."""
        ...

    @abstractmethod
    async def put(self, key: str, data: bytes) -> None:
        """Store a blob, returning only once it is durable.

        Raises:
            BlobStoreError: If the write fails
        """
        ...

    @abstractmethod
    async def get(self, key: str) -> Optional[bytes]:
        """Fetch a blob, or None if absent.

        Raises:
            BlobStoreError: If the read fails
        """
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Delete a blob. Deleting an absent key is not an error.

        Raises:
            BlobStoreError: If the delete fails
        """
        ...

    @abstractmethod
    async def list(self, prefix: str) -> List[BlobInfo]:
        """List blobs whose key starts with prefix.

        Raises:
            BlobStoreError: If the listing fails
        """
        ...


def create_document_store(config: "ServerConfig") -> DocumentStore:
    """Factory function to create the document backend from configuration.

    Args:
        config: Server configuration

    Returns:
        SQLite-backed DocumentStore
    """
    from .sqlite_documents import SqliteDocumentStore

    return SqliteDocumentStore(
        data_dir=config.documents.data_dir,
        wal_mode=config.documents.wal_mode,
        busy_timeout_ms=config.documents.busy_timeout_ms,
    )


def create_blob_store(config: "ServerConfig") -> BlobStore:
    """Factory function to create the history blob backend from configuration.

    Args:
        config: Server configuration

    Returns:
        Appropriate BlobStore implementation

    Raises:
        ValueError: If backend is not supported
    """
    from ..config import HistoryBackend
    from .memory import InMemoryBlobStore
    from .s3_blobs import S3BlobStore

    if config.history.backend == HistoryBackend.S3:
        return S3BlobStore(config.s3)
    elif config.history.backend == HistoryBackend.MEMORY:
        return InMemoryBlobStore()
    else:
        raise ValueError(f"Unsupported history backend: {config.history.backend}")
