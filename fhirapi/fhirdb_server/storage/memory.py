"""
In-memory storage backends for testing.

This module provides dict-backed DocumentStore and BlobStore implementations for:
- Unit tests
- Integration tests that need failure injection
- Local development without S3

Invariants:
    - All data is lost on process exit
    - Blob last_modified times are strictly increasing in write order
    - Query text is recorded but not interpreted: every query pages through
      the whole collection in insertion order

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep interface compatible with the protocols in base.py
    - Add features to help with testing scenarios
"""

from __future__ import annotations

import asyncio
import copy
import logging
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from ..errors import BlobStoreError, ConflictError, DocumentStoreError
from .base import BlobInfo, QueryPage, UpsertResult

logger = logging.getLogger(__name__)


class InMemoryDocumentStore:
    """In-memory implementation of DocumentStore for testing.

    Failure injection:
        fail_next("upsert") makes the next upsert raise DocumentStoreError.
        Any operation name (upsert, read, delete, query) can be armed.

    Example:
        >>> docs = InMemoryDocumentStore()
        >>> await docs.connect()
        >>> docs.fail_next("upsert")
        >>> await docs.upsert("db", "Patient", {"id": "p1"})  # raises DocumentStoreError
    """

    SELECT_ALL_QUERY = "SELECT * FROM c"

    def __init__(self) -> None:
        self._collections: Dict[str, Dict[str, Dict[str, Dict[str, Any]]]] = defaultdict(dict)
        self._pending_failures: Dict[str, int] = defaultdict(int)
        self._lock = asyncio.Lock()
        self._connected = False
        self.executed_queries: List[str] = []
        self.upsert_calls = 0

    @property
    def select_all_query(self) -> str:
        return self.SELECT_ALL_QUERY

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        """Connect (no-op for in-memory)."""
        self._connected = True
        logger.debug("InMemoryDocumentStore connected")

    async def close(self) -> None:
        """Close and clear all data."""
        self._connected = False
        self._collections.clear()
        self._pending_failures.clear()
        self.executed_queries.clear()
        logger.debug("InMemoryDocumentStore closed")

    def _check(self, operation: str) -> None:
        if not self._connected:
            raise DocumentStoreError("Not connected")
        if self._pending_failures[operation] > 0:
            self._pending_failures[operation] -= 1
            raise DocumentStoreError(f"Injected {operation} failure")

    async def create_collection_if_absent(self, database: str, collection: str) -> None:
        self._check("create_collection")
        self._collections[database].setdefault(collection, {})

    async def upsert(
        self,
        database: str,
        collection: str,
        document: Dict[str, Any],
        if_match: Optional[str] = None,
    ) -> UpsertResult:
        self.upsert_calls += 1
        self._check("upsert")
        doc_id = document.get("id")
        if not doc_id:
            raise DocumentStoreError("Document has no id", collection=collection)

        async with self._lock:
            docs = self._collections[database].setdefault(collection, {})
            existing = docs.get(doc_id)
            if if_match is not None:
                current = (existing or {}).get("meta", {}).get("versionId")
                if current != if_match:
                    raise ConflictError(
                        f"Version conflict on {collection}/{doc_id}",
                        resource_type=collection,
                        resource_id=doc_id,
                        current_version=current,
                    )
            docs[doc_id] = copy.deepcopy(document)

        return UpsertResult(created=existing is None)

    async def read(self, database: str, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        self._check("read")
        doc = self._collections[database].get(collection, {}).get(doc_id)
        return copy.deepcopy(doc) if doc is not None else None

    async def delete(self, database: str, collection: str, doc_id: str) -> bool:
        self._check("delete")
        async with self._lock:
            return self._collections[database].get(collection, {}).pop(doc_id, None) is not None

    async def query(
        self,
        database: str,
        collection: str,
        query: str,
        page_size: int,
        continuation: Optional[str] = None,
    ) -> QueryPage:
        self._check("query")
        self.executed_queries.append(query)
        try:
            offset = int(continuation) if continuation else 0
        except ValueError:
            raise DocumentStoreError(f"Malformed continuation cursor '{continuation}'") from None

        docs = list(self._collections[database].get(collection, {}).values())
        page = [copy.deepcopy(d) for d in docs[offset : offset + page_size]]
        next_offset = offset + len(page)
        next_cursor = str(next_offset) if next_offset < len(docs) else None

        return QueryPage(documents=page, continuation=next_cursor, count=len(page))

    # Testing helpers

    def fail_next(self, operation: str, times: int = 1) -> None:
        """Arm the next `times` calls of `operation` to fail."""
        self._pending_failures[operation] += times

    def get_document_count(self, database: str, collection: str) -> int:
        """Number of live documents in a collection (testing helper)."""
        return len(self._collections[database].get(collection, {}))

    def put_raw(self, database: str, collection: str, document: Dict[str, Any]) -> None:
        """Store a document bypassing all checks (testing helper)."""
        self._collections[database].setdefault(collection, {})[document["id"]] = copy.deepcopy(
            document
        )


class InMemoryBlobStore:
    """In-memory implementation of BlobStore for testing.

    Failure injection works as in InMemoryDocumentStore, with operation
    names put, get, delete and list.

    Example:
        >>> blobs = InMemoryBlobStore()
        >>> await blobs.connect()
        >>> await blobs.put("Patient/p1/v1", b"{}")
        >>> [b.key for b in await blobs.list("Patient/p1/")]
        ['Patient/p1/v1']
    """

    def __init__(self) -> None:
        self._blobs: Dict[str, tuple[bytes, datetime]] = {}
        self._pending_failures: Dict[str, int] = defaultdict(int)
        self._last_modified: datetime | None = None
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        """Connect (no-op for in-memory)."""
        self._connected = True
        logger.debug("InMemoryBlobStore connected")

    async def close(self) -> None:
        """Close and clear all data."""
        self._connected = False
        self._blobs.clear()
        self._pending_failures.clear()
        logger.debug("InMemoryBlobStore closed")

    def _check(self, operation: str) -> None:
        if not self._connected:
            raise BlobStoreError("Not connected")
        if self._pending_failures[operation] > 0:
            self._pending_failures[operation] -= 1
            raise BlobStoreError(f"Injected {operation} failure")

    def _next_timestamp(self) -> datetime:
        now = datetime.now(timezone.utc)
        if self._last_modified is not None and now <= self._last_modified:
            now = self._last_modified + timedelta(microseconds=1)
        self._last_modified = now
        return now

    async def put(self, key: str, data: bytes) -> None:
        self._check("put")
        self._blobs[key] = (bytes(data), self._next_timestamp())

    async def get(self, key: str) -> Optional[bytes]:
        self._check("get")
        entry = self._blobs.get(key)
        return entry[0] if entry is not None else None

    async def delete(self, key: str) -> None:
        self._check("delete")
        self._blobs.pop(key, None)

    async def list(self, prefix: str) -> List[BlobInfo]:
        self._check("list")
        return [
            BlobInfo(key=key, size=len(data), last_modified=modified)
            for key, (data, modified) in sorted(self._blobs.items())
            if key.startswith(prefix)
        ]

    # Testing helpers

    def fail_next(self, operation: str, times: int = 1) -> None:
        """Arm the next `times` calls of `operation` to fail."""
        self._pending_failures[operation] += times

    def keys(self, prefix: str = "") -> List[str]:
        """All stored keys under prefix, sorted (testing helper)."""
        return sorted(k for k in self._blobs if k.startswith(prefix))

    def get_blob_count(self) -> int:
        """Total number of blobs (testing helper)."""
        return len(self._blobs)
