"""
Versioned resource store for FHIR DB Server.

The VersionedResourceStore is the single write path for resources. Every
successful write produces a new version and follows a two-phase protocol:

    1. HistoryLog.insert(version)          write-ahead audit record
    2. DocumentStore.upsert(document)      commit the live document
       on failure: HistoryLog.delete(version)   compensating rollback

Invariants:
    - versionId and lastUpdated are always assigned here, never trusted from input
    - No document is committed without its history entry already written
    - A failed commit leaves no orphaned history entry (best effort; a failed
      compensating delete is logged, never raised)
    - Writes report outcomes (Created/Updated/Conflict/Error) instead of raising
    - Deleting a live document keeps its history
    - Only registered resource types are written, so every stored version parses
    - Reads and deletes never create collections

How to change safely:
    - Keep history-before-commit ordering
    - Any new failure path after history insert must go through _rollback_history
    - Test rollback with the in-memory backends' failure injection

Concurrency:
    The If-Match check is a read followed by a write. Backends that can
    compare versions inside the write transaction (SQLite, in-memory) also
    receive the expected version and close that window; others fall back to
    last-write-wins.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from ..errors import (
    BackendError,
    BlobStoreError,
    ConflictError,
    DocumentStoreError,
    OversizeError,
    UnknownResourceTypeError,
)
from ..history.log import HistoryLog
from ..paging.codec import PageCodec
from ..resources.model import Resource
from ..resources.registry import ResourceTypeRegistry
from ..storage.base import DocumentStore

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 100

# Backend bookkeeping fields stripped from documents before parsing
_SYSTEM_FIELDS = ("_rid", "_self", "_etag", "_attachments", "_ts")


class UpsertStatus(Enum):
    """Outcome of a single-resource write."""

    CREATED = "created"
    UPDATED = "updated"
    CONFLICT = "conflict"
    ERROR = "error"


@dataclass
class UpsertOutcome:
    """Result of VersionedResourceStore.upsert().

    Attributes:
        status: What happened
        resource: The prepared version (id/versionId/lastUpdated assigned) on
            success or commit failure; the submitted resource on conflict
        diagnostic: Human-readable reason for CONFLICT or ERROR
    """

    status: UpsertStatus
    resource: Resource
    diagnostic: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status in (UpsertStatus.CREATED, UpsertStatus.UPDATED)


@dataclass
class QueryResult:
    """One page of query results.

    Attributes:
        resources: Resources in backend order
        total: Caller-supplied total, or the first page's count
        continuation_token: URL-safe token for the next page (None when done)
    """

    resources: list[Resource] = field(default_factory=list)
    total: int = 0
    continuation_token: str | None = None


class VersionedResourceStore:
    """Create/update/delete/read/query with optimistic concurrency.

    Attributes:
        documents: Document backend (live resources)
        history_log: History log (all versions)
        registry: Resource type registry used to parse stored documents
        database: Logical database name

    Example:
        >>> store = VersionedResourceStore(docs, HistoryLog(blobs), registry)
        >>> outcome = await store.upsert(Resource("Patient", body={"gender": "female"}))
        >>> outcome.status
        <UpsertStatus.CREATED: 'created'>
        >>> outcome.resource.id  # generated
        '5f0c...'
    """

    def __init__(
        self,
        documents: DocumentStore,
        history: HistoryLog,
        registry: ResourceTypeRegistry,
        database: str = "fhirdb",
    ) -> None:
        self.documents = documents
        self.history_log = history
        self.registry = registry
        self.database = database
        self._collections: set[str] = set()
        self._collection_lock = asyncio.Lock()

    async def _ensure_collection(self, resource_type: str) -> None:
        """Create the collection on first use; cached once confirmed."""
        if resource_type in self._collections:
            return
        async with self._collection_lock:
            if resource_type in self._collections:
                return
            await self.documents.create_collection_if_absent(self.database, resource_type)
            self._collections.add(resource_type)

    def _convert_document(self, document: dict[str, Any], resource_type: str) -> Resource:
        doc = {k: v for k, v in document.items() if k not in _SYSTEM_FIELDS}
        return self.registry.parse(doc, resource_type=resource_type)

    async def upsert(
        self,
        resource: Resource,
        if_match_version: str | None = None,
    ) -> UpsertOutcome:
        """Write a new version of a resource.

        Args:
            resource: Resource to write; an empty id means "create"
            if_match_version: Required current versionId (conditional update)

        Returns:
            UpsertOutcome; never raises for backend or conflict failures
        """
        if resource.resource_type not in self.registry:
            logger.warning(
                "Rejected resource of unregistered type",
                extra={"resource_type": resource.resource_type, "resource_id": resource.id},
            )
            return UpsertOutcome(
                UpsertStatus.ERROR,
                resource,
                f"Unknown resource type '{resource.resource_type}'",
            )

        if if_match_version:
            current = await self.load(resource.id, resource.resource_type)
            if current is None or current.version_id != if_match_version:
                current_version = current.version_id if current is not None else None
                diagnostic = (
                    f"Version conflict current resource version of "
                    f"{resource.resource_type}/{resource.id} is {current_version}"
                    if current is not None
                    else f"Version conflict: {resource.resource_type}/{resource.id} "
                    f"does not exist"
                )
                logger.info(
                    "Conditional update rejected",
                    extra={
                        "resource_type": resource.resource_type,
                        "resource_id": resource.id,
                        "expected_version": if_match_version,
                        "current_version": current_version,
                    },
                )
                return UpsertOutcome(UpsertStatus.CONFLICT, resource, diagnostic)

        now = datetime.now(timezone.utc)
        prepared = replace(
            resource,
            id=resource.id or str(uuid.uuid4()),
            version_id=str(uuid.uuid4()),
            # Stored instants carry millisecond precision
            last_updated=now.replace(microsecond=now.microsecond // 1000 * 1000),
        )

        return await self._commit(prepared, if_match_version or None)

    async def _commit(self, prepared: Resource, if_match: str | None) -> UpsertOutcome:
        """Two-phase write: history first, then the live document."""
        try:
            await self._ensure_collection(prepared.resource_type)
        except DocumentStoreError as e:
            logger.error(
                "Cannot prepare collection",
                extra={"resource_type": prepared.resource_type, "error": str(e)},
            )
            return UpsertOutcome(UpsertStatus.ERROR, prepared, str(e))

        try:
            serialized = await self.history_log.insert(prepared)
        except OversizeError as e:
            logger.warning(
                "Resource rejected as oversize",
                extra={"resource": prepared.key, "size": e.size, "limit": e.limit},
            )
            return UpsertOutcome(UpsertStatus.ERROR, prepared, e.message)

        if serialized is None:
            return UpsertOutcome(
                UpsertStatus.ERROR, prepared, f"Unable to record history for {prepared.key}"
            )

        try:
            result = await self.documents.upsert(
                self.database,
                prepared.resource_type,
                json.loads(serialized),
                if_match=if_match,
            )
        except ConflictError as e:
            await self._rollback_history(prepared)
            return UpsertOutcome(
                UpsertStatus.CONFLICT,
                prepared,
                f"Version conflict current resource version of {prepared.key} "
                f"is {e.current_version}",
            )
        except DocumentStoreError as e:
            logger.error(
                "Error committing resource",
                extra={
                    "resource": prepared.key,
                    "version_id": prepared.version_id,
                    "error": str(e),
                },
            )
            await self._rollback_history(prepared)
            return UpsertOutcome(UpsertStatus.ERROR, prepared, str(e))

        status = UpsertStatus.CREATED if result.created else UpsertStatus.UPDATED
        logger.debug(
            "Resource committed",
            extra={
                "resource": prepared.key,
                "version_id": prepared.version_id,
                "status": status.value,
            },
        )
        return UpsertOutcome(status, prepared)

    async def _rollback_history(self, prepared: Resource) -> None:
        """Delete the history entry of a version whose commit failed."""
        try:
            await self.history_log.delete(prepared)
        except BlobStoreError as e:
            logger.error(
                "Failed to roll back history entry",
                extra={
                    "resource": prepared.key,
                    "version_id": prepared.version_id,
                    "error": str(e),
                },
            )
            return

        logger.info(
            "Resource history entry rolled back due to document commit error",
            extra={"resource": prepared.key, "version_id": prepared.version_id},
        )

    async def load(self, resource_id: str, resource_type: str) -> Resource | None:
        """Read the live version of a resource, or None if absent."""
        if not resource_id:
            return None
        try:
            document = await self.documents.read(self.database, resource_type, resource_id)
        except DocumentStoreError as e:
            logger.warning(
                "Error loading resource",
                extra={
                    "resource_type": resource_type,
                    "resource_id": resource_id,
                    "error": str(e),
                },
            )
            return None

        if document is None:
            return None
        try:
            return self._convert_document(document, resource_type)
        except (ValueError, UnknownResourceTypeError) as e:
            logger.warning(
                "Stored document cannot be parsed",
                extra={
                    "resource_type": resource_type,
                    "resource_id": resource_id,
                    "error": str(e),
                },
            )
            return None

    async def delete(self, resource: Resource) -> bool:
        """Delete the live document; history is kept.

        Returns:
            True if a document was deleted; False if absent or on backend failure
        """
        try:
            deleted = await self.documents.delete(
                self.database, resource.resource_type, resource.id
            )
        except BackendError as e:
            logger.warning(
                "Error deleting resource",
                extra={"resource": resource.key, "error": str(e)},
            )
            return False

        if deleted:
            logger.debug("Resource deleted", extra={"resource": resource.key})
        return deleted

    async def query(
        self,
        query: str,
        resource_type: str,
        page_size: int = DEFAULT_PAGE_SIZE,
        continuation_token: str | None = None,
        known_total: int | None = None,
    ) -> QueryResult:
        """Execute one page of a query.

        Args:
            query: Backend query text (see SearchQueryBuilder)
            resource_type: Collection to query
            page_size: Maximum resources in the page
            continuation_token: Token from a previous QueryResult
            known_total: Total from the first page; None or negative on the first request

        Returns:
            QueryResult. On the first request the total is the first page's
            backend count, not a full count of matches.

        Raises:
            InvalidContinuationTokenError: If the token cannot be decoded
            DocumentStoreError: If the backend rejects or fails the query
        """
        cursor = PageCodec.decode_text(continuation_token)
        await self._ensure_collection(resource_type)
        page = await self.documents.query(
            self.database, resource_type, query, page_size, cursor
        )

        total = known_total if known_total is not None and known_total >= 0 else page.count
        resources = [self._convert_document(doc, resource_type) for doc in page.documents]

        return QueryResult(
            resources=resources,
            total=total,
            continuation_token=PageCodec.encode(page.continuation),
        )

    async def read_version(
        self, resource_type: str, resource_id: str, version_id: str
    ) -> Resource | None:
        """Read one historical version (vread), or None if absent."""
        text = await self.history_log.entry(resource_type, resource_id, version_id)
        if text is None:
            return None
        try:
            return self.registry.parse(json.loads(text), resource_type=resource_type)
        except (ValueError, UnknownResourceTypeError) as e:
            logger.warning(
                "Skipping unreadable history entry",
                extra={
                    "resource_type": resource_type,
                    "resource_id": resource_id,
                    "version_id": version_id,
                    "error": str(e),
                },
            )
            return None

    async def history(self, resource_type: str, resource_id: str) -> list[Resource]:
        """All recorded versions of a resource, newest first."""
        versions = []
        for text in await self.history_log.entries(resource_type, resource_id):
            try:
                versions.append(self.registry.parse(json.loads(text), resource_type=resource_type))
            except (ValueError, UnknownResourceTypeError) as e:
                logger.warning(
                    "Skipping unreadable history entry",
                    extra={
                        "resource_type": resource_type,
                        "resource_id": resource_id,
                        "error": str(e),
                    },
                )
        return versions
