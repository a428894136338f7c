"""
Resource history log for FHIR DB Server.

The HistoryLog is the audit trail of every resource version ever committed.
Each version is one immutable blob:

    <type>/<id>/<versionId>  ->  FHIR JSON of that version

The versioned store writes here *before* committing the live document, and
deletes the entry again only when that commit fails. Hard-deleting the live
document leaves history untouched.

Invariants:
    - Entries are never modified after insert
    - insert() returns the exact text written, so callers reuse those bytes
    - Oversize resources are rejected before anything is written
    - Storage failures on insert and reads become None / empty results

How to change safely:
    - Never change the key layout (existing history would be orphaned)
    - Keep insert() non-raising for storage errors; the store relies on None
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone

from ..config import DEFAULT_MAX_RESOURCE_BYTES
from ..errors import BlobStoreError, OversizeError
from ..resources.model import Resource, parse_instant
from ..storage.base import BlobStore

logger = logging.getLogger(__name__)

_OLDEST = datetime.min.replace(tzinfo=timezone.utc)


def entry_key(resource_type: str, resource_id: str, version_id: str) -> str:
    """Blob key for one history entry."""
    return f"{resource_type}/{resource_id}/{version_id}"


def _written_at(text: str) -> datetime:
    """meta.lastUpdated of a serialized entry; entries without one sort oldest."""
    try:
        last_updated = json.loads(text).get("meta", {}).get("lastUpdated")
        if last_updated:
            return parse_instant(last_updated)
    except (ValueError, AttributeError):
        pass
    return _OLDEST


class HistoryLog:
    """Append-only, per-resource version log over a BlobStore.

    Thread safety:
        Stateless apart from the injected blob store; safe to share
        between concurrent requests.

    Example:
        >>> history = HistoryLog(InMemoryBlobStore())
        >>> text = await history.insert(resource)
        >>> await history.entries("Patient", resource.id)
        [text]
    """

    def __init__(
        self,
        blobs: BlobStore,
        max_resource_bytes: int = DEFAULT_MAX_RESOURCE_BYTES,
    ) -> None:
        """Initialize the history log.

        Args:
            blobs: Blob backend holding the entries
            max_resource_bytes: Largest serialized form accepted by insert()
        """
        self.blobs = blobs
        self.max_resource_bytes = max_resource_bytes

    async def insert(self, resource: Resource) -> str | None:
        """Serialize a resource version and store it.

        Args:
            resource: Resource with id and version_id assigned

        Returns:
            The serialized FHIR JSON written, or None if the write failed

        Raises:
            OversizeError: If the serialized form exceeds max_resource_bytes
            ValueError: If the resource has no id or version_id
        """
        if not resource.id or not resource.version_id:
            raise ValueError(f"Cannot record history for {resource}: id and versionId required")

        serialized = resource.to_json()
        data = serialized.encode("utf-8")
        if len(data) > self.max_resource_bytes:
            raise OversizeError(
                f"Resource {resource.key} is {len(data)} bytes, "
                f"limit is {self.max_resource_bytes}",
                size=len(data),
                limit=self.max_resource_bytes,
            )

        key = entry_key(resource.resource_type, resource.id, resource.version_id)
        try:
            await self.blobs.put(key, data)
        except BlobStoreError as e:
            logger.error(
                "Error inserting history entry",
                extra={
                    "resource_type": resource.resource_type,
                    "resource_id": resource.id,
                    "version_id": resource.version_id,
                    "error": str(e),
                },
            )
            return None

        return serialized

    async def delete(self, resource: Resource) -> None:
        """Remove the entry for this exact version. Silent if absent.

        Raises:
            BlobStoreError: If the backend delete fails
        """
        await self.blobs.delete(
            entry_key(resource.resource_type, resource.id, resource.version_id)
        )

    async def entries(self, resource_type: str, resource_id: str) -> list[str]:
        """All recorded versions of a resource, newest first.

        Ordered by each entry's own meta.lastUpdated (millisecond precision);
        the blob modification time only breaks ties, since object stores
        such as S3 report it to the second.
        """
        try:
            blobs = await self.blobs.list(f"{resource_type}/{resource_id}/")
        except BlobStoreError as e:
            logger.error(
                "Error listing history",
                extra={
                    "resource_type": resource_type,
                    "resource_id": resource_id,
                    "error": str(e),
                },
            )
            return []

        found = []
        for blob in blobs:
            parts = blob.key.split("/")
            if len(parts) != 3:
                continue
            text = await self.entry(parts[0], parts[1], parts[2])
            if text is not None:
                found.append((_written_at(text), blob.last_modified, text))

        found.sort(key=lambda item: (item[0], item[1]), reverse=True)
        return [text for _, _, text in found]

    async def entry(self, resource_type: str, resource_id: str, version_id: str) -> str | None:
        """One recorded version, or None if absent or unreadable."""
        try:
            data = await self.blobs.get(entry_key(resource_type, resource_id, version_id))
        except BlobStoreError as e:
            logger.error(
                "Error reading history entry",
                extra={
                    "resource_type": resource_type,
                    "resource_id": resource_id,
                    "version_id": version_id,
                    "error": str(e),
                },
            )
            return None

        return data.decode("utf-8") if data is not None else None
