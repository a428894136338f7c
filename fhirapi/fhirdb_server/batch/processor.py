"""
Batch processor for FHIR DB Server.

Processes the entries of a FHIR batch Bundle one at a time through the
VersionedResourceStore. A batch is not a transaction: each entry succeeds or
fails on its own, and entries committed before a failure stay committed.

Invariants:
    - Entries are processed strictly in input order, one at a time
    - A failing entry (outcome or unexpected exception) never stops later entries
    - Batch entries are written unconditionally (no If-Match)
    - The container Bundle's outcome is independent of its entries

How to change safely:
    - Do not parallelise entries; callers rely on input-order side effects
    - Keep exception capture per entry so one bad entry cannot abort the rest
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any, Optional

from ..errors import UnknownResourceTypeError
from ..resources.model import Resource
from ..resources.registry import ResourceTypeRegistry
from ..store.versioned_store import UpsertOutcome, UpsertStatus, VersionedResourceStore

logger = logging.getLogger(__name__)

BUNDLE_TYPE = "Bundle"
BATCH = "batch"


@dataclass
class BatchEntryOutcome:
    """Outcome of one batch entry.

    Attributes:
        index: Position of the entry in the submitted batch
        outcome: Store outcome for that entry
    """

    index: int
    outcome: UpsertOutcome


@dataclass
class BundleResponse:
    """Result of process_bundle().

    Attributes:
        container: Outcome of writing the Bundle resource itself
        entries: Per-entry outcomes, or None when entry outcomes are not
            surfaced (or the resource was not a batch Bundle)
    """

    container: UpsertOutcome
    entries: Optional[list[BatchEntryOutcome]] = None


def is_batch_bundle(resource: Resource) -> bool:
    """Whether a resource is a Bundle of type batch."""
    return resource.resource_type == BUNDLE_TYPE and resource.body.get("type") == BATCH


class BatchProcessor:
    """Sequential, non-transactional batch writes.

    Example:
        >>> processor = BatchProcessor(store, registry)
        >>> outcomes = await processor.submit([patient, observation])
        >>> [o.outcome.status for o in outcomes]
        [<UpsertStatus.CREATED: 'created'>, <UpsertStatus.CREATED: 'created'>]
    """

    def __init__(
        self,
        store: VersionedResourceStore,
        registry: ResourceTypeRegistry,
        surface_entry_outcomes: bool = True,
    ) -> None:
        self.store = store
        self.registry = registry
        self.surface_entry_outcomes = surface_entry_outcomes

    async def submit(self, resources: Iterable[Resource]) -> list[BatchEntryOutcome]:
        """Upsert each resource independently, in order.

        Returns:
            One outcome per input resource, in input order
        """
        results = []
        for index, resource in enumerate(resources):
            results.append(BatchEntryOutcome(index, await self._submit_one(index, resource)))

        failed = sum(1 for r in results if not r.outcome.succeeded)
        logger.info(
            "Batch processed",
            extra={"entries": len(results), "failed": failed},
        )
        return results

    async def _submit_one(self, index: int, resource: Resource) -> UpsertOutcome:
        try:
            outcome = await self.store.upsert(resource)
        except Exception as e:
            logger.error(
                f"Unexpected error processing batch entry {index}: {e}",
                exc_info=True,
                extra={"index": index, "resource_type": resource.resource_type},
            )
            return UpsertOutcome(UpsertStatus.ERROR, resource, str(e))

        if not outcome.succeeded:
            logger.warning(
                "Batch entry failed",
                extra={
                    "index": index,
                    "resource": outcome.resource.key,
                    "status": outcome.status.value,
                    "diagnostic": outcome.diagnostic,
                },
            )
        return outcome

    def _parse_entry(self, entry: Any) -> Resource:
        """Parse entry.resource of a Bundle entry.

        Raises:
            ValueError: If the entry carries no parseable resource
            UnknownResourceTypeError: If its resourceType is not registered
        """
        document = entry.get("resource") if isinstance(entry, dict) else None
        if not isinstance(document, dict):
            raise ValueError("Bundle entry has no resource")
        return self.registry.parse(document)

    async def process_bundle(
        self,
        bundle: Resource,
        if_match_version: str | None = None,
    ) -> BundleResponse:
        """Store a Bundle and, if it is a batch, process its entries.

        The Bundle itself is upserted first (honouring if_match_version).
        Entries are processed only when that write succeeded.

        Args:
            bundle: The submitted Bundle (any resource is accepted)
            if_match_version: Required current versionId of the Bundle

        Returns:
            BundleResponse with the container outcome and, when enabled,
            the entry outcomes
        """
        container = await self.store.upsert(bundle, if_match_version=if_match_version)
        if not container.succeeded or not is_batch_bundle(bundle):
            return BundleResponse(container)

        entries = []
        for index, entry in enumerate(bundle.body.get("entry") or []):
            try:
                resource = self._parse_entry(entry)
            except (ValueError, UnknownResourceTypeError) as e:
                logger.warning(
                    "Unparseable batch entry",
                    extra={"bundle": container.resource.key, "index": index, "error": str(e)},
                )
                placeholder = Resource(resource_type=_declared_type(entry))
                entries.append(
                    BatchEntryOutcome(index, UpsertOutcome(UpsertStatus.ERROR, placeholder, str(e)))
                )
                continue
            entries.append(BatchEntryOutcome(index, await self._submit_one(index, resource)))

        logger.info(
            "Bundle processed",
            extra={
                "bundle": container.resource.key,
                "entries": len(entries),
                "failed": sum(1 for e in entries if not e.outcome.succeeded),
            },
        )

        if not self.surface_entry_outcomes:
            return BundleResponse(container)
        return BundleResponse(container, entries)


def _declared_type(entry: Any) -> str:
    """resourceType an unparseable entry claims, for error reporting."""
    if isinstance(entry, dict) and isinstance(entry.get("resource"), dict):
        declared = entry["resource"].get("resourceType")
        if isinstance(declared, str) and declared:
            return declared
    return "Resource"
