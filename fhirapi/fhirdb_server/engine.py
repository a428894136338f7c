"""
FHIR DB Server - storage engine entry point.

This module wires the engine components together behind one object:
- Document backend (live resources) and blob backend (history)
- VersionedResourceStore (versioning, optimistic concurrency, rollback)
- SearchQueryBuilder (rule table compiled at startup)
- BatchProcessor (batch Bundles)

A REST layer calls FhirStorageEngine; it owns no HTTP concerns itself.

Search control parameters handled here:
    _count       page size (bounded by SEARCH_MAX_PAGE_SIZE)
    _nextpage    continuation token from a previous SearchResult
    _querytotal  total reported by the first page
    _include     Type:field, resolve references of the matches
Everything else goes through the search rule table.

Invariants:
    - Components are created once in start() and shared by all requests
    - The type registry is frozen before the engine serves requests
    - Writes never raise for backend failures; searches do

How to change safely:
    - Add new backends through the storage factories, not here
    - Test startup/shutdown with the in-memory backends
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import json_log_formatter

from .batch.processor import BatchProcessor, BundleResponse
from .config import ServerConfig
from .history.log import HistoryLog
from .resources.model import Resource
from .resources.registry import ResourceTypeRegistry, create_default_registry
from .search.query_builder import SearchParams, SearchQueryBuilder, ordered_params
from .search.rules import SearchRuleTable
from .storage.base import BlobStore, DocumentStore, create_blob_store, create_document_store
from .store.versioned_store import UpsertOutcome, VersionedResourceStore

logger = logging.getLogger(__name__)

COUNT_PARAM = "_count"
NEXT_PAGE_PARAM = "_nextpage"
QUERY_TOTAL_PARAM = "_querytotal"
INCLUDE_PARAM = "_include"
ID_PARAM = "_id"

CONTROL_PARAMS = (COUNT_PARAM, NEXT_PAGE_PARAM, QUERY_TOTAL_PARAM, INCLUDE_PARAM)


def setup_logging(config: ServerConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Server configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("aiobotocore").setLevel(logging.WARNING)


@dataclass
class SearchResult:
    """One page of search results.

    Attributes:
        matches: Resources matching the search parameters
        includes: Resources referenced by the matches (_include)
        total: Total reported for the search (first page count)
        continuation_token: Value for _nextpage, None on the last page
    """

    matches: list[Resource] = field(default_factory=list)
    includes: list[Resource] = field(default_factory=list)
    total: int = 0
    continuation_token: str | None = None


def _parse_int(value: str | None) -> int | None:
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


def _references(value: Any) -> list[str]:
    """Reference strings held by a field value (Reference or list of them)."""
    items = value if isinstance(value, list) else [value]
    return [
        item["reference"]
        for item in items
        if isinstance(item, dict) and isinstance(item.get("reference"), str)
    ]


class FhirStorageEngine:
    """Versioned FHIR resource storage with search and batch support.

    Attributes:
        config: Server configuration
        registry: Frozen resource type registry
        rules: Search rule table
        store: Versioned resource store (after start())
        builder: Search query builder (after start())
        batch: Batch processor (after start())

    Example:
        >>> engine = FhirStorageEngine(config)
        >>> await engine.start()
        >>> outcome = await engine.upsert(Resource("Patient", body={"gender": "male"}))
        >>> result = await engine.search("Patient", {"gender": "male"})
        >>> await engine.stop()
    """

    def __init__(
        self,
        config: ServerConfig | None = None,
        documents: DocumentStore | None = None,
        blobs: BlobStore | None = None,
        rules: SearchRuleTable | None = None,
        registry: ResourceTypeRegistry | None = None,
    ) -> None:
        """Initialize the engine.

        Args:
            config: Optional server configuration (loaded from env if not provided)
            documents: Document backend (created from config if not provided)
            blobs: History blob backend (created from config if not provided)
            rules: Search rule table (loaded from config if not provided)
            registry: Resource type registry (FHIR R4 types if not provided)
        """
        self.config = config or ServerConfig.from_env()
        self.documents = (
            documents if documents is not None else create_document_store(self.config)
        )
        self.blobs = blobs if blobs is not None else create_blob_store(self.config)
        self._rules = rules
        self.registry = registry if registry is not None else create_default_registry()
        self._running = False

        # Components (initialized in start())
        self.rules: SearchRuleTable | None = None
        self.store: VersionedResourceStore | None = None
        self.builder: SearchQueryBuilder | None = None
        self.batch: BatchProcessor | None = None

    @property
    def running(self) -> bool:
        return self._running

    def _load_rules(self) -> SearchRuleTable:
        if self._rules is not None:
            return self._rules
        if self.config.search.rules_path:
            return SearchRuleTable.load(self.config.search.rules_path)
        return SearchRuleTable.load_default()

    async def start(self) -> None:
        """Connect backends and build the components."""
        if self._running:
            logger.warning("Engine already running")
            return

        logger.info("Starting FHIR storage engine")
        self.config.log_config()

        try:
            if not self.registry.frozen:
                self.registry.freeze()

            self.rules = self._load_rules()
            logger.info("Search rules loaded", extra={"entries": len(self.rules)})

            await self.documents.connect()
            await self.blobs.connect()

            history = HistoryLog(
                self.blobs, max_resource_bytes=self.config.history.max_resource_bytes
            )
            self.store = VersionedResourceStore(
                self.documents,
                history,
                self.registry,
                database=self.config.documents.database_name,
            )
            self.builder = SearchQueryBuilder(self.rules, self.documents.select_all_query)
            self.batch = BatchProcessor(
                self.store,
                self.registry,
                surface_entry_outcomes=self.config.batch.surface_entry_outcomes,
            )

            self._running = True
            logger.info("FHIR storage engine started")

        except Exception as e:
            logger.error(f"Engine startup failed: {e}", exc_info=True)
            await self._close_backends()
            raise

    async def stop(self) -> None:
        """Close the backends."""
        if not self._running:
            return

        logger.info("Stopping FHIR storage engine")
        await self._close_backends()
        self._running = False
        logger.info("FHIR storage engine stopped")

    async def _close_backends(self) -> None:
        await self.blobs.close()
        await self.documents.close()

    def _require_store(self) -> VersionedResourceStore:
        if self.store is None:
            raise RuntimeError("Engine not started")
        return self.store

    async def upsert(
        self, resource: Resource, if_match_version: str | None = None
    ) -> UpsertOutcome:
        """Create or update a single resource."""
        self.registry.get(resource.resource_type)
        return await self._require_store().upsert(resource, if_match_version=if_match_version)

    async def read(self, resource_type: str, resource_id: str) -> Resource | None:
        """Current version of a resource, or None."""
        self.registry.get(resource_type)
        return await self._require_store().load(resource_id, resource_type)

    async def read_version(
        self, resource_type: str, resource_id: str, version_id: str
    ) -> Resource | None:
        """A specific historical version (vread), or None."""
        self.registry.get(resource_type)
        return await self._require_store().read_version(resource_type, resource_id, version_id)

    async def history(self, resource_type: str, resource_id: str) -> list[Resource]:
        """All versions of a resource, newest first."""
        self.registry.get(resource_type)
        return await self._require_store().history(resource_type, resource_id)

    async def delete(self, resource_type: str, resource_id: str) -> bool:
        """Delete the live resource; its history is kept."""
        self.registry.get(resource_type)
        return await self._require_store().delete(Resource(resource_type, id=resource_id))

    async def submit_bundle(
        self, bundle: Resource, if_match_version: str | None = None
    ) -> BundleResponse:
        """Store a Bundle; batch Bundles also have their entries processed."""
        if self.batch is None:
            raise RuntimeError("Engine not started")
        return await self.batch.process_bundle(bundle, if_match_version=if_match_version)

    def _page_size(self, requested: str | None) -> int:
        size = _parse_int(requested)
        if size is None or size <= 0:
            return self.config.search.default_page_size
        return min(size, self.config.search.max_page_size)

    async def search(self, resource_type: str, params: SearchParams) -> SearchResult:
        """Run one page of a search.

        Args:
            resource_type: Resource type to search
            params: Search parameters, a mapping or (name, value) pairs

        Returns:
            SearchResult for the requested page

        Raises:
            UnknownResourceTypeError: If the type is not registered
            InvalidContinuationTokenError: If _nextpage cannot be decoded
            DocumentStoreError: If the backend rejects or fails the query
        """
        self.registry.get(resource_type)
        store = self._require_store()
        builder = self.builder
        if builder is None:
            raise RuntimeError("Engine not started")

        pairs = ordered_params(params)
        control = {name: value for name, value in pairs if name in CONTROL_PARAMS}
        criteria = [(name, value) for name, value in pairs if name not in CONTROL_PARAMS]

        id_value = dict(criteria).get(ID_PARAM)
        if id_value is not None and builder.rules.rule(resource_type, ID_PARAM) is None:
            matches = await self._read_ids(resource_type, id_value)
            includes = await self._resolve_includes(matches, control.get(INCLUDE_PARAM))
            return SearchResult(matches=matches, includes=includes, total=len(matches))

        query = builder.build(resource_type, criteria)
        result = await store.query(
            query,
            resource_type,
            page_size=self._page_size(control.get(COUNT_PARAM)),
            continuation_token=control.get(NEXT_PAGE_PARAM),
            known_total=_parse_int(control.get(QUERY_TOTAL_PARAM)),
        )
        includes = await self._resolve_includes(result.resources, control.get(INCLUDE_PARAM))

        logger.debug(
            "Search executed",
            extra={
                "resource_type": resource_type,
                "returned": len(result.resources),
                "included": len(includes),
                "has_more": result.continuation_token is not None,
            },
        )
        return SearchResult(
            matches=result.resources,
            includes=includes,
            total=result.total,
            continuation_token=result.continuation_token,
        )

    async def _read_ids(self, resource_type: str, id_value: str) -> list[Resource]:
        store = self._require_store()
        found = []
        for resource_id in id_value.split(","):
            resource = await store.load(resource_id, resource_type)
            if resource is not None:
                found.append(resource)
        return found

    async def _resolve_includes(
        self, matches: list[Resource], include_value: str | None
    ) -> list[Resource]:
        """Load resources referenced by `Type:field` includes, de-duplicated."""
        if not include_value or not matches:
            return []

        store = self._require_store()
        seen: set[str] = {m.key for m in matches}
        included = []

        for item in include_value.split(","):
            source_type, _, field_name = item.partition(":")
            if not field_name:
                logger.debug("Ignoring malformed _include", extra={"include": item})
                continue

            for match in matches:
                if match.resource_type != source_type:
                    continue
                for reference in _references(match.body.get(field_name)):
                    parts = reference.rstrip("/").split("/")
                    if len(parts) < 2:
                        continue
                    target_type, target_id = parts[-2], parts[-1]
                    key = f"{target_type}/{target_id}"
                    if key in seen or target_type not in self.registry:
                        continue
                    seen.add(key)
                    resource = await store.load(target_id, target_type)
                    if resource is not None:
                        included.append(resource)

        return included
