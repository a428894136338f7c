"""
Unit tests for the versioned resource store.

Tests cover:
- Id/version/lastUpdated assignment
- Created vs updated outcomes
- Conditional updates (If-Match)
- Compensating history rollback on commit failure
- Oversize rejection
- Load/delete/query/vread/history
"""

import sqlite3
import tempfile
from contextlib import closing
from pathlib import Path

import pytest
import pytest_asyncio

from fhirapi.fhirdb_server.errors import DocumentStoreError, InvalidContinuationTokenError
from fhirapi.fhirdb_server.history.log import HistoryLog
from fhirapi.fhirdb_server.paging.codec import PageCodec
from fhirapi.fhirdb_server.resources.model import Resource
from fhirapi.fhirdb_server.resources.registry import ResourceTypeRegistry, create_default_registry
from fhirapi.fhirdb_server.storage.memory import InMemoryBlobStore, InMemoryDocumentStore
from fhirapi.fhirdb_server.storage.sqlite_documents import SqliteDocumentStore
from fhirapi.fhirdb_server.store.versioned_store import UpsertStatus, VersionedResourceStore

DB = "fhirdb"


class TestVersionedResourceStore:
    """Tests for VersionedResourceStore."""

    @pytest_asyncio.fixture
    async def docs(self):
        store = InMemoryDocumentStore()
        await store.connect()
        yield store
        await store.close()

    @pytest_asyncio.fixture
    async def blobs(self):
        store = InMemoryBlobStore()
        await store.connect()
        yield store
        await store.close()

    @pytest.fixture
    def store(self, docs, blobs):
        return VersionedResourceStore(docs, HistoryLog(blobs), create_default_registry(), DB)

    @pytest.mark.asyncio
    async def test_create_assigns_identity(self, store):
        """A new resource gets id, versionId and lastUpdated."""
        submitted = Resource("Patient", body={"gender": "female"})

        outcome = await store.upsert(submitted)

        assert outcome.status == UpsertStatus.CREATED
        assert outcome.resource.id
        assert outcome.resource.version_id
        assert outcome.resource.last_updated is not None
        assert outcome.resource.last_updated.tzinfo is not None
        # Caller's object is untouched
        assert submitted.id == ""
        assert submitted.version_id == ""

    @pytest.mark.asyncio
    async def test_generated_ids_are_unique(self, store):
        """Two creates without an id get different ids."""
        first = await store.upsert(Resource("Patient"))
        second = await store.upsert(Resource("Patient"))
        assert first.resource.id != second.resource.id

    @pytest.mark.asyncio
    async def test_update_changes_version(self, store):
        """Rewriting the same id reports UPDATED with a fresh versionId."""
        created = await store.upsert(Resource("Patient", id="p1"))
        updated = await store.upsert(Resource("Patient", id="p1", body={"active": True}))

        assert created.status == UpsertStatus.CREATED
        assert updated.status == UpsertStatus.UPDATED
        assert updated.resource.version_id != created.resource.version_id

    @pytest.mark.asyncio
    async def test_incoming_version_is_ignored(self, store):
        """A client-supplied versionId is replaced."""
        outcome = await store.upsert(Resource("Patient", id="p1", version_id="client-v"))
        assert outcome.resource.version_id != "client-v"

    @pytest.mark.asyncio
    async def test_load_returns_committed_version(self, store):
        """load() returns what upsert() committed."""
        outcome = await store.upsert(Resource("Patient", id="p1", body={"gender": "male"}))

        loaded = await store.load("p1", "Patient")

        assert loaded == outcome.resource

    @pytest.mark.asyncio
    async def test_load_absent(self, store):
        """Absent resources load as None."""
        assert await store.load("missing", "Patient") is None
        assert await store.load("", "Patient") is None

    @pytest.mark.asyncio
    async def test_load_failure_is_absent(self, store, docs):
        """Backend read failures are reported as absent."""
        await store.upsert(Resource("Patient", id="p1"))
        docs.fail_next("read")
        assert await store.load("p1", "Patient") is None

    @pytest.mark.asyncio
    async def test_if_match_success(self, store):
        """Matching versionId allows the update."""
        v1 = await store.upsert(Resource("Patient", id="p1"))

        v2 = await store.upsert(
            Resource("Patient", id="p1", body={"active": False}),
            if_match_version=v1.resource.version_id,
        )

        assert v2.status == UpsertStatus.UPDATED
        assert len(await store.history("Patient", "p1")) == 2

    @pytest.mark.asyncio
    async def test_if_match_conflict(self, store, docs):
        """Stale versionId is rejected without any write."""
        v1 = await store.upsert(Resource("Patient", id="p1"))
        calls_before = docs.upsert_calls

        outcome = await store.upsert(Resource("Patient", id="p1"), if_match_version="stale")

        assert outcome.status == UpsertStatus.CONFLICT
        assert v1.resource.version_id in outcome.diagnostic
        assert outcome.diagnostic == (
            f"Version conflict current resource version of Patient/p1 "
            f"is {v1.resource.version_id}"
        )
        assert docs.upsert_calls == calls_before
        assert len(await store.history("Patient", "p1")) == 1
        assert (await store.load("p1", "Patient")).version_id == v1.resource.version_id

    @pytest.mark.asyncio
    async def test_if_match_on_absent_resource(self, store, blobs):
        """If-Match against a missing resource is a conflict."""
        outcome = await store.upsert(Resource("Patient", id="nobody"), if_match_version="v1")

        assert outcome.status == UpsertStatus.CONFLICT
        assert "does not exist" in outcome.diagnostic
        assert blobs.get_blob_count() == 0

    @pytest.mark.asyncio
    async def test_backend_conflict_rolls_back_history(self, store, docs, blobs):
        """A version change between check and commit is caught by the backend."""
        v1 = await store.upsert(Resource("Patient", id="p1"))
        # Concurrent writer replaces the document after our check would have passed
        docs.put_raw(
            DB, "Patient", {"resourceType": "Patient", "id": "p1", "meta": {"versionId": "other"}}
        )

        outcome = await store._commit(
            Resource("Patient", id="p1", version_id="mine"), v1.resource.version_id
        )

        assert outcome.status == UpsertStatus.CONFLICT
        assert "other" in outcome.diagnostic
        assert "Patient/p1/mine" not in blobs.keys()

    @pytest.mark.asyncio
    async def test_commit_failure_rolls_back_history(self, store, docs, blobs):
        """A failed document commit leaves no history entry behind."""
        docs.fail_next("upsert")

        outcome = await store.upsert(Resource("Patient", id="p1"))

        assert outcome.status == UpsertStatus.ERROR
        assert blobs.get_blob_count() == 0
        assert await store.history("Patient", "p1") == []
        assert await store.load("p1", "Patient") is None

    @pytest.mark.asyncio
    async def test_rollback_failure_is_swallowed(self, store, docs, blobs):
        """A failing compensating delete still yields an ERROR outcome."""
        docs.fail_next("upsert")
        blobs.fail_next("delete")

        outcome = await store.upsert(Resource("Patient", id="p1"))

        assert outcome.status == UpsertStatus.ERROR
        # The orphan remains; it is logged, not raised
        assert blobs.get_blob_count() == 1

    @pytest.mark.asyncio
    async def test_history_failure_skips_commit(self, store, docs, blobs):
        """When history cannot be written the document is not committed."""
        blobs.fail_next("put")

        outcome = await store.upsert(Resource("Patient", id="p1"))

        assert outcome.status == UpsertStatus.ERROR
        assert docs.upsert_calls == 0

    @pytest.mark.asyncio
    async def test_oversize_rejected(self, docs, blobs):
        """Oversize resources produce ERROR with nothing written."""
        store = VersionedResourceStore(
            docs, HistoryLog(blobs, max_resource_bytes=200), create_default_registry(), DB
        )

        outcome = await store.upsert(Resource("Patient", id="p1", body={"text": "x" * 500}))

        assert outcome.status == UpsertStatus.ERROR
        assert blobs.get_blob_count() == 0
        assert docs.upsert_calls == 0

    @pytest.mark.asyncio
    async def test_collection_creation_failure(self, store, docs, blobs):
        """A failing collection create is an ERROR outcome."""
        docs.fail_next("create_collection")

        outcome = await store.upsert(Resource("Patient", id="p1"))

        assert outcome.status == UpsertStatus.ERROR
        assert blobs.get_blob_count() == 0

    @pytest.mark.asyncio
    async def test_delete_keeps_history(self, store):
        """Deleting removes the live document but not its history."""
        await store.upsert(Resource("Patient", id="p1"))

        assert await store.delete(Resource("Patient", id="p1")) is True
        assert await store.load("p1", "Patient") is None
        assert len(await store.history("Patient", "p1")) == 1

    @pytest.mark.asyncio
    async def test_delete_absent_or_failing(self, store, docs):
        """Deleting a missing resource or failing backend returns False."""
        assert await store.delete(Resource("Patient", id="missing")) is False

        await store.upsert(Resource("Patient", id="p1"))
        docs.fail_next("delete")
        assert await store.delete(Resource("Patient", id="p1")) is False

    @pytest.mark.asyncio
    async def test_history_newest_first(self, store):
        """history() returns every version, newest first."""
        versions = []
        for i in range(3):
            outcome = await store.upsert(Resource("Patient", id="p1", body={"n": i}))
            versions.append(outcome.resource.version_id)

        history = await store.history("Patient", "p1")

        assert [r.version_id for r in history] == list(reversed(versions))
        assert history[0].body == {"n": 2}

    @pytest.mark.asyncio
    async def test_read_version(self, store):
        """Any committed version can be read back."""
        v1 = await store.upsert(Resource("Patient", id="p1", body={"n": 1}))
        await store.upsert(Resource("Patient", id="p1", body={"n": 2}))

        old = await store.read_version("Patient", "p1", v1.resource.version_id)

        assert old == v1.resource
        assert await store.read_version("Patient", "p1", "nope") is None

    @pytest.mark.asyncio
    async def test_query_pages_and_total(self, store, docs):
        """Query pages carry tokens; known_total overrides the page count."""
        for i in range(5):
            await store.upsert(Resource("Patient", id=f"p{i}"))

        first = await store.query("SELECT * FROM c", "Patient", page_size=2)
        assert len(first.resources) == 2
        assert first.total == 2
        assert first.continuation_token == PageCodec.encode("2")

        second = await store.query(
            "SELECT * FROM c",
            "Patient",
            page_size=2,
            continuation_token=first.continuation_token,
            known_total=first.total,
        )
        assert [r.id for r in second.resources] == ["p2", "p3"]
        assert second.total == first.total

        last = await store.query(
            "SELECT * FROM c",
            "Patient",
            page_size=2,
            continuation_token=second.continuation_token,
            known_total=-1,
        )
        assert [r.id for r in last.resources] == ["p4"]
        assert last.total == 1
        assert last.continuation_token is None

    @pytest.mark.asyncio
    async def test_query_bad_token(self, store):
        """Undecodable tokens raise."""
        with pytest.raises(InvalidContinuationTokenError):
            await store.query("SELECT * FROM c", "Patient", continuation_token="!!")

    @pytest.mark.asyncio
    async def test_query_backend_failure_propagates(self, store, docs):
        """Query failures surface to the caller."""
        await store.upsert(Resource("Patient", id="p1"))
        docs.fail_next("query")
        with pytest.raises(DocumentStoreError):
            await store.query("SELECT * FROM c", "Patient")

    @pytest.mark.asyncio
    async def test_collection_created_once(self, store, docs):
        """Collections are created lazily and cached."""
        await store.upsert(Resource("Patient", id="p1"))
        docs.fail_next("create_collection")

        outcome = await store.upsert(Resource("Patient", id="p2"))

        assert outcome.status == UpsertStatus.CREATED


class TestUnregisteredTypes:
    """Resource types missing from the registry."""

    @pytest_asyncio.fixture
    async def docs(self):
        store = InMemoryDocumentStore()
        await store.connect()
        yield store
        await store.close()

    @pytest_asyncio.fixture
    async def blobs(self):
        store = InMemoryBlobStore()
        await store.connect()
        yield store
        await store.close()

    @pytest.fixture
    def store(self, docs, blobs):
        registry = ResourceTypeRegistry.from_names(["Patient"])
        return VersionedResourceStore(docs, HistoryLog(blobs), registry, DB)

    @pytest.mark.asyncio
    async def test_upsert_rejected_without_writes(self, store, docs, blobs):
        """Writes of unregistered types are an ERROR outcome and store nothing."""
        outcome = await store.upsert(Resource("Custom", id="x1"))

        assert outcome.status == UpsertStatus.ERROR
        assert "Custom" in outcome.diagnostic
        assert docs.get_document_count(DB, "Custom") == 0
        assert blobs.get_blob_count() == 0

    @pytest.mark.asyncio
    async def test_conditional_upsert_does_not_raise(self, store):
        """A conditional write of an unregistered type is reported, not raised."""
        outcome = await store.upsert(Resource("Custom", id="x1"), if_match_version="v1")
        assert outcome.status == UpsertStatus.ERROR

    @pytest.mark.asyncio
    async def test_load_unparseable_document_is_absent(self, store, docs):
        """A stored document of an unregistered type loads as None."""
        docs.put_raw(DB, "Custom", {"resourceType": "Custom", "id": "x1"})
        assert await store.load("x1", "Custom") is None

    @pytest.mark.asyncio
    async def test_read_version_unparseable_entry_is_absent(self, store, blobs):
        """A history entry of an unregistered type reads as None."""
        await blobs.put("Custom/x1/v1", b'{"resourceType":"Custom","id":"x1"}')
        assert await store.read_version("Custom", "x1", "v1") is None


class TestConflictsOnSqlite:
    """Conflicts against the SQLite backend."""

    @pytest.fixture
    def data_dir(self):
        """Create temporary data directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest_asyncio.fixture
    async def store(self, data_dir):
        docs = SqliteDocumentStore(data_dir, wal_mode=False)
        blobs = InMemoryBlobStore()
        await docs.connect()
        await blobs.connect()
        yield VersionedResourceStore(docs, HistoryLog(blobs), create_default_registry(), DB)
        await blobs.close()
        await docs.close()

    @pytest.mark.asyncio
    async def test_conflict_on_absent_resource_creates_nothing(self, store, data_dir):
        """A rejected conditional update leaves the database untouched."""
        outcome = await store.upsert(Resource("Patient", id="p1"), if_match_version="v1")

        assert outcome.status == UpsertStatus.CONFLICT
        db_path = Path(data_dir) / f"{DB}.db"
        if db_path.exists():
            with closing(sqlite3.connect(str(db_path))) as conn:
                tables = conn.execute(
                    "SELECT name FROM sqlite_master WHERE type = 'table'"
                ).fetchall()
            assert tables == []

    @pytest.mark.asyncio
    async def test_delete_on_absent_collection(self, store):
        """Deleting from a collection never written to reports False."""
        assert await store.delete(Resource("Patient", id="p1")) is False
