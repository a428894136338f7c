"""
Unit tests for the resource history log.

Tests cover:
- Insert/read of history entries
- Newest-first ordering
- Size cap enforcement
- Storage failure handling
"""

from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from fhirapi.fhirdb_server.errors import BlobStoreError, OversizeError
from fhirapi.fhirdb_server.history.log import HistoryLog, entry_key
from fhirapi.fhirdb_server.resources.model import Resource
from fhirapi.fhirdb_server.storage.memory import InMemoryBlobStore


def make_version(version_id: str, **body) -> Resource:
    return Resource(
        "Patient",
        id="p1",
        version_id=version_id,
        last_updated=datetime(2024, 1, 1, tzinfo=timezone.utc),
        body=body,
    )


class TestHistoryLog:
    """Tests for HistoryLog."""

    @pytest_asyncio.fixture
    async def blobs(self):
        """Connected in-memory blob store."""
        store = InMemoryBlobStore()
        await store.connect()
        yield store
        await store.close()

    @pytest.fixture
    def history(self, blobs):
        return HistoryLog(blobs)

    def test_entry_key_layout(self):
        """Keys are type/id/versionId."""
        assert entry_key("Patient", "p1", "v1") == "Patient/p1/v1"

    @pytest.mark.asyncio
    async def test_insert_returns_serialized_form(self, history, blobs):
        """insert() returns exactly the bytes it stored."""
        version = make_version("v1", gender="male")

        text = await history.insert(version)

        assert text == version.to_json()
        assert await blobs.get("Patient/p1/v1") == text.encode("utf-8")

    @pytest.mark.asyncio
    async def test_insert_requires_identity(self, history):
        """Resources without id or version cannot be recorded."""
        with pytest.raises(ValueError):
            await history.insert(Resource("Patient", id="p1"))

    @pytest.mark.asyncio
    async def test_oversize_rejected_before_write(self, blobs):
        """Oversize resources raise and write nothing."""
        history = HistoryLog(blobs, max_resource_bytes=100)

        with pytest.raises(OversizeError) as exc_info:
            await history.insert(make_version("v1", text="x" * 200))

        assert exc_info.value.limit == 100
        assert exc_info.value.size > 100
        assert blobs.get_blob_count() == 0

    @pytest.mark.asyncio
    async def test_default_cap_is_500000_bytes(self, history):
        """Resources just under the default cap are accepted; over it rejected."""
        assert history.max_resource_bytes == 500_000
        with pytest.raises(OversizeError):
            await history.insert(make_version("v1", text="x" * 500_001))

    @pytest.mark.asyncio
    async def test_insert_failure_returns_none(self, history, blobs):
        """Blob failures on insert become None."""
        blobs.fail_next("put")
        assert await history.insert(make_version("v1")) is None

    @pytest.mark.asyncio
    async def test_entries_newest_first(self, history):
        """entries() lists versions newest first."""
        for vid in ("v1", "v2", "v3"):
            await history.insert(make_version(vid))

        entries = await history.entries("Patient", "p1")

        assert [Resource.from_json(e).version_id for e in entries] == ["v3", "v2", "v1"]

    @pytest.mark.asyncio
    async def test_entries_scoped_to_resource(self, history):
        """Entries of other ids sharing a prefix are not included."""
        await history.insert(make_version("v1"))
        await history.insert(Resource("Patient", id="p10", version_id="x1"))

        entries = await history.entries("Patient", "p1")

        assert len(entries) == 1

    @pytest.mark.asyncio
    async def test_entries_listing_failure_is_empty(self, history, blobs):
        """A failing listing is reported as no history."""
        await history.insert(make_version("v1"))
        blobs.fail_next("list")
        assert await history.entries("Patient", "p1") == []

    @pytest.mark.asyncio
    async def test_entry_and_delete(self, history):
        """A single entry can be read and deleted."""
        version = make_version("v1")
        text = await history.insert(version)

        assert await history.entry("Patient", "p1", "v1") == text

        await history.delete(version)
        assert await history.entry("Patient", "p1", "v1") is None

    @pytest.mark.asyncio
    async def test_delete_propagates_failure(self, history, blobs):
        """Delete failures are raised for the caller to handle."""
        version = make_version("v1")
        await history.insert(version)
        blobs.fail_next("delete")

        with pytest.raises(BlobStoreError):
            await history.delete(version)

    @pytest.mark.asyncio
    async def test_entry_read_failure_is_none(self, history, blobs):
        """Read failures on a single entry become None."""
        await history.insert(make_version("v1"))
        blobs.fail_next("get")
        assert await history.entry("Patient", "p1", "v1") is None


class SecondResolutionBlobStore(InMemoryBlobStore):
    """Reports modification times to the second, as S3 does."""

    async def list(self, prefix: str):
        return [
            replace(info, last_modified=info.last_modified.replace(microsecond=0))
            for info in await super().list(prefix)
        ]


class TestHistoryOrdering:
    """Ordering when blob timestamps are coarse."""

    @pytest_asyncio.fixture
    async def blobs(self):
        store = SecondResolutionBlobStore()
        await store.connect()
        yield store
        await store.close()

    @pytest.mark.asyncio
    async def test_versions_in_same_second_newest_first(self, blobs):
        """Entries written within one second are ordered by lastUpdated."""
        history = HistoryLog(blobs)
        base = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
        for offset, vid in enumerate(("a-v1", "b-v2", "c-v3")):
            await history.insert(
                Resource(
                    "Patient",
                    id="p1",
                    version_id=vid,
                    last_updated=base + timedelta(milliseconds=offset),
                )
            )

        entries = await history.entries("Patient", "p1")

        assert [Resource.from_json(e).version_id for e in entries] == ["c-v3", "b-v2", "a-v1"]

    @pytest.mark.asyncio
    async def test_key_order_does_not_decide(self, blobs):
        """Version ids sorting against write order do not change the result."""
        history = HistoryLog(blobs)
        base = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
        for offset, vid in enumerate(("z", "m", "a")):
            await history.insert(
                Resource(
                    "Patient",
                    id="p1",
                    version_id=vid,
                    last_updated=base + timedelta(milliseconds=offset),
                )
            )

        entries = await history.entries("Patient", "p1")

        assert [Resource.from_json(e).version_id for e in entries] == ["a", "m", "z"]
