"""
SQLite document backend for FHIR DB Server.

This module stores FHIR JSON documents in SQLite, one database file per
logical database and one table per collection (resource type). Queries are
SQLite SQL over the JSON1 functions, evaluated against a CTE named ``c``
that aliases the collection table, so rule templates never name tables.

Query example (as produced by the search query builder):
    SELECT DISTINCT c.id, c.body FROM c WHERE (json_extract(c.body, '$.gender') = 'female')

Invariants:
    - One SQLite file per database, one table per collection
    - Every write is a single IMMEDIATE transaction
    - Conditional writes compare meta.versionId inside the write transaction
    - Continuation cursors are decimal row offsets into the query result
    - Pages are ordered by id unless the query supplies its own ORDER BY
    - A collection that was never created reads as empty (no DDL on reads)

How to change safely:
    - Table layout changes must keep the (id, body) columns the queries read
    - Test rule templates against this backend before shipping them

Table schema (per collection):
    "<collection>":
        - id TEXT PRIMARY KEY
        - body TEXT (FHIR JSON)
        - version_id TEXT (copy of meta.versionId)
        - _ts INTEGER (Unix ms of last write)
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from ..errors import ConflictError, DocumentStoreError
from .base import QueryPage, UpsertResult

logger = logging.getLogger(__name__)


class SqliteDocumentStore:
    """SQLite-backed DocumentStore.

    Thread safety:
        Each operation opens its own connection.
        SQLite handles concurrent access via WAL mode.

    Example:
        >>> store = SqliteDocumentStore("/var/lib/fhirdb")
        >>> await store.connect()
        >>> await store.create_collection_if_absent("fhirdb", "Patient")
        >>> await store.upsert("fhirdb", "Patient", {"resourceType": "Patient", "id": "p1"})
        UpsertResult(created=True)
    """

    SELECT_ALL_QUERY = "SELECT DISTINCT c.id, c.body FROM c"

    def __init__(
        self,
        data_dir: str,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
    ) -> None:
        """Initialize the document store.

        Args:
            data_dir: Directory for SQLite database files
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
        """
        self.data_dir = Path(data_dir)
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms

    @property
    def select_all_query(self) -> str:
        return self.SELECT_ALL_QUERY

    async def connect(self) -> None:
        """Create the data directory."""
        self.data_dir.mkdir(parents=True, exist_ok=True)
        logger.info("SQLite document store ready", extra={"data_dir": str(self.data_dir)})

    async def close(self) -> None:
        """Nothing to release; connections are per operation."""
        logger.debug("SQLite document store closed")

    def _get_db_path(self, database: str) -> Path:
        """Get database file path for a logical database."""
        # Sanitize to prevent path traversal
        safe_name = "".join(c for c in database if c.isalnum() or c in "-_")
        return self.data_dir / f"{safe_name}.db"

    @staticmethod
    def _table_name(collection: str) -> str:
        """Quoted table identifier for a collection."""
        if not collection or not all(c.isalnum() or c == "_" for c in collection):
            raise DocumentStoreError(
                f"Invalid collection name '{collection}'", collection=collection
            )
        return f'"{collection}"'

    @staticmethod
    def _table_exists(conn: sqlite3.Connection, collection: str) -> bool:
        row = conn.execute(
            "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?", (collection,)
        ).fetchone()
        return row is not None

    @contextmanager
    def _get_connection(self, database: str) -> Iterator[sqlite3.Connection]:
        """Get a connection to a database file.

        Yields:
            SQLite connection
        """
        db_path = self._get_db_path(database)
        db_path.parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(
            str(db_path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,  # Autocommit by default, explicit transactions
        )
        conn.row_factory = sqlite3.Row

        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")

            yield conn
        finally:
            conn.close()

    async def create_collection_if_absent(self, database: str, collection: str) -> None:
        table = self._table_name(collection)
        try:
            with self._get_connection(database) as conn:
                conn.execute(
                    f"""
                    CREATE TABLE IF NOT EXISTS {table} (
                        id TEXT PRIMARY KEY,
                        body TEXT NOT NULL,
                        version_id TEXT,
                        _ts INTEGER NOT NULL
                    )
                    """
                )
        except sqlite3.Error as e:
            raise DocumentStoreError(
                f"Failed to create collection {collection}: {e}",
                database=database,
                collection=collection,
            ) from e

        logger.debug(
            "Collection ready", extra={"database": database, "collection": collection}
        )

    async def upsert(
        self,
        database: str,
        collection: str,
        document: dict[str, Any],
        if_match: str | None = None,
    ) -> UpsertResult:
        table = self._table_name(collection)
        doc_id = document.get("id")
        if not doc_id:
            raise DocumentStoreError("Document has no id", collection=collection)

        version_id = (document.get("meta") or {}).get("versionId")
        body = json.dumps(document, separators=(",", ":"), ensure_ascii=False)

        try:
            with self._get_connection(database) as conn:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    row = conn.execute(
                        f"SELECT version_id FROM {table} WHERE id = ?", (doc_id,)
                    ).fetchone()

                    if if_match is not None and (row is None or row["version_id"] != if_match):
                        current = row["version_id"] if row is not None else None
                        raise ConflictError(
                            f"Version conflict on {collection}/{doc_id}: "
                            f"expected {if_match}, current {current}",
                            resource_type=collection,
                            resource_id=doc_id,
                            current_version=current,
                        )

                    conn.execute(
                        f"""
                        INSERT INTO {table} (id, body, version_id, _ts)
                        VALUES (?, ?, ?, ?)
                        ON CONFLICT(id) DO UPDATE SET
                            body = excluded.body,
                            version_id = excluded.version_id,
                            _ts = excluded._ts
                        """,
                        (doc_id, body, version_id, int(time.time() * 1000)),
                    )

                    conn.execute("COMMIT")

                except Exception:
                    conn.execute("ROLLBACK")
                    raise

        except sqlite3.Error as e:
            raise DocumentStoreError(
                f"Failed to upsert {collection}/{doc_id}: {e}",
                database=database,
                collection=collection,
                id=doc_id,
            ) from e

        return UpsertResult(created=row is None)

    async def read(self, database: str, collection: str, doc_id: str) -> dict[str, Any] | None:
        table = self._table_name(collection)
        try:
            with self._get_connection(database) as conn:
                if not self._table_exists(conn, collection):
                    return None
                row = conn.execute(
                    f"SELECT body FROM {table} WHERE id = ?", (doc_id,)
                ).fetchone()
        except sqlite3.Error as e:
            raise DocumentStoreError(
                f"Failed to read {collection}/{doc_id}: {e}",
                database=database,
                collection=collection,
                id=doc_id,
            ) from e

        return json.loads(row["body"]) if row is not None else None

    async def delete(self, database: str, collection: str, doc_id: str) -> bool:
        table = self._table_name(collection)
        try:
            with self._get_connection(database) as conn:
                if not self._table_exists(conn, collection):
                    return False
                cursor = conn.execute(f"DELETE FROM {table} WHERE id = ?", (doc_id,))
                return cursor.rowcount > 0
        except sqlite3.Error as e:
            raise DocumentStoreError(
                f"Failed to delete {collection}/{doc_id}: {e}",
                database=database,
                collection=collection,
                id=doc_id,
            ) from e

    async def query(
        self,
        database: str,
        collection: str,
        query: str,
        page_size: int,
        continuation: str | None = None,
    ) -> QueryPage:
        table = self._table_name(collection)
        try:
            offset = int(continuation) if continuation else 0
        except ValueError:
            raise DocumentStoreError(
                f"Malformed continuation cursor '{continuation}'", collection=collection
            ) from None

        sql = (
            f"WITH c AS (SELECT id, body, _ts FROM {table}) "
            f"SELECT * FROM ({query})"
        )
        if "order by" not in query.lower():
            # Offset cursors need the same row order on every page
            sql += " ORDER BY id"
        sql += " LIMIT ? OFFSET ?"

        try:
            with self._get_connection(database) as conn:
                # One extra row tells us whether another page exists
                rows = conn.execute(sql, (page_size + 1, offset)).fetchall()
            documents = [json.loads(row["body"]) for row in rows[:page_size]]
        except (sqlite3.Error, IndexError) as e:
            raise DocumentStoreError(
                f"Query failed on {collection}: {e}",
                database=database,
                collection=collection,
                query=query,
            ) from e

        has_more = len(rows) > page_size
        next_cursor = str(offset + len(documents)) if has_more else None

        logger.debug(
            "Executed query page",
            extra={
                "collection": collection,
                "offset": offset,
                "returned": len(documents),
                "has_more": has_more,
            },
        )

        return QueryPage(documents=documents, continuation=next_cursor, count=len(documents))
