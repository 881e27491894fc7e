"""SQLite backend for the IngestStore protocol.

Provides a concrete implementation backed by Python's built-in ``sqlite3``
module.  Suitable for local / single-node deployments and testing.

Each row keeps the indexed columns the pipeline queries on, plus the full
entity as JSON in a ``data`` column, so the schema stays small while
round-tripping every model field.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from typing import TypeVar

from pydantic import BaseModel

from ingestkit_ncc.errors import ErrorCode, StorageError
from ingestkit_ncc.models import (
    Asset,
    AssetPlacement,
    Block,
    Document,
    Edition,
    FileStatus,
    IngestRun,
    Node,
    ParseProgress,
    Reference,
    RunStatus,
    UploadRecord,
    XmlObject,
)

logger = logging.getLogger("ingestkit_ncc")

M = TypeVar("M", bound=BaseModel)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS editions (
    id TEXT PRIMARY KEY,
    data TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS uploads (
    id TEXT PRIMARY KEY,
    edition_id TEXT NOT NULL,
    volume TEXT NOT NULL,
    confirmed_at TEXT NOT NULL,
    data TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS runs (
    id TEXT PRIMARY KEY,
    edition_id TEXT NOT NULL,
    volume TEXT NOT NULL,
    status TEXT NOT NULL,
    created_at TEXT NOT NULL,
    data TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS xml_objects (
    id TEXT PRIMARY KEY,
    run_id TEXT NOT NULL,
    basename TEXT NOT NULL,
    data TEXT NOT NULL,
    UNIQUE (run_id, basename)
);
CREATE TABLE IF NOT EXISTS documents (
    id TEXT PRIMARY KEY,
    run_id TEXT NOT NULL,
    xml_object_id TEXT NOT NULL UNIQUE REFERENCES xml_objects(id),
    data TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS blocks (
    id TEXT PRIMARY KEY,
    run_id TEXT NOT NULL,
    document_id TEXT NOT NULL REFERENCES documents(id),
    ordinal INTEGER NOT NULL,
    data TEXT NOT NULL,
    UNIQUE (document_id, ordinal)
);
CREATE TABLE IF NOT EXISTS nodes (
    id TEXT PRIMARY KEY,
    run_id TEXT NOT NULL,
    sort_order INTEGER NOT NULL,
    data TEXT NOT NULL,
    UNIQUE (run_id, sort_order)
);
CREATE TABLE IF NOT EXISTS assets (
    id TEXT PRIMARY KEY,
    run_id TEXT NOT NULL,
    data TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS placements (
    id TEXT PRIMARY KEY,
    run_id TEXT NOT NULL,
    document_id TEXT NOT NULL REFERENCES documents(id),
    asset_id TEXT NOT NULL REFERENCES assets(id),
    data TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS refs (
    id TEXT PRIMARY KEY,
    run_id TEXT NOT NULL,
    source_document_id TEXT NOT NULL REFERENCES documents(id),
    data TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS progress (
    id TEXT PRIMARY KEY,
    run_id TEXT NOT NULL,
    seq INTEGER NOT NULL,
    status TEXT NOT NULL,
    data TEXT NOT NULL,
    UNIQUE (run_id, seq)
);
"""

# Output kind -> table name, for delete_for_run / count_outputs.
OUTPUT_TABLES: dict[str, str] = {
    "placements": "placements",
    "references": "refs",
    "blocks": "blocks",
    "nodes": "nodes",
    "documents": "documents",
    "assets": "assets",
    "xml_objects": "xml_objects",
    "progress": "progress",
}


class SQLiteIngestStore:
    """SQLite-backed ingestion store.

    Satisfies :class:`~ingestkit_ncc.protocols.IngestStore` via structural
    subtyping (no inheritance required).

    Parameters
    ----------
    db_path:
        Filesystem path or ``":memory:"`` for an in-memory database.
    """

    def __init__(self, db_path: str = ":memory:") -> None:
        self._db_path = db_path
        self._lock = threading.RLock()
        self._depth = 0
        try:
            self._conn = sqlite3.connect(
                db_path, isolation_level=None, check_same_thread=False
            )
            self._conn.execute("PRAGMA foreign_keys = ON")
            self._conn.executescript(_SCHEMA)
        except sqlite3.Error as exc:
            raise ConnectionError(
                f"Failed to connect to SQLite database at {db_path}: {exc}"
            ) from exc

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Atomic unit of work.  Nested calls join the outermost one."""
        with self._lock:
            outermost = self._depth == 0
            if outermost:
                self._conn.execute("BEGIN")
            self._depth += 1
            try:
                yield
            except BaseException:
                self._depth -= 1
                if outermost:
                    self._conn.execute("ROLLBACK")
                raise
            else:
                self._depth -= 1
                if outermost:
                    self._conn.execute("COMMIT")

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        with self._lock:
            try:
                return self._conn.execute(sql, params)
            except sqlite3.Error as exc:
                raise StorageError(
                    f"SQLite statement failed: {exc}",
                    code=ErrorCode.E_STORAGE_PUT,
                ) from exc

    def _executemany(self, sql: str, rows: list[tuple]) -> None:
        if not rows:
            return
        with self._lock:
            try:
                self._conn.executemany(sql, rows)
            except sqlite3.Error as exc:
                raise StorageError(
                    f"SQLite write failed: {exc}",
                    code=ErrorCode.E_STORAGE_PUT,
                ) from exc

    def _fetch(self, model: type[M], sql: str, params: tuple = ()) -> list[M]:
        with self._lock:
            rows = self._execute(sql, params).fetchall()
        return [model.model_validate_json(row[0]) for row in rows]

    def _fetch_one(self, model: type[M], sql: str, params: tuple = ()) -> M | None:
        found = self._fetch(model, sql, params)
        return found[0] if found else None

    # ------------------------------------------------------------------
    # Editions and uploads
    # ------------------------------------------------------------------

    def get_edition(self, edition_id: str) -> Edition | None:
        return self._fetch_one(
            Edition, "SELECT data FROM editions WHERE id = ?", (edition_id,)
        )

    def save_edition(self, edition: Edition) -> None:
        self._execute(
            "INSERT OR REPLACE INTO editions (id, data) VALUES (?, ?)",
            (edition.id, edition.model_dump_json()),
        )

    def save_upload(self, record: UploadRecord) -> None:
        self._execute(
            "INSERT OR REPLACE INTO uploads (id, edition_id, volume, confirmed_at, data) "
            "VALUES (?, ?, ?, ?, ?)",
            (
                record.id,
                record.edition_id,
                record.volume,
                record.confirmed_at.isoformat(),
                record.model_dump_json(),
            ),
        )

    def latest_upload(self, edition_id: str, volume: str) -> UploadRecord | None:
        return self._fetch_one(
            UploadRecord,
            "SELECT data FROM uploads WHERE edition_id = ? AND volume = ? "
            "ORDER BY confirmed_at DESC, rowid DESC LIMIT 1",
            (edition_id, volume),
        )

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    def save_run(self, run: IngestRun) -> None:
        self._execute(
            "INSERT OR REPLACE INTO runs (id, edition_id, volume, status, created_at, data) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (
                run.id,
                run.edition_id,
                run.volume,
                run.status.value,
                run.created_at.isoformat(),
                run.model_dump_json(),
            ),
        )

    def get_run(self, run_id: str) -> IngestRun | None:
        return self._fetch_one(IngestRun, "SELECT data FROM runs WHERE id = ?", (run_id,))

    def list_runs(
        self,
        edition_id: str,
        volume: str | None = None,
        statuses: list[RunStatus] | None = None,
    ) -> list[IngestRun]:
        sql = "SELECT data FROM runs WHERE edition_id = ?"
        params: list = [edition_id]
        if volume is not None:
            sql += " AND volume = ?"
            params.append(volume)
        if statuses:
            sql += f" AND status IN ({', '.join('?' for _ in statuses)})"
            params.extend(s.value for s in statuses)
        sql += " ORDER BY created_at, rowid"
        return self._fetch(IngestRun, sql, tuple(params))

    # ------------------------------------------------------------------
    # Run outputs
    # ------------------------------------------------------------------

    def insert_xml_objects(self, objects: list[XmlObject]) -> None:
        self._executemany(
            "INSERT INTO xml_objects (id, run_id, basename, data) VALUES (?, ?, ?, ?)",
            [(o.id, o.run_id, o.basename, o.model_dump_json()) for o in objects],
        )

    def list_xml_objects(self, run_id: str) -> list[XmlObject]:
        return self._fetch(
            XmlObject,
            "SELECT data FROM xml_objects WHERE run_id = ? ORDER BY rowid",
            (run_id,),
        )

    def insert_documents(self, documents: list[Document]) -> None:
        self._executemany(
            "INSERT INTO documents (id, run_id, xml_object_id, data) VALUES (?, ?, ?, ?)",
            [(d.id, d.run_id, d.xml_object_id, d.model_dump_json()) for d in documents],
        )

    def list_documents(self, run_id: str) -> list[Document]:
        return self._fetch(
            Document,
            "SELECT data FROM documents WHERE run_id = ? ORDER BY rowid",
            (run_id,),
        )

    def get_document(self, document_id: str) -> Document | None:
        return self._fetch_one(
            Document, "SELECT data FROM documents WHERE id = ?", (document_id,)
        )

    def insert_blocks(self, blocks: list[Block]) -> None:
        self._executemany(
            "INSERT INTO blocks (id, run_id, document_id, ordinal, data) "
            "VALUES (?, ?, ?, ?, ?)",
            [
                (b.id, b.run_id, b.document_id, b.ordinal, b.model_dump_json())
                for b in blocks
            ],
        )

    def list_blocks(self, document_id: str) -> list[Block]:
        return self._fetch(
            Block,
            "SELECT data FROM blocks WHERE document_id = ? ORDER BY ordinal",
            (document_id,),
        )

    def insert_nodes(self, nodes: list[Node]) -> None:
        self._executemany(
            "INSERT INTO nodes (id, run_id, sort_order, data) VALUES (?, ?, ?, ?)",
            [(n.id, n.run_id, n.sort_order, n.model_dump_json()) for n in nodes],
        )

    def list_nodes(self, run_id: str) -> list[Node]:
        return self._fetch(
            Node,
            "SELECT data FROM nodes WHERE run_id = ? ORDER BY sort_order",
            (run_id,),
        )

    def max_sort_order(self, run_id: str) -> int | None:
        row = self._execute(
            "SELECT MAX(sort_order) FROM nodes WHERE run_id = ?", (run_id,)
        ).fetchone()
        return row[0] if row else None

    def insert_assets(self, assets: list[Asset]) -> None:
        self._executemany(
            "INSERT INTO assets (id, run_id, data) VALUES (?, ?, ?)",
            [(a.id, a.run_id, a.model_dump_json()) for a in assets],
        )

    def list_assets(self, run_id: str) -> list[Asset]:
        return self._fetch(
            Asset,
            "SELECT data FROM assets WHERE run_id = ? ORDER BY rowid",
            (run_id,),
        )

    def insert_placements(self, placements: list[AssetPlacement]) -> None:
        self._executemany(
            "INSERT INTO placements (id, run_id, document_id, asset_id, data) "
            "VALUES (?, ?, ?, ?, ?)",
            [
                (p.id, p.run_id, p.document_id, p.asset_id, p.model_dump_json())
                for p in placements
            ],
        )

    def list_placements(
        self, run_id: str, document_id: str | None = None
    ) -> list[AssetPlacement]:
        if document_id is None:
            return self._fetch(
                AssetPlacement,
                "SELECT data FROM placements WHERE run_id = ? ORDER BY rowid",
                (run_id,),
            )
        return self._fetch(
            AssetPlacement,
            "SELECT data FROM placements WHERE run_id = ? AND document_id = ? "
            "ORDER BY rowid",
            (run_id, document_id),
        )

    def insert_references(self, references: list[Reference]) -> None:
        self._executemany(
            "INSERT INTO refs (id, run_id, source_document_id, data) VALUES (?, ?, ?, ?)",
            [
                (r.id, r.run_id, r.source_document_id, r.model_dump_json())
                for r in references
            ],
        )

    def list_references(
        self, run_id: str, source_document_id: str | None = None
    ) -> list[Reference]:
        if source_document_id is None:
            return self._fetch(
                Reference,
                "SELECT data FROM refs WHERE run_id = ? ORDER BY rowid",
                (run_id,),
            )
        return self._fetch(
            Reference,
            "SELECT data FROM refs WHERE run_id = ? AND source_document_id = ? "
            "ORDER BY rowid",
            (run_id, source_document_id),
        )

    def set_reference_target(self, reference_id: str, target_document_id: str) -> None:
        with self.transaction():
            ref = self._fetch_one(
                Reference, "SELECT data FROM refs WHERE id = ?", (reference_id,)
            )
            if ref is None:
                return
            ref = ref.model_copy(update={"target_document_id": target_document_id})
            self._execute(
                "UPDATE refs SET data = ? WHERE id = ?",
                (ref.model_dump_json(), reference_id),
            )

    def count_outputs(self, run_id: str) -> dict[str, int]:
        counts: dict[str, int] = {}
        for kind, table in OUTPUT_TABLES.items():
            row = self._execute(
                f"SELECT COUNT(*) FROM {table} WHERE run_id = ?", (run_id,)
            ).fetchone()
            counts[kind] = row[0]
        return counts

    def delete_for_run(self, kind: str, run_id: str) -> int:
        table = OUTPUT_TABLES.get(kind)
        if table is None:
            raise ValueError(f"Unknown output kind '{kind}'")
        cursor = self._execute(f"DELETE FROM {table} WHERE run_id = ?", (run_id,))
        return cursor.rowcount

    # ------------------------------------------------------------------
    # Progress ledger
    # ------------------------------------------------------------------

    def insert_progress(self, rows: list[ParseProgress]) -> None:
        self._executemany(
            "INSERT INTO progress (id, run_id, seq, status, data) VALUES (?, ?, ?, ?, ?)",
            [
                (r.id, r.run_id, r.seq, r.status.value, r.model_dump_json())
                for r in rows
            ],
        )

    def list_progress(
        self,
        run_id: str,
        status: FileStatus | None = None,
        limit: int | None = None,
    ) -> list[ParseProgress]:
        sql = "SELECT data FROM progress WHERE run_id = ?"
        params: list = [run_id]
        if status is not None:
            sql += " AND status = ?"
            params.append(status.value)
        sql += " ORDER BY seq"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        return self._fetch(ParseProgress, sql, tuple(params))

    def save_progress(self, row: ParseProgress) -> None:
        self._execute(
            "UPDATE progress SET status = ?, data = ? WHERE id = ?",
            (row.status.value, row.model_dump_json(), row.id),
        )

    def count_progress(self, run_id: str) -> dict[str, int]:
        rows = self._execute(
            "SELECT status, COUNT(*) FROM progress WHERE run_id = ? GROUP BY status",
            (run_id,),
        ).fetchall()
        return {status: count for status, count in rows}

    # ------------------------------------------------------------------
    # Resource management
    # ------------------------------------------------------------------

    def get_connection_uri(self) -> str:
        return f"sqlite:///{self._db_path}"

    def close(self) -> None:
        """Close the underlying SQLite connection."""
        self._conn.close()

    def __del__(self) -> None:
        try:
            self._conn.close()
        except Exception:  # noqa: BLE001
            pass
