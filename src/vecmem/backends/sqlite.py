"""
Single-file SQLite vector backends.

Features:
- Zero server dependencies (embedded SQLite)
- One file per store, in the asset-container layout (model_meta + vectors)
- Per-row CRC32C verified whenever rows are read back
- Micro-batched writes with a bounded pending queue
- AVX/NEON SIMD distance functions via sqlite-vec when it is installed

``SqliteBackend`` needs only the standard library and numpy and is always
available. ``SqliteVecBackend`` pushes distance computation into SQL
through the sqlite-vec extension.
"""
from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import time
from pathlib import Path
from typing import Optional

import numpy as np

from ..assets import FORMAT_VERSION, AssetContainer, write_meta
from ..errors import (
    AssetIntegrityError,
    BackpressureError,
    ConfigurationError,
    DimensionMismatchError,
)
from ..kernels import crc32c
from ..validation import MAX_PENDING_WRITES
from .base import AsyncVectorBackend, SearchOptions, SearchResult, VectorRecord, ensure_no_duplicate_ids

logger = logging.getLogger(__name__)

VECTORS_SCHEMA = """
CREATE TABLE IF NOT EXISTS vectors (
    id TEXT PRIMARY KEY,
    embedding BLOB NOT NULL,
    metadata TEXT,
    crc32c INTEGER NOT NULL,
    created_at REAL NOT NULL
)
"""


def serialize_f32(vector: np.ndarray) -> bytes:
    """Serialize numpy array to sqlite-vec float32 format."""
    if vector.dtype != np.float32:
        vector = vector.astype(np.float32)
    return vector.tobytes()


def deserialize_f32(blob: bytes) -> np.ndarray:
    """Deserialize sqlite-vec float32 blob to numpy array."""
    return np.frombuffer(blob, dtype=np.float32).copy()


def row_checksum(blob: bytes, metadata_json: Optional[str]) -> int:
    crc = crc32c(blob)
    if metadata_json is not None:
        crc = crc32c(metadata_json.encode("utf-8"), crc)
    return crc


class SqliteBackend(AsyncVectorBackend):
    """
    Portable single-file backend: sqlite3 for persistence, numpy brute force
    for search over an in-memory cache of every vector.

    Sync ``insert`` queues rows and writes them once ``batch_threshold`` are
    pending; ``search``, ``remove``, ``save`` and ``close`` flush first.
    ``insert_batch`` and ``insert_async`` write straight through.
    """

    name = "sqlite"
    native = False

    def __init__(self, config=None):
        super().__init__(config)
        self.db_path = self.config.storage_path
        self._conn: Optional[sqlite3.Connection] = None
        self._vectors: dict[str, np.ndarray] = {}
        self._metadata: dict[str, Optional[dict]] = {}
        self._pending: list[VectorRecord] = []
        self._matrix: Optional[np.ndarray] = None
        self._matrix_ids: list[str] = []

    # ------------------------------------------------------------------
    # Connection / schema
    # ------------------------------------------------------------------

    def _connect(self) -> sqlite3.Connection:
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        if self.db_path != ":memory:":
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
        return conn

    def _do_initialize(self):
        self._conn = self._connect()
        try:
            self._prepare_connection(self._conn)
            with self._conn:
                self._conn.execute(VECTORS_SCHEMA)
                write_meta(self._conn, {})
                self._conn.execute(
                    "INSERT OR IGNORE INTO model_meta (key, value) VALUES ('created_at', ?)",
                    (str(int(time.time())),),
                )
            self._check_stored_meta()
            self._reload_cache()
        except Exception:
            self._conn.close()
            self._conn = None
            raise
        logger.info(f"✓ Connected to {self.db_path} ({len(self._vectors)} vectors)")

    def _prepare_connection(self, conn: sqlite3.Connection):
        """Hook for extension loading."""

    def _stored_meta(self, conn: sqlite3.Connection) -> dict[str, str]:
        return dict(conn.execute("SELECT key, value FROM model_meta").fetchall())

    def _check_stored_meta(self):
        meta = self._stored_meta(self._conn)
        stored_metric = meta.get("metric")
        if stored_metric and stored_metric != self.metric:
            raise ConfigurationError(
                f"{self.db_path} was written with metric {stored_metric!r}, configured {self.metric!r}"
            )
        if meta.get("dimension"):
            stored_dim = int(meta["dimension"])
            if self.dimension is None:
                self.dimension = stored_dim
            elif self.dimension != stored_dim:
                raise DimensionMismatchError(self.dimension, stored_dim)

    def _write_meta(self):
        write_meta(self._conn, {
            "model_id": self.name,
            "dimension": self.dimension if self.dimension is not None else "",
            "metric": self.metric,
            "format_version": FORMAT_VERSION,
        })

    def _read_rows(self, conn: sqlite3.Connection) -> list[tuple[str, np.ndarray, Optional[dict]]]:
        rows = []
        for rec_id, blob, meta_json, crc in conn.execute(
            "SELECT id, embedding, metadata, crc32c FROM vectors ORDER BY rowid"
        ):
            blob = bytes(blob)
            if row_checksum(blob, meta_json) != crc:
                raise AssetIntegrityError(
                    f"CRC32C mismatch for vector {rec_id!r}", details={"id": rec_id}
                )
            rows.append((rec_id, deserialize_f32(blob), json.loads(meta_json) if meta_json else None))
        return rows

    def _reload_cache(self):
        self._vectors.clear()
        self._metadata.clear()
        for rec_id, vector, meta in self._read_rows(self._conn):
            self._vectors[rec_id] = vector
            self._metadata[rec_id] = meta
        self._matrix = None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _write_rows(self, records: list[VectorRecord]):
        now = time.time()
        params = []
        for record in records:
            blob = serialize_f32(record.embedding)
            meta_json = json.dumps(record.metadata) if record.metadata is not None else None
            params.append((record.id, blob, meta_json, row_checksum(blob, meta_json), now))
        with self._conn:
            self._conn.executemany(
                "INSERT OR REPLACE INTO vectors (id, embedding, metadata, crc32c, created_at) "
                "VALUES (?, ?, ?, ?, ?)",
                params,
            )
            self._write_meta()

    def _cache_put(self, records: list[VectorRecord]):
        for record in records:
            self._vectors[record.id] = record.embedding
            self._metadata[record.id] = record.metadata
        self._matrix = None

    def _do_insert(self, records: list[VectorRecord]):
        records = ensure_no_duplicate_ids(records)
        if len(records) > 1:
            self._flush_pending()
            self._write_rows(records)
            self._cache_put(records)
            return

        if len(self._pending) + len(records) > MAX_PENDING_WRITES:
            raise BackpressureError(
                f"{len(self._pending)} writes pending (limit {MAX_PENDING_WRITES}); flush before inserting more"
            )
        self._pending.extend(records)
        self._cache_put(records)
        if len(self._pending) >= self.config.batch_threshold:
            self._flush_pending()

    def _flush_pending(self) -> int:
        if not self._pending:
            return 0
        batch = ensure_no_duplicate_ids(self._pending)
        # Pending rows stay queued if the write fails
        self._write_rows(batch)
        flushed = len(self._pending)
        self._pending = []
        logger.debug(f"Flushed {flushed} pending writes to {self.db_path}")
        return flushed

    def flush_sync(self) -> int:
        """Write any queued inserts now."""
        self._ensure_ready()
        with self._lock:
            return self._flush_pending()

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def search(self, query, k: int = 10, options: Optional[SearchOptions] = None) -> list[SearchResult]:
        self._ensure_ready()
        with self._lock:
            self._flush_pending()
        return super().search(query, k, options)

    def _ensure_matrix(self):
        if self._matrix is None:
            self._matrix_ids = list(self._vectors.keys())
            if self._matrix_ids:
                self._matrix = np.vstack([self._vectors[i] for i in self._matrix_ids])
            else:
                self._matrix = np.zeros((0, self.dimension or 0), dtype=np.float32)
        return self._matrix

    def _do_search(self, query: np.ndarray, k: int, options: SearchOptions):
        matrix = self._ensure_matrix()
        if matrix.shape[0] == 0:
            return []
        distances = self._native_distances(query, matrix)
        k = min(k, distances.size)
        top = np.argpartition(distances, k - 1)[:k] if k < distances.size else np.arange(distances.size)
        return [
            (self._matrix_ids[i], float(distances[i]), self._metadata.get(self._matrix_ids[i]))
            for i in top
        ]

    def get(self, id: str) -> Optional[VectorRecord]:
        """Fetch a stored record by id."""
        self._ensure_ready()
        with self._lock:
            if id not in self._vectors:
                return None
            return VectorRecord(id, self._vectors[id].copy(), self._metadata.get(id))

    def _do_remove(self, id: str) -> bool:
        self._flush_pending()
        if id not in self._vectors:
            return False
        with self._conn:
            self._conn.execute("DELETE FROM vectors WHERE id = ?", (id,))
        del self._vectors[id]
        self._metadata.pop(id, None)
        self._matrix = None
        return True

    def _do_count(self) -> int:
        return len(self._vectors)

    def _do_iter_records(self):
        for rec_id, vector in self._vectors.items():
            yield VectorRecord(rec_id, vector.copy(), self._metadata.get(rec_id))

    def _memory_usage(self) -> int:
        return sum(v.nbytes for v in self._vectors.values())

    def get_stats(self) -> dict:
        stats = super().get_stats()
        stats.update({
            "db_path": str(self.db_path),
            "pending_writes": len(self._pending),
            "native": self.native,
        })
        return stats

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _do_save(self, path: str):
        self._flush_pending()
        with self._conn:
            self._write_meta()
        if str(Path(path)) == str(self.db_path):
            return
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        target = sqlite3.connect(path)
        try:
            self._conn.backup(target)
            target.execute("PRAGMA journal_mode=DELETE")
        finally:
            target.close()

    def _do_load(self, path: str):
        """
        Replace the contents of this store with a saved file.

        The source is fully verified (asset sha256, row CRC32C, metric and
        dimension) before anything here is touched.
        """
        with AssetContainer(path) as container:
            container.verify()
            meta = container.metadata()
            stored_metric = meta.get("metric")
            if stored_metric and stored_metric != self.metric:
                raise ConfigurationError(
                    f"{path} was written with metric {stored_metric!r}, backend uses {self.metric!r}"
                )
            rows = self._read_rows(container.conn) if container.has_table("vectors") else []
            dims = {v.size for _, v, _ in rows}
            if meta.get("dimension"):
                dims.add(int(meta["dimension"]))
            if len(dims) > 1:
                raise AssetIntegrityError(f"{path} holds vectors of mixed dimensions: {sorted(dims)}")
            if dims and self.dimension is not None and self.dimension not in dims:
                raise DimensionMismatchError(self.dimension, dims.pop())

            self._pending = []
            container.conn.backup(self._conn)
        with self._conn:
            self._conn.execute(VECTORS_SCHEMA)
            write_meta(self._conn, {})

        if dims and self.dimension is None:
            self._establish_dimension(next(iter(dims)))
        self._reload_cache()

    def _do_close(self):
        if self._conn is None:
            return
        try:
            self._flush_pending()
        finally:
            self._conn.close()
            self._conn = None
        logger.debug(f"Closed {self.db_path}")

    # ------------------------------------------------------------------
    # Async
    # ------------------------------------------------------------------

    def _insert_direct(self, id: str, embedding, metadata: Optional[dict]):
        self._ensure_ready()
        record = self._prepare(id, embedding, metadata)
        with self._lock:
            self._establish_dimension(record.embedding.size)
            self._write_rows([record])
            self._cache_put([record])

    async def insert_async(self, id: str, embedding, metadata: Optional[dict] = None):
        """Insert one vector, written straight to disk (no queueing)."""
        await asyncio.to_thread(self._insert_direct, id, embedding, metadata)

    async def flush(self) -> int:
        return await asyncio.to_thread(self.flush_sync)


class SqliteVecBackend(SqliteBackend):
    """
    SQLite backend with the sqlite-vec extension loaded.

    cosine and l2 distances are computed in SQL; inner product has no
    sqlite-vec distance function and uses the numpy path.
    """

    name = "sqlite-vec"
    native = True

    _SQL_DISTANCE = {
        "cosine": "vec_distance_cosine",
        "l2": "vec_distance_l2",
    }

    def _prepare_connection(self, conn: sqlite3.Connection):
        import sqlite_vec

        conn.enable_load_extension(True)
        sqlite_vec.load(conn)
        conn.enable_load_extension(False)
        (version,) = conn.execute("SELECT vec_version()").fetchone()
        logger.info(f"✓ sqlite-vec extension loaded ({version})")

    def _do_search(self, query: np.ndarray, k: int, options: SearchOptions):
        fn = self._SQL_DISTANCE.get(self.metric)
        if fn is None:
            return super()._do_search(query, k, options)
        rows = self._conn.execute(
            f"SELECT id, {fn}(embedding, ?) AS distance FROM vectors ORDER BY distance LIMIT ?",
            (serialize_f32(query), k),
        ).fetchall()
        return [(rec_id, float(distance), self._metadata.get(rec_id)) for rec_id, distance in rows]
