"""
Backend capability contract.

Every vector backend exposes the same operations over opaque string ids:
insert, insert_batch, search, remove, iter_records, get_stats, save, load,
close.
``AsyncVectorBackend`` adds awaitable counterparts plus ``flush()``.

Concrete backends implement the ``_do_*`` hooks; validation, dimension
bookkeeping, similarity normalization and result ordering live here so
they behave identically everywhere.
"""
from __future__ import annotations

import asyncio
import logging
import math
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Iterator, Literal, Optional

import numpy as np

from ..errors import ConfigurationError, DimensionMismatchError, ValidationError
from ..validation import (
    DEFAULT_BATCH_THRESHOLD,
    as_vector,
    validate_batch_size,
    validate_dimension,
    validate_id,
    validate_k,
    validate_metadata,
    validate_path,
)

logger = logging.getLogger(__name__)

Metric = Literal["cosine", "l2", "ip"]
METRICS = ("cosine", "l2", "ip")


@dataclass
class VectorRecord:
    """A stored vector with its id and optional metadata."""
    id: str
    embedding: np.ndarray
    metadata: Optional[dict[str, Any]] = None


@dataclass
class SearchResult:
    """Search hit. ``distance`` is backend-native, ``similarity`` is in [0, 1]."""
    id: str
    distance: float
    similarity: float
    metadata: Optional[dict[str, Any]] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "distance": self.distance,
            "similarity": self.similarity,
            "metadata": self.metadata,
        }


@dataclass
class SearchOptions:
    threshold: float = 0.0
    ef_search: Optional[int] = None
    filter: Optional[dict[str, Any]] = None


@dataclass
class BackendConfig:
    """
    Construction parameters shared by all backends.

    Parameters:
        dimension: Vector dimension; ``None`` fixes it on first insert
        metric: 'cosine', 'l2' or 'ip'
        max_elements: Initial capacity for index-based backends
        M: HNSW links per node
        ef_construction: HNSW build quality
        ef_search: Default HNSW search quality
        storage_path: Database/index file, or ":memory:"
        batch_threshold: Pending writes that trigger an automatic flush
    """
    dimension: Optional[int] = None
    metric: Metric = "cosine"
    max_elements: int = 100_000
    M: int = 16
    ef_construction: int = 200
    ef_search: int = 100
    storage_path: str = ":memory:"
    batch_threshold: int = DEFAULT_BATCH_THRESHOLD
    extra: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.metric not in METRICS:
            raise ConfigurationError(f"Unknown metric {self.metric!r}, expected one of {METRICS}")
        if self.dimension is not None:
            self.dimension = validate_dimension(self.dimension)


def distance_to_similarity(distance: float, metric: str) -> float:
    """
    Map a backend-native distance onto [0, 1], higher meaning more similar.

    cosine: distance is 1 - cos, similarity = clamp(1 - d)
    l2:     distance is Euclidean, similarity = exp(-d)
    ip:     distance is -dot, similarity = sigmoid(dot)
    """
    if metric == "cosine":
        return min(1.0, max(0.0, 1.0 - distance))
    if metric == "l2":
        return math.exp(-max(0.0, distance))
    if metric == "ip":
        dot = -distance
        if dot >= 0:
            return 1.0 / (1.0 + math.exp(-dot))
        ex = math.exp(dot)
        return ex / (1.0 + ex)
    raise ConfigurationError(f"Unknown metric {metric!r}")


def matches_filter(metadata: Optional[dict], flt: Optional[dict]) -> bool:
    """Exact-match post filter on top-level metadata keys."""
    if not flt:
        return True
    if not metadata:
        return False
    return all(k in metadata and metadata[k] == v for k, v in flt.items())


class VectorBackend(ABC):
    """
    Base class for vector backends.

    Subclasses implement ``_do_initialize``, ``_do_insert``, ``_do_search``,
    ``_do_remove``, ``_do_count``, ``_do_iter_records``, ``_do_save``,
    ``_do_load`` and may override ``_do_close`` / ``_memory_usage``.
    """

    name = "abstract"
    # False for approximate indexes that may miss true neighbors
    exact = True

    def __init__(self, config: Optional[BackendConfig] = None):
        self.config = config or BackendConfig()
        self.dimension: Optional[int] = self.config.dimension
        self.metric: str = self.config.metric
        self._initialized = False
        self._closed = False
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def initialized(self) -> bool:
        return self._initialized

    def initialize(self) -> "VectorBackend":
        """Prepare the backend. Calling it again is a no-op."""
        with self._lock:
            if self._initialized:
                logger.debug(f"{self.name} backend already initialized")
                return self
            self._do_initialize()
            self._initialized = True
            logger.info(f"✓ {self.name} backend initialized (metric={self.metric}, dim={self.dimension})")
        return self

    def _ensure_ready(self):
        if self._closed:
            raise ConfigurationError(f"{self.name} backend is closed")
        if not self._initialized:
            self.initialize()

    def close(self):
        with self._lock:
            if self._closed:
                return
            if self._initialized:
                self._do_close()
            self._closed = True

    def __enter__(self):
        return self.initialize()

    def __exit__(self, exc_type, exc, tb):
        self.close()

    # ------------------------------------------------------------------
    # Validation helpers
    # ------------------------------------------------------------------

    def _prepare(self, record_id, embedding, metadata, expected_dim=None) -> VectorRecord:
        dim = expected_dim if expected_dim is not None else self.dimension
        vector = np.array(as_vector(embedding, dim), dtype=np.float32, copy=True)
        return VectorRecord(validate_id(record_id), vector, validate_metadata(metadata))

    def _prepare_batch(self, records) -> list[VectorRecord]:
        records = list(records)
        validate_batch_size(len(records))
        prepared: list[VectorRecord] = []
        dim = self.dimension
        for record in records:
            if isinstance(record, VectorRecord):
                rec_id, emb, meta = record.id, record.embedding, record.metadata
            elif isinstance(record, dict):
                rec_id, emb, meta = record.get("id"), record.get("embedding"), record.get("metadata")
            elif isinstance(record, (tuple, list)) and len(record) in (2, 3):
                rec_id, emb, meta = (*record, None)[:3]
            else:
                raise ValidationError(f"Unsupported record type: {type(record).__name__}")
            item = self._prepare(rec_id, emb, meta, expected_dim=dim)
            # First record of a batch fixes the dimension for the rest of it
            dim = item.embedding.size
            prepared.append(item)
        return prepared

    def _establish_dimension(self, dimension: int):
        if self.dimension is None:
            self.dimension = validate_dimension(dimension)
            self._on_dimension_established(self.dimension)
        elif self.dimension != dimension:
            raise DimensionMismatchError(self.dimension, dimension)

    def _on_dimension_established(self, dimension: int):
        """Hook for backends that must allocate an index once the size is known."""

    # ------------------------------------------------------------------
    # Contract
    # ------------------------------------------------------------------

    def insert(self, id: str, embedding, metadata: Optional[dict] = None):
        """Insert or replace one vector."""
        self._ensure_ready()
        record = self._prepare(id, embedding, metadata)
        with self._lock:
            self._establish_dimension(record.embedding.size)
            self._do_insert([record])

    def insert_batch(self, records) -> int:
        """
        Insert many vectors atomically with respect to validation.

        Args:
            records: VectorRecord objects, dicts with id/embedding/metadata,
                or (id, embedding, metadata) tuples

        Returns:
            Number of records inserted
        """
        self._ensure_ready()
        prepared = self._prepare_batch(records)
        if not prepared:
            return 0
        with self._lock:
            self._establish_dimension(prepared[0].embedding.size)
            self._do_insert(prepared)
        return len(prepared)

    def search(self, query, k: int = 10, options: Optional[SearchOptions] = None) -> list[SearchResult]:
        """
        Nearest-neighbor search.

        Args:
            query: Query vector
            k: Number of results (1..10000)
            options: threshold / ef_search / metadata filter

        Returns:
            Results sorted by similarity descending
        """
        self._ensure_ready()
        k = validate_k(k)
        options = options or SearchOptions()
        query = as_vector(query, self.dimension, name="Query")
        with self._lock:
            total = self._do_count()
            if self.dimension is None or total == 0:
                return []
            if not options.filter and options.threshold <= 0:
                return self._finalize(self._do_search(query, k, options), k, options)

            # Post-filtering: exact backends rank everything, approximate
            # ones widen the fetch until k survivors remain or all are seen
            fetch_k = total if self.exact else min(max(k * 4, k + 32), total)
            while True:
                results = self._finalize(self._do_search(query, fetch_k, options), k, options)
                if len(results) >= k or fetch_k >= total:
                    return results
                fetch_k = min(fetch_k * 2, total)

    def _finalize(self, raw, k: int, options: SearchOptions) -> list[SearchResult]:
        results = []
        for record_id, distance, metadata in raw:
            distance = float(distance)
            similarity = distance_to_similarity(distance, self.metric)
            if similarity < options.threshold:
                continue
            if not matches_filter(metadata, options.filter):
                continue
            results.append(SearchResult(record_id, distance, similarity, metadata))
        results.sort(key=lambda r: (-r.similarity, r.distance, r.id))
        return results[:k]

    def remove(self, id: str) -> bool:
        self._ensure_ready()
        validate_id(id)
        with self._lock:
            return self._do_remove(id)

    def count(self) -> int:
        self._ensure_ready()
        with self._lock:
            return self._do_count()

    def iter_records(self) -> Iterator[VectorRecord]:
        """
        Iterate over every stored record.

        The records are snapshotted under the lock, so the backend may be
        modified while iterating.
        """
        self._ensure_ready()
        with self._lock:
            records = list(self._do_iter_records())
        return iter(records)

    def get_stats(self) -> dict:
        """Get backend statistics."""
        self._ensure_ready()
        with self._lock:
            return {
                "backend": self.name,
                "count": self._do_count(),
                "dimension": self.dimension,
                "metric": self.metric,
                "memory_usage": self._memory_usage(),
            }

    def save(self, path):
        self._ensure_ready()
        path = validate_path(path)
        with self._lock:
            self._do_save(path)
        logger.debug(f"{self.name} backend saved to {path}")

    def load(self, path):
        self._ensure_ready()
        path = validate_path(path)
        with self._lock:
            self._do_load(path)
        logger.info(f"✓ {self.name} backend loaded from {path} ({self._do_count()} vectors)")

    # ------------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------------

    @abstractmethod
    def _do_initialize(self): ...

    @abstractmethod
    def _do_insert(self, records: list[VectorRecord]): ...

    @abstractmethod
    def _do_search(self, query: np.ndarray, k: int, options: SearchOptions) -> list[tuple[str, float, Optional[dict]]]:
        """Return up to ``k`` (id, native_distance, metadata) tuples."""

    @abstractmethod
    def _do_remove(self, id: str) -> bool: ...

    @abstractmethod
    def _do_count(self) -> int: ...

    @abstractmethod
    def _do_iter_records(self) -> Iterator[VectorRecord]: ...

    @abstractmethod
    def _do_save(self, path: str): ...

    @abstractmethod
    def _do_load(self, path: str): ...

    def _do_close(self):
        pass

    def _memory_usage(self) -> int:
        return 0

    def _native_distances(self, query: np.ndarray, matrix: np.ndarray) -> np.ndarray:
        """Canonical distances of ``query`` to each row: 1-cos, Euclidean or -dot."""
        q = query.astype(np.float64)
        m = matrix.astype(np.float64)
        if self.metric == "cosine":
            norms = np.linalg.norm(m, axis=1) * np.linalg.norm(q)
            sims = np.zeros(m.shape[0])
            ok = norms > 0
            sims[ok] = (m[ok] @ q) / norms[ok]
            return 1.0 - sims
        if self.metric == "l2":
            return np.sqrt(np.sum((m - q) ** 2, axis=1))
        return -(m @ q)


class AsyncVectorBackend(VectorBackend):
    """
    Backend with awaitable operations.

    The defaults run the blocking call in a worker thread; backends with
    their own write batching override ``flush``.
    """

    async def insert_async(self, id: str, embedding, metadata: Optional[dict] = None):
        await asyncio.to_thread(self.insert, id, embedding, metadata)

    async def insert_batch_async(self, records) -> int:
        return await asyncio.to_thread(self.insert_batch, records)

    async def search_async(self, query, k: int = 10, options: Optional[SearchOptions] = None) -> list[SearchResult]:
        return await asyncio.to_thread(self.search, query, k, options)

    async def remove_async(self, id: str) -> bool:
        return await asyncio.to_thread(self.remove, id)

    async def get_stats_async(self) -> dict:
        return await asyncio.to_thread(self.get_stats)

    async def flush(self) -> int:
        """Force pending writes to storage. Returns the number flushed."""
        return 0


def ensure_no_duplicate_ids(records: list[VectorRecord]) -> list[VectorRecord]:
    """Keep the last occurrence of each id, preserving first-seen order."""
    seen: dict[str, VectorRecord] = {}
    for record in records:
        seen[record.id] = record
    if len(seen) == len(records):
        return records
    return list(seen.values())


__all__ = [
    "AsyncVectorBackend",
    "BackendConfig",
    "METRICS",
    "SearchOptions",
    "SearchResult",
    "VectorBackend",
    "VectorRecord",
    "distance_to_similarity",
    "ensure_no_duplicate_ids",
    "matches_filter",
]
