"""
HNSW backend for approximate nearest neighbor search.

O(log n) search using Hierarchical Navigable Small World graphs via
hnswlib. String ids are mapped onto hnswlib's integer labels; removed
elements are marked deleted and their mapping dropped.

Persistence writes the hnswlib index file plus a ``.meta.json`` sidecar
holding the id map and metadata.
"""

import json
import logging
from pathlib import Path
from typing import Optional

import numpy as np

from ..errors import ConfigurationError, DimensionMismatchError, MissingDependencyError
from .base import AsyncVectorBackend, SearchOptions, VectorRecord, ensure_no_duplicate_ids

logger = logging.getLogger(__name__)

# Try to import hnswlib
try:
    import hnswlib
    HNSW_AVAILABLE = True
except ImportError:
    HNSW_AVAILABLE = False
    logger.debug("hnswlib not available, HNSW backend disabled")


def _sidecar(path: str) -> Path:
    return Path(f"{path}.meta.json")


class HnswBackend(AsyncVectorBackend):
    """
    HNSW-based ANN backend.

    Parameters (from BackendConfig):
        dimension: Vector dimension (fixed on first insert when omitted)
        max_elements: Initial capacity, grown with resize_index()
        ef_construction: Index construction parameter (higher = better quality)
        M: Number of bi-directional links per element (higher = better quality)
        ef_search: Default query-time ef
        metric: 'cosine', 'l2' or 'ip'
    """

    name = "hnswlib"
    native = True
    exact = False

    def __init__(self, config=None):
        if not HNSW_AVAILABLE:
            raise MissingDependencyError("hnswlib is not installed", "pip install hnswlib")
        super().__init__(config)
        self.max_elements = self.config.max_elements
        self._index: Optional["hnswlib.Index"] = None
        self._label_of: dict[str, int] = {}  # external id -> label
        self._id_of: dict[int, str] = {}  # label -> external id
        self._metadata: dict[str, Optional[dict]] = {}
        self._next_label = 0

    def _do_initialize(self):
        path = self.config.storage_path
        if path and path != ":memory:" and Path(path).exists():
            self._do_load(path)
        elif self.dimension is not None:
            self._init_index()

    def _on_dimension_established(self, dimension: int):
        if self._index is None:
            self._init_index()

    def _init_index(self):
        """Initialize a new HNSW index."""
        self._index = hnswlib.Index(space=self.metric, dim=self.dimension)
        self._index.init_index(
            max_elements=self.max_elements,
            ef_construction=self.config.ef_construction,
            M=self.config.M,
        )
        self._index.set_ef(self.config.ef_search)
        self._label_of.clear()
        self._id_of.clear()
        self._metadata.clear()
        self._next_label = 0
        logger.info(f"✓ HNSW index initialized (dim={self.dimension}, max={self.max_elements})")

    def _expand_index(self, additional: int):
        """Grow capacity in place without clearing existing data."""
        new_max = self.max_elements + additional
        self._index.resize_index(new_max)
        self.max_elements = new_max
        logger.info(f"HNSW index capacity expanded to {new_max}")

    def _do_insert(self, records: list[VectorRecord]):
        records = ensure_no_duplicate_ids(records)
        new_count = sum(1 for r in records if r.id not in self._label_of)
        # Deleted labels still occupy slots until the index is rebuilt
        needed = self._next_label + new_count - self.max_elements
        if needed > 0:
            self._expand_index(max(needed, 1000))

        labels = []
        for record in records:
            label = self._label_of.get(record.id)
            if label is None:
                label = self._next_label
                self._next_label += 1
            labels.append(label)

        vectors = np.vstack([r.embedding for r in records]).astype(np.float32)
        self._index.add_items(vectors, np.asarray(labels, dtype=np.int64))

        for record, label in zip(records, labels):
            self._label_of[record.id] = label
            self._id_of[label] = record.id
            self._metadata[record.id] = record.metadata

    def _to_native(self, distance: float) -> float:
        # hnswlib reports squared l2 and 1 - dot for ip
        if self.metric == "l2":
            return float(np.sqrt(max(distance, 0.0)))
        if self.metric == "ip":
            return float(distance) - 1.0
        return float(distance)

    def _do_search(self, query: np.ndarray, k: int, options: SearchOptions):
        if self._index is None or not self._label_of:
            return []
        actual_k = min(k, len(self._label_of))
        ef = options.ef_search or self.config.ef_search
        self._index.set_ef(max(ef, actual_k + 1))
        labels, distances = self._index.knn_query(query.reshape(1, -1), k=actual_k)

        results = []
        for label, dist in zip(labels[0], distances[0]):
            rec_id = self._id_of.get(int(label))
            if rec_id is None:
                continue
            results.append((rec_id, self._to_native(float(dist)), self._metadata.get(rec_id)))
        return results

    def _do_remove(self, id: str) -> bool:
        label = self._label_of.get(id)
        if label is None:
            return False
        self._index.mark_deleted(label)
        del self._label_of[id]
        del self._id_of[label]
        self._metadata.pop(id, None)
        return True

    def _do_count(self) -> int:
        return len(self._label_of)

    def _do_iter_records(self):
        if not self._label_of:
            return
        ids = list(self._label_of)
        vectors = np.asarray(self._index.get_items([self._label_of[i] for i in ids]), dtype=np.float32)
        for rec_id, vector in zip(ids, vectors):
            yield VectorRecord(rec_id, vector, self._metadata.get(rec_id))

    def _memory_usage(self) -> int:
        if self.dimension is None:
            return 0
        # vectors plus roughly 2*M links per element
        return self._next_label * (self.dimension * 4 + self.config.M * 2 * 4)

    def get_stats(self) -> dict:
        stats = super().get_stats()
        stats.update({
            "max_elements": self.max_elements,
            "ef_construction": self.config.ef_construction,
            "M": self.config.M,
            "deleted": self._next_label - len(self._label_of),
        })
        return stats

    def _do_save(self, path: str):
        if self._index is None:
            raise ConfigurationError("Cannot save an empty HNSW backend with no dimension")
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        self._index.save_index(path)
        with open(_sidecar(path), "w", encoding="utf-8") as f:
            json.dump({
                "dimension": self.dimension,
                "metric": self.metric,
                "max_elements": self.max_elements,
                "next_label": self._next_label,
                "labels": self._label_of,
                "metadata": self._metadata,
            }, f)

    def _do_load(self, path: str):
        sidecar = _sidecar(path)
        if not sidecar.exists():
            raise ConfigurationError(f"Missing HNSW id map: {sidecar}")
        with open(sidecar, encoding="utf-8") as f:
            data = json.load(f)
        if data["metric"] != self.metric:
            raise ConfigurationError(
                f"{path} was built with metric {data['metric']!r}, backend uses {self.metric!r}"
            )
        if self.dimension is not None and data["dimension"] != self.dimension:
            raise DimensionMismatchError(self.dimension, data["dimension"])

        index = hnswlib.Index(space=self.metric, dim=data["dimension"])
        index.load_index(path, max_elements=max(data["max_elements"], self.max_elements))
        index.set_ef(self.config.ef_search)

        self.dimension = data["dimension"]
        self.max_elements = max(data["max_elements"], self.max_elements)
        self._index = index
        self._next_label = data["next_label"]
        self._label_of = {k: int(v) for k, v in data["labels"].items()}
        self._id_of = {v: k for k, v in self._label_of.items()}
        self._metadata = data.get("metadata", {})

    def _do_close(self):
        path = self.config.storage_path
        if path and path != ":memory:" and self._index is not None:
            self._do_save(path)
