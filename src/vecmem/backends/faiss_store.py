"""Faiss backend: exact search on SIMD/BLAS-accelerated flat indexes.

Requires the `faiss-cpu` (or `faiss-gpu`) package.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Optional

import numpy as np

from ..errors import ConfigurationError, DimensionMismatchError, MissingDependencyError
from .base import AsyncVectorBackend, SearchOptions, VectorRecord, ensure_no_duplicate_ids


class FaissBackend(AsyncVectorBackend):
    """Vector backend over ``IndexIDMap2`` wrapping ``IndexFlatIP``/``IndexFlatL2``.

    Cosine vectors are L2-normalized before they reach the index so inner
    product equals cosine similarity.
    """

    name = "faiss"
    native = True

    def __init__(self, config=None) -> None:
        try:
            import faiss  # type: ignore[import-not-found]
        except ImportError as exc:
            raise MissingDependencyError(
                "faiss is required for FaissBackend", "pip install faiss-cpu"
            ) from exc

        super().__init__(config)
        self._faiss = faiss
        self._index: Any = None
        self.ext_to_int: dict[str, int] = {}
        self.int_to_ext: dict[int, str] = {}
        self._metadata: dict[str, Optional[dict]] = {}
        self._next_internal_id = 1

    def _do_initialize(self) -> None:
        path = self.config.storage_path
        if path and path != ":memory:" and Path(path).exists():
            self._do_load(path)
        elif self.dimension is not None:
            self._index = self._new_index(self.dimension)

    def _on_dimension_established(self, dimension: int) -> None:
        if self._index is None:
            self._index = self._new_index(dimension)

    def _new_index(self, dimension: int) -> Any:
        if self.metric == "l2":
            base = self._faiss.IndexFlatL2(dimension)
        else:
            base = self._faiss.IndexFlatIP(dimension)
        return self._faiss.IndexIDMap2(base)

    def _to_index_space(self, vectors: np.ndarray) -> np.ndarray:
        matrix = np.ascontiguousarray(vectors, dtype=np.float32)
        if self.metric == "cosine":
            norms = np.linalg.norm(matrix, axis=1, keepdims=True)
            matrix = np.divide(matrix, norms, out=np.zeros_like(matrix), where=norms > 0)
        return matrix

    def _do_insert(self, records: list[VectorRecord]) -> None:
        records = ensure_no_duplicate_ids(records)
        existing = [self.ext_to_int[r.id] for r in records if r.id in self.ext_to_int]
        if existing:
            self._index.remove_ids(np.asarray(existing, dtype=np.int64))

        internal_ids = []
        for record in records:
            internal_id = self.ext_to_int.get(record.id)
            if internal_id is None:
                internal_id = self._next_internal_id
                self._next_internal_id += 1
            internal_ids.append(internal_id)

        matrix = self._to_index_space(np.vstack([r.embedding for r in records]))
        self._index.add_with_ids(matrix, np.asarray(internal_ids, dtype=np.int64))

        for record, internal_id in zip(records, internal_ids):
            self.ext_to_int[record.id] = internal_id
            self.int_to_ext[internal_id] = record.id
            self._metadata[record.id] = record.metadata

    def _do_search(self, query: np.ndarray, k: int, options: SearchOptions):
        if self._index is None or self._index.ntotal == 0:
            return []
        top_k = min(k, int(self._index.ntotal))
        scores, labels = self._index.search(self._to_index_space(query.reshape(1, -1)), top_k)

        results = []
        for score, label in zip(scores[0], labels[0]):
            if label < 0:
                continue
            rec_id = self.int_to_ext.get(int(label))
            if rec_id is None:
                continue
            score = float(score)
            if self.metric == "cosine":
                distance = 1.0 - score
            elif self.metric == "l2":
                distance = float(np.sqrt(max(score, 0.0)))
            else:
                distance = -score
            results.append((rec_id, distance, self._metadata.get(rec_id)))
        return results

    def _do_remove(self, id: str) -> bool:
        internal_id = self.ext_to_int.pop(id, None)
        if internal_id is None:
            return False
        self._index.remove_ids(np.asarray([internal_id], dtype=np.int64))
        self.int_to_ext.pop(internal_id, None)
        self._metadata.pop(id, None)
        return True

    def _do_count(self) -> int:
        return len(self.ext_to_int)

    def _do_iter_records(self):
        # Cosine vectors come back L2-normalized, as stored in the index
        for rec_id, internal_id in self.ext_to_int.items():
            vector = np.asarray(self._index.reconstruct(internal_id), dtype=np.float32)
            yield VectorRecord(rec_id, vector, self._metadata.get(rec_id))

    def _memory_usage(self) -> int:
        if self._index is None or self.dimension is None:
            return 0
        return int(self._index.ntotal) * (self.dimension * 4 + 8)

    def _do_save(self, path: str) -> None:
        if self._index is None:
            raise ConfigurationError("Cannot save an empty faiss backend with no dimension")
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        self._faiss.write_index(self._index, path)
        with open(f"{path}.meta.json", "w", encoding="utf-8") as f:
            json.dump(
                {
                    "dimension": self.dimension,
                    "metric": self.metric,
                    "next_internal_id": self._next_internal_id,
                    "ids": self.ext_to_int,
                    "metadata": self._metadata,
                },
                f,
            )

    def _do_load(self, path: str) -> None:
        sidecar = Path(f"{path}.meta.json")
        if not sidecar.exists():
            raise ConfigurationError(f"Missing faiss id map: {sidecar}")
        with open(sidecar, encoding="utf-8") as f:
            data = json.load(f)
        if data["metric"] != self.metric:
            raise ConfigurationError(
                f"{path} was built with metric {data['metric']!r}, backend uses {self.metric!r}"
            )
        if self.dimension is not None and data["dimension"] != self.dimension:
            raise DimensionMismatchError(self.dimension, data["dimension"])

        self._index = self._faiss.read_index(path)
        self.dimension = data["dimension"]
        self._next_internal_id = data["next_internal_id"]
        self.ext_to_int = {k: int(v) for k, v in data["ids"].items()}
        self.int_to_ext = {v: k for k, v in self.ext_to_int.items()}
        self._metadata = data.get("metadata", {})

    def _do_close(self) -> None:
        path = self.config.storage_path
        if path and path != ":memory:" and self._index is not None:
            self._do_save(path)
