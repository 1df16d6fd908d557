"""
Attention-based retrieval over an in-process memory set.

Three engines share one scaled dot-product contract:

    score_i  = dot(q, k_i) / sqrt(len(q)) / temperature
    weight_i = softmax(scores)_i      (uniform if the softmax degenerates)
    attended = sum_i weight_i * v_i   over EVERY entry

The returned ``scores`` list is only a filtered view (weight >= min_score,
sorted, truncated to top_k). The attended vector always uses the full
distribution, so it can include entries absent from ``scores``.

- SelfAttention: one registry of memories
- CrossAttention: queries against named context sets
- MultiHeadAttention: several projected heads, then aggregated
"""
from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass, field, replace
from typing import Any, Iterable, Literal, Optional

import numpy as np

from .errors import ValidationError
from .kernels import softmax
from .validation import as_vector, validate_temperature

logger = logging.getLogger(__name__)

HeadAggregation = Literal["average", "max", "concat", "weighted"]
ContextAggregation = Literal["average", "max", "weighted"]


@dataclass
class MemoryEntry:
    """A memory held by an attention engine."""
    id: str
    embedding: np.ndarray
    content: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None


@dataclass
class AttentionConfig:
    top_k: int = 10
    min_score: float = 0.0
    temperature: float = 1.0
    return_weights: bool = False


@dataclass
class AttentionScore:
    id: str
    score: float
    raw_score: Optional[float] = None
    context: Optional[str] = None
    content: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None


@dataclass
class AttentionResult:
    scores: list[AttentionScore]
    attended: np.ndarray
    weights: Optional[dict[str, float]] = None
    context_weights: Optional[dict[str, float]] = None
    execution_time_ms: float = 0.0


@dataclass
class HeadOutput:
    head_index: int
    attended: np.ndarray
    top_scores: list[AttentionScore] = field(default_factory=list)


@dataclass
class MultiHeadResult:
    heads: list[HeadOutput]
    attended: np.ndarray
    aggregated_scores: list[AttentionScore] = field(default_factory=list)
    execution_time_ms: float = 0.0


def _elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000.0


def _resolve_config(base: AttentionConfig, config: Optional[AttentionConfig], overrides: dict) -> AttentionConfig:
    cfg = replace(config or base, **overrides) if overrides else (config or base)
    validate_temperature(cfg.temperature)
    if isinstance(cfg.top_k, bool) or not isinstance(cfg.top_k, int) or cfg.top_k < 0:
        raise ValidationError(f"top_k must be a non-negative integer, got {cfg.top_k!r}")
    return cfg


def _coerce_entry(entry: MemoryEntry | dict, dimension: int) -> MemoryEntry:
    if isinstance(entry, dict):
        entry = MemoryEntry(
            id=entry.get("id"),
            embedding=entry.get("embedding"),
            content=entry.get("content"),
            metadata=entry.get("metadata"),
        )
    if not entry.id or not isinstance(entry.id, str) or entry.embedding is None or len(entry.embedding) == 0:
        raise ValidationError("Memory entry must have id and non-empty embedding")
    vector = np.array(as_vector(entry.embedding, dimension or None), dtype=np.float32, copy=True)
    return MemoryEntry(entry.id, vector, entry.content, entry.metadata)


def scaled_dot_attention(query: np.ndarray, keys: np.ndarray, temperature: float) -> tuple[np.ndarray, np.ndarray]:
    """
    Return (raw_scores, weights) of ``query`` against each row of ``keys``.

    raw = keys @ query / sqrt(len(query)) / temperature; weights = softmax(raw)
    """
    q = query.astype(np.float64)
    k = keys.astype(np.float64)
    raw = (k @ q) / math.sqrt(q.size) / temperature
    return raw, softmax(raw)


def _top_scores(
    ids: list[str],
    weights: np.ndarray,
    raw: np.ndarray,
    cfg: AttentionConfig,
    entries: Optional[list[MemoryEntry]] = None,
    context: Optional[str] = None,
) -> list[AttentionScore]:
    keep = [i for i in range(len(ids)) if weights[i] >= cfg.min_score]
    keep.sort(key=lambda i: -weights[i])
    scores = []
    for i in keep[:cfg.top_k]:
        entry = entries[i] if entries is not None else None
        scores.append(AttentionScore(
            id=ids[i],
            score=float(weights[i]),
            raw_score=float(raw[i]),
            context=context,
            content=entry.content if entry else None,
            metadata=entry.metadata if entry else None,
        ))
    return scores


def _attend(query: np.ndarray, entries: list[MemoryEntry], cfg: AttentionConfig, context=None) -> AttentionResult:
    ids = [e.id for e in entries]
    keys = np.vstack([e.embedding for e in entries])
    raw, weights = scaled_dot_attention(query, keys, cfg.temperature)
    attended = (weights @ keys.astype(np.float64)).astype(np.float32)
    return AttentionResult(
        scores=_top_scores(ids, weights, raw, cfg, entries, context),
        attended=attended,
        weights=dict(zip(ids, map(float, weights))) if cfg.return_weights else None,
    )


# ============================================================================
# Self-attention
# ============================================================================

class SelfAttention:
    """
    Self-attention over a registry of memories.

    The registry's dimension is fixed by the first entry and only reset by
    ``clear_memories()``. When a backend is given, added memories are also
    inserted there (and removed from it) so they persist.
    """

    def __init__(self, backend=None, config: Optional[AttentionConfig] = None):
        self.backend = backend
        self.config = config or AttentionConfig()
        self._memories: dict[str, MemoryEntry] = {}
        self.dimension = 0

    def add_memory(self, entry: MemoryEntry | dict) -> MemoryEntry:
        """
        Add or replace a memory.

        Raises:
            ValidationError: missing id or empty embedding
            DimensionMismatchError: embedding length differs from the registry's
        """
        entry = _coerce_entry(entry, self.dimension)
        if self.backend is not None:
            self.backend.insert(entry.id, entry.embedding, entry.metadata)
        if self.dimension == 0:
            self.dimension = entry.embedding.size
        self._memories[entry.id] = entry
        return entry

    def get_memory(self, id: str) -> Optional[MemoryEntry]:
        return self._memories.get(id)

    def remove_memory(self, id: str) -> bool:
        if id not in self._memories:
            return False
        del self._memories[id]
        if self.backend is not None:
            self.backend.remove(id)
        return True

    def clear_memories(self):
        self._memories.clear()
        self.dimension = 0

    def __len__(self) -> int:
        return len(self._memories)

    def __contains__(self, id: str) -> bool:
        return id in self._memories

    def compute_attention(self, query, config: Optional[AttentionConfig] = None, **overrides) -> AttentionResult:
        """
        Attend over every stored memory.

        Args:
            query: Query vector
            config: AttentionConfig (defaults to the engine's)
            **overrides: Individual AttentionConfig fields

        Returns:
            AttentionResult; on an empty registry ``scores`` is empty and
            ``attended`` is a copy of the query.
        """
        start = time.perf_counter()
        cfg = _resolve_config(self.config, config, overrides)
        q = as_vector(query, self.dimension or None, name="Query")
        if not self._memories:
            return AttentionResult([], q.copy(), {} if cfg.return_weights else None, execution_time_ms=_elapsed_ms(start))

        result = _attend(q, list(self._memories.values()), cfg)
        result.execution_time_ms = _elapsed_ms(start)
        return result

    def get_stats(self) -> dict:
        return {
            "memory_count": len(self._memories),
            "dimension": self.dimension,
            "has_backend": self.backend is not None,
        }


# ============================================================================
# Cross-attention
# ============================================================================

class CrossAttention:
    """Attention from a query onto named context sets sharing one dimension."""

    def __init__(self, backend=None, config: Optional[AttentionConfig] = None):
        self.backend = backend
        self.config = config or AttentionConfig()
        self._contexts: dict[str, dict[str, MemoryEntry]] = {}
        self.dimension = 0

    def add_to_context(self, context: str, entry: MemoryEntry | dict) -> MemoryEntry:
        if not context or not isinstance(context, str):
            raise ValidationError("Context name must be a non-empty string")
        entry = _coerce_entry(entry, self.dimension)
        if self.backend is not None:
            metadata = dict(entry.metadata or {})
            metadata["context"] = context
            self.backend.insert(entry.id, entry.embedding, metadata)
        if self.dimension == 0:
            self.dimension = entry.embedding.size
        self._contexts.setdefault(context, {})[entry.id] = entry
        return entry

    def remove_from_context(self, context: str, id: str) -> bool:
        store = self._contexts.get(context)
        if not store or id not in store:
            return False
        del store[id]
        self._drop_from_backend([id])
        self._reset_dimension_if_empty()
        return True

    def clear_context(self, context: str):
        store = self._contexts.pop(context, None)
        if store:
            self._drop_from_backend(list(store))
        self._reset_dimension_if_empty()

    def clear_all_contexts(self):
        ids = [i for store in self._contexts.values() for i in store]
        self._contexts.clear()
        self._drop_from_backend(ids)
        self.dimension = 0

    def _drop_from_backend(self, ids):
        """Remove mirrored rows no longer held by any context."""
        if self.backend is None:
            return
        for id in ids:
            if not any(id in store for store in self._contexts.values()):
                self.backend.remove(id)

    def _reset_dimension_if_empty(self):
        if not any(self._contexts.values()):
            self.dimension = 0

    def list_contexts(self) -> list[str]:
        return list(self._contexts)

    def context_size(self, context: str) -> int:
        return len(self._contexts.get(context, {}))

    def compute_cross_attention(
        self,
        query,
        context: str,
        config: Optional[AttentionConfig] = None,
        **overrides,
    ) -> AttentionResult:
        """Attend over one context. Unknown or empty contexts give the empty result."""
        start = time.perf_counter()
        cfg = _resolve_config(self.config, config, overrides)
        q = as_vector(query, self.dimension or None, name="Query")
        store = self._contexts.get(context)
        if not store:
            return AttentionResult([], q.copy(), {} if cfg.return_weights else None, execution_time_ms=_elapsed_ms(start))

        result = _attend(q, list(store.values()), cfg, context=context)
        result.execution_time_ms = _elapsed_ms(start)
        return result

    def compute_multi_context_attention(
        self,
        query,
        contexts: Optional[Iterable[str]] = None,
        config: Optional[AttentionConfig] = None,
        aggregation: ContextAggregation = "average",
        **overrides,
    ) -> AttentionResult:
        """
        Attend over several contexts and combine their outputs.

        Each context's weight is the sum of its reported scores, normalized
        across contexts. ``aggregation`` combines the per-context attended
        vectors by plain average, element-wise max, or those weights.
        """
        start = time.perf_counter()
        cfg = _resolve_config(self.config, config, overrides)
        names = list(contexts) if contexts else list(self._contexts)
        q = as_vector(query, self.dimension or None, name="Query")
        if not names:
            return AttentionResult([], q.copy(), context_weights={}, execution_time_ms=_elapsed_ms(start))
        if aggregation not in ("average", "max", "weighted"):
            raise ValidationError(f"Unknown aggregation {aggregation!r}")

        results = [self.compute_cross_attention(q, name, cfg) for name in names]
        all_scores: list[AttentionScore] = []
        context_weights: dict[str, float] = {}
        for name, result in zip(names, results):
            all_scores.extend(result.scores)
            context_weights[name] = sum(s.score for s in result.scores)

        total = sum(context_weights.values())
        if total > 0:
            context_weights = {k: v / total for k, v in context_weights.items()}

        outputs = np.vstack([r.attended for r in results]).astype(np.float64)
        if aggregation == "max":
            attended = outputs.max(axis=0)
        elif aggregation == "weighted":
            attended = np.asarray(list(context_weights.values())) @ outputs
        else:
            attended = outputs.mean(axis=0)

        weights = None
        if cfg.return_weights:
            weights = {}
            for r in results:
                weights.update(r.weights or {})

        return AttentionResult(
            scores=all_scores,
            attended=attended.astype(np.float32),
            weights=weights,
            context_weights=context_weights,
            execution_time_ms=_elapsed_ms(start),
        )

    def get_stats(self) -> dict:
        return {
            "context_count": len(self._contexts),
            "total_entries": sum(len(s) for s in self._contexts.values()),
            "dimension": self.dimension,
            "has_backend": self.backend is not None,
        }


# ============================================================================
# Multi-head attention
# ============================================================================

class MultiHeadAttention:
    """
    Multi-head attention with fixed random projections per head.

    Each head projects queries and keys into ``head_dim`` dimensions
    (Xavier-scaled uniform projections, seeded for reproducibility), runs
    scaled dot-product attention there, and the head outputs are combined
    back into the full dimension.
    """

    def __init__(
        self,
        backend=None,
        num_heads: int = 8,
        head_dim: Optional[int] = None,
        aggregation: HeadAggregation = "average",
        config: Optional[AttentionConfig] = None,
        seed: Optional[int] = None,
    ):
        if num_heads < 1:
            raise ValidationError(f"num_heads must be >= 1, got {num_heads}")
        if aggregation not in ("average", "max", "concat", "weighted"):
            raise ValidationError(f"Unknown aggregation {aggregation!r}")
        self.backend = backend
        self.num_heads = num_heads
        self._head_dim = head_dim
        self.aggregation = aggregation
        self.config = config or AttentionConfig()
        self._rng = np.random.default_rng(seed)
        self._memories: dict[str, MemoryEntry] = {}
        self._projections: list[np.ndarray] = []
        self.dimension = 0

    @property
    def head_dim(self) -> int:
        if self._head_dim:
            return self._head_dim
        return max(1, self.dimension // self.num_heads) if self.dimension else 0

    def _init_projections(self, dimension: int):
        head_dim = self._head_dim or max(1, dimension // self.num_heads)
        scale = math.sqrt(2.0 / (dimension + head_dim))
        self._projections = [
            self._rng.uniform(-1.0, 1.0, size=(dimension, head_dim)) * scale
            for _ in range(self.num_heads)
        ]

    def add_memory(self, entry: MemoryEntry | dict) -> MemoryEntry:
        entry = _coerce_entry(entry, self.dimension)
        if self.backend is not None:
            self.backend.insert(entry.id, entry.embedding, entry.metadata)
        if self.dimension == 0:
            self.dimension = entry.embedding.size
            self._init_projections(self.dimension)
        self._memories[entry.id] = entry
        return entry

    def remove_memory(self, id: str) -> bool:
        if id not in self._memories:
            return False
        del self._memories[id]
        if self.backend is not None:
            self.backend.remove(id)
        return True

    def clear_memories(self):
        self._memories.clear()
        self._projections = []
        self.dimension = 0

    def __len__(self) -> int:
        return len(self._memories)

    def compute_multi_head_attention(
        self,
        query,
        config: Optional[AttentionConfig] = None,
        aggregation: Optional[HeadAggregation] = None,
        **overrides,
    ) -> MultiHeadResult:
        start = time.perf_counter()
        cfg = _resolve_config(self.config, config, overrides)
        strategy = aggregation or self.aggregation
        if strategy not in ("average", "max", "concat", "weighted"):
            raise ValidationError(f"Unknown aggregation {strategy!r}")
        q = as_vector(query, self.dimension or None, name="Query")

        if not self._memories:
            width = self._head_dim or max(1, q.size // self.num_heads)
            heads = [
                HeadOutput(h, q[h * width:(h + 1) * width].copy(), [])
                for h in range(self.num_heads)
            ]
            return MultiHeadResult(heads, q.copy(), [], _elapsed_ms(start))

        entries = list(self._memories.values())
        ids = [e.id for e in entries]
        keys = np.vstack([e.embedding for e in entries]).astype(np.float64)
        q64 = q.astype(np.float64)

        heads = []
        totals: dict[str, float] = {}
        for h, projection in enumerate(self._projections):
            projected_q = q64 @ projection
            projected_k = keys @ projection
            raw, weights = scaled_dot_attention(projected_q, projected_k, cfg.temperature)
            top = _top_scores(ids, weights, raw, cfg)
            heads.append(HeadOutput(h, (weights @ projected_k).astype(np.float32), top))
            for s in top:
                totals[s.id] = totals.get(s.id, 0.0) + s.score

        aggregated = sorted(
            (AttentionScore(id=i, score=v / self.num_heads) for i, v in totals.items()),
            key=lambda s: -s.score,
        )[:cfg.top_k]

        attended = self._aggregate(heads, q.size, strategy)
        return MultiHeadResult(heads, attended, aggregated, _elapsed_ms(start))

    def _reconstruct(self, output: np.ndarray, head_index: int, dimension: int) -> np.ndarray:
        """Place a head's output at its slot in a full-width zero vector."""
        result = np.zeros(dimension, dtype=np.float64)
        width = max(1, dimension // self.num_heads)
        begin = head_index * width
        length = min(output.size, dimension - begin)
        if length > 0:
            result[begin:begin + length] = output[:length]
        return result

    def _aggregate(self, heads: list[HeadOutput], dimension: int, strategy: str) -> np.ndarray:
        if strategy == "concat":
            joined = np.concatenate([h.attended for h in heads]).astype(np.float64)
            if joined.size < dimension:
                joined = np.concatenate([joined, np.zeros(dimension - joined.size)])
            return joined[:dimension].astype(np.float32)

        rebuilt = np.vstack([self._reconstruct(h.attended, h.head_index, dimension) for h in heads])
        if strategy == "max":
            return rebuilt.max(axis=0).astype(np.float32)
        if strategy == "weighted":
            weights = np.array([
                sum(s.score for s in h.top_scores) / max(1, len(h.top_scores)) for h in heads
            ])
            total = weights.sum() or 1.0
            return ((weights / total) @ rebuilt).astype(np.float32)
        return (rebuilt.sum(axis=0) / len(heads)).astype(np.float32)

    def get_stats(self) -> dict:
        return {
            "memory_count": len(self._memories),
            "dimension": self.dimension,
            "num_heads": self.num_heads,
            "head_dim": self.head_dim,
            "has_backend": self.backend is not None,
        }
