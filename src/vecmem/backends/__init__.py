"""
Vector backends.

Concrete backends are imported lazily by the resolver so that missing
optional libraries (faiss, sqlite-vec, hnswlib) never break import.
"""

from .base import (
    AsyncVectorBackend,
    BackendConfig,
    SearchOptions,
    SearchResult,
    VectorBackend,
    VectorRecord,
    distance_to_similarity,
)
from .resolver import (
    Attempt,
    BackendDetection,
    BackendFactory,
    BackendRegistry,
    Resolution,
    detect_backends,
    resolve_backend,
)
from .sqlite import SqliteBackend

__all__ = [
    "AsyncVectorBackend",
    "Attempt",
    "BackendConfig",
    "BackendDetection",
    "BackendFactory",
    "BackendRegistry",
    "Resolution",
    "SearchOptions",
    "SearchResult",
    "SqliteBackend",
    "VectorBackend",
    "VectorRecord",
    "detect_backends",
    "distance_to_similarity",
    "resolve_backend",
]
