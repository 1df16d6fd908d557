"""
vecmem - vector memory engine for agents.

Stores embeddings in the best vector backend available at runtime,
converts distances into normalized similarities, attends over stored
memories, and can refine queries with a feedback-trained model.

Features:
- Backend detection and fallback: faiss, sqlite-vec, builtin sqlite, hnswlib
- Self, cross and multi-head attention
- Optional graph-attention query enhancer (PyTorch)
- Embedding providers: sentence-transformers (ONNX/PyTorch), OpenAI-compatible API, mock
"""

__version__ = "0.3.0"

from .attention import (
    AttentionConfig,
    AttentionResult,
    AttentionScore,
    CrossAttention,
    MemoryEntry,
    MultiHeadAttention,
    SelfAttention,
)
from .backends import (
    BackendConfig,
    SearchOptions,
    SearchResult,
    VectorBackend,
    VectorRecord,
    detect_backends,
    resolve_backend,
)
from .embedding import EmbeddingConfig, EmbeddingService, list_models, mock_embedding
from .engine import VectorMemory
from .enhancer import LearningConfig, QueryEnhancer
from .errors import ErrorCode, VectorMemoryError

__all__ = [
    # Version
    "__version__",
    # Engine
    "VectorMemory",
    # Backends
    "BackendConfig",
    "SearchOptions",
    "SearchResult",
    "VectorBackend",
    "VectorRecord",
    "detect_backends",
    "resolve_backend",
    # Attention
    "AttentionConfig",
    "AttentionResult",
    "AttentionScore",
    "CrossAttention",
    "MemoryEntry",
    "MultiHeadAttention",
    "SelfAttention",
    # Embedding
    "EmbeddingConfig",
    "EmbeddingService",
    "list_models",
    "mock_embedding",
    # Learning
    "LearningConfig",
    "QueryEnhancer",
    # Errors
    "ErrorCode",
    "VectorMemoryError",
]
