"""
High-level vector memory API.

Ties together one resolved backend, the embedding service, a
self-attention registry over the stored memories, and (optionally) the
learned query enhancer:

    store  -> embed -> backend insert + attention registry
    search -> embed -> backend search [-> enhance from neighbors -> search again]
"""
from __future__ import annotations

import hashlib
import logging
import uuid
from typing import Any, Optional

import numpy as np

from .attention import AttentionConfig, AttentionResult, MemoryEntry, SelfAttention
from .backends import BackendConfig, SearchOptions, SearchResult, VectorBackend, VectorRecord, resolve_backend
from .embedding import EmbeddingConfig, EmbeddingService
from .enhancer import LearningConfig, QueryEnhancer, TrainingResult
from .errors import ConfigurationError, MissingDependencyError
from .validation import validate_batch_size, validate_id, validate_metadata

logger = logging.getLogger(__name__)

# Metadata key holding the stored text
CONTENT_KEY = "content"


class VectorMemory:
    """
    Semantic memory over a vector backend.

    Features:
    - Text or vector queries
    - Batch storage validated before any write
    - Attention over every stored memory
    - Feedback-trained query enhancement (when learning is enabled)
    """

    def __init__(
        self,
        backend: VectorBackend,
        embedder: EmbeddingService,
        attention: Optional[SelfAttention] = None,
        enhancer: Optional[QueryEnhancer] = None,
    ):
        self.backend = backend
        self.embedder = embedder
        self.attention = attention or SelfAttention()
        self.enhancer = enhancer

    @classmethod
    def create(
        cls,
        backend: str = "auto",
        config: Optional[BackendConfig] = None,
        embedding: Optional[EmbeddingConfig] = None,
        learning: bool = False,
        probe=None,
    ) -> "VectorMemory":
        """
        Resolve a backend and build the surrounding services.

        Args:
            backend: 'auto', a backend name, or a family name
            config: Backend configuration
            embedding: Embedding service configuration
            learning: Enable the learned query enhancer (needs torch)
            probe: Module availability check, for tests
        """
        embedding = embedding or EmbeddingConfig()
        resolution = resolve_backend(backend, config, probe=probe)

        enhancer = None
        if learning:
            enhancer = QueryEnhancer(LearningConfig(input_dim=embedding.dimension))
            try:
                enhancer.initialize()
            except MissingDependencyError as e:
                logger.warning(f"Learning disabled: {e}")
                enhancer = None

        memory = cls(resolution.backend, EmbeddingService(embedding), SelfAttention(), enhancer)
        memory.restore_attention()
        return memory

    def restore_attention(self) -> int:
        """
        Rebuild the attention registry from the backend's stored records.

        Returns:
            Number of memories restored
        """
        self.attention.clear_memories()
        for record in self.backend.iter_records():
            content = (record.metadata or {}).get(CONTENT_KEY)
            self.attention.add_memory(MemoryEntry(record.id, record.embedding, content, record.metadata))
        if len(self.attention):
            logger.info(f"✓ Restored {len(self.attention)} memories from {self.backend.name} backend")
        return len(self.attention)

    @staticmethod
    def _generate_key(content: str) -> str:
        """Generate a unique key from content hash + uuid suffix."""
        content_hash = hashlib.sha256(content.encode()).hexdigest()[:12]
        unique_suffix = uuid.uuid4().hex[:4]
        return f"{content_hash}_{unique_suffix}"

    async def _as_query(self, query) -> np.ndarray:
        if isinstance(query, str):
            return await self.embedder.embed(query)
        return np.asarray(query, dtype=np.float32)

    async def store(self, text: str, id: Optional[str] = None, metadata: Optional[dict] = None) -> str:
        """
        Embed and store one memory.

        Returns:
            Id of the stored memory (generated when not given)
        """
        id = validate_id(id or self._generate_key(text))
        metadata = validate_metadata({**(metadata or {}), CONTENT_KEY: text})
        embedding = await self.embedder.embed(text)

        self.backend.insert(id, embedding, metadata)
        self.attention.add_memory(MemoryEntry(id, embedding, text, metadata))
        logger.debug(f"Stored memory: {id}")
        return id

    async def store_batch(self, items: list[dict]) -> list[str]:
        """
        Embed and store several memories.

        Args:
            items: Dicts with keys: text, id (optional), metadata (optional)

        Returns:
            Ids in input order
        """
        if not items:
            return []
        validate_batch_size(len(items))

        texts = [item["text"] for item in items]
        ids = [validate_id(item.get("id") or self._generate_key(item["text"])) for item in items]
        metadatas = [validate_metadata({**(item.get("metadata") or {}), CONTENT_KEY: item["text"]}) for item in items]
        embeddings = await self.embedder.embed_batch(texts)

        records = [VectorRecord(i, e, m) for i, e, m in zip(ids, embeddings, metadatas)]
        self.backend.insert_batch(records)
        for record, text in zip(records, texts):
            self.attention.add_memory(MemoryEntry(record.id, record.embedding, text, record.metadata))

        logger.info(f"Stored {len(ids)} memories in batch")
        return ids

    async def search(
        self,
        query,
        k: int = 10,
        threshold: float = 0.0,
        filter: Optional[dict[str, Any]] = None,
        enhance: bool = True,
    ) -> list[SearchResult]:
        """
        Retrieve the ``k`` most similar memories.

        With a trained enhancer, the first retrieval's neighbors refine the
        query and a second retrieval produces the final results.
        """
        q = await self._as_query(query)
        options = SearchOptions(threshold=threshold, filter=filter)
        results = self.backend.search(q, k, options)

        if not (enhance and self.enhancer is not None and self.enhancer.trained and results):
            return results

        neighbors, weights = [], []
        for result in results:
            entry = self.attention.get_memory(result.id)
            if entry is not None:
                neighbors.append(entry.embedding)
                weights.append(result.similarity)
        if not neighbors:
            return results

        enhanced = self.enhancer.enhance(q, neighbors, weights)
        return self.backend.search(enhanced, k, options)

    async def attend(self, query, config: Optional[AttentionConfig] = None, **overrides) -> AttentionResult:
        """Attention over every stored memory."""
        q = await self._as_query(query)
        return self.attention.compute_attention(q, config, **overrides)

    def _require_enhancer(self) -> QueryEnhancer:
        if self.enhancer is None:
            raise ConfigurationError("Learning is not enabled for this memory")
        return self.enhancer

    async def feedback(self, query, success: bool):
        """Record whether retrieval for ``query`` succeeded, as a training sample."""
        enhancer = self._require_enhancer()
        enhancer.add_sample(await self._as_query(query), success)

    def train(self, epochs: int = 100, batch_size: int = 32) -> TrainingResult:
        return self._require_enhancer().train(epochs=epochs, batch_size=batch_size)

    def get(self, id: str) -> Optional[MemoryEntry]:
        return self.attention.get_memory(id)

    def remove(self, id: str) -> bool:
        removed = self.backend.remove(id)
        return self.attention.remove_memory(id) or removed

    def count(self) -> int:
        return self.backend.count()

    def get_stats(self) -> dict:
        """Get memory system statistics."""
        return {
            **self.backend.get_stats(),
            "attention": self.attention.get_stats(),
            "embedding": {**self.embedder.get_info(), "cache": self.embedder.cache_stats()},
            "learning": self.enhancer.get_stats() if self.enhancer is not None else None,
        }

    def save(self, path):
        self.backend.save(path)

    async def close(self):
        """Close resources."""
        self.backend.close()
        await self.embedder.close()
