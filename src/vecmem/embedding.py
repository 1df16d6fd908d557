"""
Embedding generation with a layered provider chain and a bounded cache.

Provider tiers, tried in order from the configured one:
- accelerated: sentence-transformers on the ONNX runtime backend
- local: sentence-transformers on PyTorch
- remote: OpenAI-compatible ``/embeddings`` endpoint (needs an API key)
- mock: deterministic hash-based vectors, never fails

Features:
- Matryoshka dimension reduction
- Automatic GPU/CPU/MPS detection
- Local model resolution through ModelCache
- Insertion-order cache eviction
"""

import asyncio
import logging
import math
from dataclasses import dataclass
from typing import Literal, Optional

import httpx
import numpy as np

from .assets import ModelCache
from .errors import ConfigurationError, EmbeddingError, MissingDependencyError

logger = logging.getLogger(__name__)

# Model presets - curated for quality/size tradeoffs
MODEL_CONFIGS = {
    "minilm": {
        "name": "sentence-transformers/all-MiniLM-L6-v2",
        "max_dim": 384,
        "supported_dims": [384, 256, 128],
        "description": "Ultra-light English model",
        "size_mb": 90,
    },
    "bge-small-en": {
        "name": "BAAI/bge-small-en-v1.5",
        "max_dim": 384,
        "supported_dims": [384, 256, 128],
        "description": "Lightweight English embedding",
        "size_mb": 130,
    },
    "bge-base-en": {
        "name": "BAAI/bge-base-en-v1.5",
        "max_dim": 768,
        "supported_dims": [768, 512, 384, 256],
        "description": "Balanced English embedding",
        "size_mb": 440,
    },
    "bge-m3": {
        "name": "BAAI/bge-m3",
        "max_dim": 1024,
        "supported_dims": [1024, 768, 512, 384, 256],
        "description": "State-of-the-art multilingual (100+ languages)",
        "size_mb": 2200,
    },
    "nomic-v1.5": {
        "name": "nomic-ai/nomic-embed-text-v1.5",
        "max_dim": 768,
        "supported_dims": [768, 512, 256, 128, 64],
        "description": "Long-context English with Matryoshka training",
        "size_mb": 550,
    },
}

DEFAULT_MODEL_KEY = "minilm"
DEFAULT_DIM = 384
DEFAULT_BASE_URL = "https://api.openai.com/v1"

ProviderName = Literal["accelerated", "local", "remote", "mock"]
PROVIDER_TIERS: tuple[str, ...] = ("accelerated", "local", "remote", "mock")


@dataclass
class EmbeddingConfig:
    provider: ProviderName = "accelerated"
    model: str = DEFAULT_MODEL_KEY
    dimension: int = DEFAULT_DIM
    api_key: Optional[str] = None
    base_url: str = DEFAULT_BASE_URL
    device: Literal["auto", "cuda", "cpu", "mps"] = "auto"
    use_gpu: bool = True
    max_entries: int = 10000
    evict_count: int = 5000
    timeout: float = 30.0
    bundle_dir: Optional[str] = None
    cache_dir: Optional[str] = None

    def __post_init__(self):
        if self.provider not in PROVIDER_TIERS:
            raise ConfigurationError(
                f"Unknown embedding provider {self.provider!r}. Choose one of: {', '.join(PROVIDER_TIERS)}"
            )
        if self.dimension < 1:
            raise ConfigurationError(f"dimension must be >= 1, got {self.dimension}")


def resolve_model_name(model: str) -> str:
    """Map a preset key to its HuggingFace name; other names pass through."""
    preset = MODEL_CONFIGS.get(model)
    return preset["name"] if preset else model


def list_models() -> dict:
    """List available model presets."""
    return {
        key: {
            "name": config["name"],
            "description": config["description"],
            "dimensions": config["supported_dims"],
            "size_mb": config["size_mb"],
        }
        for key, config in MODEL_CONFIGS.items()
    }


def truncate_dimensions(embeddings: np.ndarray, dimension: int) -> np.ndarray:
    """Matryoshka truncation: keep the leading ``dimension`` components and re-normalize."""
    if embeddings.shape[1] <= dimension:
        return embeddings.astype(np.float32)
    embeddings = embeddings[:, :dimension]
    norms = np.linalg.norm(embeddings, axis=1, keepdims=True)
    return (embeddings / np.maximum(norms, 1e-10)).astype(np.float32)


def mock_embedding(text: str, dimension: int) -> np.ndarray:
    """
    Deterministic pseudo-embedding for tests and offline use.

    The hash runs over UTF-16 code units as a wrapping signed 32-bit
    integer; components are sin(s) * cos(s / 2) with s = hash + 31 * i,
    rounded to float32, then L2-normalized.
    """
    h = 0
    units = text.encode("utf-16-le")
    for i in range(0, len(units), 2):
        h = (h * 31 + int.from_bytes(units[i:i + 2], "little")) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000

    seeds = h + np.arange(dimension, dtype=np.float64) * 31
    values = (np.sin(seeds) * np.cos(seeds * 0.5)).astype(np.float32)
    norm = math.sqrt(float(np.sum(values.astype(np.float64) ** 2)))
    if norm == 0.0:
        return values
    return (values.astype(np.float64) / norm).astype(np.float32)


# ============================================================================
# Providers
# ============================================================================

class SentenceTransformerProvider:
    """
    sentence-transformers model, on ONNX ("accelerated") or PyTorch ("local").

    Local model files are located through ModelCache before falling back
    to a download by name.
    """

    def __init__(self, config: EmbeddingConfig, backend: Literal["onnx", "torch"] = "torch"):
        self.config = config
        self.backend = backend
        self.name = "accelerated" if backend == "onnx" else "local"
        self.model_name = resolve_model_name(config.model)
        self._model = None

    def _resolve_device(self) -> str:
        """Resolve the device to use."""
        if self.config.device != "auto":
            return self.config.device

        if not self.config.use_gpu or self.backend == "onnx":
            return "cpu"

        try:
            import torch
        except ImportError:
            return "cpu"
        if torch.cuda.is_available():
            return "cuda"
        if hasattr(torch.backends, "mps") and torch.backends.mps.is_available():
            return "mps"
        return "cpu"

    def _model_location(self) -> str:
        cache = ModelCache(self.config.bundle_dir, self.config.cache_dir)
        path = cache.resolve(self.model_name)
        # hub cache dirs hold snapshots, let sentence-transformers find them by name
        if path is not None and ((path / "modules.json").exists() or (path / "config.json").exists()):
            return str(path)
        return self.model_name

    def initialize(self):
        try:
            from sentence_transformers import SentenceTransformer
        except ImportError as e:
            raise MissingDependencyError(
                "sentence-transformers is not installed", "pip install sentence-transformers"
            ) from e

        device = self._resolve_device()
        location = self._model_location()
        logger.info(f"Loading model {location} on {device} ({self.backend})...")
        self._model = SentenceTransformer(
            location,
            device=device,
            backend=self.backend,
            trust_remote_code=True,
        )
        logger.info(f"✓ Loaded {self.model_name} (dim={self.native_dim})")

    @property
    def native_dim(self) -> int:
        return self._model.get_sentence_embedding_dimension()

    async def embed(self, texts: list[str]) -> np.ndarray:
        embeddings = await asyncio.to_thread(
            self._model.encode,
            texts,
            normalize_embeddings=True,
            convert_to_numpy=True,
            show_progress_bar=False,
        )
        return np.asarray(embeddings, dtype=np.float32)

    async def close(self):
        self._model = None


class RemoteProvider:
    """OpenAI-compatible embeddings API over httpx."""

    name = "remote"

    def __init__(self, config: EmbeddingConfig, client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self._client = client
        self._owns_client = client is None
        self.native_dim = config.dimension

    def initialize(self):
        if not self.config.api_key:
            raise ConfigurationError("Remote embedding provider requires an API key")
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.config.timeout)
        logger.info(f"✓ Remote embeddings via {self.config.base_url} ({self.config.model})")

    async def embed(self, texts: list[str]) -> np.ndarray:
        url = f"{self.config.base_url.rstrip('/')}/embeddings"
        payload = {"input": texts, "model": self.config.model}
        headers = {"Authorization": f"Bearer {self.config.api_key}"}

        try:
            response = await self._client.post(url, json=payload, headers=headers)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(f"Embedding request failed: {e.response.status_code}")
            raise EmbeddingError(
                f"Embedding request failed with status {e.response.status_code}",
                details={"status_code": e.response.status_code},
            ) from e
        except httpx.RequestError as e:
            logger.error(f"Embedding request error: {e}")
            raise EmbeddingError(f"Embedding request error: {e}") from e

        items = sorted(response.json()["data"], key=lambda item: item.get("index", 0))
        return np.asarray([item["embedding"] for item in items], dtype=np.float32)

    async def close(self):
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None


class MockProvider:
    name = "mock"

    def __init__(self, config: EmbeddingConfig):
        self.native_dim = config.dimension

    def initialize(self):
        logger.debug(f"Mock embeddings enabled (dim={self.native_dim})")

    async def embed(self, texts: list[str]) -> np.ndarray:
        return np.vstack([mock_embedding(t, self.native_dim) for t in texts])

    async def close(self):
        return None


# ============================================================================
# Service
# ============================================================================

class EmbeddingService:
    """
    Cached text-to-vector service.

    Cache keys are exact ``(model, text)`` pairs. When a miss finds the
    cache holding more than ``max_entries`` vectors, the ``evict_count``
    oldest-inserted entries are dropped before the new one is added.
    """

    def __init__(self, config: Optional[EmbeddingConfig] = None, client: Optional[httpx.AsyncClient] = None):
        self.config = config or EmbeddingConfig()
        self._client = client
        self._provider = None
        self._cache: dict[tuple[str, str], np.ndarray] = {}
        self._hits = 0
        self._misses = 0
        self.dimension = self.config.dimension

    def _build(self, tier: str):
        if tier == "accelerated":
            return SentenceTransformerProvider(self.config, backend="onnx")
        if tier == "local":
            return SentenceTransformerProvider(self.config, backend="torch")
        if tier == "remote":
            return RemoteProvider(self.config, self._client)
        return MockProvider(self.config)

    async def initialize(self):
        """Select the first provider tier that initializes, starting at the configured one."""
        if self._provider is not None:
            return
        tiers = PROVIDER_TIERS[PROVIDER_TIERS.index(self.config.provider):]
        for tier in tiers:
            provider = self._build(tier)
            try:
                if tier in ("accelerated", "local"):
                    await asyncio.to_thread(provider.initialize)
                else:
                    provider.initialize()
            except Exception as e:
                logger.warning(f"Embedding provider {tier} unavailable, falling back: {e}")
                continue

            if provider.native_dim < self.config.dimension:
                logger.warning(
                    f"Dimension {self.config.dimension} > model native {provider.native_dim}. "
                    f"Using {provider.native_dim}"
                )
                self.dimension = provider.native_dim
            self._provider = provider
            return

    @property
    def active_provider(self) -> Optional[str]:
        return self._provider.name if self._provider else None

    async def embed(self, text: str) -> np.ndarray:
        key = (self.config.model, text)
        cached = self._cache.get(key)
        if cached is not None:
            self._hits += 1
            return cached.copy()

        self._misses += 1
        if self._provider is None:
            await self.initialize()
        embedding = truncate_dimensions(await self._provider.embed([text]), self.dimension)[0]

        if len(self._cache) > self.config.max_entries:
            for old_key in list(self._cache)[:self.config.evict_count]:
                del self._cache[old_key]
        self._cache[key] = embedding.copy()
        return embedding

    async def embed_batch(self, texts: list[str]) -> list[np.ndarray]:
        """Embed each text concurrently; output order matches input order."""
        if self._provider is None:
            await self.initialize()
        return list(await asyncio.gather(*(self.embed(t) for t in texts)))

    def cache_stats(self) -> dict:
        return {
            "size": len(self._cache),
            "hits": self._hits,
            "misses": self._misses,
            "max_entries": self.config.max_entries,
        }

    def clear_cache(self):
        self._cache.clear()

    def get_info(self) -> dict:
        return {
            "provider": self.active_provider,
            "model": self.config.model,
            "model_name": resolve_model_name(self.config.model),
            "dimension": self.dimension,
        }

    async def close(self):
        if self._provider is not None:
            await self._provider.close()
            self._provider = None