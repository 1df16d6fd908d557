"""
Learned query enhancer.

Refines a query embedding using the context of its retrieved neighbors,
trained from success/failure feedback. The model is optional: it needs
PyTorch unless a model factory is supplied.

Lifecycle:
    enhancer = QueryEnhancer(LearningConfig(input_dim=384))
    enhancer.initialize()              # MissingDependencyError without torch
    enhancer.add_sample(vec, True)     # ... at least 10 samples
    enhancer.train(epochs=50)
    enhanced = enhancer.enhance(query, neighbors, weights)

Until the model is trained, enhance() returns the query unchanged.
"""

import logging
from dataclasses import asdict, dataclass
from typing import Callable, Optional, Protocol, Sequence

import numpy as np

from .errors import (
    DimensionMismatchError,
    InsufficientSamplesError,
    MissingDependencyError,
    NotInitializedError,
    TrainingError,
    UntrainedModelError,
)
from .validation import as_vector, validate_path

logger = logging.getLogger(__name__)

MIN_TRAINING_SAMPLES = 10


@dataclass
class LearningConfig:
    input_dim: int
    output_dim: Optional[int] = None
    heads: int = 4
    hidden_dim: Optional[int] = None
    learning_rate: float = 1e-3
    weight_decay: float = 0.01
    seed: Optional[int] = None


@dataclass
class TrainingSample:
    embedding: np.ndarray
    label: int


@dataclass
class TrainingResult:
    epochs: int
    final_loss: float
    samples: int


class EnhancerModel(Protocol):
    """Capability implemented by any model the enhancer can drive."""

    def forward(self, query: np.ndarray, neighbors: np.ndarray, weights: np.ndarray) -> np.ndarray: ...

    def fit(self, samples: Sequence[TrainingSample], epochs: int, batch_size: int) -> float: ...

    def state(self) -> dict: ...

    def restore(self, state: dict) -> None: ...


ModelFactory = Callable[[LearningConfig], EnhancerModel]


def _import_torch():
    try:
        import torch
    except ImportError as e:
        raise MissingDependencyError(
            "PyTorch is required for the learned query enhancer", "pip install torch"
        ) from e
    return torch


def _default_model_factory(config: LearningConfig) -> EnhancerModel:
    _import_torch()
    from .gnn import TorchEnhancerModel
    return TorchEnhancerModel(config)


class QueryEnhancer:
    """
    Graph-attention query enhancement with feedback-driven training.

    Args:
        config: LearningConfig (input_dim is required)
        model_factory: Builds the EnhancerModel at initialize() time.
            Defaults to the PyTorch graph-attention model.
    """

    def __init__(self, config: LearningConfig, model_factory: Optional[ModelFactory] = None):
        self.config = config
        self._model_factory = model_factory or _default_model_factory
        self._model: Optional[EnhancerModel] = None
        self._buffer: list[TrainingSample] = []
        self._initialized = False
        self._trained = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def trained(self) -> bool:
        return self._trained

    @property
    def buffer_size(self) -> int:
        return len(self._buffer)

    def initialize(self):
        """
        Build the model. Idempotent.

        Raises:
            MissingDependencyError: torch is not installed (default factory)
        """
        if self._initialized:
            return
        self._model = self._model_factory(self.config)
        self._initialized = True
        logger.info(f"✓ Query enhancer initialized (dim={self.config.input_dim}, heads={self.config.heads})")

    def _ensure_initialized(self):
        if not self._initialized:
            raise NotInitializedError("QueryEnhancer not initialized. Call initialize() first.")

    def enhance(self, query, neighbors: Sequence, weights: Sequence[float]) -> np.ndarray:
        """
        Refine ``query`` using its neighbors.

        Returns the query unchanged when the model is untrained, when there
        are no neighbors, or when the model fails.
        """
        self._ensure_initialized()
        q = as_vector(query, self.config.input_dim, name="Query")
        if not self._trained or len(neighbors) == 0:
            return q

        try:
            matrix = np.vstack([as_vector(n, self.config.input_dim, name="Neighbor") for n in neighbors])
            return self._model.forward(q, matrix, np.asarray(weights, dtype=np.float32))
        except Exception as e:
            logger.warning(f"Query enhancement failed, using original query: {e}")
            return q

    def add_sample(self, embedding, success: bool):
        self._ensure_initialized()
        vector = as_vector(embedding, self.config.input_dim)
        self._buffer.append(TrainingSample(vector.copy(), 1 if success else 0))

    def train(self, epochs: int = 100, batch_size: int = 32) -> TrainingResult:
        """
        Train on the buffered samples, then clear the buffer.

        Raises:
            InsufficientSamplesError: fewer than 10 buffered samples
            TrainingError: the model failed; the buffer is kept
        """
        self._ensure_initialized()
        if len(self._buffer) < MIN_TRAINING_SAMPLES:
            raise InsufficientSamplesError(len(self._buffer), MIN_TRAINING_SAMPLES)

        try:
            final_loss = self._model.fit(list(self._buffer), epochs, batch_size)
        except Exception as e:
            raise TrainingError(f"Training failed: {e}") from e

        self._trained = True
        sample_count = len(self._buffer)
        self._buffer.clear()
        logger.info(f"✓ Query enhancer trained on {sample_count} samples (loss={final_loss:.4f})")
        return TrainingResult(epochs=epochs, final_loss=float(final_loss or 0.0), samples=sample_count)

    def save(self, path):
        self._ensure_initialized()
        if not self._trained:
            raise UntrainedModelError("Cannot save untrained model")
        path = validate_path(path)
        torch = _import_torch()
        torch.save({"config": asdict(self.config), "state": self._model.state()}, path)
        logger.info(f"✓ Query enhancer saved to {path}")

    def load(self, path):
        self._ensure_initialized()
        path = validate_path(path)
        torch = _import_torch()
        checkpoint = torch.load(path, weights_only=True)
        saved_dim = checkpoint["config"]["input_dim"]
        if saved_dim != self.config.input_dim:
            raise DimensionMismatchError(self.config.input_dim, saved_dim)
        self._model.restore(checkpoint["state"])
        self._trained = True
        logger.info(f"✓ Query enhancer loaded from {path}")

    def clear_buffer(self):
        self._buffer.clear()

    def get_stats(self) -> dict:
        return {
            "initialized": self._initialized,
            "trained": self._trained,
            "buffer_size": len(self._buffer),
            "config": asdict(self.config),
        }
