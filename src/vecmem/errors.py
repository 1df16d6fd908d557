"""
Exception hierarchy for vecmem.

Every error carries an ``ErrorCode`` so callers can tell configuration
problems (nothing usable is installed) apart from bad input and from a
learned model that simply is not ready yet.
"""
from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Error codes for structured error handling."""

    # Configuration (1xxx)
    CONFIGURATION_ERROR = "VM-1000"
    MISSING_DEPENDENCY = "VM-1001"
    BACKEND_UNAVAILABLE = "VM-1002"

    # Validation (2xxx)
    VALIDATION_ERROR = "VM-2000"
    DIMENSION_MISMATCH = "VM-2001"
    BACKPRESSURE = "VM-2002"

    # Model state (3xxx)
    MODEL_STATE_ERROR = "VM-3000"
    NOT_INITIALIZED = "VM-3001"
    UNTRAINED_MODEL = "VM-3002"
    INSUFFICIENT_SAMPLES = "VM-3003"
    TRAINING_FAILED = "VM-3004"

    # Integrity (4xxx)
    ASSET_INTEGRITY = "VM-4000"

    # Providers (5xxx)
    EMBEDDING_FAILED = "VM-5000"


class VectorMemoryError(Exception):
    """Base exception for all vecmem errors.

    Attributes:
        message: Human-readable error message.
        code: Structured error code.
        details: Additional error context.
    """

    default_code = ErrorCode.CONFIGURATION_ERROR

    def __init__(
        self,
        message: str,
        code: ErrorCode | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to a dictionary for tool responses."""
        return {
            "error": {
                "code": self.code.value,
                "message": self.message,
                "details": self.details,
            }
        }


# ============================================================================
# Configuration
# ============================================================================

class ConfigurationError(VectorMemoryError):
    """Invalid configuration or nothing usable installed."""

    default_code = ErrorCode.CONFIGURATION_ERROR


class MissingDependencyError(ConfigurationError, ImportError):
    """An optional library needed for the requested feature is not importable."""

    default_code = ErrorCode.MISSING_DEPENDENCY

    def __init__(self, message: str, install_hint: str) -> None:
        super().__init__(
            f"{message}. Install it with: {install_hint}",
            details={"install_hint": install_hint},
        )
        self.install_hint = install_hint


class BackendUnavailableError(ConfigurationError):
    """Every backend candidate failed; ``attempts`` lists each one and why."""

    default_code = ErrorCode.BACKEND_UNAVAILABLE

    def __init__(self, attempts: list | tuple) -> None:
        self.attempts = tuple(attempts)
        lines = [f"  - {a.name} ({a.stage}): {a.reason}" for a in self.attempts]
        message = "No vector backend could be initialized. Attempted:\n" + "\n".join(lines)
        super().__init__(
            message,
            details={"attempts": [a.name for a in self.attempts]},
        )


# ============================================================================
# Validation
# ============================================================================

class ValidationError(VectorMemoryError, ValueError):
    """Rejected input. Raised before any state is mutated."""

    default_code = ErrorCode.VALIDATION_ERROR


class DimensionMismatchError(ValidationError):
    """Vector length does not match the established dimension."""

    default_code = ErrorCode.DIMENSION_MISMATCH

    def __init__(self, expected: int, actual: int) -> None:
        super().__init__(
            f"Embedding dimension mismatch: expected {expected}, got {actual}",
            details={"expected": expected, "actual": actual},
        )
        self.expected = expected
        self.actual = actual


class BackpressureError(ValidationError):
    """Too many unflushed writes are queued."""

    default_code = ErrorCode.BACKPRESSURE


# ============================================================================
# Model state
# ============================================================================

class ModelStateError(VectorMemoryError, RuntimeError):
    """The learned model is not in a state that allows the operation."""

    default_code = ErrorCode.MODEL_STATE_ERROR


class NotInitializedError(ModelStateError):
    default_code = ErrorCode.NOT_INITIALIZED


class UntrainedModelError(ModelStateError):
    default_code = ErrorCode.UNTRAINED_MODEL


class InsufficientSamplesError(ModelStateError):
    default_code = ErrorCode.INSUFFICIENT_SAMPLES

    def __init__(self, available: int, required: int) -> None:
        super().__init__(
            f"Insufficient training samples: {available}/{required}",
            details={"available": available, "required": required},
        )
        self.available = available
        self.required = required


class TrainingError(ModelStateError):
    default_code = ErrorCode.TRAINING_FAILED


# ============================================================================
# Integrity
# ============================================================================

class AssetIntegrityError(VectorMemoryError):
    """Stored checksum does not match the content read back."""

    default_code = ErrorCode.ASSET_INTEGRITY


# ============================================================================
# Providers
# ============================================================================

class EmbeddingError(VectorMemoryError):
    """An embedding provider failed to produce vectors."""

    default_code = ErrorCode.EMBEDDING_FAILED
