"""
Boundary validation shared by every backend and engine.

All checks raise ``ValidationError`` (or a subclass) before anything is
mutated, so a rejected call never leaves partial state behind.
"""
from __future__ import annotations

import json
import math
import re
from typing import Any, Optional

import numpy as np

from .errors import DimensionMismatchError, ValidationError

MAX_VECTOR_DIMENSION = 4096
MAX_BATCH_SIZE = 10_000
MAX_PATH_LENGTH = 4096
MAX_ID_LENGTH = 1024
MAX_METADATA_BYTES = 65_536
MAX_SEARCH_K = 10_000
MAX_PENDING_WRITES = 50_000
DEFAULT_BATCH_THRESHOLD = 100

FORBIDDEN_METADATA_KEYS = frozenset({"__proto__", "constructor", "prototype"})

_FORBIDDEN_PATH_PATTERNS = (
    (re.compile(r"\.\."), "path traversal"),
    (re.compile(r"^/etc/"), "system path /etc/"),
    (re.compile(r"^/proc/"), "system path /proc/"),
    (re.compile(r"^/sys/"), "system path /sys/"),
    (re.compile(r"^/dev/"), "system path /dev/"),
)


def validate_path(path: Any) -> str:
    """
    Validate a filesystem path used for save/load.

    Args:
        path: str or os.PathLike

    Returns:
        The path as a string.

    Raises:
        ValidationError: empty, too long, contains a null byte, traversal
            or a system directory prefix.
    """
    if hasattr(path, "__fspath__"):
        path = path.__fspath__()
    if not isinstance(path, str) or not path:
        raise ValidationError("Path must be a non-empty string")
    if "\x00" in path:
        raise ValidationError("Path must not contain null bytes")
    if len(path.encode("utf-8")) > MAX_PATH_LENGTH:
        raise ValidationError(f"Path exceeds maximum length of {MAX_PATH_LENGTH} bytes")
    for pattern, reason in _FORBIDDEN_PATH_PATTERNS:
        if pattern.search(path):
            raise ValidationError(f"Path rejected ({reason}): {path!r}")
    return path


def validate_id(record_id: Any) -> str:
    """Validate an opaque record identifier."""
    if not isinstance(record_id, str) or not record_id:
        raise ValidationError("ID must be a non-empty string")
    if "\x00" in record_id:
        raise ValidationError("ID must not contain null bytes")
    if len(record_id.encode("utf-8")) > MAX_ID_LENGTH:
        raise ValidationError(f"ID exceeds maximum length of {MAX_ID_LENGTH} bytes")
    return record_id


def validate_metadata(metadata: Optional[dict]) -> Optional[dict]:
    """
    Return a sanitized copy of ``metadata``.

    Prototype-pollution keys are stripped at every nesting level and the
    JSON-serialized size is capped at ``MAX_METADATA_BYTES``.
    """
    if metadata is None:
        return None
    if not isinstance(metadata, dict):
        raise ValidationError("Metadata must be a dictionary")

    cleaned = _strip_forbidden_keys(metadata)
    try:
        encoded = json.dumps(cleaned)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Metadata is not JSON serializable: {e}") from e
    if len(encoded.encode("utf-8")) > MAX_METADATA_BYTES:
        raise ValidationError(
            f"Metadata exceeds maximum serialized size of {MAX_METADATA_BYTES} bytes"
        )
    return cleaned


def _strip_forbidden_keys(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            k: _strip_forbidden_keys(v)
            for k, v in value.items()
            if k not in FORBIDDEN_METADATA_KEYS
        }
    if isinstance(value, list):
        return [_strip_forbidden_keys(v) for v in value]
    return value


def validate_dimension(dimension: Any) -> int:
    if isinstance(dimension, bool) or not isinstance(dimension, (int, np.integer)):
        raise ValidationError(f"Dimension must be an integer, got {dimension!r}")
    if not 1 <= dimension <= MAX_VECTOR_DIMENSION:
        raise ValidationError(
            f"Dimension must be between 1 and {MAX_VECTOR_DIMENSION}, got {dimension}"
        )
    return int(dimension)


def validate_batch_size(size: int) -> int:
    if size > MAX_BATCH_SIZE:
        raise ValidationError(f"Batch size {size} exceeds maximum of {MAX_BATCH_SIZE}")
    return size


def validate_k(k: Any) -> int:
    if isinstance(k, bool) or not isinstance(k, (int, np.integer)) or k < 1:
        raise ValidationError(f"k must be a positive integer, got {k!r}")
    if k > MAX_SEARCH_K:
        raise ValidationError(f"k must not exceed {MAX_SEARCH_K}, got {k}")
    return int(k)


def as_vector(values: Any, expected_dim: Optional[int] = None, name: str = "Embedding") -> np.ndarray:
    """
    Coerce ``values`` to a finite 1-D float32 vector.

    Raises:
        ValidationError: not a non-empty 1-D numeric sequence, or contains NaN/inf.
        DimensionMismatchError: length differs from ``expected_dim``.
    """
    if values is None:
        raise ValidationError(f"{name} is required")
    try:
        vector = np.asarray(values, dtype=np.float32)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"{name} must be a numeric vector: {e}") from e
    if vector.ndim != 1 or vector.size == 0:
        raise ValidationError(f"{name} must be a non-empty 1-D vector")
    if not np.all(np.isfinite(vector)):
        raise ValidationError(f"{name} contains non-finite values")
    validate_dimension(vector.size)
    if expected_dim is not None and vector.size != expected_dim:
        raise DimensionMismatchError(expected_dim, vector.size)
    return vector


def validate_temperature(temperature: float) -> float:
    if not isinstance(temperature, (int, float, np.floating)) or not math.isfinite(temperature) or temperature <= 0:
        raise ValidationError(f"Temperature must be a positive finite number, got {temperature!r}")
    return float(temperature)
