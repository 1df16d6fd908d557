"""
Numeric kernels for similarity search and learning.

Pure numpy functions: deterministic for identical inputs and never raising
on numerically degenerate input (zero vectors, empty arrays). Degenerate
cases return sentinel values instead (0 similarity, uniform softmax).
"""
from __future__ import annotations

import math
from typing import Sequence

import numpy as np

ADAM_BETA1 = 0.9
ADAM_BETA2 = 0.999
ADAM_EPSILON = 1e-8

# sqrt(2 / pi) for the tanh approximation of GELU
_GELU_COEF = math.sqrt(2.0 / math.pi)


def _as_f64(x) -> np.ndarray:
    return np.asarray(x, dtype=np.float64).ravel()


# ============================================================================
# Similarity / distance
# ============================================================================

def dot_product(a, b) -> float:
    a, b = _as_f64(a), _as_f64(b)
    n = min(a.size, b.size)
    return float(np.dot(a[:n], b[:n]))


def cosine_similarity(a, b) -> float:
    """Cosine similarity in [-1, 1]; 0 when either vector has zero norm."""
    a, b = _as_f64(a), _as_f64(b)
    n = min(a.size, b.size)
    a, b = a[:n], b[:n]
    norm = float(np.linalg.norm(a)) * float(np.linalg.norm(b))
    if norm == 0.0 or not math.isfinite(norm):
        return 0.0
    return float(np.dot(a, b) / norm)


def cosine_similarity_many(query, matrix) -> np.ndarray:
    """Cosine similarity of ``query`` against each row of ``matrix``."""
    q = _as_f64(query)
    m = np.asarray(matrix, dtype=np.float64)
    if m.size == 0:
        return np.zeros(0, dtype=np.float64)
    m = m.reshape(-1, q.size)
    norms = np.linalg.norm(m, axis=1) * np.linalg.norm(q)
    dots = m @ q
    out = np.zeros(m.shape[0], dtype=np.float64)
    ok = norms > 0
    out[ok] = dots[ok] / norms[ok]
    return out


def l2_distance(a, b) -> float:
    """Euclidean distance."""
    a, b = _as_f64(a), _as_f64(b)
    n = min(a.size, b.size)
    diff = a[:n] - b[:n]
    return float(math.sqrt(float(np.dot(diff, diff))))


def hamming_distance(a, b) -> int:
    """Number of differing bits between two bit-packed byte vectors."""
    a = np.asarray(a, dtype=np.uint8).ravel()
    b = np.asarray(b, dtype=np.uint8).ravel()
    n = min(a.size, b.size)
    xor = np.bitwise_xor(a[:n], b[:n])
    return int(np.unpackbits(xor).sum())


# ============================================================================
# Activations
# ============================================================================

def relu(x) -> np.ndarray:
    return np.maximum(_as_f64(x), 0.0)


def sigmoid(x) -> np.ndarray:
    x = _as_f64(x)
    # Split by sign so exp() never overflows
    out = np.empty_like(x)
    pos = x >= 0
    out[pos] = 1.0 / (1.0 + np.exp(-x[pos]))
    ex = np.exp(x[~pos])
    out[~pos] = ex / (1.0 + ex)
    return out


def gelu(x) -> np.ndarray:
    """GELU, tanh approximation."""
    x = _as_f64(x)
    return 0.5 * x * (1.0 + np.tanh(_GELU_COEF * (x + 0.044715 * x ** 3)))


def softmax(x) -> np.ndarray:
    """
    Numerically stable softmax.

    Falls back to a uniform distribution when the exponent sum is zero or
    not finite. An empty input gives an empty output.
    """
    x = _as_f64(x)
    if x.size == 0:
        return x
    with np.errstate(invalid="ignore", over="ignore"):
        shifted = np.exp(x - np.max(x))
        total = float(np.sum(shifted))
    if total == 0.0 or not math.isfinite(total):
        return np.full(x.size, 1.0 / x.size)
    return shifted / total


def layer_norm(x, gamma=None, beta=None, eps: float = 1e-5) -> np.ndarray:
    """Layer normalization with population mean/variance."""
    x = _as_f64(x)
    if x.size == 0:
        return x
    mean = x.mean()
    var = np.mean((x - mean) ** 2)
    out = (x - mean) / np.sqrt(var + eps)
    if gamma is not None:
        out = out * _as_f64(gamma)
    if beta is not None:
        out = out + _as_f64(beta)
    return out


# ============================================================================
# Contrastive loss / optimizer
# ============================================================================

def info_nce_loss(anchor, positive, negatives: Sequence, temperature: float = 0.07) -> float:
    """
    InfoNCE contrastive loss using cosine similarity scaled by temperature.

    -log(exp(s+/T) / (exp(s+/T) + sum_i exp(s_i/T)))
    """
    if temperature <= 0:
        temperature = 1e-8
    logits = [cosine_similarity(anchor, positive) / temperature]
    logits.extend(cosine_similarity(anchor, n) / temperature for n in negatives)
    logits = np.asarray(logits, dtype=np.float64)
    # log-sum-exp with max shift
    peak = float(np.max(logits))
    log_denominator = peak + math.log(float(np.sum(np.exp(logits - peak))))
    return float(log_denominator - logits[0])


def adamw_step(
    params: np.ndarray,
    grads: np.ndarray,
    first_moment: np.ndarray,
    second_moment: np.ndarray,
    step: int,
    lr: float = 1e-3,
    weight_decay: float = 0.01,
) -> np.ndarray:
    """
    One AdamW update, applied in place to ``params`` and both moment buffers.

    Decoupled weight decay is applied first, then the bias-corrected Adam
    update with beta1=0.9, beta2=0.999, eps=1e-8.

    Args:
        params: Parameters, updated in place
        grads: Gradients, same shape as params
        first_moment: Running mean of gradients, updated in place
        second_moment: Running mean of squared gradients, updated in place
        step: 1-based step number
        lr: Learning rate
        weight_decay: Decoupled weight decay coefficient

    Returns:
        ``params`` (the same array object)
    """
    if step < 1:
        raise ValueError(f"step must be >= 1, got {step}")

    params -= lr * weight_decay * params
    first_moment *= ADAM_BETA1
    first_moment += (1.0 - ADAM_BETA1) * grads
    second_moment *= ADAM_BETA2
    second_moment += (1.0 - ADAM_BETA2) * grads * grads

    m_hat = first_moment / (1.0 - ADAM_BETA1 ** step)
    v_hat = second_moment / (1.0 - ADAM_BETA2 ** step)
    params -= lr * m_hat / (np.sqrt(v_hat) + ADAM_EPSILON)
    return params


# ============================================================================
# Checksum
# ============================================================================

def _build_crc32c_table() -> tuple[int, ...]:
    table = []
    for n in range(256):
        c = n
        for _ in range(8):
            c = (c >> 1) ^ 0x82F63B78 if c & 1 else c >> 1
        table.append(c)
    return tuple(table)


_CRC32C_TABLE = _build_crc32c_table()


def crc32c(data: bytes | bytearray | memoryview, crc: int = 0) -> int:
    """CRC-32C (Castagnoli). Pass a previous result as ``crc`` to continue."""
    table = _CRC32C_TABLE
    c = crc ^ 0xFFFFFFFF
    for byte in bytes(data):
        c = table[(c ^ byte) & 0xFF] ^ (c >> 8)
    return c ^ 0xFFFFFFFF
