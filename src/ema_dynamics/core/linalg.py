"""Dense vector and matrix primitives for the small state spaces used here.

All functions validate their input shapes and return newly allocated arrays,
so callers never share buffers with the arguments they pass in. Matrix
inversion and the dominant-eigenvalue estimate never raise on degenerate
input: they fall back to the identity matrix / zero and emit a
:class:`NumericalDegeneracyWarning` so the fallback stays visible.
"""

import warnings
from typing import Tuple

import numpy as np

from .errors import DimensionMismatchError, NumericalDegeneracyWarning

PIVOT_EPS = 1e-10
NORM_EPS = 1e-10


def as_vector(v, length: int = None, name: str = "vector") -> np.ndarray:
    """Copy ``v`` into a 1-D float array, optionally checking its length."""
    arr = np.array(v, dtype=float)
    if arr.ndim != 1:
        raise DimensionMismatchError(f"{name} must be 1-D, got shape {arr.shape}")
    if length is not None and arr.shape[0] != length:
        raise DimensionMismatchError(f"{name} must have length {length}, got {arr.shape[0]}")
    return arr


def as_matrix(A, shape: Tuple[int, int] = None, name: str = "matrix") -> np.ndarray:
    """Copy ``A`` into a 2-D float array, optionally checking its shape."""
    arr = np.array(A, dtype=float)
    if arr.ndim != 2:
        raise DimensionMismatchError(f"{name} must be 2-D, got shape {arr.shape}")
    if shape is not None and arr.shape != tuple(shape):
        raise DimensionMismatchError(f"{name} must be {tuple(shape)}, got {arr.shape}")
    return arr


def identity(n: int) -> np.ndarray:
    return np.eye(n)


def diagonal(n: int, value: float) -> np.ndarray:
    return np.eye(n) * value


def mat_vec(A: np.ndarray, v: np.ndarray) -> np.ndarray:
    """Matrix-vector product ``A @ v``."""
    A = as_matrix(A, name="A")
    v = as_vector(v, A.shape[1], name="v")
    return A @ v


def mat_mul(A: np.ndarray, B: np.ndarray) -> np.ndarray:
    """Matrix product ``A @ B``."""
    A = as_matrix(A, name="A")
    B = as_matrix(B, name="B")
    if A.shape[1] != B.shape[0]:
        raise DimensionMismatchError(f"Cannot multiply {A.shape} by {B.shape}")
    return A @ B


def transpose(A: np.ndarray) -> np.ndarray:
    return as_matrix(A).T.copy()


def mat_add(A: np.ndarray, B: np.ndarray) -> np.ndarray:
    A = as_matrix(A, name="A")
    B = as_matrix(B, A.shape, name="B")
    return A + B


def mat_sub(A: np.ndarray, B: np.ndarray) -> np.ndarray:
    A = as_matrix(A, name="A")
    B = as_matrix(B, A.shape, name="B")
    return A - B


def outer(u: np.ndarray, v: np.ndarray) -> np.ndarray:
    return np.outer(as_vector(u, name="u"), as_vector(v, name="v"))


def inverse(A: np.ndarray) -> np.ndarray:
    """Invert a square matrix by Gauss-Jordan elimination with partial pivoting.

    Parameters
    ----------
    A : np.ndarray, shape (n, n)
        Matrix to invert

    Returns
    -------
    np.ndarray, shape (n, n)
        The inverse, or the identity matrix if any pivot magnitude falls
        below ``PIVOT_EPS``

    Notes
    -----
    The identity fallback keeps forecasting loops alive on singular
    innovation covariances. Each fallback emits a
    ``NumericalDegeneracyWarning``.
    """
    A = as_matrix(A, name="A")
    n = A.shape[0]
    if A.shape[1] != n:
        raise DimensionMismatchError(f"Matrix must be square, got {A.shape}")

    augmented = np.hstack([A, np.eye(n)])

    for i in range(n):
        max_row = i + int(np.argmax(np.abs(augmented[i:, i])))
        if max_row != i:
            augmented[[i, max_row]] = augmented[[max_row, i]]

        pivot = augmented[i, i]
        if abs(pivot) < PIVOT_EPS or not np.isfinite(pivot):
            warnings.warn(
                f"Near-singular matrix (pivot {pivot:.3e} at column {i}), using identity inverse",
                NumericalDegeneracyWarning,
                stacklevel=2,
            )
            return np.eye(n)

        for k in range(n):
            if k != i:
                factor = augmented[k, i] / pivot
                augmented[k] -= factor * augmented[i]
        augmented[i] /= pivot

    return augmented[:, n:].copy()


def max_eigenvalue(A: np.ndarray, iterations: int = 20) -> float:
    """Estimate the dominant eigenvalue of ``A`` by power iteration.

    Returns 0.0 if the iterate collapses (norm below ``NORM_EPS``).
    """
    A = as_matrix(A, name="A")
    n = A.shape[0]
    if n == 0:
        return 0.0
    v = np.full(n, 1.0 / np.sqrt(n))

    for _ in range(iterations):
        Av = A @ v
        norm = float(np.linalg.norm(Av))
        if norm < NORM_EPS or not np.isfinite(norm):
            warnings.warn(
                "Power iteration norm vanished, returning eigenvalue 0",
                NumericalDegeneracyWarning,
                stacklevel=2,
            )
            return 0.0
        v = Av / norm

    return float(v @ (A @ v))


def relu(x: np.ndarray) -> np.ndarray:
    return np.maximum(np.asarray(x, dtype=float), 0.0)


def sigmoid(x):
    """Logistic function, stable for large negative inputs."""
    scalar = np.ndim(x) == 0
    x = np.atleast_1d(np.asarray(x, dtype=float))
    out = np.empty_like(x)
    pos = x >= 0
    out[pos] = 1.0 / (1.0 + np.exp(-x[pos]))
    ex = np.exp(x[~pos])
    out[~pos] = ex / (1.0 + ex)
    return float(out[0]) if scalar else out


def logit(p: float, eps: float = 1e-6) -> float:
    p = min(max(p, eps), 1.0 - eps)
    return float(np.log(p / (1.0 - p)))


def softmax_rows(scores: np.ndarray) -> np.ndarray:
    """Row-wise softmax with row-max subtraction."""
    scores = as_matrix(scores, name="scores")
    shifted = scores - scores.max(axis=1, keepdims=True)
    e = np.exp(shifted)
    return e / e.sum(axis=1, keepdims=True)


def sanitize(x: np.ndarray, clamp: float) -> np.ndarray:
    """Zero non-finite entries and clip the rest to ``[-clamp, clamp]``."""
    x = np.array(x, dtype=float)
    x[~np.isfinite(x)] = 0.0
    return np.clip(x, -clamp, clamp)
