# -*- coding: utf-8 -*-
"""Small numerical helpers shared by the rollout and Riccati modules.

Cholesky solves here never fall back to SVD: ill-conditioned or non-finite
input retries with increasing diagonal jitter and finally raises
``LinAlgError`` so callers can report a clean failure instead of a LAPACK
crash deep inside a worker thread.
"""

from __future__ import annotations

import numpy as np


# =============================================================================
# Small helpers
# =============================================================================

def _sym(A: np.ndarray) -> np.ndarray:
    """Symmetrize a matrix (or a stack of matrices)."""
    return 0.5 * (A + np.swapaxes(A, -1, -2))


def _assert_finite(name: str, X: np.ndarray):
    if not np.all(np.isfinite(X)):
        raise FloatingPointError(f"Non-finite values in {name}")


def finite(x) -> bool:
    return bool(np.all(np.isfinite(x)))


def min_eigenvalue(S: np.ndarray) -> float:
    """Smallest eigenvalue of the symmetric part of S."""
    return float(np.linalg.eigvalsh(_sym(np.asarray(S, dtype=float)))[0])


# =============================================================================
# Cholesky-based linear algebra
# =============================================================================

def chol_inv(A: np.ndarray, jitter: float = 1e-12, max_tries: int = 8) -> np.ndarray:
    """Inverse of a symmetric positive-definite matrix using Cholesky + jitter."""
    A = _sym(np.asarray(A, dtype=float))
    _assert_finite("chol_inv(A)", A)

    n = A.shape[0]
    I = np.eye(n)
    eps = 0.0

    for _ in range(int(max_tries)):
        try:
            L = np.linalg.cholesky(A + eps * I)
            Y = np.linalg.solve(L, I)
            return np.linalg.solve(L.T, Y)
        except np.linalg.LinAlgError:
            eps = float(jitter) if eps == 0.0 else 10.0 * eps

    raise np.linalg.LinAlgError(f"chol_inv failed: matrix not PD after jitter up to {eps:g}")


def chol_solve(A: np.ndarray, B: np.ndarray, jitter: float = 1e-12, max_tries: int = 8) -> np.ndarray:
    """Solve A X = B for symmetric positive-definite A using Cholesky + jitter."""
    A = _sym(np.asarray(A, dtype=float))
    B = np.asarray(B, dtype=float)
    _assert_finite("chol_solve(A)", A)
    _assert_finite("chol_solve(B)", B)

    n = A.shape[0]
    I = np.eye(n)
    eps = 0.0

    for _ in range(int(max_tries)):
        try:
            L = np.linalg.cholesky(A + eps * I)
            Y = np.linalg.solve(L, B)
            X = np.linalg.solve(L.T, Y)
            _assert_finite("chol_solve(X)", X)
            return X
        except (np.linalg.LinAlgError, FloatingPointError):
            eps = float(jitter) if eps == 0.0 else 10.0 * eps

    raise np.linalg.LinAlgError(f"chol_solve failed: matrix not PD after jitter up to {eps:g}")


# =============================================================================
# Piecewise-linear interpolation of stacked samples
# =============================================================================

def interp_index(times: np.ndarray, t: float):
    """Return (i, w) so that value(t) = (1 - w) * v[i] + w * v[i + 1].

    Outside [times[0], times[-1]] the end values are held. A single sample
    returns (0, 0.0).
    """
    N = times.shape[0]
    if N == 1 or t <= times[0]:
        return 0, 0.0
    if t >= times[-1]:
        return N - 2, 1.0
    i = int(np.searchsorted(times, t, side="right")) - 1
    dt = times[i + 1] - times[i]
    w = (t - times[i]) / dt if dt > 0.0 else 0.0
    return i, float(w)

