from __future__ import annotations

from typing import Callable, Optional

import numpy as np


def safe_inverse(m: np.ndarray) -> Optional[np.ndarray]:
    r"""
    Inverse of a square matrix with singularity detection.

    Parameters
    ----------
    m : ndarray, shape (n, n)
        Matrix to invert.

    Returns
    -------
    ndarray or None
        :math:`M^{-1}`, or ``None`` if :math:`M` is singular, ill-conditioned
        beyond double precision, or the inverse contains non-finite entries.

    Notes
    -----
    A ``None`` return is the "cannot compare" signal used by the merge test;
    callers must not treat it as an error.
    """
    m = np.asarray(m, dtype=np.float64)
    if m.ndim != 2 or m.shape[0] != m.shape[1] or not np.all(np.isfinite(m)):
        return None
    if np.linalg.cond(m) > 1.0 / np.finfo(np.float64).eps:
        return None
    try:
        inv = np.linalg.inv(m)
    except np.linalg.LinAlgError:
        return None
    if not np.all(np.isfinite(inv)):
        return None
    return inv


def robust_cholesky(S: np.ndarray) -> np.ndarray:
    r"""
    Robust Cholesky factorization with jitter escalation and SPD fallback.

    Attempts :func:`numpy.linalg.cholesky` on :math:`S`. On failure, tries
    :math:`S+\varepsilon I` with :math:`\varepsilon` growing geometrically from
    :math:`10^{-12}` (scaled by the mean diagonal). As a last resort the
    eigenvalues are clamped to :math:`\max(w,\;w_\max 10^{-15})`.

    Parameters
    ----------
    S : ndarray, shape (n, n)
        Symmetric (ideally positive-definite) matrix.

    Returns
    -------
    L : ndarray, shape (n, n)
        Lower-triangular factor with :math:`S \approx L L^\top`.

    Raises
    ------
    numpy.linalg.LinAlgError
        If ``S`` has no positive eigenvalue at all.
    """
    S = np.asarray(S, dtype=np.float64)
    S = 0.5 * (S + S.T)
    try:
        return np.linalg.cholesky(S)
    except np.linalg.LinAlgError:
        pass

    n = S.shape[0]
    I = np.eye(n, dtype=np.float64)
    scale = max(float(np.mean(np.abs(np.diag(S)))), 1.0)
    eps = 1e-12 * scale
    for _ in range(8):
        try:
            return np.linalg.cholesky(S + eps * I)
        except np.linalg.LinAlgError:
            eps *= 10.0

    w, V = np.linalg.eigh(S)
    w_max = float(np.max(w))
    if w_max <= 0.0:
        raise np.linalg.LinAlgError("matrix has no positive eigenvalue")
    w = np.maximum(w, w_max * 1e-15)
    return np.linalg.cholesky((V * w) @ V.T)


def spd_inverse(S: np.ndarray) -> np.ndarray:
    r"""
    Inverse of a symmetric positive-definite matrix via two triangular solves.

    With :math:`S = L L^\top` we solve :math:`L Y = I` and
    :math:`L^\top X = Y`, so :math:`X = S^{-1}`. The result is symmetrized.

    Raises
    ------
    numpy.linalg.LinAlgError
        Propagated from :func:`robust_cholesky`.
    """
    L = robust_cholesky(S)
    n = L.shape[0]
    Y = np.linalg.solve(L, np.eye(n, dtype=np.float64))
    X = np.linalg.solve(L.T, Y)
    return 0.5 * (X + X.T)


def mahalanobis(diff: np.ndarray, cov: np.ndarray) -> float:
    r"""
    Squared Mahalanobis distance :math:`d^\top C^{-1} d` using a Cholesky solve.

    Parameters
    ----------
    diff : ndarray, shape (n,)
    cov : ndarray, shape (n, n)

    Returns
    -------
    float
    """
    diff = np.asarray(diff, dtype=np.float64)
    L = robust_cholesky(cov)
    u = np.linalg.solve(L, diff)
    return float(u @ u)


def numeric_jacobian(
    f: Callable[[np.ndarray], np.ndarray],
    x: np.ndarray,
    eps: float | np.ndarray = 1e-6,
) -> np.ndarray:
    r"""
    Central finite-difference Jacobian :math:`J_{ij} = \partial f_i / \partial x_j`.

    Parameters
    ----------
    f : callable
        Vector function ``f(x) -> (m,)``.
    x : ndarray, shape (n,)
        Expansion point.
    eps : float or ndarray, shape (n,)
        Step per coordinate.

    Returns
    -------
    J : ndarray, shape (m, n)
    """
    x = np.asarray(x, dtype=np.float64)
    steps = np.broadcast_to(np.asarray(eps, dtype=np.float64), x.shape)
    cols = []
    for j in range(x.size):
        h = steps[j]
        xp = x.copy()
        xm = x.copy()
        xp[j] += h
        xm[j] -= h
        cols.append((np.asarray(f(xp)) - np.asarray(f(xm))) / (2.0 * h))
    return np.stack(cols, axis=1)
