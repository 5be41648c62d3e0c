from __future__ import annotations

import numpy as np
from numba import njit, prange

__all__ = [
    "densest_window",
    "gaussian_density",
]


@njit(cache=True)
def densest_window(z: np.ndarray, w: np.ndarray, k: int) -> int:
    r"""
    Start index of the ``k`` consecutive sorted points with the smallest span per weight.

    For windows :math:`[i, i+k)` the cost is

    .. math::
        c_i = \frac{z_{i+k-1} - z_i}{\sum_{j=i}^{i+k-1} w_j},

    windows with zero total weight are skipped. Uses a running weight sum,
    so the scan is :math:`O(n)`.

    Parameters
    ----------
    z : ndarray, shape (n,)
        Sorted positions.
    w : ndarray, shape (n,)
        Non-negative weights aligned with ``z``.
    k : int
        Window length, ``1 <= k <= n``.

    Returns
    -------
    int
        Index of the best window; ``0`` if every window has zero weight.
    """
    n = z.shape[0]
    wsum = 0.0
    for j in range(k):
        wsum += w[j]

    best = 0
    best_cost = 0.0
    found = False
    for i in range(n - k + 1):
        if i > 0:
            wsum += w[i + k - 1] - w[i - 1]
        if wsum > 0.0:
            cost = (z[i + k - 1] - z[i]) / wsum
            if not found or cost < best_cost:
                best_cost = cost
                best = i
                found = True
    return best


@njit(cache=True, fastmath=True, parallel=True)
def gaussian_density(points: np.ndarray, zs: np.ndarray, sig: np.ndarray) -> np.ndarray:
    r"""
    Sum of unnormalised Gaussians evaluated at ``points``.

    .. math::
        \rho(z) = \sum_j \frac{1}{\sigma_j}\exp\Big(-\tfrac12\big((z-z_j)/\sigma_j\big)^2\Big)

    Parameters
    ----------
    points : ndarray, shape (m,)
    zs, sig : ndarray, shape (n,)
        Centres and (strictly positive) widths.

    Returns
    -------
    rho : ndarray, shape (m,)
    """
    m = points.shape[0]
    out = np.empty(m, dtype=np.float64)
    for i in prange(m):
        acc = 0.0
        for j in range(zs.shape[0]):
            u = (points[i] - zs[j]) / sig[j]
            acc += np.exp(-0.5 * u * u) / sig[j]
        out[i] = acc
    return out
