from __future__ import annotations

from typing import Dict, Optional, Sequence, Tuple

import numpy as np
from scipy.spatial import cKDTree


def _as_z(a: np.ndarray | Sequence[float] | None) -> np.ndarray:
    r"""
    Coerce input to a contiguous ``(N, 1)`` array of ``float64`` z positions.

    ``None`` or an empty input gives an empty ``(0, 1)`` array.
    """
    if a is None:
        return np.empty((0, 1), dtype=np.float64)
    a = np.asarray(a, dtype=np.float64).reshape(-1)
    return a[:, None]


def match_vertices(
    reco_z: np.ndarray | Sequence[float],
    truth_z: np.ndarray | Sequence[float],
    max_dz: float = 1.0,
) -> Tuple[np.ndarray, np.ndarray]:
    r"""
    Nearest-neighbour matching of truth vertices to reconstructed ones in :math:`z`.

    For each truth vertex :math:`i` the closest reconstructed vertex
    :math:`j(i) = \arg\min_j |z^\mathrm{truth}_i - z^\mathrm{reco}_j|` is found
    with a :class:`scipy.spatial.cKDTree`; the match is kept if the distance
    is at most ``max_dz``.

    Parameters
    ----------
    reco_z, truth_z : array_like
        Longitudinal positions (mm).
    max_dz : float
        Matching window (mm).

    Returns
    -------
    match : ndarray of int, shape (N_truth,)
        Index of the matched reconstructed vertex, ``-1`` if none.
    dist : ndarray of float, shape (N_truth,)
        Distance to the nearest reconstructed vertex (``inf`` if none).
    """
    R = _as_z(reco_z)
    T = _as_z(truth_z)
    if len(T) == 0:
        return np.empty(0, dtype=np.int64), np.empty(0, dtype=np.float64)
    if len(R) == 0:
        return np.full(len(T), -1, dtype=np.int64), np.full(len(T), np.inf)
    tree = cKDTree(R)
    dist, idx = tree.query(T, k=1)
    dist = np.asarray(dist, dtype=np.float64)
    match = np.where(dist <= max_dz, np.asarray(idx, dtype=np.int64), -1)
    return match, dist


def compute_metrics(
    reco_z: np.ndarray | Sequence[float],
    truth_z: np.ndarray | Sequence[float],
    *,
    max_dz: float = 1.0,
) -> Dict[str, float]:
    r"""
    Vertex finding figures of merit from z positions.

    Let :math:`N_T` truth and :math:`N_R` reconstructed vertices, and
    :math:`M` the set of matches from :func:`match_vertices`.

    - **efficiency** :math:`= |\{i : j(i) \ne -1\}| / N_T`
    - **fake_rate** :math:`= |\{j\ \text{never matched}\}| / N_R`
    - **n_merged**: reconstructed vertices matched by more than one truth vertex
    - **resolution_mean/std**: mean and standard deviation of
      :math:`z^\mathrm{reco}_{j(i)} - z^\mathrm{truth}_i` over matches

    Returns
    -------
    dict
        Keys ``n_truth, n_reco, n_matched, efficiency, fake_rate, n_merged,
        resolution_mean, resolution_std``. Ratios with a zero denominator and
        resolutions without matches are ``nan``.
    """
    reco = _as_z(reco_z)[:, 0]
    truth = _as_z(truth_z)[:, 0]
    match, _ = match_vertices(reco, truth, max_dz)
    ok = match >= 0
    n_truth, n_reco = len(truth), len(reco)
    matched_reco, counts = np.unique(match[ok], return_counts=True)

    out: Dict[str, float] = {
        "n_truth": float(n_truth),
        "n_reco": float(n_reco),
        "n_matched": float(ok.sum()),
        "efficiency": float(ok.sum() / n_truth) if n_truth else float("nan"),
        "fake_rate": float((n_reco - len(matched_reco)) / n_reco) if n_reco else float("nan"),
        "n_merged": float(np.sum(counts > 1)),
        "resolution_mean": float("nan"),
        "resolution_std": float("nan"),
    }
    if ok.any():
        res = reco[match[ok]] - truth[ok]
        out["resolution_mean"] = float(np.mean(res))
        out["resolution_std"] = float(np.std(res))
    return out


def assignment_purity(
    vertex_track_ids: Sequence[Sequence[int]],
    truth_ids: np.ndarray,
) -> Optional[float]:
    r"""
    Mean fraction of each vertex's tracks that come from its majority truth vertex.

    Parameters
    ----------
    vertex_track_ids : sequence of sequence of int
        Track indices attached to each reconstructed vertex.
    truth_ids : ndarray of int
        Truth vertex label per track.

    Returns
    -------
    float or None
        ``None`` when no vertex has tracks.
    """
    truth_ids = np.asarray(truth_ids)
    purities = []
    for trk in vertex_track_ids:
        if len(trk) == 0:
            continue
        labels = truth_ids[np.asarray(trk, dtype=np.int64)]
        _, counts = np.unique(labels, return_counts=True)
        purities.append(counts.max() / len(labels))
    if not purities:
        return None
    return float(np.mean(purities))
