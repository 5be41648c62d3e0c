from __future__ import annotations

from typing import List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from vertex_reco.propagation import params_at_point, wrap_phi
from vertex_reco.track_params import PHI, PION_MASS, BoundTrackParameters

# Default per-parameter resolution: d0, z0 (mm), phi, theta (rad), relative q/p, t (ns).
DEFAULT_RESOLUTION: Tuple[float, ...] = (0.02, 0.05, 1e-3, 1e-3, 0.01, 0.03)


def make_track(
    vertex: Sequence[float],
    phi: float,
    theta: float,
    qop: float,
    *,
    bz: float = 2.0,
    resolution: Sequence[float] = DEFAULT_RESOLUTION,
    rng: Optional[np.random.Generator] = None,
) -> BoundTrackParameters:
    r"""
    Perigee parameters (w.r.t. the origin) of a track produced at ``vertex``.

    The true track leaves ``vertex`` = :math:`(x, y, z, t)` with direction
    :math:`(\phi, \theta)`; it is re-expressed at the origin and, when
    ``rng`` is given, smeared with a diagonal covariance built from
    ``resolution`` (the :math:`q/p` entry is relative).

    Returns
    -------
    BoundTrackParameters
        Parameters with the covariance used for smearing.
    """
    vertex = np.asarray(vertex, dtype=np.float64).reshape(4)
    at_vertex = np.array([0.0, 0.0, phi, theta, qop, vertex[3]])
    true_vec = params_at_point(at_vertex, vertex[:3], np.zeros(3), bz, PION_MASS)
    true_vec[PHI] = wrap_phi(true_vec[PHI])

    sig = np.asarray(resolution, dtype=np.float64).copy()
    sig[4] = sig[4] * max(abs(qop), 1e-6)
    cov = np.diag(sig ** 2)
    vec = true_vec if rng is None else rng.multivariate_normal(true_vec, cov)
    return BoundTrackParameters(vec, cov, np.zeros(3))


def generate_event(
    rng: np.random.Generator,
    vertex_z: Sequence[float],
    tracks_per_vertex: int | Sequence[int] = 10,
    *,
    bz: float = 2.0,
    beam_sigma_xy: float = 0.01,
    vertex_time_sigma: float = 0.0,
    pt_range: Tuple[float, float] = (0.5, 5.0),
    eta_max: float = 2.5,
    resolution: Sequence[float] = DEFAULT_RESOLUTION,
) -> Tuple[List[BoundTrackParameters], np.ndarray, pd.DataFrame]:
    r"""
    Toy event: vertices on the beam line, smeared tracks from each.

    Parameters
    ----------
    rng : numpy.random.Generator
    vertex_z : sequence of float
        Longitudinal positions (mm) of the truth vertices.
    tracks_per_vertex : int or sequence of int
    bz : float
        Field (T) used to build the helices.
    beam_sigma_xy : float
        Transverse spread of the vertex positions (mm).
    vertex_time_sigma : float
        Spread of vertex times (ns); ``0`` puts all vertices at :math:`t=0`.
    pt_range : (float, float)
        Uniform :math:`p_T` range in GeV.
    eta_max : float
        Uniform pseudorapidity range :math:`|\eta| < \eta_\max`.

    Returns
    -------
    tracks : list of BoundTrackParameters
    vertex_ids : ndarray of int
        Truth vertex index per track.
    truth : pandas.DataFrame
        ``vertex_id, vx, vy, vz, vt, n_tracks``.
    """
    vertex_z = list(vertex_z)
    if isinstance(tracks_per_vertex, int):
        counts = [tracks_per_vertex] * len(vertex_z)
    else:
        counts = list(tracks_per_vertex)
    if len(counts) != len(vertex_z):
        raise ValueError("tracks_per_vertex must match the number of vertices")

    tracks: List[BoundTrackParameters] = []
    ids: List[int] = []
    rows = []
    for vid, (z, n) in enumerate(zip(vertex_z, counts)):
        vx, vy = rng.normal(0.0, beam_sigma_xy, size=2) if beam_sigma_xy > 0 else (0.0, 0.0)
        vt = rng.normal(0.0, vertex_time_sigma) if vertex_time_sigma > 0 else 0.0
        pos = np.array([vx, vy, z, vt])
        rows.append({"vertex_id": vid, "vx": vx, "vy": vy, "vz": z, "vt": vt, "n_tracks": n})
        for _ in range(n):
            phi = rng.uniform(-np.pi, np.pi)
            eta = rng.uniform(-eta_max, eta_max)
            theta = 2.0 * np.arctan(np.exp(-eta))
            pt = rng.uniform(*pt_range)
            q = rng.choice([-1.0, 1.0])
            qop = q * np.sin(theta) / pt
            tracks.append(make_track(pos, phi, theta, qop, bz=bz, resolution=resolution, rng=rng))
            ids.append(vid)
    truth = pd.DataFrame(rows, columns=["vertex_id", "vx", "vy", "vz", "vt", "n_tracks"])
    return tracks, np.asarray(ids, dtype=np.int64), truth


def truth_columns(truth: pd.DataFrame, vertex_ids: np.ndarray) -> pd.DataFrame:
    """Per-track truth columns (``vertex_id, truth_vx, ...``) for :func:`vertex_reco.data.tracks_to_frame` output."""
    t = truth.set_index("vertex_id").loc[vertex_ids]
    return pd.DataFrame({
        "vertex_id": vertex_ids,
        "truth_vx": t["vx"].to_numpy(),
        "truth_vy": t["vy"].to_numpy(),
        "truth_vz": t["vz"].to_numpy(),
        "truth_vt": t["vt"].to_numpy(),
    })
