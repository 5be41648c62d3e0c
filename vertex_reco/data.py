from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from vertex_reco.track_params import BoundTrackParameters
from vertex_reco.vertex import Vertex

logger = logging.getLogger(__name__)

PARAM_COLUMNS: Tuple[str, ...] = ("d0", "z0", "phi", "theta", "qop", "t")
REF_COLUMNS: Tuple[str, ...] = ("ref_x", "ref_y", "ref_z")
COV_COLUMNS: Tuple[str, ...] = tuple(f"cov_{i}{j}" for i in range(6) for j in range(i, 6))
TRUTH_COLUMNS: Tuple[str, ...] = ("vertex_id", "truth_vx", "truth_vy", "truth_vz", "truth_vt")


def _read_frame(path: Path) -> pd.DataFrame:
    suffix = path.suffix.lower()
    if suffix == ".csv":
        return pd.read_csv(path)
    if suffix in (".parquet", ".pq"):
        return pd.read_parquet(path)
    raise ValueError(f"unsupported track file format '{suffix}' (expected .csv or .parquet)")


def save_frame(df: pd.DataFrame, path: Path) -> None:
    """Write ``df`` as CSV or parquet depending on the suffix of ``path``."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    suffix = path.suffix.lower()
    if suffix == ".csv":
        df.to_csv(path, index=False)
    elif suffix in (".parquet", ".pq"):
        df.to_parquet(path, index=False)
    else:
        raise ValueError(f"unsupported output format '{suffix}' (expected .csv or .parquet)")


def tracks_to_frame(tracks: Sequence[BoundTrackParameters], vertex_ids: Optional[Sequence[int]] = None) -> pd.DataFrame:
    r"""
    Flatten track parameters into one row per track.

    Columns are ``d0, z0, phi, theta, qop, t``, ``ref_x, ref_y, ref_z``,
    ``mass`` and the upper triangle of the covariance as ``cov_ij``
    (:math:`i \le j`). ``vertex_ids`` (truth labels) are added as
    ``vertex_id`` when given.
    """
    iu = np.triu_indices(6)
    rows = []
    for params in tracks:
        row = dict(zip(PARAM_COLUMNS, params.parameters.tolist()))
        row.update(zip(REF_COLUMNS, params.ref_point.tolist()))
        row["mass"] = params.mass
        row.update(zip(COV_COLUMNS, params.covariance[iu].tolist()))
        rows.append(row)
    df = pd.DataFrame(rows, columns=[*PARAM_COLUMNS, *REF_COLUMNS, "mass", *COV_COLUMNS])
    if vertex_ids is not None:
        if len(vertex_ids) != len(df):
            raise ValueError("vertex_ids must have one entry per track")
        df["vertex_id"] = np.asarray(vertex_ids, dtype=np.int64)
    return df


def tracks_from_frame(df: pd.DataFrame) -> List[BoundTrackParameters]:
    r"""
    Inverse of :func:`tracks_to_frame`.

    Missing reference columns default to the origin, a missing ``mass`` to
    the pion hypothesis.

    Raises
    ------
    KeyError
        If parameter or covariance columns are missing.
    """
    missing = [c for c in (*PARAM_COLUMNS, *COV_COLUMNS) if c not in df.columns]
    if missing:
        raise KeyError(f"track table is missing columns: {', '.join(missing)}")

    pars = df.loc[:, list(PARAM_COLUMNS)].to_numpy(dtype=np.float64)
    covs_flat = df.loc[:, list(COV_COLUMNS)].to_numpy(dtype=np.float64)
    if all(c in df.columns for c in REF_COLUMNS):
        refs = df.loc[:, list(REF_COLUMNS)].to_numpy(dtype=np.float64)
    else:
        refs = np.zeros((len(df), 3), dtype=np.float64)
    masses = df["mass"].to_numpy(dtype=np.float64) if "mass" in df.columns else None

    iu = np.triu_indices(6)
    out: List[BoundTrackParameters] = []
    for k in range(len(df)):
        cov = np.zeros((6, 6), dtype=np.float64)
        cov[iu] = covs_flat[k]
        cov = cov + np.triu(cov, 1).T
        params = BoundTrackParameters(pars[k], cov, refs[k])
        if masses is not None:
            params.mass = float(masses[k])
        out.append(params)
    return out


def load_tracks(
    path: Path,
) -> Tuple[List[BoundTrackParameters], Optional[pd.DataFrame], Optional[np.ndarray]]:
    r"""
    Load one event's tracks and, when present, its truth vertices.

    Returns
    -------
    tracks : list of BoundTrackParameters
    truth : pandas.DataFrame or None
        One row per truth vertex with ``vertex_id, vx, vy, vz, vt, n_tracks``
        if the file carries the ``vertex_id`` and ``truth_v*`` columns.
    vertex_ids : ndarray of int or None
        Truth vertex label per track, ``None`` without truth.
    """
    path = Path(path)
    df = _read_frame(path)
    tracks = tracks_from_frame(df)
    truth = None
    vertex_ids = None
    if all(c in df.columns for c in TRUTH_COLUMNS):
        vertex_ids = df["vertex_id"].to_numpy(dtype=np.int64)
        truth = (
            df.groupby("vertex_id", sort=True)
            .agg(
                vx=("truth_vx", "first"),
                vy=("truth_vy", "first"),
                vz=("truth_vz", "first"),
                vt=("truth_vt", "first"),
                n_tracks=("truth_vz", "size"),
            )
            .reset_index()
        )
    logger.debug("Loaded %d tracks from %s (truth: %s)", len(tracks), path, truth is not None)
    return tracks, truth, vertex_ids


def vertices_to_frame(vertices: Sequence[Vertex]) -> pd.DataFrame:
    """One row per vertex: position, diagonal uncertainties, fit quality and track count."""
    rows = []
    for i, v in enumerate(vertices):
        err = np.sqrt(np.clip(np.diag(v.full_covariance), 0.0, None))
        rows.append({
            "vertex": i,
            "x": v.full_position[0], "y": v.full_position[1],
            "z": v.full_position[2], "t": v.full_position[3],
            "sigma_x": err[0], "sigma_y": err[1], "sigma_z": err[2], "sigma_t": err[3],
            "chi2": v.fit_quality[0], "ndf": v.fit_quality[1],
            "n_tracks": len(v.tracks),
        })
    return pd.DataFrame(rows, columns=[
        "vertex", "x", "y", "z", "t", "sigma_x", "sigma_y", "sigma_z", "sigma_t", "chi2", "ndf", "n_tracks",
    ])


def tracks_at_vertex_to_frame(vertices: Sequence[Vertex]) -> pd.DataFrame:
    """One row per (vertex, track) association of the finder output."""
    rows = []
    for i, v in enumerate(vertices):
        for tav in v.tracks:
            rows.append({
                "vertex": i,
                "track": tav.track_index,
                "weight": tav.weight,
                "chi2_track": tav.chi2_track,
                "vertex_compatibility": tav.vertex_compatibility,
            })
    return pd.DataFrame(rows, columns=["vertex", "track", "weight", "chi2_track", "vertex_compatibility"])
