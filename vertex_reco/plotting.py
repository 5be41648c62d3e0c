import logging
from typing import Optional, Sequence

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt

from vertex_reco.track_params import BoundTrackParameters
from vertex_reco.vertex import Vertex


def _show_and_close(fig, *, do_show: bool = True, save_path: Optional[str] = None) -> None:
    r"""
    Optionally save and show a Matplotlib figure, then always close it.

    Safe in headless mode where ``plt.show()`` has been patched to a no-op.
    """
    try:
        fig.tight_layout()
    except ValueError:
        pass
    if save_path:
        fig.savefig(save_path, dpi=120)
        logging.info("Saved figure to %s", save_path)
    if do_show:
        plt.show()
    plt.close(fig)


def plot_vertices_z(
    tracks: Sequence[BoundTrackParameters],
    vertices: Sequence[Vertex],
    truth: Optional[pd.DataFrame] = None,
    *,
    bins: int = 200,
    show: bool = True,
    save_path: Optional[str] = None,
) -> None:
    r"""
    Histogram of track :math:`z` at the perigee with vertex markers.

    Reconstructed vertices are drawn as solid lines (with a :math:`\pm\sigma_z`
    band), truth vertices from ``truth['vz']`` as dashed lines.
    """
    z = np.array([t.position[2] for t in tracks], dtype=np.float64)
    fig, ax = plt.subplots(figsize=(10, 4))
    if z.size:
        ax.hist(z, bins=bins, color="0.6", alpha=0.8, label="track $z_0$")
    for i, v in enumerate(vertices):
        vz = v.full_position[2]
        sz = float(np.sqrt(max(v.full_covariance[2, 2], 0.0)))
        ax.axvline(vz, color="tab:red", lw=1.2, label="reco vertex" if i == 0 else None)
        ax.axvspan(vz - sz, vz + sz, color="tab:red", alpha=0.15)
    if truth is not None and not truth.empty:
        for i, vz in enumerate(truth["vz"].to_numpy(dtype=np.float64)):
            ax.axvline(vz, color="tab:blue", ls="--", lw=1.0, label="truth vertex" if i == 0 else None)
    ax.set_xlabel("z [mm]")
    ax.set_ylabel("tracks")
    ax.set_title(f"{len(vertices)} reconstructed vertices from {len(tracks)} tracks")
    ax.legend(loc="upper right")
    _show_and_close(fig, do_show=show, save_path=save_path)


def plot_track_weights(
    vertices: Sequence[Vertex],
    *,
    show: bool = True,
    save_path: Optional[str] = None,
) -> None:
    r"""
    Distributions of the final annealed weights and :math:`\chi^2` of tracks at vertices.
    """
    weights = [tav.weight for v in vertices for tav in v.tracks]
    chi2 = [tav.chi2_track for v in vertices for tav in v.tracks]
    if not weights:
        logging.info("No tracks at vertices to plot.")
        return
    fig, (ax_w, ax_c) = plt.subplots(1, 2, figsize=(10, 4))
    ax_w.hist(weights, bins=50, range=(0.0, 1.0), color="tab:green")
    ax_w.set_xlabel("weight")
    ax_w.set_ylabel("tracks")
    ax_c.hist(chi2, bins=50, color="tab:purple")
    ax_c.set_xlabel(r"$\chi^2_\mathrm{track}$")
    _show_and_close(fig, do_show=show, save_path=save_path)
