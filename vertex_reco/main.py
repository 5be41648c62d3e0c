#!/usr/bin/env python3
r"""
Adaptive multi-vertex finding runner (headless-safe).

This script loads per-event track tables (or simulates toy events), runs the
adaptive multi-vertex finder on each event, reports vertex counts and, when
truth is available, efficiency / fake rate / resolution, and optionally
writes the vertex tables and plots.

Track tables
------------
One file per event (``.csv`` or ``.parquet``) with columns
``d0, z0, phi, theta, qop, t``, ``ref_x, ref_y, ref_z`` and the upper
triangle of the covariance ``cov_ij`` (see :mod:`vertex_reco.data`).
Optional truth columns ``vertex_id, truth_vx, truth_vy, truth_vz, truth_vt``
enable the metrics.

CLI overview
------------
See :func:`build_parser` for all options. Typical usage:

.. code-block:: bash

   vertex-reco -f events/ -n 10 --config config.json --out results/
   vertex-reco --simulate 5 --seed 1 --plot
"""

from __future__ import annotations

import argparse
import logging
import os
import re
import time
from glob import glob
from pathlib import Path
from typing import List, Optional, Tuple

import numpy as np
import pandas as pd

import vertex_reco.data as vtx_data
import vertex_reco.metrics as vtx_metrics
from vertex_reco.config import VertexingConfig, build_finder, load_config
from vertex_reco.errors import VertexingError
from vertex_reco.utils import generate_event, truth_columns

EVENT_SUFFIXES: Tuple[str, ...] = (".csv", ".parquet", ".pq")


def build_parser() -> argparse.ArgumentParser:
    r"""
    Construct the command-line interface.

    Returns
    -------
    argparse.ArgumentParser

    Notes
    -----
    Key options:

    - ``--file``: a track table, a directory of tables, or a glob.
    - ``--simulate``: ignore ``--file`` and generate toy events instead.
    - ``--seed-finder``: override ``seed_finder_config.kind``.
    - ``--out``: directory for ``<event>-vertices.csv`` and
      ``<event>-tracks-at-vertex.csv``.
    """
    p = argparse.ArgumentParser(description="Run adaptive multi-vertex finding on track tables.")
    p.add_argument(
        "-f", "--file", type=str, default="tracks.csv",
        help=(
            "Input track table (.csv/.parquet), a directory containing them, or a glob "
            "(e.g. data/event_*.csv). Default: tracks.csv"
        ),
    )
    p.add_argument("-n", "--n-events", type=int, default=1,
                   help="Number of events to run (first N matches in natural order). Default: 1.")
    p.add_argument("--simulate", type=int, default=0, metavar="N",
                   help="Generate N toy events instead of reading --file.")
    p.add_argument("--n-vertices", type=int, default=5,
                   help="Vertices per simulated event (default: 5).")
    p.add_argument("--tracks-per-vertex", type=int, default=15,
                   help="Tracks per simulated vertex (default: 15).")
    p.add_argument("--seed", type=int, default=None,
                   help="Random seed for --simulate.")
    p.add_argument("--config", type=str, default="config.json",
                   help="Path to JSON config (default: config.json). Missing file means defaults.")
    p.add_argument("--seed-finder", type=str, choices=("zscan", "density"), default=None,
                   help="Override the seed finder kind from the config.")
    p.add_argument("--match-dz", type=float, default=1.0,
                   help="Truth matching window in z (mm) for metrics (default: 1.0).")
    p.add_argument("--out", type=str, default=None,
                   help="If set, write per-event vertex tables into this directory.")
    p.add_argument("--plot", action="store_true", default=False,
                   help="Show z-distribution plots (default: False).")
    p.add_argument("--no-plot", dest="plot", action="store_false",
                   help="Disable plotting.")
    p.add_argument("-v", "--verbose", action="store_true",
                   help="Enable verbose logging.")
    return p


def setup_logging(verbose: bool = False) -> None:
    r"""
    Configure process-wide logging.

    Parameters
    ----------
    verbose : bool, optional
        If ``True``, set level to ``DEBUG``; otherwise ``INFO``.

    Notes
    -----
    Format is ``'%(asctime)s | %(levelname)-8s | %(message)s'`` with ``%H:%M:%S`` timestamps.
    """
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(message)s",
        datefmt="%H:%M:%S",
    )


def apply_plotting_guard(enable_plots: bool) -> None:
    r"""
    Enforce a **headless-safe** Matplotlib configuration when plotting is disabled.

    Must be called **before** importing :mod:`vertex_reco.plotting`.
    """
    if enable_plots:
        return
    os.environ.setdefault("MPLBACKEND", "Agg")
    import matplotlib
    matplotlib.use("Agg", force=True)
    import matplotlib.pyplot as _plt
    _plt.ioff()
    _plt.show = lambda *a, **k: None  # type: ignore[assignment]


def _natural_key(path: Path):
    """Natural sort key (split digits) so event_2 comes before event_10."""
    parts = re.split(r"(\d+)", path.name)
    return [int(p) if p.isdigit() else p.lower() for p in parts]


def _resolve_event_paths(file_arg: str, n_events: int) -> List[Path]:
    """
    Turn --file into a list of up to n_events track tables.

    Supports a single file, a directory (tables inside) or a glob pattern.
    For a single file with n_events>1, continue through its siblings in
    natural order.
    """
    n = max(1, int(n_events))
    p = Path(file_arg)

    if any(ch in file_arg for ch in "*?[]"):
        cands = sorted((Path(x) for x in glob(file_arg)), key=_natural_key)
        return [c for c in cands if c.suffix.lower() in EVENT_SUFFIXES][:n]

    if p.is_dir():
        cands = sorted((c for c in p.iterdir() if c.suffix.lower() in EVENT_SUFFIXES), key=_natural_key)
        return cands[:n]

    if p.is_file():
        sibs = sorted((c for c in p.parent.iterdir() if c.suffix.lower() == p.suffix.lower()), key=_natural_key)
        if p in sibs:
            i = sibs.index(p)
            return sibs[i:i + n]
        return [p]
    return [p]


def _load_vertexing_config(path: Path) -> VertexingConfig:
    if not path.is_file():
        logging.warning("Config %s not found; using defaults.", path)
        return VertexingConfig()
    logging.info("Reading config from %s", path)
    return VertexingConfig.from_mapping(load_config(path))


def _events(args: argparse.Namespace, bz: float):
    """Yield ``(name, tracks, truth_or_None, truth_ids_or_None)`` per event."""
    if args.simulate > 0:
        rng = np.random.default_rng(args.seed)
        for k in range(args.simulate):
            vz = np.sort(rng.uniform(-100.0, 100.0, size=args.n_vertices))
            tracks, ids, truth = generate_event(rng, vz, args.tracks_per_vertex, bz=bz)
            yield f"sim_{k}", tracks, truth, ids
        return

    event_paths = _resolve_event_paths(args.file, args.n_events)
    if not event_paths or not event_paths[0].exists():
        raise FileNotFoundError(f"No events found for --file={args.file}")
    for path in event_paths:
        tracks, truth, truth_ids = vtx_data.load_tracks(path)
        yield path.stem, tracks, truth, truth_ids


def _write_outputs(out_dir: Path, name: str, vertices) -> None:
    vtx_data.save_frame(vtx_data.vertices_to_frame(vertices), out_dir / f"{name}-vertices.csv")
    vtx_data.save_frame(vtx_data.tracks_at_vertex_to_frame(vertices), out_dir / f"{name}-tracks-at-vertex.csv")


def _write_simulated_input(out_dir: Path, name: str, tracks, truth: pd.DataFrame, ids: np.ndarray) -> None:
    """Store a simulated event as a track table with truth columns, readable by ``--file``."""
    df = vtx_data.tracks_to_frame(tracks)
    df = pd.concat([df, truth_columns(truth, ids)], axis=1)
    vtx_data.save_frame(df, out_dir / f"{name}-tracks.csv")


def main(argv: Optional[List[str]] = None) -> None:
    r"""
    End-to-end pipeline: **load/simulate → find → evaluate → write**.

    Pipeline
    --------
    1. Parse CLI (:func:`build_parser`) and set up logging (:func:`setup_logging`).
    2. Enforce headless plotting guard (:func:`apply_plotting_guard`).
    3. Load config (:func:`vertex_reco.config.load_config`) and build the finder.
    4. For each event: run the finder, log a summary, compute metrics when
       truth is available, write tables and plots on request.
    5. Log metrics averaged over events.

    Any :class:`~vertex_reco.errors.VertexingError` aborts the run after
    being logged.
    """
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)
    apply_plotting_guard(args.plot)

    cfg = _load_vertexing_config(Path(args.config))
    if args.seed_finder is not None:
        cfg.seed_finder.kind = args.seed_finder
    finder = build_finder(cfg)
    out_dir = Path(args.out) if args.out else None

    summaries = []
    for idx, (name, tracks, truth, truth_ids) in enumerate(_events(args, cfg.options.bz), start=1):
        logging.info("=== Event %d: %s (%d tracks) ===", idx, name, len(tracks))
        options = cfg.options.make_options(tag=name)

        t0 = time.time()
        try:
            vertices = finder.find(tracks, options)
        except VertexingError:
            logging.exception("Vertex finding failed on event %s", name)
            raise
        dt = time.time() - t0
        logging.info("Found %d vertices in %.2fs", len(vertices), dt)

        row = {"event": name, "n_tracks": len(tracks), "n_vertices": len(vertices), "time_s": dt}
        if truth is not None:
            reco_z = [v.full_position[2] for v in vertices]
            m = vtx_metrics.compute_metrics(reco_z, truth["vz"].to_numpy(), max_dz=args.match_dz)
            logging.info(
                "Efficiency %.3f | fake rate %.3f | merged %d | z resolution %.4f ± %.4f mm",
                m["efficiency"], m["fake_rate"], int(m["n_merged"]),
                m["resolution_mean"], m["resolution_std"],
            )
            row.update(m)
        if truth_ids is not None:
            purity = vtx_metrics.assignment_purity(
                [[tav.track_index for tav in v.tracks] for v in vertices], truth_ids
            )
            if purity is not None:
                logging.info("Track assignment purity %.3f", purity)
                row["purity"] = purity
        summaries.append(row)

        if out_dir is not None:
            _write_outputs(out_dir, name, vertices)
            if args.simulate > 0:
                _write_simulated_input(out_dir, name, tracks, truth, truth_ids)
            logging.info("Wrote vertex tables for %s to %s", name, out_dir)

        if args.plot and idx == 1:
            import vertex_reco.plotting as vtx_plot
            vtx_plot.plot_vertices_z(tracks, vertices, truth)
            vtx_plot.plot_track_weights(vertices)

    if len(summaries) > 1:
        df = pd.DataFrame(summaries)
        logging.info("Mean over %d events:\n%s", len(df), df.drop(columns=["event"]).mean().to_string())
        if out_dir is not None:
            vtx_data.save_frame(df, out_dir / "summary.csv")


if __name__ == "__main__":
    main()
