import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1]))

import matplotlib
matplotlib.use("Agg")

import numpy as np
import pandas as pd

from vertex_reco.main import _resolve_event_paths, build_parser, main
from vertex_reco.plotting import plot_track_weights, plot_vertices_z
from vertex_reco.utils import generate_event
from vertex_reco.vertex import TrackAtVertex, Vertex


def test_resolve_event_paths_natural_order(tmp_path):
    for name in ("event_10.csv", "event_2.csv", "event_1.csv", "notes.txt"):
        (tmp_path / name).write_text("")
    names = [p.name for p in _resolve_event_paths(str(tmp_path), 5)]
    assert names == ["event_1.csv", "event_2.csv", "event_10.csv"]
    names = [p.name for p in _resolve_event_paths(str(tmp_path / "event_2.csv"), 2)]
    assert names == ["event_2.csv", "event_10.csv"]
    names = [p.name for p in _resolve_event_paths(str(tmp_path / "event_*.csv"), 1)]
    assert names == ["event_1.csv"]


def test_parser_defaults():
    args = build_parser().parse_args([])
    assert args.file == "tracks.csv"
    assert args.simulate == 0
    assert args.seed_finder is None
    assert not args.plot


def test_simulate_then_reload(tmp_path):
    out = tmp_path / "out"
    main([
        "--simulate", "1", "--seed", "4", "--n-vertices", "2", "--tracks-per-vertex", "6",
        "--config", str(tmp_path / "none.json"), "--out", str(out),
    ])
    vertices = pd.read_csv(out / "sim_0-vertices.csv")
    assert {"x", "y", "z", "t", "sigma_z", "chi2", "ndf", "n_tracks"} <= set(vertices.columns)
    assert (out / "sim_0-tracks-at-vertex.csv").is_file()
    assert (out / "sim_0-tracks.csv").is_file()

    again = tmp_path / "again"
    main([
        "-f", str(out / "sim_0-tracks.csv"), "--seed-finder", "density",
        "--config", str(tmp_path / "none.json"), "--out", str(again),
    ])
    assert (again / "sim_0-tracks-vertices.csv").is_file()


def test_plots_are_saved(tmp_path):
    rng = np.random.default_rng(2)
    tracks, _, truth = generate_event(rng, [-3.0, 3.0], 4)
    v = Vertex(np.array([0.0, 0.0, 3.0, 0.0]), np.diag([1e-4, 1e-4, 4e-4, 1.0]))
    v.tracks = [TrackAtVertex(i, t, t, weight=0.8, chi2_track=1.0) for i, t in enumerate(tracks[4:])]
    plot_vertices_z(tracks, [v], truth, show=False, save_path=str(tmp_path / "z.png"))
    plot_track_weights([v], show=False, save_path=str(tmp_path / "w.png"))
    assert (tmp_path / "z.png").is_file()
    assert (tmp_path / "w.png").is_file()
