import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1]))

import numpy as np
import pandas as pd
import pytest

from vertex_reco.data import (
    COV_COLUMNS,
    load_tracks,
    save_frame,
    tracks_at_vertex_to_frame,
    tracks_from_frame,
    tracks_to_frame,
    vertices_to_frame,
)
from vertex_reco.utils import generate_event, truth_columns
from vertex_reco.vertex import TrackAtVertex, Vertex


def test_track_table_csv_roundtrip(tmp_path):
    rng = np.random.default_rng(0)
    tracks, ids, truth = generate_event(rng, [-5.0, 5.0], 3)
    df = pd.concat([tracks_to_frame(tracks), truth_columns(truth, ids)], axis=1)
    assert len(COV_COLUMNS) == 21
    path = tmp_path / "event_1.csv"
    save_frame(df, path)

    loaded, loaded_truth, loaded_ids = load_tracks(path)
    assert len(loaded) == len(tracks)
    for a, b in zip(tracks, loaded):
        assert np.allclose(a.parameters, b.parameters)
        assert np.allclose(a.covariance, b.covariance)
        assert np.allclose(b.covariance, b.covariance.T)
        assert b.mass == pytest.approx(a.mass)
    assert np.array_equal(loaded_ids, ids)
    assert loaded_truth["n_tracks"].tolist() == [3, 3]
    assert np.allclose(loaded_truth["vz"], [-5.0, 5.0])


def test_track_table_without_truth(tmp_path):
    rng = np.random.default_rng(0)
    tracks, _, _ = generate_event(rng, [1.0], 2)
    path = tmp_path / "event.csv"
    save_frame(tracks_to_frame(tracks).drop(columns=["ref_x", "ref_y", "ref_z", "mass"]), path)
    loaded, truth, ids = load_tracks(path)
    assert truth is None and ids is None
    assert np.allclose(loaded[0].ref_point, 0.0)


def test_missing_columns_and_formats(tmp_path):
    with pytest.raises(KeyError, match="cov_00"):
        tracks_from_frame(pd.DataFrame({"d0": [0.0], "z0": [0.0], "phi": [0.0],
                                        "theta": [1.0], "qop": [1.0], "t": [0.0]}))
    with pytest.raises(ValueError):
        save_frame(pd.DataFrame(), tmp_path / "x.txt")
    with pytest.raises(ValueError):
        load_tracks(tmp_path / "x.txt")


def test_vertex_frames():
    rng = np.random.default_rng(0)
    tracks, _, _ = generate_event(rng, [2.0], 2)
    v = Vertex(np.array([0.0, 0.0, 2.0, 0.0]), np.diag([1e-4, 1e-4, 4e-4, 1.0]), (1.5, 1.0))
    v.tracks = [TrackAtVertex(i, t, t, weight=0.9, chi2_track=0.5) for i, t in enumerate(tracks)]
    vdf = vertices_to_frame([v])
    assert vdf.loc[0, "sigma_z"] == pytest.approx(0.02)
    assert vdf.loc[0, "n_tracks"] == 2
    tdf = tracks_at_vertex_to_frame([v])
    assert tdf["track"].tolist() == [0, 1]
    assert tdf["weight"].tolist() == [0.9, 0.9]
    assert list(tracks_at_vertex_to_frame([]).columns) == [
        "vertex", "track", "weight", "chi2_track", "vertex_compatibility",
    ]
