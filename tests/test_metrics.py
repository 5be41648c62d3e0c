import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1]))

import numpy as np
import pytest

from vertex_reco.metrics import assignment_purity, compute_metrics, match_vertices


def test_match_vertices_window():
    match, dist = match_vertices([0.1, 5.0], [0.0, 4.0, 20.0], max_dz=1.5)
    assert match.tolist() == [0, 1, -1]
    assert dist[0] == pytest.approx(0.1)
    assert dist[2] == pytest.approx(15.0)


def test_match_vertices_empty_inputs():
    match, dist = match_vertices([], [1.0, 2.0])
    assert match.tolist() == [-1, -1]
    assert np.all(np.isinf(dist))
    match, _ = match_vertices([1.0], [])
    assert match.size == 0


def test_compute_metrics():
    m = compute_metrics([0.05, 10.0, 30.0], [0.0, 0.5, 10.1, 50.0], max_dz=1.0)
    assert m["n_truth"] == 4
    assert m["n_reco"] == 3
    assert m["n_matched"] == 3
    assert m["efficiency"] == pytest.approx(0.75)
    assert m["fake_rate"] == pytest.approx(1.0 / 3.0)
    # both 0.0 and 0.5 pick the reco vertex at 0.05
    assert m["n_merged"] == 1
    res = np.array([0.05 - 0.0, 0.05 - 0.5, 10.0 - 10.1])
    assert m["resolution_mean"] == pytest.approx(res.mean())
    assert m["resolution_std"] == pytest.approx(res.std())


def test_compute_metrics_without_reco():
    m = compute_metrics([], [1.0])
    assert m["efficiency"] == 0.0
    assert np.isnan(m["fake_rate"])
    assert np.isnan(m["resolution_mean"])


def test_assignment_purity():
    truth_ids = np.array([0, 0, 0, 1, 1])
    assert assignment_purity([[0, 1, 2], [3, 4]], truth_ids) == pytest.approx(1.0)
    assert assignment_purity([[0, 1, 3], []], truth_ids) == pytest.approx(2.0 / 3.0)
    assert assignment_purity([[]], truth_ids) is None
