import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1]))

import numpy as np
import pytest

from vertex_reco.config import OptionsConfig
from vertex_reco.errors import EmptyInputError
from vertex_reco.fitter import (
    AdaptiveMultiVertexFitter,
    AnnealingState,
    AnnealingTool,
    FitterConfig,
    fit_single_vertex,
)
from vertex_reco.linearizer import HelicalTrackLinearizer
from vertex_reco.utils import make_track
from vertex_reco.vertex import FitterState, TrackAtVertex, Vertex


def _tracks_from(vertex, n=5, qop=0.5):
    phis = np.linspace(-np.pi, np.pi, n, endpoint=False) + 0.1
    thetas = np.linspace(0.7, 2.4, n)
    return [make_track(vertex, phi, theta, qop if i % 2 else -qop) for i, (phi, theta) in enumerate(zip(phis, thetas))]


def test_annealing_schedule_reaches_equilibrium():
    tool = AnnealingTool()
    state = AnnealingState()
    for _ in range(len(tool.temperatures) - 1):
        tool.anneal(state)
        assert not state.equilibrium_reached
    assert tool.temperatures[state.index] == 1.0
    tool.anneal(state)
    assert state.equilibrium_reached
    assert state.index == len(tool.temperatures) - 1


def test_annealing_weights():
    tool = AnnealingTool()
    state = AnnealingState(index=len(tool.temperatures) - 1)
    assert tool.get_weight(state, 0.0, [0.0]) == pytest.approx(1.0 / (np.exp(-4.5) + 1.0))
    # two equally good vertices share the track
    assert tool.get_weight(state, 0.0, [0.0, 0.0]) == pytest.approx(1.0 / (np.exp(-4.5) + 2.0))
    # far beyond the cutoff the weight vanishes
    assert tool.get_weight(state, 100.0, [100.0]) < 1e-9
    # higher temperature flattens the weights
    hot = AnnealingState(index=0)
    assert tool.get_weight(hot, 16.0, [16.0]) > tool.get_weight(state, 16.0, [16.0])


def test_fit_single_vertex_recovers_position():
    truth = np.array([0.05, -0.02, 3.0, 0.0])
    tracks = _tracks_from(truth)
    opts = OptionsConfig(constraint_position=[0.0, 0.0, 3.0, 0.0]).make_options()
    vtx = fit_single_vertex(tracks, opts)

    assert vtx.full_position[0] == pytest.approx(0.05, abs=0.01)
    assert vtx.full_position[1] == pytest.approx(-0.02, abs=0.01)
    assert vtx.full_position[2] == pytest.approx(3.0, abs=0.01)
    assert len(vtx.tracks) == 5
    for tav in vtx.tracks:
        assert tav.weight > 0.9
        assert tav.chi2_track < 1.0
    chi2, ndf = vtx.fit_quality
    assert chi2 >= 0.0
    assert ndf == pytest.approx(2.0 * sum(t.weight for t in vtx.tracks) - 3.0)
    cov = vtx.full_covariance
    assert np.allclose(cov, cov.T)
    assert np.all(np.diag(cov)[:3] > 0.0)


def test_fit_single_vertex_honours_constraint_switch():
    tracks = _tracks_from(np.array([0.05, 0.0, 0.0, 0.0]))
    sigma = [0.01, 0.01, 100.0, 10.0]
    constrained = fit_single_vertex(tracks, OptionsConfig(constraint_sigma=sigma).make_options())
    free = fit_single_vertex(
        tracks, OptionsConfig(constraint_sigma=sigma, use_constraint_in_fit=False).make_options()
    )
    # the tight beam spot pulls x towards the origin
    assert constrained.full_position[0] < 0.03
    assert free.full_position[0] == pytest.approx(0.05, abs=0.005)
    assert free.full_covariance[0, 0] > constrained.full_covariance[0, 0]


def test_fit_single_vertex_with_time():
    truth = np.array([0.0, 0.0, -2.0, 1.5])
    tracks = _tracks_from(truth, n=6)
    opts = OptionsConfig(constraint_position=[0.0, 0.0, -2.0, 1.48]).make_options()
    fitter = AdaptiveMultiVertexFitter(FitterConfig(use_time=True))
    vtx = fit_single_vertex(tracks, opts, fitter=fitter)
    assert vtx.full_position[2] == pytest.approx(-2.0, abs=0.01)
    assert vtx.time == pytest.approx(1.5, abs=0.05)
    assert vtx.fit_quality[1] == pytest.approx(3.0 * sum(t.weight for t in vtx.tracks) - 4.0)


def test_fit_single_vertex_needs_tracks():
    with pytest.raises(EmptyInputError):
        fit_single_vertex([], OptionsConfig().make_options())


def test_add_vertex_to_fit_rejects_trackless_vertex():
    state = FitterState()
    slot = state.add_vertex(Vertex(np.zeros(4)))
    state.reset_vertex_info(slot, Vertex(np.zeros(4), np.eye(4)))
    with pytest.raises(EmptyInputError):
        AdaptiveMultiVertexFitter().add_vertex_to_fit(
            state, slot, HelicalTrackLinearizer(), OptionsConfig().make_options()
        )


def test_shared_track_splits_weight_between_vertices():
    opts = OptionsConfig().make_options()
    constraint = opts.constraint
    t_a = _tracks_from([0.0, 0.0, 1.0, 0.0], n=4)
    t_b = _tracks_from([0.0, 0.0, 1.6, 0.0], n=4)
    shared = make_track([0.0, 0.0, 1.3, 0.0], 0.5, 1.5, 0.5)
    tracks = t_a + t_b + [shared]
    shared_idx = len(tracks) - 1

    state = FitterState()
    fitter = AdaptiveMultiVertexFitter()
    lin = HelicalTrackLinearizer()
    for z, members in ((1.0, range(0, 4)), (1.6, range(4, 8))):
        slot = state.add_vertex(Vertex(np.array([0.0, 0.0, z, 0.0])))
        seed_constraint = constraint.copy()
        seed_constraint.full_position[2] = z
        state.reset_vertex_info(slot, seed_constraint)
        for i in [*members, shared_idx]:
            state.link_track(i, slot, TrackAtVertex(i, tracks[i], tracks[i]))
        state.add_vertex_to_multimap(slot)
    fitter.add_vertex_to_fit(state, 1, lin, opts)

    assert state.vertex_collection == [0, 1]
    w0 = state.tracks_at_vertices[(shared_idx, 0)].weight
    w1 = state.tracks_at_vertices[(shared_idx, 1)].weight
    assert w0 + w1 <= 1.0 + 1e-12
    assert state.vertices[0].full_position[2] == pytest.approx(1.0, abs=0.05)
    assert state.vertices[1].full_position[2] == pytest.approx(1.6, abs=0.05)
