import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1]))

import numpy as np

from vertex_reco.utils import make_track
from vertex_reco.vertex import FitterState, TrackAtVertex, Vertex


def _state_with(links):
    """FitterState with one vertex per entry of ``links`` (list of track indices)."""
    state = FitterState()
    n_tracks = max((max(l) for l in links if l), default=-1) + 1
    tracks = [make_track([0.0, 0.0, float(i), 0.0], 0.1 * i, 1.0, 0.5) for i in range(n_tracks)]
    constraint = Vertex(np.zeros(4), np.eye(4))
    for trks in links:
        slot = state.add_vertex(Vertex(np.zeros(4)))
        state.reset_vertex_info(slot, constraint)
        for t in trks:
            state.link_track(t, slot, TrackAtVertex(t, tracks[t], tracks[t]))
        state.add_vertex_to_multimap(slot)
    return state


def test_vertex_copy_is_independent():
    v = Vertex(np.array([1.0, 2.0, 3.0, 4.0]), np.eye(4), (1.0, 2.0))
    c = v.copy()
    c.full_position[0] = 9.0
    c.full_covariance[0, 0] = 9.0
    assert v.full_position[0] == 1.0
    assert v.full_covariance[0, 0] == 1.0
    assert c.fit_quality == (1.0, 2.0)
    assert np.allclose(v.position, [1.0, 2.0, 3.0])
    assert v.time == 4.0


def test_link_track_and_multimap():
    state = _state_with([[0, 1], [1, 2]])
    assert state.vtx_info[0].track_links == [0, 1]
    assert set(state.tracks_at_vertices) == {(0, 0), (1, 0), (1, 1), (2, 1)}
    assert state.vertices_of_track(1) == [0, 1]
    assert state.vertices_of_track(5) == []


def test_reset_vertex_info_drops_old_records():
    state = _state_with([[0, 1]])
    state.remove_vertex_from_multimap(0)
    state.reset_vertex_info(0, Vertex(np.zeros(4)))
    assert state.vtx_info[0].track_links == []
    assert (0, 0) not in state.tracks_at_vertices
    assert 0 not in state.track_to_vertices


def test_connected_vertices_follow_shared_tracks():
    state = _state_with([[0, 1], [1, 2], [3], [2, 4]])
    assert state.connected_vertices(0) == [0, 1, 3]
    assert state.connected_vertices(2) == [2]


def test_tombstoned_vertex_leaves_graph():
    state = _state_with([[0, 1], [1, 2], [2, 3]])
    state.remove_vertex_from_multimap(1)
    state.tombstone(1)
    assert not state.is_alive(1)
    assert state.is_alive(0)
    assert state.connected_vertices(0) == [0]
    assert state.vertices_of_track(1) == [0]
    # records of the removed slot stay addressable
    assert (1, 1) in state.tracks_at_vertices
