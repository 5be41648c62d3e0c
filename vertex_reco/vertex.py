from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, DefaultDict, Dict, List, Optional, Set, Tuple

import networkx as nx
import numpy as np

from vertex_reco.context import GeometryContext, MagneticFieldContext
from vertex_reco.linearizer import LinearizedTrack
from vertex_reco.track_params import BoundTrackParameters


@dataclass(slots=True, eq=False)
class Vertex:
    r"""
    A 4D vertex estimate.

    Attributes
    ----------
    full_position : ndarray, shape (4,)
        :math:`(x, y, z, t)` in mm and ns.
    full_covariance : ndarray, shape (4, 4)
    fit_quality : tuple of float
        :math:`(\chi^2, n_\mathrm{dof})`.
    tracks : list of TrackAtVertex
        Filled only on the vertices returned by the finder.
    """
    full_position: np.ndarray
    full_covariance: np.ndarray = field(default_factory=lambda: np.zeros((4, 4)))
    fit_quality: Tuple[float, float] = (0.0, 0.0)
    tracks: List["TrackAtVertex"] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.full_position = np.asarray(self.full_position, dtype=np.float64).reshape(4).copy()
        self.full_covariance = np.asarray(self.full_covariance, dtype=np.float64).reshape(4, 4).copy()

    @property
    def position(self) -> np.ndarray:
        return self.full_position[:3]

    @property
    def time(self) -> float:
        return float(self.full_position[3])

    @property
    def covariance(self) -> np.ndarray:
        return self.full_covariance[:3, :3]

    def copy(self) -> "Vertex":
        """Copy of position, covariance and fit quality (tracks are not copied)."""
        return Vertex(self.full_position, self.full_covariance, tuple(self.fit_quality))


@dataclass(slots=True, eq=False)
class TrackAtVertex:
    r"""
    State of one track at one vertex.

    Attributes
    ----------
    track_index : int
        Index of the track in the finder's input sequence.
    track : Any
        The caller's track handle, untouched.
    original_params : BoundTrackParameters
    linearized_state : LinearizedTrack or None
    weight : float
        Annealed assignment probability in :math:`[0, 1]`.
    chi2_track : float
        :math:`\chi^2` of the track at the fitted vertex position.
    vertex_compatibility : float
        :math:`\chi^2` compatibility evaluated during the fit iterations.
    is_linearized : bool
        ``False`` forces relinearization on the next fit.
    """
    track_index: int
    track: Any
    original_params: BoundTrackParameters
    linearized_state: Optional[LinearizedTrack] = None
    weight: float = 1.0
    chi2_track: float = 0.0
    vertex_compatibility: float = 0.0
    is_linearized: bool = False


@dataclass(slots=True)
class VertexInfo:
    r"""
    Per-vertex fit bookkeeping.

    Attributes
    ----------
    constraint : Vertex
        Position prior the vertex was created with.
    lin_point : ndarray, shape (4,)
        Position at the last linearization.
    old_position : ndarray, shape (4,)
        Position at the start of the current fit iteration.
    seed_position : ndarray, shape (4,)
    track_links : list of int
        Track indices linked to the vertex, in insertion order.
    relinearize : bool
        Set by the fitter when the vertex moved away from ``lin_point``.
    """
    constraint: Vertex
    lin_point: np.ndarray
    old_position: np.ndarray
    seed_position: np.ndarray
    track_links: List[int] = field(default_factory=list)
    relinearize: bool = True

    @classmethod
    def create(cls, constraint: Vertex, position: np.ndarray) -> "VertexInfo":
        position = np.asarray(position, dtype=np.float64).reshape(4)
        return cls(
            constraint=constraint.copy(),
            lin_point=position.copy(),
            old_position=position.copy(),
            seed_position=position.copy(),
        )


@dataclass(slots=True)
class VertexingOptions:
    r"""
    Per-call options of the finder and fitter.

    Attributes
    ----------
    geo_context, mag_context
        Forwarded to the collaborators.
    constraint : Vertex
        Initial position constraint (e.g. the beam spot).
    use_constraint_in_fit : bool
        Use the constraint as a Gaussian prior in the vertex fit.
    """
    geo_context: GeometryContext
    mag_context: MagneticFieldContext
    constraint: Vertex
    use_constraint_in_fit: bool = True


class FitterState:
    r"""
    Session state shared by the multi-vertex finder and fitter.

    Vertices live in an append-only arena addressed by a stable *slot*
    index. Removing a vertex tombstones its slot; its :class:`VertexInfo`
    and :class:`TrackAtVertex` records stay in place so that keys remain
    valid, but it disappears from the track multimap and from the fit
    collection.

    Invariants
    ----------
    - every ``(track, slot)`` key of :attr:`tracks_at_vertices` has
      ``slot in vtx_info``;
    - ``track in vtx_info[slot].track_links`` iff ``(track, slot)`` is a key
      of :attr:`tracks_at_vertices`;
    - :attr:`vertex_collection` only holds slots present in :attr:`vtx_info`.
    """

    __slots__ = ("vertices", "removed", "vtx_info", "tracks_at_vertices", "vertex_collection", "track_to_vertices")

    def __init__(self) -> None:
        self.vertices: List[Vertex] = []
        self.removed: Set[int] = set()
        self.vtx_info: Dict[int, VertexInfo] = {}
        self.tracks_at_vertices: Dict[Tuple[int, int], TrackAtVertex] = {}
        self.vertex_collection: List[int] = []
        self.track_to_vertices: DefaultDict[int, List[int]] = defaultdict(list)

    def add_vertex(self, vertex: Vertex) -> int:
        """Append ``vertex`` to the arena and return its slot."""
        self.vertices.append(vertex)
        return len(self.vertices) - 1

    def is_alive(self, slot: int) -> bool:
        return 0 <= slot < len(self.vertices) and slot not in self.removed

    def link_track(self, track_index: int, slot: int, record: TrackAtVertex) -> None:
        """Create the ``(track, slot)`` record and append the track to the vertex links."""
        self.tracks_at_vertices[(track_index, slot)] = record
        self.vtx_info[slot].track_links.append(track_index)

    def reset_vertex_info(self, slot: int, constraint: Vertex) -> VertexInfo:
        r"""
        (Re)create the bookkeeping of ``slot`` at the vertex's current position.

        Any previous links of the slot are dropped together with their
        :class:`TrackAtVertex` records.
        """
        old = self.vtx_info.get(slot)
        if old is not None:
            for trk in old.track_links:
                self.tracks_at_vertices.pop((trk, slot), None)
        info = VertexInfo.create(constraint, self.vertices[slot].full_position)
        self.vtx_info[slot] = info
        return info

    def add_vertex_to_multimap(self, slot: int) -> None:
        for trk in self.vtx_info[slot].track_links:
            self.track_to_vertices[trk].append(slot)

    def remove_vertex_from_multimap(self, slot: int) -> None:
        for trk in self.vtx_info[slot].track_links:
            linked = self.track_to_vertices.get(trk)
            if not linked:
                continue
            linked[:] = [v for v in linked if v != slot]
            if not linked:
                del self.track_to_vertices[trk]

    def remove_vertex_from_collection(self, slot: int) -> None:
        self.vertex_collection = [v for v in self.vertex_collection if v != slot]

    def tombstone(self, slot: int) -> None:
        self.removed.add(slot)

    def vertices_of_track(self, track_index: int) -> List[int]:
        """Live vertex slots the track is currently linked to."""
        return [v for v in self.track_to_vertices.get(track_index, ()) if v not in self.removed]

    def sharing_graph(self) -> nx.Graph:
        r"""
        Graph of live vertices with an edge wherever two vertices share a track.
        """
        g = nx.Graph()
        g.add_nodes_from(v for v in self.vtx_info if v not in self.removed)
        for slots in self.track_to_vertices.values():
            live = [v for v in slots if v not in self.removed]
            g.add_edges_from(zip(live[:-1], live[1:]))
        return g

    def connected_vertices(self, slot: int) -> List[int]:
        """All live slots reachable from ``slot`` through shared tracks (including ``slot``)."""
        g = self.sharing_graph()
        if slot not in g:
            return [slot]
        return sorted(nx.node_connected_component(g, slot))
