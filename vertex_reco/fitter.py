r"""
Adaptive multi-vertex fitter.

Vertices that share tracks are fitted together. Every track carries one
weight per vertex it is linked to; the weights come from a deterministic
annealing schedule and compete across vertices:

.. math::

    w_{ik} = \frac{e^{-\chi^2_{ik}/2T}}
                  {e^{-\chi^2_c/2T} + \sum_j e^{-\chi^2_{ij}/2T}},

where :math:`\chi^2_{ik}` is the compatibility of track :math:`i` with
vertex :math:`k`, the sum runs over all live vertices the track is linked
to, and :math:`\chi^2_c` is the cutoff. Each vertex is then re-estimated by
weighted least squares with its constraint as a Gaussian prior:

.. math::

    A &= C_p^{-1} + \sum_i w_i\, J_i^\top G_i J_i, \\
    \hat{\vec v} &= A^{-1}\Big(C_p^{-1}\vec p + \sum_i w_i\, J_i^\top G_i\,(J_i \vec L - \vec r_{0,i})\Big),
    \qquad \operatorname{Cov}(\hat{\vec v}) = A^{-1},

with :math:`\vec r_{0,i}` and :math:`J_i` the impact residual and its
Jacobian at the linearization point :math:`\vec L`, and :math:`G_i` the
inverse residual covariance.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Protocol, Sequence

import numpy as np

from vertex_reco.context import GeometryContext, MagneticFieldContext
from vertex_reco.errors import EmptyInputError, VertexFitError
from vertex_reco.impact_point import ImpactPointEstimator
from vertex_reco.linalg import mahalanobis, safe_inverse
from vertex_reco.linearizer import HelicalTrackLinearizer, LinearizedTrack
from vertex_reco.track_params import BoundTrackParameters
from vertex_reco.vertex import FitterState, TrackAtVertex, Vertex, VertexingOptions

logger = logging.getLogger(__name__)


class TrackLinearizer(Protocol):
    def linearize(
        self,
        params: BoundTrackParameters,
        lin_point: np.ndarray,
        gctx: GeometryContext,
        mctx: MagneticFieldContext,
    ) -> LinearizedTrack:
        ...


@dataclass(slots=True)
class AnnealingState:
    index: int = 0
    equilibrium_reached: bool = False


@dataclass(slots=True)
class AnnealingTool:
    r"""
    Deterministic annealing over a fixed temperature ladder.

    Attributes
    ----------
    temperatures : list of float
        Visited in order; equilibrium is reached at the last one.
    cutoff_chi2 : float
        :math:`\chi^2_c` of the competing "outlier" hypothesis.
    """
    temperatures: List[float] = field(default_factory=lambda: [8.0, 4.0, 2.0, 1.4142136, 1.2247449, 1.0])
    cutoff_chi2: float = 9.0

    def anneal(self, state: AnnealingState) -> None:
        if state.index < len(self.temperatures) - 1:
            state.index += 1
        else:
            state.equilibrium_reached = True

    def get_weight(self, state: AnnealingState, chi2: float, all_chi2: Iterable[float]) -> float:
        """Weight of a track at one vertex given its compatibilities at all linked vertices."""
        t = self.temperatures[state.index]
        num = np.exp(-0.5 * chi2 / t)
        den = np.exp(-0.5 * self.cutoff_chi2 / t) + sum(np.exp(-0.5 * c / t) for c in all_chi2)
        return float(num / den)


@dataclass(slots=True)
class FitterConfig:
    r"""
    Parameters of :class:`AdaptiveMultiVertexFitter`.

    Attributes
    ----------
    max_iterations : int
        Hard cap on annealing/reweighting iterations per fit.
    max_dist_to_lin_point : float
        Relinearize tracks once the vertex moved further (mm, 3D).
    max_relative_shift : float
        Convergence threshold on :math:`\Delta^\top \mathrm{Cov}^{-1}\Delta`.
    min_weight : float
        Tracks with a smaller weight do not enter the update.
    loose_constr_value : float
        Diagonal of the prior covariance when the options switch the
        constraint off.
    use_time : bool
        Fit :math:`(x,y,z,t)` with a time residual; otherwise :math:`(x,y,z)`.
    temperatures, cutoff_chi2
        Annealing schedule, see :class:`AnnealingTool`.
    """
    max_iterations: int = 30
    max_dist_to_lin_point: float = 0.5
    max_relative_shift: float = 0.01
    min_weight: float = 1e-4
    loose_constr_value: float = 1e8
    use_time: bool = False
    temperatures: List[float] = field(default_factory=lambda: [8.0, 4.0, 2.0, 1.4142136, 1.2247449, 1.0])
    cutoff_chi2: float = 9.0


class AdaptiveMultiVertexFitter:
    r"""
    Joint annealed fit of all vertices in :attr:`FitterState.vertex_collection`.

    Parameters
    ----------
    config : FitterConfig, optional
    ip_estimator : ImpactPointEstimator, optional
        Provides the per-iteration vertex compatibilities.
    """

    def __init__(self, config: Optional[FitterConfig] = None, ip_estimator: Optional[ImpactPointEstimator] = None) -> None:
        self.config = config if config is not None else FitterConfig()
        self.ip_estimator = ip_estimator if ip_estimator is not None else ImpactPointEstimator()
        self.annealing = AnnealingTool(list(self.config.temperatures), self.config.cutoff_chi2)

    # ------------------------------------------------------------------ API

    def add_vertex_to_fit(
        self,
        state: FitterState,
        slot: int,
        linearizer: TrackLinearizer,
        options: VertexingOptions,
    ) -> None:
        r"""
        Add a new candidate to the joint fit and refit everything it touches.

        The collection becomes the connected component of ``slot`` in the
        graph of vertices sharing at least one track.

        Raises
        ------
        EmptyInputError
            If the candidate has no linked tracks.
        VertexFitError
            If a vertex update fails.
        """
        info = state.vtx_info[slot]
        if not info.track_links:
            raise EmptyInputError(f"vertex in slot {slot} has no tracks to fit")

        state.vertex_collection = state.connected_vertices(slot)
        for v in state.vertex_collection:
            state.vtx_info[v].old_position = state.vertices[v].full_position.copy()
        logger.debug("Fitting collection of %d vertices for new slot %d", len(state.vertex_collection), slot)
        self.fit(state, linearizer, options)

    def fit(self, state: FitterState, linearizer: TrackLinearizer, options: VertexingOptions) -> None:
        r"""
        Run the annealed reweighting loop on the current collection.

        Stops after :attr:`FitterConfig.max_iterations` iterations, or once the
        annealing reached equilibrium *and* no vertex moved by more than
        :attr:`FitterConfig.max_relative_shift` in its own covariance metric.
        """
        cfg = self.config
        collection = [v for v in state.vertex_collection if state.is_alive(v)]
        if not collection:
            return

        anneal_state = AnnealingState()
        n_iter = 0
        small_shift = False
        while n_iter < cfg.max_iterations and (not anneal_state.equilibrium_reached or not small_shift):
            for v in collection:
                info = state.vtx_info[v]
                vtx = state.vertices[v]
                info.old_position = vtx.full_position.copy()
                if np.linalg.norm(info.lin_point[:3] - info.old_position[:3]) > cfg.max_dist_to_lin_point:
                    info.lin_point = info.old_position.copy()
                    info.relinearize = True
                self._set_compatibilities(state, v, linearizer, options)

            for v in collection:
                self._set_weights(state, v, anneal_state)
                self._update_vertex(state, v, options)
                state.vtx_info[v].relinearize = False

            self.annealing.anneal(anneal_state)
            small_shift = self._is_small_shift(state, collection)
            n_iter += 1

        logger.debug("Multi-vertex fit finished after %d iterations", n_iter)
        for v in collection:
            self._finalize(state, v)

    # ------------------------------------------------------------ internals

    def _set_compatibilities(
        self, state: FitterState, slot: int, linearizer: TrackLinearizer, options: VertexingOptions
    ) -> None:
        info = state.vtx_info[slot]
        position = state.vertices[slot].full_position
        for trk in info.track_links:
            tav = state.tracks_at_vertices[(trk, slot)]
            if not tav.is_linearized or info.relinearize or tav.linearized_state is None:
                tav.linearized_state = linearizer.linearize(
                    tav.original_params, info.lin_point, options.geo_context, options.mag_context
                )
                tav.is_linearized = True
            tav.vertex_compatibility = self.ip_estimator.get_vertex_compatibility(
                tav.linearized_state.params_at_pca, position, options.mag_context, self.config.use_time
            )

    def _set_weights(self, state: FitterState, slot: int, anneal_state: AnnealingState) -> None:
        for trk in state.vtx_info[slot].track_links:
            tav = state.tracks_at_vertices[(trk, slot)]
            all_chi2 = [
                state.tracks_at_vertices[(trk, other)].vertex_compatibility
                for other in state.vertices_of_track(trk)
            ]
            if not all_chi2:
                all_chi2 = [tav.vertex_compatibility]
            tav.weight = self.annealing.get_weight(anneal_state, tav.vertex_compatibility, all_chi2)

    def _active_tracks(self, state: FitterState, slot: int) -> Sequence[TrackAtVertex]:
        return [
            tav
            for tav in (state.tracks_at_vertices[(trk, slot)] for trk in state.vtx_info[slot].track_links)
            if tav.weight > self.config.min_weight and tav.linearized_state is not None
        ]

    def _update_vertex(self, state: FitterState, slot: int, options: VertexingOptions) -> None:
        use_time = self.config.use_time
        dims = 4 if use_time else 3
        vtx = state.vertices[slot]
        constraint = state.vtx_info[slot].constraint
        prior_pos = constraint.full_position[:dims]
        if options.use_constraint_in_fit:
            prior_cov = constraint.full_covariance[:dims, :dims]
        else:
            # keeps under-determined candidates invertible
            prior_cov = np.eye(dims) * self.config.loose_constr_value

        A = np.zeros((dims, dims), dtype=np.float64)
        b = np.zeros(dims, dtype=np.float64)
        if np.any(prior_cov != 0.0):
            prior_w = safe_inverse(prior_cov)
            if prior_w is None:
                logger.warning("Singular constraint covariance for vertex slot %d; fitting without prior", slot)
            else:
                A += prior_w
                b += prior_w @ prior_pos

        active = self._active_tracks(state, slot)
        for tav in active:
            lin = tav.linearized_state
            J = lin.residual_jacobian(use_time)
            G = lin.weight_matrix(use_time)
            r0 = lin.residual(lin.lin_point, use_time)
            JtG = tav.weight * (J.T @ G)
            A += JtG @ J
            b += JtG @ (J @ lin.lin_point[:dims] - r0)

        if not np.any(A != 0.0):
            # nothing constrains the vertex: fall back to the constraint
            vtx.full_position = constraint.full_position.copy()
            vtx.full_covariance = constraint.full_covariance.copy()
            return

        cov = safe_inverse(A)
        if cov is None:
            raise VertexFitError(f"singular normal matrix for vertex slot {slot} with {len(active)} tracks")
        pos = cov @ b
        if not np.all(np.isfinite(pos)):
            raise VertexFitError(f"non-finite vertex position for slot {slot}")

        full_pos = constraint.full_position.copy()
        full_cov = constraint.full_covariance.copy()
        full_pos[:dims] = pos
        full_cov[:dims, :] = 0.0
        full_cov[:, :dims] = 0.0
        full_cov[:dims, :dims] = 0.5 * (cov + cov.T)
        vtx.full_position = full_pos
        vtx.full_covariance = full_cov

    def _is_small_shift(self, state: FitterState, collection: Sequence[int]) -> bool:
        dims = 4 if self.config.use_time else 3
        for v in collection:
            vtx = state.vertices[v]
            delta = vtx.full_position[:dims] - state.vtx_info[v].old_position[:dims]
            cov = vtx.full_covariance[:dims, :dims]
            if safe_inverse(cov) is None:
                return False
            if mahalanobis(delta, cov) > self.config.max_relative_shift:
                return False
        return True

    def _finalize(self, state: FitterState, slot: int) -> None:
        use_time = self.config.use_time
        vtx = state.vertices[slot]
        chi2_sum = 0.0
        w_sum = 0.0
        for trk in state.vtx_info[slot].track_links:
            tav = state.tracks_at_vertices[(trk, slot)]
            if tav.linearized_state is None:
                continue
            tav.chi2_track = tav.linearized_state.chi2(vtx.full_position, use_time)
            chi2_sum += tav.weight * tav.chi2_track
            w_sum += tav.weight
        ndf = (3.0 * w_sum - 4.0) if use_time else (2.0 * w_sum - 3.0)
        vtx.fit_quality = (float(chi2_sum), float(ndf))


def fit_single_vertex(
    tracks: Sequence[BoundTrackParameters],
    options: VertexingOptions,
    fitter: Optional[AdaptiveMultiVertexFitter] = None,
    linearizer: Optional[TrackLinearizer] = None,
) -> Vertex:
    r"""
    Convenience wrapper: fit one vertex to ``tracks`` starting at the constraint.

    With ``options.use_constraint_in_fit`` off the constraint only sets the
    starting point; the prior is replaced by
    :attr:`FitterConfig.loose_constr_value`.

    Returns
    -------
    Vertex
        Fitted vertex with ``tracks`` filled with all linked
        :class:`TrackAtVertex` records.
    """
    if not tracks:
        raise EmptyInputError("no tracks to fit")
    fitter = fitter if fitter is not None else AdaptiveMultiVertexFitter()
    linearizer = linearizer if linearizer is not None else HelicalTrackLinearizer()
    state = FitterState()
    slot = state.add_vertex(options.constraint.copy())
    info = state.reset_vertex_info(slot, options.constraint)
    for i, params in enumerate(tracks):
        state.link_track(i, slot, TrackAtVertex(track_index=i, track=params, original_params=params))
    state.add_vertex_to_multimap(slot)
    fitter.add_vertex_to_fit(state, slot, linearizer, options)
    vtx = state.vertices[slot]
    vtx.tracks = [state.tracks_at_vertices[(trk, slot)] for trk in info.track_links]
    return vtx
