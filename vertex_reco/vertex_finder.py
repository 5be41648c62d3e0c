r"""
Iterative adaptive multi-vertex finding.

The finder repeatedly seeds a vertex candidate from the tracks that are not
yet claimed (the *seed pool*), attaches compatible tracks, adds the
candidate to a joint annealed fit of all vertices sharing tracks with it,
and then either keeps the candidate or rolls it back. Each iteration
removes at least one track from the seed pool, so the loop ends when the
pool is exhausted, when nothing more can be removed, when the seed finder
returns the constraint itself, or after :attr:`FinderConfig.max_iterations`.

Per iteration::

    SEEDING -> ASSOCIATING -> FITTING -> EVALUATING -> PRUNING -> ACCEPT | REJECT
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Protocol, Sequence, Tuple

import numpy as np

from vertex_reco.context import GeometryContext, MagneticFieldContext
from vertex_reco.errors import EmptyInputError, SeedFinderError
from vertex_reco.fitter import TrackLinearizer
from vertex_reco.impact_point import ImpactParametersAndSigma
from vertex_reco.linalg import safe_inverse
from vertex_reco.seed_finder import SeedFinder, SeedFinderState
from vertex_reco.track_params import BoundTrackParameters, identity_extractor
from vertex_reco.vertex import FitterState, TrackAtVertex, Vertex, VertexingOptions

logger = logging.getLogger(__name__)


class VertexFitter(Protocol):
    def add_vertex_to_fit(
        self, state: FitterState, slot: int, linearizer: TrackLinearizer, options: VertexingOptions
    ) -> None:
        ...

    def fit(self, state: FitterState, linearizer: TrackLinearizer, options: VertexingOptions) -> None:
        ...


class ImpactParameterEstimator(Protocol):
    def get_impact_parameters(
        self,
        params: BoundTrackParameters,
        vertex: Vertex,
        gctx: GeometryContext,
        mctx: MagneticFieldContext,
        use_time: bool = False,
    ) -> ImpactParametersAndSigma:
        ...


@dataclass(slots=True)
class FinderConfig:
    r"""
    Thresholds and switches of :class:`AdaptiveMultiVertexFinder`.

    Attributes
    ----------
    tracks_max_z_interval : float
        Tracks further than this in :math:`z` (mm) from a candidate are never
        attached to it.
    tracks_max_significance : float
        Maximum impact-parameter significance for attaching a track.
    max_vertex_chi2 : float
        Compatibility threshold of a track with a fitted vertex.
    do_real_multi_vertex : bool
        Associate candidates with *all* input tracks, not only the seed pool.
    use_fast_compatibility : bool
        Judge compatibility on ``vertex_compatibility`` alone instead of
        weight and ``chi2_track``.
    max_merge_vertex_significance : float
        Candidates closer than this to an existing vertex are merged away.
    min_weight : float
        Weight threshold of the precise compatibility mode.
    max_iterations : int
        Hard cap on finder iterations.
    add_single_track_vertices : bool
        Accept one-track vertices when the fit uses the constraint.
    do_3d_splitting : bool
        Merge test on the full 3D (4D with time) separation instead of :math:`z`.
    maximum_vertex_contamination : float
        Upper bound on :math:`\sum w(1-w)/\sum w^2`.
    loose_constr_value : float
        Diagonal of the constraint covariance when the fit ignores the constraint.
    use_vertex_cov_for_ip_estimation : bool
        Keep the candidate covariance in the association IP significance.
    use_time : bool
        Include the time residual in association and merge tests.
    use_seed_constraint : bool
        Adopt the seed covariance as the new constraint.
    default_constr_fit_quality : tuple of float
        Fit quality attached to a loose constraint.
    """
    tracks_max_z_interval: float = 3.0
    tracks_max_significance: float = 5.0
    max_vertex_chi2: float = 18.42
    do_real_multi_vertex: bool = True
    use_fast_compatibility: bool = True
    max_merge_vertex_significance: float = 3.0
    min_weight: float = 1e-4
    max_iterations: int = 100
    add_single_track_vertices: bool = False
    do_3d_splitting: bool = False
    maximum_vertex_contamination: float = 0.5
    loose_constr_value: float = 1e8
    use_vertex_cov_for_ip_estimation: bool = False
    use_time: bool = False
    use_seed_constraint: bool = True
    default_constr_fit_quality: Tuple[float, float] = (0.0, -3.0)


class AdaptiveMultiVertexFinder:
    r"""
    Find all vertices of an event with an iterative seed-fit-evaluate loop.

    Parameters
    ----------
    config : FinderConfig
    fitter : VertexFitter
        Joint multi-vertex fitter (e.g.
        :class:`~vertex_reco.fitter.AdaptiveMultiVertexFitter`).
    seed_finder : SeedFinder
        Produces one new seed per call; the last returned vertex is used.
    ip_estimator : ImpactParameterEstimator
        Impact parameters for track association.
    linearizer : TrackLinearizer
        Forwarded to the fitter.
    extract_parameters : callable, optional
        Maps a caller's track handle to :class:`BoundTrackParameters`.
        Defaults to :func:`~vertex_reco.track_params.identity_extractor`.

    Notes
    -----
    Tracks are addressed internally by their index in the input sequence and
    vertices by their slot in the :class:`~vertex_reco.vertex.FitterState`
    arena. The finder keeps the list of *candidate* slots; a rejected
    candidate is popped from that list and tombstoned in the arena.
    """

    def __init__(
        self,
        config: FinderConfig,
        fitter: VertexFitter,
        seed_finder: SeedFinder,
        ip_estimator: ImpactParameterEstimator,
        linearizer: TrackLinearizer,
        extract_parameters: Optional[Callable[[Any], BoundTrackParameters]] = None,
    ) -> None:
        self.config = config
        self.fitter = fitter
        self.seed_finder = seed_finder
        self.ip_estimator = ip_estimator
        self.linearizer = linearizer
        self.extract_parameters = extract_parameters if extract_parameters is not None else identity_extractor

    # ------------------------------------------------------------------ API

    def find(self, tracks: Sequence[Any], options: VertexingOptions) -> List[Vertex]:
        r"""
        Run the finding loop on one event.

        Parameters
        ----------
        tracks : sequence
            Track handles; never mutated.
        options : VertexingOptions
            Contexts, initial constraint and whether the fit uses it.

        Returns
        -------
        list of Vertex
            Accepted vertices in order of creation, each with
            :attr:`Vertex.tracks` holding its compatible tracks.

        Raises
        ------
        EmptyInputError
            If ``tracks`` is empty.
        VertexingError
            Any failure of the seed finder, fitter or impact-point estimator
            aborts the call.
        """
        if len(tracks) == 0:
            raise EmptyInputError("no tracks given to the vertex finder")

        cfg = self.config
        params = [self.extract_parameters(t) for t in tracks]
        all_tracks = list(range(len(tracks)))
        seed_tracks = list(all_tracks)

        state = FitterState()
        seed_state = SeedFinderState()
        candidates: List[int] = []

        iteration = 0
        while seed_tracks and iteration < cfg.max_iterations:
            search_tracks = all_tracks if cfg.do_real_multi_vertex else list(seed_tracks)

            current_constraint = options.constraint.copy()
            seed = self._do_seeding(seed_tracks, params, current_constraint, options, seed_state)
            if seed.full_position[2] == options.constraint.full_position[2]:
                logger.debug("Seed at the constraint z; no more seeds (iteration %d)", iteration)
                break

            slot = state.add_vertex(seed)
            candidates.append(slot)

            if not self._can_prepare_vertex_for_fit(
                search_tracks, all_tracks, seed_tracks, params, tracks, slot, state, current_constraint, options
            ):
                logger.debug("No track could be attached to candidate at z=%.4f; stopping", seed.full_position[2])
                candidates.pop()
                state.tombstone(slot)
                break

            state.add_vertex_to_multimap(slot)
            self.fitter.add_vertex_to_fit(state, slot, self.linearizer, options)

            is_good, n_compatible = self._check_vertex_and_compatible_tracks(slot, seed_tracks, state, options)
            logger.debug(
                "Iteration %d: candidate z=%.4f with %d links, %d compatible seed tracks, good=%s",
                iteration, state.vertices[slot].full_position[2],
                len(state.vtx_info[slot].track_links), n_compatible, is_good,
            )

            if n_compatible > 0:
                self._remove_compatible_tracks_from_seed_tracks(slot, seed_tracks, params, state, seed_state)
            elif not self._remove_track_if_incompatible(slot, seed_tracks, params, state, seed_state):
                logger.debug("No track could be removed from the seed pool; stopping")
                self._drop_last_candidate(slot, candidates, state)
                break

            keep = is_good and self._keep_new_vertex(slot, candidates, state)
            if not keep:
                self._delete_last_vertex(slot, candidates, state, options)

            iteration += 1

        vertices = self._get_vertex_outputs(candidates, state)
        logger.info("Found %d vertices from %d tracks in %d iterations", len(vertices), len(tracks), iteration)
        return vertices

    # --------------------------------------------------------------- seeding

    def _do_seeding(
        self,
        seed_tracks: Sequence[int],
        params: Sequence[BoundTrackParameters],
        current_constraint: Vertex,
        options: VertexingOptions,
        seed_state: SeedFinderState,
    ) -> Vertex:
        seed_options = VertexingOptions(
            options.geo_context, options.mag_context, current_constraint, options.use_constraint_in_fit
        )
        seeds = self.seed_finder.find([params[i] for i in seed_tracks], seed_options, seed_state)
        if not seeds:
            raise SeedFinderError("seed finder returned no vertex")
        seed = seeds[-1]
        self._set_constraint_after_seeding(current_constraint, options.use_constraint_in_fit, seed)
        return seed

    def _set_constraint_after_seeding(self, constraint: Vertex, use_constraint_in_fit: bool, seed: Vertex) -> None:
        r"""
        Update ``constraint`` in place from the new seed.

        - fit with constraint, seed constraint on: adopt the seed position and covariance;
        - fit with constraint, seed constraint off: move the constraint to the seed;
        - fit without constraint: seed position with a loose diagonal covariance.
        """
        cfg = self.config
        if use_constraint_in_fit:
            constraint.full_position = seed.full_position.copy()
            if cfg.use_seed_constraint:
                constraint.full_covariance = seed.full_covariance.copy()
        else:
            constraint.full_position = seed.full_position.copy()
            constraint.full_covariance = np.eye(4) * cfg.loose_constr_value
            constraint.fit_quality = tuple(cfg.default_constr_fit_quality)

    # ----------------------------------------------------------- association

    def _get_ip_significance(
        self, params: BoundTrackParameters, vertex: Vertex, options: VertexingOptions
    ) -> float:
        r"""
        :math:`\sqrt{(d_0/\sigma_{d_0})^2 + (z_0/\sigma_{z_0})^2 [+ (\Delta t/\sigma_{\Delta t})^2]}`.

        A term with non-positive sigma contributes zero.
        """
        cfg = self.config
        probe = vertex.copy()
        if not cfg.use_vertex_cov_for_ip_estimation:
            probe.full_covariance = np.zeros((4, 4))
        ipas = self.ip_estimator.get_impact_parameters(
            params, probe, options.geo_context, options.mag_context, cfg.use_time
        )
        sig2 = 0.0
        if ipas.sigma_d0 > 0.0:
            sig2 += (ipas.d0 / ipas.sigma_d0) ** 2
        if ipas.sigma_z0 > 0.0:
            sig2 += (ipas.z0 / ipas.sigma_z0) ** 2
        if cfg.use_time and ipas.sigma_delta_t > 0.0:
            sig2 += (ipas.delta_t / ipas.sigma_delta_t) ** 2
        return float(np.sqrt(sig2))

    def _add_compatible_tracks(
        self,
        candidate_tracks: Sequence[int],
        params: Sequence[BoundTrackParameters],
        handles: Sequence[Any],
        slot: int,
        state: FitterState,
        options: VertexingOptions,
    ) -> None:
        cfg = self.config
        vertex = state.vertices[slot]
        vz = vertex.full_position[2]
        for trk in candidate_tracks:
            p = params[trk]
            if abs(p.position[2] - vz) > cfg.tracks_max_z_interval:
                continue
            if self._get_ip_significance(p, vertex, options) < cfg.tracks_max_significance:
                state.link_track(trk, slot, TrackAtVertex(track_index=trk, track=handles[trk], original_params=p))

    def _can_recover_from_no_compatible_tracks(
        self,
        all_tracks: Sequence[int],
        seed_tracks: Sequence[int],
        params: Sequence[BoundTrackParameters],
        handles: Sequence[Any],
        slot: int,
        state: FitterState,
        current_constraint: Vertex,
        options: VertexingOptions,
    ) -> bool:
        r"""
        Move a trackless candidate onto the nearest seed track in :math:`z`.

        The candidate is relocated to :math:`(0, 0, z_\mathrm{track}, 0)` and
        association is retried against all tracks. This is a legacy
        heuristic kept as is; it has no derivation of its own.
        """
        if state.vtx_info[slot].track_links:
            return True
        vertex = state.vertices[slot]
        best_dz = np.inf
        new_z: Optional[float] = None
        for trk in seed_tracks:
            z = params[trk].position[2]
            dz = abs(z - vertex.full_position[2])
            if dz < best_dz:
                best_dz = dz
                new_z = float(z)
        if new_z is None:
            return False

        logger.debug("Recovering candidate: moving from z=%.4f to nearest track z=%.4f",
                     vertex.full_position[2], new_z)
        vertex.full_position = np.array([0.0, 0.0, new_z, 0.0])
        state.reset_vertex_info(slot, current_constraint)
        self._add_compatible_tracks(all_tracks, params, handles, slot, state, options)
        return bool(state.vtx_info[slot].track_links)

    def _can_prepare_vertex_for_fit(
        self,
        search_tracks: Sequence[int],
        all_tracks: Sequence[int],
        seed_tracks: Sequence[int],
        params: Sequence[BoundTrackParameters],
        handles: Sequence[Any],
        slot: int,
        state: FitterState,
        current_constraint: Vertex,
        options: VertexingOptions,
    ) -> bool:
        state.reset_vertex_info(slot, current_constraint)
        self._add_compatible_tracks(search_tracks, params, handles, slot, state, options)
        if state.vtx_info[slot].track_links:
            return True
        return self._can_recover_from_no_compatible_tracks(
            all_tracks, seed_tracks, params, handles, slot, state, current_constraint, options
        )

    # ------------------------------------------------------------- evaluation

    def _is_compatible(self, tav: TrackAtVertex) -> bool:
        cfg = self.config
        if cfg.use_fast_compatibility:
            return tav.vertex_compatibility < cfg.max_vertex_chi2
        return tav.weight > cfg.min_weight and tav.chi2_track < cfg.max_vertex_chi2

    def _check_vertex_and_compatible_tracks(
        self,
        slot: int,
        seed_tracks: Sequence[int],
        state: FitterState,
        options: VertexingOptions,
    ) -> Tuple[bool, int]:
        """Return ``(is_good, n_compatible)`` counting compatible tracks still in the seed pool."""
        cfg = self.config
        pool = set(seed_tracks)
        single_ok = cfg.add_single_track_vertices and options.use_constraint_in_fit
        n_compatible = 0
        for trk in state.vtx_info[slot].track_links:
            if self._is_compatible(state.tracks_at_vertices[(trk, slot)]) and trk in pool:
                n_compatible += 1
        is_good = n_compatible >= 2 or (single_ok and n_compatible >= 1)
        return is_good, n_compatible

    def _is_merged_vertex(self, slot: int, candidates: Sequence[int], state: FitterState) -> bool:
        r"""
        ``True`` if ``slot`` is statistically indistinguishable from another candidate.

        Without 3D splitting the significance is
        :math:`|\Delta z|/\sqrt{\sigma_{z,1}^2 + \sigma_{z,2}^2}`; with it,
        :math:`\sqrt{\Delta^\top (C_1 + C_2)^{-1}\Delta}` in 3D (4D with time).
        Pairs with a non-positive or singular summed covariance are skipped.
        """
        cfg = self.config
        vtx = state.vertices[slot]
        dims = 4 if cfg.use_time else 3
        for other_slot in candidates:
            if other_slot == slot:
                continue
            other = state.vertices[other_slot]
            if not cfg.do_3d_splitting:
                sum_var = vtx.full_covariance[2, 2] + other.full_covariance[2, 2]
                if sum_var <= 0.0:
                    continue
                significance = abs(vtx.full_position[2] - other.full_position[2]) / np.sqrt(sum_var)
            else:
                sum_cov = vtx.full_covariance[:dims, :dims] + other.full_covariance[:dims, :dims]
                inv = safe_inverse(sum_cov)
                if inv is None:
                    continue
                delta = vtx.full_position[:dims] - other.full_position[:dims]
                chi2 = float(delta @ inv @ delta)
                if chi2 < 0.0:
                    continue
                significance = np.sqrt(chi2)
            if significance < cfg.max_merge_vertex_significance:
                logger.debug("Candidate slot %d merges with slot %d (significance %.3f)",
                             slot, other_slot, significance)
                return True
        return False

    def _keep_new_vertex(self, slot: int, candidates: Sequence[int], state: FitterState) -> bool:
        r"""
        Reject contaminated candidates and duplicates of existing vertices.

        The contamination is :math:`\sum w(1-w)/\sum w^2` over the linked tracks.
        """
        num = 0.0
        den = 0.0
        for trk in state.vtx_info[slot].track_links:
            w = state.tracks_at_vertices[(trk, slot)].weight
            num += w * (1.0 - w)
            den += w * w
        if den != 0.0 and num / den > self.config.maximum_vertex_contamination:
            logger.debug("Candidate slot %d contaminated (%.3f)", slot, num / den)
            return False
        return not self._is_merged_vertex(slot, candidates, state)

    # --------------------------------------------------------------- removal

    def _remove_compatible_tracks_from_seed_tracks(
        self,
        slot: int,
        seed_tracks: List[int],
        params: Sequence[BoundTrackParameters],
        state: FitterState,
        seed_state: SeedFinderState,
    ) -> None:
        claimed = {
            trk
            for trk in state.vtx_info[slot].track_links
            if self._is_compatible(state.tracks_at_vertices[(trk, slot)])
        }
        for trk in claimed.intersection(seed_tracks):
            seed_state.mark_removed(params[trk])
        seed_tracks[:] = [trk for trk in seed_tracks if trk not in claimed]

    def _remove_track_if_incompatible(
        self,
        slot: int,
        seed_tracks: List[int],
        params: Sequence[BoundTrackParameters],
        state: FitterState,
        seed_state: SeedFinderState,
    ) -> bool:
        r"""
        Remove exactly one track from the seed pool.

        First choice is the linked seed track with the largest (positive)
        compatibility value; otherwise the seed track closest in :math:`z` to
        the candidate. Returns ``False`` when the pool offers nothing.
        """
        pool = set(seed_tracks)
        max_compat = 0.0
        chosen: Optional[int] = None
        for trk in state.vtx_info[slot].track_links:
            compat = state.tracks_at_vertices[(trk, slot)].vertex_compatibility
            if compat > max_compat and trk in pool:
                max_compat = compat
                chosen = trk

        if chosen is None:
            vz = state.vertices[slot].full_position[2]
            best_dz = np.inf
            for trk in seed_tracks:
                dz = abs(params[trk].position[2] - vz)
                if dz < best_dz:
                    best_dz = dz
                    chosen = trk

        if chosen is None:
            return False
        seed_tracks.remove(chosen)
        seed_state.mark_removed(params[chosen])
        return True

    # --------------------------------------------------------------- rollback

    def _drop_last_candidate(self, slot: int, candidates: List[int], state: FitterState) -> None:
        """Discard the candidate before stopping; the other vertices keep their last fit."""
        candidates[:] = [c for c in candidates if c != slot]
        state.remove_vertex_from_collection(slot)
        state.remove_vertex_from_multimap(slot)
        state.tombstone(slot)

    def _delete_last_vertex(
        self,
        slot: int,
        candidates: List[int],
        state: FitterState,
        options: VertexingOptions,
    ) -> None:
        r"""
        Roll back the last candidate.

        The slot leaves the candidate list, the joint collection and the
        track multimap, and is tombstoned. Every record of its tracks is
        flagged for relinearization, and the remaining collection is refit
        without it.
        """
        if candidates and candidates[-1] == slot:
            candidates.pop()
        else:
            candidates[:] = [c for c in candidates if c != slot]

        state.remove_vertex_from_collection(slot)
        links = list(state.vtx_info[slot].track_links)
        state.remove_vertex_from_multimap(slot)
        state.tombstone(slot)
        for trk in links:
            state.tracks_at_vertices[(trk, slot)].is_linearized = False
            for other in state.vertices_of_track(trk):
                state.tracks_at_vertices[(trk, other)].is_linearized = False

        if state.vertex_collection:
            self.fitter.fit(state, self.linearizer, options)

    # ---------------------------------------------------------------- output

    def _get_vertex_outputs(self, candidates: Sequence[int], state: FitterState) -> List[Vertex]:
        out: List[Vertex] = []
        for slot in candidates:
            vtx = state.vertices[slot]
            vtx.tracks = [
                tav
                for tav in (state.tracks_at_vertices[(trk, slot)] for trk in state.vtx_info[slot].track_links)
                if self._is_compatible(tav)
            ]
            out.append(vtx)
        return out
