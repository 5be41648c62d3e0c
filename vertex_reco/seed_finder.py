from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Protocol, Sequence, Set, Tuple

import numpy as np
from scipy.optimize import minimize_scalar

from vertex_reco.impact_point import ImpactPointEstimator
from vertex_reco.kernels import densest_window, gaussian_density
from vertex_reco.track_params import BoundTrackParameters
from vertex_reco.vertex import Vertex, VertexingOptions

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SeedFinderState:
    r"""
    Mutable state carried across seeding calls of one finder invocation.

    Attributes
    ----------
    removed_tracks : set of int
        ``id()`` of track parameter objects that were claimed by earlier
        vertices. Seed finders ignore them even if a caller passes them in.
    """
    removed_tracks: Set[int] = field(default_factory=set)

    def mark_removed(self, params: BoundTrackParameters) -> None:
        self.removed_tracks.add(id(params))

    def usable(self, tracks: Sequence[BoundTrackParameters]) -> List[BoundTrackParameters]:
        return [t for t in tracks if id(t) not in self.removed_tracks]


class SeedFinder(Protocol):
    def find(
        self,
        tracks: Sequence[BoundTrackParameters],
        options: VertexingOptions,
        state: SeedFinderState,
    ) -> List[Vertex]:
        ...


@dataclass(slots=True)
class SeedFinderConfig:
    r"""
    Settings shared by the bundled seed finders.

    Attributes
    ----------
    kind : {"zscan", "density"}
        Which finder :func:`make_seed_finder` builds.
    constraint_cutoff, constraint_temp : float
        Logistic down-weighting of tracks with a large transverse IP
        :math:`\chi^2` w.r.t. the constraint (z-scan).
    min_weight : float
        Tracks with a smaller z-scan weight are ignored.
    use_pt, exp_pt, min_pt :
        Optional :math:`p_T^{\,\mathrm{exp\_pt}}` weighting (GeV), z-scan only.
    fraction : float
        Fraction of the weight kept at each half-sample mode step.
    max_d0_significance, max_z0_significance : float
        Track selection of the density finder.
    """
    kind: str = "zscan"
    constraint_cutoff: float = 9.0
    constraint_temp: float = 1.0
    min_weight: float = 0.01
    use_pt: bool = False
    exp_pt: float = 1.0
    min_pt: float = 0.4
    fraction: float = 0.5
    max_d0_significance: float = 3.5
    max_z0_significance: float = 12.0


def weighted_half_sample_mode(values: Sequence[float], weights: Sequence[float], fraction: float = 0.5) -> float:
    r"""
    Weighted half-sample mode of a 1D sample.

    Repeatedly keeps the window of consecutive (sorted) points with the
    smallest span per unit weight, where a window holds
    :math:`\lceil f\,n\rceil` points, until at most two points remain; the
    result is their weighted mean.

    Parameters
    ----------
    values, weights : sequence of float
        Same length, weights non-negative.
    fraction : float
        Window size fraction :math:`f\in(0,1)`.

    Returns
    -------
    float

    Raises
    ------
    ValueError
        If ``values`` is empty.
    """
    z = np.asarray(values, dtype=np.float64)
    w = np.asarray(weights, dtype=np.float64)
    if z.size == 0:
        raise ValueError("empty sample")
    order = np.argsort(z, kind="stable")
    z = np.ascontiguousarray(z[order])
    w = np.ascontiguousarray(w[order])

    while z.size > 2:
        n = z.size
        k = min(max(2, int(np.ceil(fraction * n))), n - 1)
        best = int(densest_window(z, w, k))
        z, w = z[best:best + k], w[best:best + k]

    if np.sum(w) <= 0.0:
        return float(np.mean(z))
    return float(np.average(z, weights=w))


def _seed_from_constraint(constraint: Vertex, z: float) -> Vertex:
    seed = constraint.copy()
    seed.full_position[2] = z
    return seed


class ZScanSeedFinder:
    r"""
    Seed along the beam line at the weighted mode of the track :math:`z_0`.

    For every track the impact parameters w.r.t. the constraint are
    computed; the track enters with

    .. math::

        w = \frac{1}{1+\exp\big((\chi^2_{d_0}-\chi^2_\mathrm{cut})/T\big)}
        \cdot \big[p_T^{\,e}\big],\qquad \chi^2_{d_0} = (d_0/\sigma_{d_0})^2,

    at :math:`z = z_\mathrm{constraint} + z_0`. The seed is the constraint
    moved to the weighted half-sample mode in :math:`z`. With no usable
    track the seed sits exactly at the constraint, which the finder reads
    as "no more seeds".
    """

    def __init__(self, config: Optional[SeedFinderConfig] = None, ip_estimator: Optional[ImpactPointEstimator] = None) -> None:
        self.config = config if config is not None else SeedFinderConfig()
        self.ip_estimator = ip_estimator if ip_estimator is not None else ImpactPointEstimator()

    def z_positions(
        self, tracks: Sequence[BoundTrackParameters], options: VertexingOptions
    ) -> List[Tuple[float, float]]:
        """``(z, weight)`` pairs of the tracks that pass the selection."""
        cfg = self.config
        constraint = options.constraint
        out: List[Tuple[float, float]] = []
        for params in tracks:
            ipas = self.ip_estimator.get_impact_parameters(
                params, constraint, options.geo_context, options.mag_context
            )
            if ipas.sigma_d0 <= 0.0:
                continue
            chi2 = (ipas.d0 / ipas.sigma_d0) ** 2
            arg = np.clip((chi2 - cfg.constraint_cutoff) / cfg.constraint_temp, -700.0, 700.0)
            weight = 1.0 / (1.0 + np.exp(arg))
            if cfg.use_pt:
                weight *= max(params.pt, cfg.min_pt) ** cfg.exp_pt
            if weight < cfg.min_weight:
                continue
            out.append((constraint.full_position[2] + ipas.z0, float(weight)))
        return out

    def find(
        self,
        tracks: Sequence[BoundTrackParameters],
        options: VertexingOptions,
        state: SeedFinderState,
    ) -> List[Vertex]:
        usable = state.usable(tracks)
        zw = self.z_positions(usable, options)
        constraint = options.constraint
        if not zw:
            logger.debug("No usable track for z-scan among %d; seeding at the constraint", len(usable))
            return [constraint.copy()]
        z, w = zip(*zw)
        z_mode = weighted_half_sample_mode(z, w, self.config.fraction)
        logger.debug("z-scan seed at z=%.4f from %d tracks", z_mode, len(zw))
        return [_seed_from_constraint(constraint, z_mode)]


class TrackDensitySeedFinder:
    r"""
    Seed at the maximum of a Gaussian track density along :math:`z`.

    Tracks whose impact parameter significances w.r.t. the constraint pass
    the cuts contribute

    .. math::

        \rho(z) = \sum_i \frac{1}{\sqrt{2\pi}\,\sigma_{z_0,i}}
        \exp\Big(-\frac{(z - z_i)^2}{2\sigma_{z_0,i}^2}\Big).

    The best track position is refined with a bounded
    :func:`scipy.optimize.minimize_scalar` on :math:`-\rho`.
    """

    def __init__(self, config: Optional[SeedFinderConfig] = None, ip_estimator: Optional[ImpactPointEstimator] = None) -> None:
        self.config = config if config is not None else SeedFinderConfig(kind="density")
        self.ip_estimator = ip_estimator if ip_estimator is not None else ImpactPointEstimator()

    def find(
        self,
        tracks: Sequence[BoundTrackParameters],
        options: VertexingOptions,
        state: SeedFinderState,
    ) -> List[Vertex]:
        cfg = self.config
        constraint = options.constraint
        zc = constraint.full_position[2]
        z_list: List[float] = []
        s_list: List[float] = []
        # track-only widths; the constraint width enters the z0 cut alone
        bare = constraint.copy()
        bare.full_covariance[:] = 0.0
        var_zc = max(float(constraint.full_covariance[2, 2]), 0.0)
        for params in state.usable(tracks):
            ipas = self.ip_estimator.get_impact_parameters(
                params, bare, options.geo_context, options.mag_context
            )
            if ipas.sigma_d0 <= 0.0 or ipas.sigma_z0 <= 0.0:
                continue
            if abs(ipas.d0 / ipas.sigma_d0) > cfg.max_d0_significance:
                continue
            if abs(ipas.z0) / np.sqrt(ipas.sigma_z0 ** 2 + var_zc) > cfg.max_z0_significance:
                continue
            z_list.append(zc + ipas.z0)
            s_list.append(ipas.sigma_z0)

        if not z_list:
            logger.debug("No track passes the density selection; seeding at the constraint")
            return [constraint.copy()]

        zs = np.asarray(z_list, dtype=np.float64)
        sig = np.asarray(s_list, dtype=np.float64)

        def density(z: float) -> float:
            return float(gaussian_density(np.array([z], dtype=np.float64), zs, sig)[0])

        start = int(np.argmax(gaussian_density(zs, zs, sig)))
        lo, hi = zs[start] - 3.0 * sig[start], zs[start] + 3.0 * sig[start]
        res = minimize_scalar(lambda z: -density(z), bounds=(lo, hi), method="bounded")
        z_best = float(res.x) if res.success and density(float(res.x)) >= density(zs[start]) else float(zs[start])
        logger.debug("density seed at z=%.4f from %d tracks", z_best, len(zs))
        return [_seed_from_constraint(constraint, z_best)]


def make_seed_finder(config: SeedFinderConfig, ip_estimator: Optional[ImpactPointEstimator] = None) -> SeedFinder:
    """Build the seed finder named by ``config.kind``."""
    if config.kind == "zscan":
        return ZScanSeedFinder(config, ip_estimator)
    if config.kind == "density":
        return TrackDensitySeedFinder(config, ip_estimator)
    raise ValueError(f"unknown seed finder kind {config.kind!r}; expected 'zscan' or 'density'")
