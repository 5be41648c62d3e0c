from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from vertex_reco.context import GeometryContext, MagneticFieldContext
from vertex_reco.errors import ImpactParameterError
from vertex_reco.linalg import mahalanobis, numeric_jacobian
from vertex_reco.propagation import params_at_point, transport_jacobian
from vertex_reco.track_params import D0, TIME, Z0, BoundTrackParameters
from vertex_reco.vertex import Vertex

_POSITION_STEP = 1e-5


@dataclass(slots=True)
class ImpactParametersAndSigma:
    r"""
    Impact parameters of a track w.r.t. a vertex and their uncertainties.

    ``delta_t`` / ``sigma_delta_t`` are zero when time was not requested.
    """
    d0: float
    z0: float
    delta_t: float
    sigma_d0: float
    sigma_z0: float
    sigma_delta_t: float


class ImpactPointEstimator:
    r"""
    Impact parameters and vertex compatibility from closed-form helix PCA.

    For a vertex at :math:`\vec v` the track is re-expressed w.r.t.
    :math:`\vec v` (see :func:`vertex_reco.propagation.params_at_point`); the
    new :math:`d_0, z_0` are the transverse and longitudinal impact
    parameters, and :math:`\Delta t = t_\mathrm{PCA} - t_v`.

    Uncertainties combine the transported track covariance and, when the
    vertex covariance is non-zero, the vertex covariance projected with
    :math:`\partial(d_0,z_0,\Delta t)/\partial\vec v`:

    .. math::

        \sigma^2 = \big(J_p C_p J_p^\top\big) + \big(J_v C_v J_v^\top\big).
    """

    def get_impact_parameters(
        self,
        params: BoundTrackParameters,
        vertex: Vertex,
        gctx: GeometryContext,
        mctx: MagneticFieldContext,
        use_time: bool = False,
    ) -> ImpactParametersAndSigma:
        r"""
        Compute :math:`(d_0, z_0, \Delta t)` and their sigmas w.r.t. ``vertex``.

        Raises
        ------
        ImpactParameterError
            If the PCA or any variance is non-finite.
        """
        vec, ref, mass, bz = params.parameters, params.ref_point, params.mass, mctx.bz
        pos = vertex.full_position
        at_pca = params_at_point(vec, ref, pos, bz, mass)

        J = transport_jacobian(vec, ref, pos, bz, mass)
        cov = J @ params.covariance @ J.T
        rows = [D0, Z0, TIME] if use_time else [D0, Z0]
        var = np.diag(cov)[rows].copy()

        vtx_cov = vertex.full_covariance
        if np.any(vtx_cov != 0.0):
            def _impact(v: np.ndarray) -> np.ndarray:
                p = params_at_point(vec, ref, v, bz, mass)
                out = [p[D0], p[Z0]]
                if use_time:
                    out.append(p[TIME] - v[3])
                return np.array(out)

            Jv = numeric_jacobian(_impact, pos, _POSITION_STEP)
            var = var + np.diag(Jv @ vtx_cov @ Jv.T)

        delta_t = float(at_pca[TIME] - pos[3]) if use_time else 0.0
        result = (at_pca[D0], at_pca[Z0], delta_t)
        if not (np.all(np.isfinite(result)) and np.all(np.isfinite(var))):
            raise ImpactParameterError(
                f"non-finite impact parameters for track at ref {params.ref_point.tolist()}"
            )
        sigmas = np.sqrt(np.clip(var, 0.0, None))
        return ImpactParametersAndSigma(
            d0=float(at_pca[D0]),
            z0=float(at_pca[Z0]),
            delta_t=delta_t,
            sigma_d0=float(sigmas[0]),
            sigma_z0=float(sigmas[1]),
            sigma_delta_t=float(sigmas[2]) if use_time else 0.0,
        )

    def get_vertex_compatibility(
        self,
        params_at_pca: BoundTrackParameters,
        position: np.ndarray,
        mctx: MagneticFieldContext,
        use_time: bool = False,
    ) -> float:
        r"""
        :math:`\chi^2` compatibility of a track with a vertex position.

        ``params_at_pca`` are expected to be expressed close to the vertex
        (typically the linearized parameters). The residual
        :math:`r = (d_0, z_0[, \Delta t])` w.r.t. ``position`` is weighted with
        the track-only covariance of those parameters:

        .. math:: \chi^2 = r^\top C_r^{-1} r.

        Raises
        ------
        ImpactParameterError
            If the residual is non-finite.
        """
        position = np.asarray(position, dtype=np.float64)
        p = params_at_point(
            params_at_pca.parameters, params_at_pca.ref_point, position, mctx.bz, params_at_pca.mass
        )
        rows = [D0, Z0, TIME] if use_time else [D0, Z0]
        r = p[rows]
        if use_time:
            r[2] -= position[3]
        if not np.all(np.isfinite(r)):
            raise ImpactParameterError("non-finite residual in vertex compatibility")
        return mahalanobis(r, params_at_pca.covariance[np.ix_(rows, rows)])
