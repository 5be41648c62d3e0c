from __future__ import annotations

from dataclasses import dataclass
from typing import List

import numpy as np

from vertex_reco.context import GeometryContext, MagneticFieldContext
from vertex_reco.errors import VertexFitError
from vertex_reco.linalg import numeric_jacobian, spd_inverse
from vertex_reco.propagation import params_at_point, propagate_to_reference
from vertex_reco.track_params import D0, TIME, Z0, BoundTrackParameters

_POSITION_STEP = 1e-5


def _rows(use_time: bool) -> List[int]:
    return [D0, Z0, TIME] if use_time else [D0, Z0]


@dataclass(slots=True)
class LinearizedTrack:
    r"""
    First-order expansion of a track's impact parameters around a point.

    With :math:`\mathbf{p}(\vec v)` the perigee parameters re-expressed
    w.r.t. a vertex position :math:`\vec v`, the linearisation at
    :math:`\vec L` is

    .. math::

        \mathbf{p}(\vec v) \approx \mathbf{p}(\vec L) + A\,(\vec v - \vec L),
        \qquad A = \partial\mathbf{p}/\partial\vec v\big|_{\vec L}.

    The fitter only consumes the impact residual
    :math:`r = (d_0,\ z_0[,\ t - t_v])` built from it.

    Attributes
    ----------
    params_at_pca : BoundTrackParameters
        Parameters w.r.t. ``lin_point`` with transported covariance.
    position_jacobian : ndarray, shape (6, 4)
        :math:`A`; the time column is zero.
    lin_point : ndarray, shape (4,)
    """
    params_at_pca: BoundTrackParameters
    position_jacobian: np.ndarray
    lin_point: np.ndarray

    def residual(self, position: np.ndarray, use_time: bool = False) -> np.ndarray:
        """Linear prediction of the impact residual at a 4D ``position``."""
        position = np.asarray(position, dtype=np.float64)
        dims = 4 if use_time else 3
        r0 = self.params_at_pca.parameters[_rows(use_time)].copy()
        if use_time:
            r0[2] -= self.lin_point[3]
        return r0 + self.residual_jacobian(use_time) @ (position[:dims] - self.lin_point[:dims])

    def residual_jacobian(self, use_time: bool = False) -> np.ndarray:
        r""":math:`\partial r/\partial\vec v`, shape ``(2, 3)`` or ``(3, 4)`` with time."""
        if not use_time:
            return self.position_jacobian[[D0, Z0], :3]
        J = self.position_jacobian[[D0, Z0, TIME], :].copy()
        J[2, 3] -= 1.0
        return J

    def residual_covariance(self, use_time: bool = False) -> np.ndarray:
        rows = _rows(use_time)
        return self.params_at_pca.covariance[np.ix_(rows, rows)]

    def weight_matrix(self, use_time: bool = False) -> np.ndarray:
        """Inverse residual covariance :math:`G = C_r^{-1}`."""
        try:
            return spd_inverse(self.residual_covariance(use_time))
        except np.linalg.LinAlgError as e:
            raise VertexFitError(f"track covariance at {self.lin_point[:3].tolist()} is not invertible") from e

    def chi2(self, position: np.ndarray, use_time: bool = False) -> float:
        r = self.residual(position, use_time)
        return float(r @ self.weight_matrix(use_time) @ r)


class HelicalTrackLinearizer:
    r"""
    Linearize helical tracks around a 4D point.

    The parameters at the PCA and their covariance come from
    :func:`~vertex_reco.propagation.propagate_to_reference`; the position
    Jacobian is taken by central differences of
    :func:`~vertex_reco.propagation.params_at_point` in :math:`(x, y, z)`.
    """

    def linearize(
        self,
        params: BoundTrackParameters,
        lin_point: np.ndarray,
        gctx: GeometryContext,
        mctx: MagneticFieldContext,
    ) -> LinearizedTrack:
        lin_point = np.asarray(lin_point, dtype=np.float64).reshape(4)
        at_pca = propagate_to_reference(params, lin_point[:3], mctx.bz)

        vec, ref, mass, bz = params.parameters, params.ref_point, params.mass, mctx.bz
        A3 = numeric_jacobian(lambda v: params_at_point(vec, ref, v, bz, mass), lin_point[:3], _POSITION_STEP)
        A = np.zeros((6, 4), dtype=np.float64)
        A[:, :3] = A3
        return LinearizedTrack(params_at_pca=at_pca, position_jacobian=A, lin_point=lin_point.copy())
