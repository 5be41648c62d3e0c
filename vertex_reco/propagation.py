r"""
Closed-form helix propagation in a constant solenoidal field.

A track with perigee parameters :math:`(d_0, z_0, \phi_0, \theta, q/p, t_0)`
moves on a helix whose signed transverse curvature is

.. math::

    h = \kappa\, B_z\, \frac{q/p}{\sin\theta}, \qquad
    \kappa = 0.299792458\times 10^{-3}\ \mathrm{GeV\,mm^{-1}\,T^{-1}}.

Parameterising by the transverse path length :math:`s` and writing
:math:`\psi(s) = \phi_0 - h s` for the direction angle,

.. math::

    x(s) &= x_0 + \frac{\sin\phi_0 - \sin\psi(s)}{h}, \\
    y(s) &= y_0 + \frac{\cos\psi(s) - \cos\phi_0}{h}, \\
    z(s) &= z_0 + s\cot\theta, \\
    t(s) &= t_0 + \frac{s}{\sin\theta\;\beta c}.

For :math:`|h| < 10^{-12}\,\mathrm{mm^{-1}}` the straight-line limit is used.

The raw functions operate on plain ``(6,)`` vectors so they can be fed to
:func:`vertex_reco.linalg.numeric_jacobian`; the ``*_params`` wrappers take
and return :class:`~vertex_reco.track_params.BoundTrackParameters`.
"""

from __future__ import annotations

from typing import Tuple

import numpy as np

from vertex_reco.linalg import numeric_jacobian
from vertex_reco.track_params import (
    C_LIGHT_MM_PER_NS,
    D0,
    PHI,
    QOP,
    THETA,
    TIME,
    Z0,
    BoundTrackParameters,
)

B_TO_CURVATURE = 0.299792458e-3
_STRAIGHT_LINE_H = 1e-12

# Finite-difference steps per perigee parameter.
PARAM_STEPS = np.array([1e-5, 1e-5, 1e-7, 1e-7, 1e-9, 1e-5])


def wrap_phi(phi: float) -> float:
    """Map an angle into :math:`[-\\pi, \\pi)`."""
    return float((phi + np.pi) % (2.0 * np.pi) - np.pi)


def curvature(vec: np.ndarray, bz: float) -> float:
    """Signed transverse curvature :math:`h` in 1/mm."""
    return B_TO_CURVATURE * bz * vec[QOP] / np.sin(vec[THETA])


def beta(qop: float, mass: float) -> float:
    r"""Velocity :math:`\beta = p/E` for momentum :math:`1/|q/p|`."""
    if qop == 0.0:
        return 1.0
    p = 1.0 / abs(qop)
    return p / np.hypot(p, mass)


def perigee_point(vec: np.ndarray, ref: np.ndarray) -> np.ndarray:
    """Global ``(x, y, z)`` of the perigee point."""
    return np.array([
        ref[0] - vec[D0] * np.sin(vec[PHI]),
        ref[1] + vec[D0] * np.cos(vec[PHI]),
        ref[2] + vec[Z0],
    ])


def helix_point(vec: np.ndarray, ref: np.ndarray, s: float, bz: float, mass: float) -> Tuple[np.ndarray, float]:
    r"""
    Evaluate the helix at transverse path length ``s``.

    Returns
    -------
    pos : ndarray, shape (4,)
        :math:`(x, y, z, t)` at ``s``.
    psi : float
        Direction angle at ``s`` (not wrapped).
    """
    x0 = perigee_point(vec, ref)
    phi0, theta = vec[PHI], vec[THETA]
    h = curvature(vec, bz)
    if abs(h) < _STRAIGHT_LINE_H:
        psi = phi0
        x = x0[0] + s * np.cos(phi0)
        y = x0[1] + s * np.sin(phi0)
    else:
        psi = phi0 - h * s
        x = x0[0] + (np.sin(phi0) - np.sin(psi)) / h
        y = x0[1] + (np.cos(psi) - np.cos(phi0)) / h
    sin_t = np.sin(theta)
    z = x0[2] + s * np.cos(theta) / sin_t
    t = vec[TIME] + (s / sin_t) / (beta(vec[QOP], mass) * C_LIGHT_MM_PER_NS)
    return np.array([x, y, z, t]), float(psi)


def pca_path_length(vec: np.ndarray, ref: np.ndarray, point: np.ndarray, bz: float) -> float:
    r"""
    Transverse path length to the point of closest approach to ``point``.

    On a helix the PCA lies on the line joining the circle centre
    :math:`\vec c` and the target. With :math:`\vec u = \vec v - \vec c` the
    direction angle there is

    .. math::

        \psi = \operatorname{atan2}(-\sigma u_x,\; \sigma u_y),\qquad \sigma=\operatorname{sgn} h,

    and :math:`s = (\phi_0 - \psi)/h` with :math:`\phi_0-\psi` wrapped into
    :math:`[-\pi,\pi)` so the nearest crossing is taken.
    """
    x0 = perigee_point(vec, ref)
    phi0 = vec[PHI]
    h = curvature(vec, bz)
    if abs(h) < _STRAIGHT_LINE_H:
        return float((point[0] - x0[0]) * np.cos(phi0) + (point[1] - x0[1]) * np.sin(phi0))
    cx = x0[0] + np.sin(phi0) / h
    cy = x0[1] - np.cos(phi0) / h
    sgn = 1.0 if h > 0 else -1.0
    ux, uy = point[0] - cx, point[1] - cy
    psi = np.arctan2(-sgn * ux, sgn * uy)
    return wrap_phi(phi0 - psi) / h


def params_at_point(vec: np.ndarray, ref: np.ndarray, point: np.ndarray, bz: float, mass: float) -> np.ndarray:
    r"""
    Perigee parameters of the same helix re-expressed w.r.t. ``point``.

    The returned :math:`\phi` is the unwrapped direction angle at the PCA so
    that the map stays continuous for finite differences.

    Parameters
    ----------
    vec : ndarray, shape (6,)
        Parameters w.r.t. ``ref``.
    ref : ndarray, shape (3,)
    point : ndarray, shape (3,) or (4,)
        New reference; only the spatial part is used.
    """
    s = pca_path_length(vec, ref, point, bz)
    pos, psi = helix_point(vec, ref, s, bz, mass)
    dx, dy = pos[0] - point[0], pos[1] - point[1]
    out = np.array(vec, dtype=np.float64, copy=True)
    out[D0] = -dx * np.sin(psi) + dy * np.cos(psi)
    out[Z0] = pos[2] - point[2]
    out[PHI] = psi
    out[TIME] = pos[3]
    return out


def transport_jacobian(vec: np.ndarray, ref: np.ndarray, point: np.ndarray, bz: float, mass: float) -> np.ndarray:
    """Numeric :math:`\\partial\\mathbf{p}'/\\partial\\mathbf{p}` of :func:`params_at_point`, shape ``(6, 6)``."""
    return numeric_jacobian(lambda v: params_at_point(v, ref, point, bz, mass), vec, PARAM_STEPS)


def propagate_to_reference(params: BoundTrackParameters, point: np.ndarray, bz: float) -> BoundTrackParameters:
    r"""
    Re-express ``params`` w.r.t. a new reference point, transporting the covariance.

    .. math:: C' = J\, C\, J^\top,\qquad J = \partial\mathbf{p}'/\partial\mathbf{p}.
    """
    point = np.asarray(point, dtype=np.float64)[:3]
    vec, ref = params.parameters, params.ref_point
    new_vec = params_at_point(vec, ref, point, bz, params.mass)
    J = transport_jacobian(vec, ref, point, bz, params.mass)
    new_vec[PHI] = wrap_phi(new_vec[PHI])
    cov = J @ params.covariance @ J.T
    return BoundTrackParameters(new_vec, 0.5 * (cov + cov.T), point.copy(), params.mass)
