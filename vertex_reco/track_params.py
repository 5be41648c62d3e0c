from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import numpy as np

# Charged pion mass (GeV), default mass hypothesis for timing.
PION_MASS = 0.13957039
# Speed of light (mm / ns).
C_LIGHT_MM_PER_NS = 299.792458

# Parameter indices of the perigee vector.
D0, Z0, PHI, THETA, QOP, TIME = range(6)


@dataclass(slots=True, eq=False)
class BoundTrackParameters:
    r"""
    Perigee track parameters expressed w.r.t. a 3D reference point.

    The parameter vector is

    .. math::

        \mathbf{p} = (d_0,\; z_0,\; \phi,\; \theta,\; q/p,\; t),

    with :math:`d_0, z_0` in mm, angles in rad, :math:`q/p` in
    :math:`e/\mathrm{GeV}` and :math:`t` in ns. The global position of the
    perigee point is

    .. math::

        \vec x_0 = \vec r + d_0\,(-\sin\phi,\; \cos\phi,\; 0) + (0,\; 0,\; z_0),

    where :math:`\vec r` is :attr:`ref_point`.

    Equality is identity: two objects with identical numbers are still two
    different tracks.

    Attributes
    ----------
    parameters : ndarray, shape (6,)
    covariance : ndarray, shape (6, 6)
    ref_point : ndarray, shape (3,)
    mass : float
        Mass hypothesis (GeV) used for the velocity in time propagation.
    """
    parameters: np.ndarray
    covariance: np.ndarray
    ref_point: np.ndarray = field(default_factory=lambda: np.zeros(3))
    mass: float = PION_MASS

    def __post_init__(self) -> None:
        self.parameters = np.asarray(self.parameters, dtype=np.float64).reshape(6)
        self.covariance = np.asarray(self.covariance, dtype=np.float64).reshape(6, 6)
        self.ref_point = np.asarray(self.ref_point, dtype=np.float64).reshape(3)

    @property
    def d0(self) -> float:
        return float(self.parameters[D0])

    @property
    def z0(self) -> float:
        return float(self.parameters[Z0])

    @property
    def phi(self) -> float:
        return float(self.parameters[PHI])

    @property
    def theta(self) -> float:
        return float(self.parameters[THETA])

    @property
    def qop(self) -> float:
        return float(self.parameters[QOP])

    @property
    def time(self) -> float:
        return float(self.parameters[TIME])

    @property
    def charge(self) -> float:
        """Charge sign; neutral tracks (``q/p == 0``) report ``0``."""
        return float(np.sign(self.qop))

    @property
    def p(self) -> float:
        """Absolute momentum in GeV (``inf`` for ``q/p == 0``)."""
        return float(np.inf) if self.qop == 0.0 else 1.0 / abs(self.qop)

    @property
    def pt(self) -> float:
        return self.p * abs(np.sin(self.theta))

    @property
    def direction(self) -> np.ndarray:
        s = np.sin(self.theta)
        return np.array([np.cos(self.phi) * s, np.sin(self.phi) * s, np.cos(self.theta)])

    @property
    def momentum(self) -> np.ndarray:
        return self.p * self.direction

    @property
    def position(self) -> np.ndarray:
        r"""Global 4D position :math:`(x, y, z, t)` of the perigee point."""
        d0, z0, phi = self.parameters[D0], self.parameters[Z0], self.parameters[PHI]
        r = self.ref_point
        return np.array([r[0] - d0 * np.sin(phi), r[1] + d0 * np.cos(phi), r[2] + z0, self.parameters[TIME]])

    def copy(self) -> "BoundTrackParameters":
        return BoundTrackParameters(self.parameters.copy(), self.covariance.copy(), self.ref_point.copy(), self.mass)


def identity_extractor(track: Any) -> BoundTrackParameters:
    """Default parameter extractor: input handles already are :class:`BoundTrackParameters`."""
    if not isinstance(track, BoundTrackParameters):
        raise TypeError(f"expected BoundTrackParameters, got {type(track).__name__}")
    return track
