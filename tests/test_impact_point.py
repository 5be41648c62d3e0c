import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1]))

import numpy as np
import pytest

from vertex_reco.context import GeometryContext, MagneticFieldContext
from vertex_reco.errors import ImpactParameterError, VertexFitError
from vertex_reco.impact_point import ImpactPointEstimator
from vertex_reco.linearizer import HelicalTrackLinearizer
from vertex_reco.track_params import BoundTrackParameters
from vertex_reco.utils import make_track
from vertex_reco.vertex import Vertex

GCTX = GeometryContext()
MCTX = MagneticFieldContext(bz=2.0)


def test_impact_parameters_wrt_reference_point():
    rng = np.random.default_rng(7)
    params = make_track([0.01, -0.02, 1.0, 0.0], 0.7, 1.2, 0.8, rng=rng)
    ip = ImpactPointEstimator().get_impact_parameters(params, Vertex(np.zeros(4)), GCTX, MCTX)
    assert ip.d0 == pytest.approx(params.d0, abs=1e-9)
    assert ip.z0 == pytest.approx(params.z0, abs=1e-9)
    assert ip.delta_t == 0.0
    assert ip.sigma_delta_t == 0.0


def test_impact_parameters_at_production_vertex():
    params = make_track([0.0, 0.0, 5.0, 0.0], -1.0, 0.9, -0.5)
    ip = ImpactPointEstimator().get_impact_parameters(
        params, Vertex(np.array([0.0, 0.0, 5.0, 0.0])), GCTX, MCTX, use_time=True
    )
    assert ip.d0 == pytest.approx(0.0, abs=1e-9)
    assert ip.z0 == pytest.approx(0.0, abs=1e-9)
    assert ip.sigma_d0 == pytest.approx(0.02, rel=0.05)
    assert ip.sigma_z0 == pytest.approx(0.05, rel=0.05)
    assert ip.sigma_delta_t > 0.0


def test_vertex_covariance_widens_sigmas():
    params = make_track([0.0, 0.0, 5.0, 0.0], 0.3, 1.4, 0.4)
    est = ImpactPointEstimator()
    bare = est.get_impact_parameters(params, Vertex(np.array([0.0, 0.0, 5.0, 0.0])), GCTX, MCTX)
    wide = est.get_impact_parameters(
        params, Vertex(np.array([0.0, 0.0, 5.0, 0.0]), np.diag([0.1, 0.1, 1.0, 1.0]) ** 2), GCTX, MCTX
    )
    assert wide.sigma_d0 > bare.sigma_d0
    assert wide.sigma_z0 > bare.sigma_z0


def test_non_finite_parameters_raise():
    vec = np.array([0.0, np.nan, 0.1, 1.0, 0.5, 0.0])
    params = BoundTrackParameters(vec, np.eye(6) * 1e-4)
    with pytest.raises(ImpactParameterError):
        ImpactPointEstimator().get_impact_parameters(params, Vertex(np.zeros(4)), GCTX, MCTX)


def test_vertex_compatibility_grows_with_distance():
    params = make_track([0.0, 0.0, 3.0, 0.0], 1.2, 1.0, 0.6)
    lin = HelicalTrackLinearizer().linearize(params, np.array([0.0, 0.0, 3.0, 0.0]), GCTX, MCTX)
    est = ImpactPointEstimator()
    at_vertex = est.get_vertex_compatibility(lin.params_at_pca, np.array([0.0, 0.0, 3.0, 0.0]), MCTX)
    displaced = est.get_vertex_compatibility(lin.params_at_pca, np.array([0.0, 0.0, 4.0, 0.0]), MCTX)
    assert at_vertex == pytest.approx(0.0, abs=1e-8)
    assert displaced == pytest.approx((1.0 / 0.05) ** 2, rel=0.05)


def test_linearized_track_residual_and_chi2():
    params = make_track([0.0, 0.0, 3.0, 0.0], 1.2, 1.0, 0.6)
    lin = HelicalTrackLinearizer().linearize(params, np.array([0.0, 0.0, 2.5, 0.0]), GCTX, MCTX)
    assert lin.position_jacobian.shape == (6, 4)
    assert lin.residual_jacobian().shape == (2, 3)
    J4 = lin.residual_jacobian(use_time=True)
    assert J4.shape == (3, 4)
    assert J4[2, 3] == pytest.approx(-1.0)
    # z0 moves one to one against the vertex z
    assert lin.residual_jacobian()[1, 2] == pytest.approx(-1.0, abs=1e-4)
    assert lin.chi2(np.array([0.0, 0.0, 3.0, 0.0])) == pytest.approx(0.0, abs=1e-6)


def test_weight_matrix_of_degenerate_covariance_raises():
    params = make_track([0.0, 0.0, 3.0, 0.0], 1.2, 1.0, 0.6)
    lin = HelicalTrackLinearizer().linearize(params, np.array([0.0, 0.0, 3.0, 0.0]), GCTX, MCTX)
    lin.params_at_pca.covariance[:] = -1.0
    with pytest.raises(VertexFitError):
        lin.weight_matrix()
