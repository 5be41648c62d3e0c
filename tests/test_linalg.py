import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1]))

import numpy as np
import pytest

from vertex_reco.linalg import mahalanobis, numeric_jacobian, robust_cholesky, safe_inverse, spd_inverse


def test_safe_inverse_regular_matrix():
    m = np.array([[4.0, 1.0], [1.0, 3.0]])
    inv = safe_inverse(m)
    assert inv is not None
    assert np.allclose(inv @ m, np.eye(2))


def test_safe_inverse_signals_singular_and_bad_input():
    assert safe_inverse(np.zeros((3, 3))) is None
    assert safe_inverse(np.array([[1.0, 2.0], [2.0, 4.0]])) is None
    assert safe_inverse(np.ones((2, 3))) is None
    assert safe_inverse(np.array([[np.nan, 0.0], [0.0, 1.0]])) is None


def test_robust_cholesky_handles_semidefinite():
    v = np.array([1.0, 2.0, 3.0])
    S = np.outer(v, v)  # rank one
    L = robust_cholesky(S)
    assert np.allclose(np.tril(L), L)
    assert np.allclose(L @ L.T, S, atol=1e-6)


def test_robust_cholesky_rejects_negative_definite():
    with pytest.raises(np.linalg.LinAlgError):
        robust_cholesky(-np.eye(2))


def test_spd_inverse_and_mahalanobis():
    S = np.diag([4.0, 9.0, 0.25])
    assert np.allclose(spd_inverse(S), np.diag([0.25, 1.0 / 9.0, 4.0]))
    d = np.array([2.0, 3.0, 0.5])
    assert mahalanobis(d, S) == pytest.approx(3.0)


def test_numeric_jacobian_matches_analytic():
    def f(x):
        return np.array([x[0] * x[1], np.sin(x[2]), x[0] ** 2])

    x = np.array([1.5, -2.0, 0.3])
    J = numeric_jacobian(f, x, 1e-6)
    expected = np.array([
        [x[1], x[0], 0.0],
        [0.0, 0.0, np.cos(x[2])],
        [2.0 * x[0], 0.0, 0.0],
    ])
    assert J.shape == (3, 3)
    assert np.allclose(J, expected, atol=1e-6)
