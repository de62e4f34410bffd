from types import SimpleNamespace

import numpy as np
import pytest

from orbmap.geometry import (
    compute_f12,
    cos_parallax,
    skew_symmetric_matrix,
    triangulate_linear,
)


def rot_y(angle):
    c, s = np.cos(angle), np.sin(angle)
    return np.array([[c, 0, s], [0, 1, 0], [-s, 0, c]])


def make_kf(rotation, translation, k):
    return SimpleNamespace(
        rotation=lambda: np.asarray(rotation, dtype=np.float32),
        translation=lambda: np.asarray(translation, dtype=np.float32),
        k=np.asarray(k, dtype=np.float32),
    )


K = np.array([[500.0, 0, 320.0], [0, 500.0, 240.0], [0, 0, 1]])


def project(k, r, t, point):
    pc = r @ point + t
    uv = k @ (pc / pc[2])
    return uv


def test_skew_symmetric_matches_cross_product():
    v = np.array([1.0, -2.0, 3.0])
    w = np.array([0.5, 4.0, -1.0])
    s = skew_symmetric_matrix(v)
    np.testing.assert_allclose(s @ w, np.cross(v, w), rtol=1e-6)
    np.testing.assert_allclose(s, -s.T)
    np.testing.assert_allclose(np.diag(s), np.zeros(3))


def test_fundamental_matrix_satisfies_epipolar_constraint():
    r1, t1 = np.eye(3), np.zeros(3)
    r2, t2 = rot_y(0.1), np.array([-0.5, 0.1, 0.05])
    f12 = compute_f12(make_kf(r1, t1, K), make_kf(r2, t2, K))
    for point in ([0.3, -0.2, 4.0], [-1.0, 0.5, 6.0], [0.0, 0.0, 3.0]):
        p = np.array(point)
        x1 = project(K, r1, t1, p)
        x2 = project(K, r2, t2, p)
        residual = x1 @ f12.astype(np.float64) @ x2
        line = f12.astype(np.float64) @ x2
        assert abs(residual) / np.linalg.norm(line[:2]) < 1e-2


def test_triangulation_recovers_point():
    point = np.array([0.4, -0.3, 5.0])
    r2, t2 = rot_y(-0.05), np.array([-0.3, 0.0, 0.0])
    tcw1 = np.hstack([np.eye(3), np.zeros((3, 1))])
    tcw2 = np.hstack([r2, t2.reshape(3, 1)])
    xn1 = point / point[2]
    pc2 = r2 @ point + t2
    xn2 = pc2 / pc2[2]
    result = triangulate_linear(xn1, xn2, tcw1, tcw2)
    np.testing.assert_allclose(result, point, rtol=1e-4)


def test_triangulation_accepts_homogeneous_poses():
    point = np.array([1.0, 1.0, 8.0])
    tcw1 = np.eye(4)
    tcw2 = np.eye(4)
    tcw2[0, 3] = -1.0
    xn1 = point / point[2]
    pc2 = point + tcw2[:3, 3]
    xn2 = pc2 / pc2[2]
    np.testing.assert_allclose(
        triangulate_linear(xn1, xn2, tcw1, tcw2), point, rtol=1e-4
    )


def test_cos_parallax_values():
    assert cos_parallax([1, 0, 0], [2, 0, 0]) == pytest.approx(1.0)
    assert cos_parallax([1, 0, 0], [0, 3, 0]) == pytest.approx(0.0)
    assert cos_parallax([1, 0, 0], [-1, 0, 0]) == pytest.approx(-1.0)


def test_cos_parallax_is_symmetric():
    a = [0.2, 0.3, 1.0]
    b = [-0.1, 0.4, 1.0]
    assert cos_parallax(a, b) == pytest.approx(cos_parallax(b, a))