import numpy as np
import pytest

from slamkit.geometry import (
    fundamental_from_poses,
    parallax_cosine,
    skew_symmetric,
    triangulate_linear,
)


def _rotation_y(angle):
    c, s = np.cos(angle), np.sin(angle)
    return np.array([[c, 0.0, s], [0.0, 1.0, 0.0], [-s, 0.0, c]])


def _rotation_x(angle):
    c, s = np.cos(angle), np.sin(angle)
    return np.array([[1.0, 0.0, 0.0], [0.0, c, -s], [0.0, s, c]])


K = np.array([[500.0, 0.0, 320.0], [0.0, 510.0, 240.0], [0.0, 0.0, 1.0]])


def _project(r, t, k, x):
    pc = r @ x + t
    pix = k @ (pc / pc[2])
    return pix


@pytest.mark.parametrize("v", [(1.0, 2.0, 3.0), (-0.5, 0.0, 4.0), (0.0, 0.0, 0.0)])
def test_skew_symmetric_matches_cross_product(v):
    w = np.array([0.3, -1.2, 2.5])
    m = skew_symmetric(v)
    assert np.allclose(m @ w, np.cross(v, w))
    assert np.allclose(m, -m.T)


def test_skew_symmetric_rejects_wrong_length():
    with pytest.raises(ValueError):
        skew_symmetric([1.0, 2.0])


def test_fundamental_satisfies_epipolar_constraint():
    r1 = _rotation_y(0.1)
    t1 = np.array([0.2, -0.1, 0.3])
    r2 = _rotation_x(-0.15) @ _rotation_y(-0.05)
    t2 = np.array([-0.4, 0.05, 0.1])
    f12 = fundamental_from_poses(r1, t1, K, r2, t2, K)

    rng = np.random.default_rng(3)
    for _ in range(10):
        x = rng.uniform([-1, -1, 4], [1, 1, 8])
        x1 = _project(r1, t1, K, x)
        x2 = _project(r2, t2, K, x)
        assert abs(x1 @ f12 @ x2) < 1e-9


def test_fundamental_rejects_bad_shapes():
    with pytest.raises(ValueError):
        fundamental_from_poses(np.eye(2), np.zeros(3), K, np.eye(3), np.zeros(3), K)


def test_triangulate_recovers_point():
    r1 = np.eye(3)
    t1 = np.zeros(3)
    r2 = _rotation_y(-0.1)
    t2 = np.array([-0.5, 0.0, 0.0])
    x = np.array([0.3, -0.2, 5.0])

    def normalised(r, t):
        pc = r @ x + t
        return pc / pc[2]

    tcw1 = np.hstack([r1, t1[:, None]])
    tcw2 = np.hstack([r2, t2[:, None]])
    result = triangulate_linear(normalised(r1, t1), normalised(r2, t2), tcw1, tcw2)
    assert result is not None
    assert np.allclose(result, x, atol=1e-8)


def test_triangulate_rejects_bad_pose():
    with pytest.raises(ValueError):
        triangulate_linear([0, 0, 1], [0, 0, 1], np.eye(3), np.eye(3))


def test_parallax_cosine_values():
    assert parallax_cosine([0, 0, 2], [0, 0, 5]) == pytest.approx(1.0)
    assert parallax_cosine([1, 0, 0], [0, 3, 0]) == pytest.approx(0.0)
    assert parallax_cosine([1, 0, 0], [-1, 0, 0]) == pytest.approx(-1.0)


def test_parallax_cosine_is_symmetric_and_scale_free():
    a = np.array([0.2, -0.4, 1.0])
    b = np.array([-0.1, 0.3, 1.0])
    assert parallax_cosine(a, b) == pytest.approx(parallax_cosine(b, a))
    assert parallax_cosine(3 * a, b) == pytest.approx(parallax_cosine(a, b))


def test_parallax_cosine_rejects_zero_ray():
    with pytest.raises(ValueError):
        parallax_cosine([0, 0, 0], [1, 0, 0])