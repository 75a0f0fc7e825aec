import numpy as np
import pytest

from slamkit.mappoint import descriptor_distance
from slamkit.orb_features import (
    KeyPoint,
    compute_descriptors,
    compute_orb_descriptor,
    compute_umax,
    ic_angle,
    pattern_points,
)


@pytest.fixture
def random_image():
    rng = np.random.default_rng(7)
    return rng.integers(0, 256, size=(80, 90), dtype=np.uint8)


def test_umax_for_default_patch():
    assert compute_umax(15) == [15, 15, 15, 15, 14, 14, 14, 13, 13, 12, 11, 10, 9, 8, 6, 3]


def test_umax_is_non_increasing():
    umax = compute_umax(15)
    assert len(umax) == 16
    assert all(a >= b for a, b in zip(umax, umax[1:]))


def test_pattern_points_shape_and_fixed_entries():
    pts = pattern_points()
    assert pts.shape == (512, 2)
    assert pts[0].tolist() == [8, -3]
    assert pts[1].tolist() == [9, 5]
    assert pts[-2].tolist() == [-1, -6]
    assert pts[-1].tolist() == [0, -11]
    assert pts.min() >= -13 and pts.max() <= 12


def test_ic_angle_uniform_image_is_zero():
    image = np.full((50, 50), 100, dtype=np.uint8)
    assert ic_angle(image, (25, 25), compute_umax()) == 0.0


def test_ic_angle_follows_brightness_direction():
    cols = np.tile(np.arange(60, dtype=np.uint8), (60, 1))
    umax = compute_umax()
    to_right = ic_angle(cols, (30, 30), umax)
    downward = ic_angle(cols.T.copy(), (30, 30), umax)
    to_left = ic_angle(cols[:, ::-1].copy(), (30, 30), umax)
    assert min(to_right, 360 - to_right) < 1e-6
    assert downward == pytest.approx(90.0)
    assert to_left == pytest.approx(180.0)


def test_ic_angle_rejects_patch_outside_image():
    image = np.zeros((40, 40), dtype=np.uint8)
    with pytest.raises(ValueError):
        ic_angle(image, (5, 20), compute_umax())


def test_descriptor_of_uniform_image_is_zero():
    image = np.full((60, 60), 42, dtype=np.uint8)
    desc = compute_orb_descriptor(KeyPoint(30, 30, angle=0.0), image, pattern_points())
    assert desc.shape == (32,)
    assert desc.dtype == np.uint8
    assert not desc.any()


def test_descriptor_bits_follow_pattern_on_gradient():
    image = np.tile(np.arange(60, dtype=np.uint8), (60, 1))
    desc = compute_orb_descriptor(KeyPoint(30, 30, angle=0.0), image, pattern_points())
    # First four pairs compare a smaller x with a larger x; the fifth has equal x.
    assert desc[0] & 0b1111 == 0b1111
    assert desc[0] & 0b10000 == 0


def test_descriptor_is_rotation_invariant(random_image):
    pattern = pattern_points()
    h, w = random_image.shape
    cx, cy = 40, 35
    original = compute_orb_descriptor(KeyPoint(cx, cy, angle=0.0), random_image, pattern)
    rotated_image = random_image[::-1, ::-1].copy()
    rotated = compute_orb_descriptor(
        KeyPoint(w - 1 - cx, h - 1 - cy, angle=180.0), rotated_image, pattern
    )
    assert np.array_equal(original, rotated)
    assert descriptor_distance(original, rotated) == 0


def test_descriptor_rejects_keypoint_near_border(random_image):
    with pytest.raises(ValueError):
        compute_orb_descriptor(KeyPoint(3, 3, angle=0.0), random_image, pattern_points())


def test_compute_descriptors_matches_single(random_image):
    pattern = pattern_points()
    keypoints = [KeyPoint(30, 30, angle=0.0), KeyPoint(50, 40, angle=45.0), KeyPoint(60, 25, angle=270.0)]
    table = compute_descriptors(random_image, keypoints, pattern)
    assert table.shape == (3, 32)
    for row, kp in zip(table, keypoints):
        assert np.array_equal(row, compute_orb_descriptor(kp, random_image, pattern))


def test_compute_descriptors_empty(random_image):
    table = compute_descriptors(random_image, [], pattern_points())
    assert table.shape == (0, 32)


def test_keypoint_pt_and_defaults():
    kp = KeyPoint(1.5, 2.5)
    assert kp.pt == (1.5, 2.5)
    assert kp.octave == 0
    assert kp.angle == -1.0