import numpy as np
import pytest

from slamkit.orb_extractor import (
    ExtractorNode,
    ORBExtractor,
    fast_detect,
    features_per_level,
    gaussian_blur,
    resize_bilinear,
)
from slamkit.orb_features import KeyPoint


def _blocky_image(size=200, block=8, seed=0):
    rng = np.random.default_rng(seed)
    coarse = rng.integers(0, 256, size=(size // block, size // block))
    return np.kron(coarse, np.ones((block, block))).astype(np.uint8)


# --- features_per_level -------------------------------------------------


@pytest.mark.parametrize("nfeatures,scale,nlevels", [(1000, 1.2, 8), (500, 2.0, 4), (37, 1.5, 3)])
def test_features_per_level_sums_to_total(nfeatures, scale, nlevels):
    counts = features_per_level(nfeatures, scale, nlevels)
    assert len(counts) == nlevels
    assert sum(counts) == nfeatures
    assert all(c >= 0 for c in counts)


def test_features_per_level_decreases_with_level():
    counts = features_per_level(1000, 1.2, 8)
    assert counts[:-1] == sorted(counts[:-1], reverse=True)


def test_features_per_level_single_level_gets_everything():
    assert features_per_level(250, 1.2, 1) == [250]


def test_features_per_level_rejects_unit_scale():
    with pytest.raises(ValueError):
        features_per_level(100, 1.0, 4)


# --- ExtractorNode ------------------------------------------------------


def test_divide_assigns_keys_to_quadrants():
    keys = [KeyPoint(1, 1), KeyPoint(90, 2), KeyPoint(3, 95), KeyPoint(80, 80), KeyPoint(85, 85)]
    node = ExtractorNode((0, 0), (100, 0), (0, 100), (100, 100), list(keys))
    n1, n2, n3, n4 = node.divide()
    assert n1.keys == [keys[0]]
    assert n2.keys == [keys[1]]
    assert n3.keys == [keys[2]]
    assert n4.keys == [keys[3], keys[4]]
    assert n1.no_more and n2.no_more and n3.no_more
    assert not n4.no_more


def test_divide_children_tile_the_parent():
    node = ExtractorNode((0, 0), (11, 0), (0, 7), (11, 7))
    n1, n2, n3, n4 = node.divide()
    assert n1.ul == node.ul
    assert n2.ur == node.ur
    assert n3.bl == node.bl
    assert n4.br == node.br
    assert n1.br == n4.ul == n2.bl == n3.ur


# --- fast_detect --------------------------------------------------------


def test_fast_single_bright_pixel_is_the_only_corner():
    img = np.zeros((21, 21), dtype=np.uint8)
    img[10, 10] = 255
    found = fast_detect(img, 20, True)
    assert [(kp.x, kp.y) for kp in found] == [(10.0, 10.0)]
    assert found[0].response >= 20


def test_fast_uniform_image_has_no_corners():
    img = np.full((40, 40), 128, dtype=np.uint8)
    assert fast_detect(img, 5, True) == []


def test_fast_tiny_image_is_empty():
    assert fast_detect(np.zeros((5, 30), dtype=np.uint8), 10) == []


def test_fast_nonmax_is_subset():
    img = _blocky_image(64)
    with_nms = {(kp.x, kp.y) for kp in fast_detect(img, 20, True)}
    without = {(kp.x, kp.y) for kp in fast_detect(img, 20, False)}
    assert with_nms
    assert with_nms <= without
    assert len(without) > len(with_nms)


def test_fast_higher_threshold_finds_fewer():
    img = _blocky_image(64)
    assert len(fast_detect(img, 60, False)) <= len(fast_detect(img, 10, False))


# --- gaussian_blur ------------------------------------------------------


def test_blur_keeps_constant_image():
    img = np.full((15, 20), 77, dtype=np.uint8)
    out = gaussian_blur(img, 7, 2.0)
    assert out.dtype == np.uint8
    assert np.array_equal(out, img)


def test_blur_of_impulse_is_symmetric_and_conserves_mass():
    img = np.zeros((31, 31))
    img[15, 15] = 1000.0
    out = gaussian_blur(img, 7, 2.0)
    assert np.allclose(out, out.T)
    assert np.allclose(out, out[::-1, ::-1])
    assert out.sum() == pytest.approx(1000.0)
    assert out[15, 15] == out.max()


def test_blur_rejects_even_kernel():
    with pytest.raises(ValueError):
        gaussian_blur(np.zeros((10, 10), dtype=np.uint8), 4, 1.0)


# --- resize_bilinear ----------------------------------------------------


def test_resize_same_size_is_identity():
    img = _blocky_image(40, 4, seed=3)
    assert np.array_equal(resize_bilinear(img, 40, 40), img)


def test_resize_halving_averages_blocks():
    rng = np.random.default_rng(7)
    img = rng.integers(0, 256, size=(8, 8)).astype(np.uint8)
    out = resize_bilinear(img, 4, 4)
    means = img.astype(float).reshape(4, 2, 4, 2).mean(axis=(1, 3))
    assert out.shape == (4, 4)
    assert np.all(np.abs(out.astype(float) - means) <= 1.0)


def test_resize_rejects_zero_size():
    with pytest.raises(ValueError):
        resize_bilinear(np.zeros((4, 4), dtype=np.uint8), 0, 2)


# --- ORBExtractor -------------------------------------------------------


def test_extractor_scale_tables():
    ext = ORBExtractor(500, 1.2, 8, 20, 7)
    assert ext.scale_factors[0] == 1.0
    for i in range(1, 8):
        assert ext.scale_factors[i] == pytest.approx(ext.scale_factors[i - 1] * 1.2)
        assert ext.level_sigma2[i] == pytest.approx(ext.scale_factors[i] ** 2)
        assert ext.inv_scale_factors[i] * ext.scale_factors[i] == pytest.approx(1.0)
    assert sum(ext.n_features_per_level) == 500


def test_compute_pyramid_levels_shrink():
    ext = ORBExtractor(200, 1.2, 4, 20, 7)
    img = _blocky_image(120)
    pyramid = ext.compute_pyramid(img)
    assert len(pyramid) == 4
    assert np.array_equal(pyramid[0], img)
    for level in range(1, 4):
        rows, cols = pyramid[level].shape
        assert cols == round(120 / ext.scale_factors[level])
        assert rows <= pyramid[level - 1].shape[0]


def test_distribute_keeps_strongest_in_a_cell():
    ext = ORBExtractor(100, 1.2, 2, 20, 7)
    keys = [KeyPoint(5, 5, response=1), KeyPoint(6, 6, response=9)]
    result = ext.distribute_oct_tree(keys, 0, 100, 0, 100, 1)
    assert len(result) == 1
    assert (result[0].x, result[0].y, result[0].response) == (6, 6, 9)


def test_distribute_returns_all_separated_keys():
    ext = ORBExtractor(100, 1.2, 2, 20, 7)
    keys = [KeyPoint(x, y, response=x + y) for x in (5, 35, 65, 95) for y in (5, 45, 85)]
    result = ext.distribute_oct_tree(keys, 0, 100, 0, 100, 50)
    assert sorted((k.x, k.y) for k in result) == sorted((k.x, k.y) for k in keys)


def test_distribute_empty_input():
    ext = ORBExtractor(100, 1.2, 2, 20, 7)
    assert ext.distribute_oct_tree([], 0, 100, 0, 100, 10) == []


def test_compute_keypoints_requires_pyramid():
    with pytest.raises(RuntimeError):
        ORBExtractor(100, 1.2, 3, 20, 7).compute_keypoints_oct_tree()


def test_extract_keypoints_and_descriptors():
    ext = ORBExtractor(200, 1.2, 8, 20, 7)
    img = _blocky_image(200)
    keypoints, descriptors = ext(img)
    assert keypoints
    assert descriptors.shape == (len(keypoints), 32)
    assert descriptors.dtype == np.uint8
    assert len(keypoints) <= 200 + 3 * 8
    for kp in keypoints:
        assert 0 <= kp.x < 200 and 0 <= kp.y < 200
        assert 0 <= kp.octave < 8
        assert 0.0 <= kp.angle < 360.0
    octaves = [kp.octave for kp in keypoints]
    assert octaves == sorted(octaves)


def test_extract_is_deterministic():
    img = _blocky_image(160, seed=5)
    k1, d1 = ORBExtractor(150, 1.2, 4, 20, 7)(img)
    k2, d2 = ORBExtractor(150, 1.2, 4, 20, 7)(img)
    assert [(k.x, k.y, k.angle) for k in k1] == [(k.x, k.y, k.angle) for k in k2]
    assert np.array_equal(d1, d2)


def test_extract_empty_image():
    keypoints, descriptors = ORBExtractor(100, 1.2, 3, 20, 7)(np.zeros((0, 0), dtype=np.uint8))
    assert keypoints == []
    assert descriptors.shape == (0, 32)


def test_extract_rejects_non_uint8():
    with pytest.raises(ValueError):
        ORBExtractor(100, 1.2, 3, 20, 7)(np.zeros((64, 64), dtype=np.float32))