"""ORB feature extraction over an image pyramid with quadtree keypoint spreading."""

from __future__ import annotations

import dataclasses
import math
from collections import deque
from dataclasses import dataclass, field
from typing import Sequence

import numpy as np
from numpy.lib.stride_tricks import sliding_window_view

from .orb_features import (
    DESCRIPTOR_BYTES,
    PATCH_SIZE,
    KeyPoint,
    compute_descriptors,
    compute_umax,
    ic_angle,
    pattern_points,
)

EDGE_THRESHOLD = 19
_CELL_SIZE = 30.0

# Bresenham circle of radius 3 as (dx, dy), in contiguous order.
_CIRCLE = (
    (0, 3), (1, 3), (2, 2), (3, 1), (3, 0), (3, -1), (2, -2), (1, -3),
    (0, -3), (-1, -3), (-2, -2), (-3, -1), (-3, 0), (-3, 1), (-2, 2), (-1, 3),
)
_ARC = 9

Point = tuple[int, int]


def _c_round(value: float) -> int:
    """Round half away from zero."""
    return int(math.floor(value + 0.5)) if value >= 0 else -int(math.floor(-value + 0.5))


@dataclass(eq=False)
class ExtractorNode:
    """A rectangular cell of the keypoint quadtree and the keypoints inside it."""

    ul: Point
    ur: Point
    bl: Point
    br: Point
    keys: list[KeyPoint] = field(default_factory=list)
    no_more: bool = False

    def divide(self) -> tuple["ExtractorNode", "ExtractorNode", "ExtractorNode", "ExtractorNode"]:
        """Split into four quadrants and hand each keypoint to the quadrant holding it."""
        half_x = math.ceil((self.ur[0] - self.ul[0]) / 2)
        half_y = math.ceil((self.br[1] - self.ul[1]) / 2)

        n1 = ExtractorNode(
            self.ul,
            (self.ul[0] + half_x, self.ul[1]),
            (self.ul[0], self.ul[1] + half_y),
            (self.ul[0] + half_x, self.ul[1] + half_y),
        )
        n2 = ExtractorNode(n1.ur, self.ur, n1.br, (self.ur[0], self.ul[1] + half_y))
        n3 = ExtractorNode(n1.bl, n1.br, self.bl, (n1.br[0], self.bl[1]))
        n4 = ExtractorNode(n3.ur, n2.br, n3.br, self.br)

        for kp in self.keys:
            if kp.x < n1.ur[0]:
                (n1 if kp.y < n1.br[1] else n3).keys.append(kp)
            elif kp.y < n1.br[1]:
                n2.keys.append(kp)
            else:
                n4.keys.append(kp)

        for child in (n1, n2, n3, n4):
            if len(child.keys) == 1:
                child.no_more = True
        return n1, n2, n3, n4


def features_per_level(nfeatures: int, scale_factor: float, nlevels: int) -> list[int]:
    """Share ``nfeatures`` out over the pyramid levels in geometric proportion."""
    if nlevels < 1:
        raise ValueError("nlevels must be at least 1")
    if scale_factor <= 1.0:
        raise ValueError("scale_factor must be greater than 1")
    factor = 1.0 / scale_factor
    desired = nfeatures * (1 - factor) / (1 - factor**nlevels)
    counts = []
    for _ in range(nlevels - 1):
        counts.append(round(desired))
        desired *= factor
    counts.append(max(nfeatures - sum(counts), 0))
    return counts


def fast_detect(image: np.ndarray, threshold: int, nonmax: bool = True) -> list[KeyPoint]:
    """FAST-9 corners of a grayscale image, in row-major order."""
    img = np.asarray(image)
    if img.ndim != 2:
        raise ValueError("fast_detect needs a single-channel image")
    h, w = img.shape
    if h < 7 or w < 7:
        return []
    data = img.astype(np.int16)
    center = data[3:h - 3, 3:w - 3]
    diffs = np.stack([data[3 + dy:h - 3 + dy, 3 + dx:w - 3 + dx] for dx, dy in _CIRCLE]) - center
    extended = np.concatenate([diffs, diffs[: _ARC - 1]])
    windows = sliding_window_view(extended, _ARC, axis=0)
    brighter = windows.min(axis=-1).max(axis=0)
    darker = (-windows.max(axis=-1)).max(axis=0)
    best = np.maximum(brighter, darker).astype(np.int32)

    corners = np.zeros((h, w), dtype=bool)
    corners[3:h - 3, 3:w - 3] = best > threshold
    scores = np.zeros((h, w), dtype=np.int32)
    scores[3:h - 3, 3:w - 3] = np.where(best > threshold, best - 1, 0)

    if nonmax:
        padded = np.pad(scores, 1)
        keep = np.ones((h, w), dtype=bool)
        for dy in (-1, 0, 1):
            for dx in (-1, 0, 1):
                if dx == 0 and dy == 0:
                    continue
                keep &= scores > padded[1 + dy:1 + dy + h, 1 + dx:1 + dx + w]
        corners &= keep

    rows, cols = np.nonzero(corners)
    return [
        KeyPoint(float(c), float(r), size=7.0, response=float(scores[r, c]))
        for r, c in zip(rows, cols)
    ]


def _to_dtype(values: np.ndarray, dtype: np.dtype) -> np.ndarray:
    if np.issubdtype(dtype, np.integer):
        info = np.iinfo(dtype)
        return np.clip(np.rint(values), info.min, info.max).astype(dtype)
    return values.astype(dtype)


def gaussian_blur(image: np.ndarray, ksize: int, sigma: float) -> np.ndarray:
    """Separable Gaussian blur with mirrored (reflect-101) borders."""
    if ksize < 1 or ksize % 2 == 0:
        raise ValueError("ksize must be a positive odd number")
    img = np.asarray(image)
    if img.ndim != 2:
        raise ValueError("gaussian_blur needs a single-channel image")
    if sigma <= 0:
        sigma = 0.3 * ((ksize - 1) * 0.5 - 1) + 0.8
    offsets = np.arange(ksize) - (ksize - 1) / 2
    kernel = np.exp(-(offsets**2) / (2 * sigma * sigma))
    kernel /= kernel.sum()

    pad = ksize // 2
    h, w = img.shape
    padded = np.pad(img.astype(np.float64), pad, mode="reflect")
    horizontal = sum(k * padded[:, i:i + w] for i, k in enumerate(kernel))
    blurred = sum(k * horizontal[i:i + h, :] for i, k in enumerate(kernel))
    return _to_dtype(blurred, img.dtype)


def _linear_axis(src_len: int, dst_len: int) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    scale = src_len / dst_len
    pos = (np.arange(dst_len) + 0.5) * scale - 0.5
    i0 = np.floor(pos).astype(np.int64)
    frac = pos - i0
    low = i0 < 0
    i0[low] = 0
    frac[low] = 0.0
    high = i0 >= src_len - 1
    i0[high] = src_len - 1
    frac[high] = 0.0
    i1 = np.minimum(i0 + 1, src_len - 1)
    return i0, i1, frac


def resize_bilinear(image: np.ndarray, width: int, height: int) -> np.ndarray:
    """Bilinear resize with pixel centres aligned, clamped at the borders."""
    if width < 1 or height < 1:
        raise ValueError("target size must be positive")
    img = np.asarray(image)
    if img.ndim != 2:
        raise ValueError("resize_bilinear needs a single-channel image")
    h, w = img.shape
    x0, x1, fx = _linear_axis(w, width)
    y0, y1, fy = _linear_axis(h, height)
    data = img.astype(np.float64)
    top = data[y0][:, x0] * (1 - fx) + data[y0][:, x1] * fx
    bottom = data[y1][:, x0] * (1 - fx) + data[y1][:, x1] * fx
    result = top * (1 - fy)[:, None] + bottom * fy[:, None]
    return _to_dtype(result, img.dtype)


class ORBExtractor:
    """Detects ORB keypoints spread evenly over a scale pyramid and describes them."""

    def __init__(
        self,
        nfeatures: int = 1000,
        scale_factor: float = 1.2,
        nlevels: int = 8,
        ini_th_fast: int = 20,
        min_th_fast: int = 7,
    ) -> None:
        self.nfeatures = nfeatures
        self.scale_factor = scale_factor
        self.nlevels = nlevels
        self.ini_th_fast = ini_th_fast
        self.min_th_fast = min_th_fast

        self.n_features_per_level = features_per_level(nfeatures, scale_factor, nlevels)
        self.scale_factors = [scale_factor**level for level in range(nlevels)]
        self.level_sigma2 = [s * s for s in self.scale_factors]
        self.inv_scale_factors = [1.0 / s for s in self.scale_factors]
        self.inv_level_sigma2 = [1.0 / s for s in self.level_sigma2]

        self.pattern = pattern_points()
        self.umax = compute_umax()
        self.image_pyramid: list[np.ndarray] = []

    def compute_pyramid(self, image: np.ndarray) -> list[np.ndarray]:
        """Build and store the scaled images, level 0 being the input itself."""
        img = np.asarray(image)
        rows, cols = img.shape[:2]
        pyramid: list[np.ndarray] = []
        for level, scale in enumerate(self.inv_scale_factors):
            width = round(cols * scale)
            height = round(rows * scale)
            if level == 0:
                pyramid.append(img.copy())
            else:
                pyramid.append(resize_bilinear(pyramid[-1], max(width, 1), max(height, 1)))
        self.image_pyramid = pyramid
        return pyramid

    def distribute_oct_tree(
        self,
        keys: Sequence[KeyPoint],
        min_x: int,
        max_x: int,
        min_y: int,
        max_y: int,
        n: int,
    ) -> list[KeyPoint]:
        """Split the region until about ``n`` cells hold keypoints; keep the strongest of each."""
        n_ini = max(1, _c_round((max_x - min_x) / (max_y - min_y)))
        h_x = (max_x - min_x) / n_ini
        height = max_y - min_y

        initial = []
        for i in range(n_ini):
            ul = (round(h_x * i), 0)
            ur = (round(h_x * (i + 1)), 0)
            initial.append(ExtractorNode(ul, ur, (ul[0], height), (ur[0], height)))
        for kp in keys:
            initial[min(int(kp.x / h_x), n_ini - 1)].keys.append(kp)

        nodes: deque[ExtractorNode] = deque()
        for node in initial:
            if node.keys:
                node.no_more = len(node.keys) == 1
                nodes.append(node)

        finish = False
        while not finish:
            prev_size = len(nodes)
            to_expand: list[ExtractorNode] = []
            front: deque[ExtractorNode] = deque()
            kept: list[ExtractorNode] = []
            for node in nodes:
                if node.no_more:
                    kept.append(node)
                    continue
                for child in node.divide():
                    if child.keys:
                        front.appendleft(child)
                        if len(child.keys) > 1:
                            to_expand.append(child)
            front.extend(kept)
            nodes = front

            if len(nodes) >= n or len(nodes) == prev_size:
                finish = True
            elif len(nodes) + 3 * len(to_expand) > n:
                while not finish:
                    prev_size = len(nodes)
                    previous = sorted(to_expand, key=lambda node: len(node.keys))
                    to_expand = []
                    for node in reversed(previous):
                        for child in node.divide():
                            if child.keys:
                                nodes.appendleft(child)
                                if len(child.keys) > 1:
                                    to_expand.append(child)
                        nodes.remove(node)
                        if len(nodes) >= n:
                            break
                    if len(nodes) >= n or len(nodes) == prev_size:
                        finish = True

        return [dataclasses.replace(max(node.keys, key=lambda kp: kp.response)) for node in nodes]

    def compute_keypoints_oct_tree(self) -> list[list[KeyPoint]]:
        """Oriented keypoints for every level of the stored pyramid, in level coordinates."""
        if len(self.image_pyramid) != self.nlevels:
            raise RuntimeError("compute_pyramid must be called first")

        all_keypoints: list[list[KeyPoint]] = []
        for level, image in enumerate(self.image_pyramid):
            rows, cols = image.shape
            min_border_x = EDGE_THRESHOLD - 3
            min_border_y = min_border_x
            max_border_x = cols - EDGE_THRESHOLD + 3
            max_border_y = rows - EDGE_THRESHOLD + 3

            width = float(max_border_x - min_border_x)
            height = float(max_border_y - min_border_y)
            n_cols = int(width / _CELL_SIZE) if width > 0 else 0
            n_rows = int(height / _CELL_SIZE) if height > 0 else 0
            if n_cols <= 0 or n_rows <= 0:
                all_keypoints.append([])
                continue
            w_cell = math.ceil(width / n_cols)
            h_cell = math.ceil(height / n_rows)

            to_distribute: list[KeyPoint] = []
            for i in range(n_rows):
                ini_y = min_border_y + i * h_cell
                if ini_y >= max_border_y - 3:
                    continue
                end_y = min(ini_y + h_cell + 6, max_border_y)
                for j in range(n_cols):
                    ini_x = min_border_x + j * w_cell
                    if ini_x >= max_border_x - 6:
                        continue
                    end_x = min(ini_x + w_cell + 6, max_border_x)
                    cell = image[ini_y:end_y, ini_x:end_x]
                    found = fast_detect(cell, self.ini_th_fast, True)
                    if not found:
                        found = fast_detect(cell, self.min_th_fast, True)
                    for kp in found:
                        kp.x += j * w_cell
                        kp.y += i * h_cell
                        to_distribute.append(kp)

            keypoints = self.distribute_oct_tree(
                to_distribute,
                min_border_x,
                max_border_x,
                min_border_y,
                max_border_y,
                self.n_features_per_level[level],
            )
            scaled_patch_size = int(PATCH_SIZE * self.scale_factors[level])
            for kp in keypoints:
                kp.x += min_border_x
                kp.y += min_border_y
                kp.octave = level
                kp.size = float(scaled_patch_size)
                kp.angle = ic_angle(image, kp.pt, self.umax)
            all_keypoints.append(keypoints)
        return all_keypoints

    def __call__(self, image: np.ndarray) -> tuple[list[KeyPoint], np.ndarray]:
        """Keypoints in input-image coordinates and their (N, 32) uint8 descriptors."""
        img = np.asarray(image)
        empty = np.zeros((0, DESCRIPTOR_BYTES), dtype=np.uint8)
        if img.size == 0:
            return [], empty
        if img.ndim != 2 or img.dtype != np.uint8:
            raise ValueError("ORBExtractor needs a single-channel uint8 image")

        self.compute_pyramid(img)
        per_level = self.compute_keypoints_oct_tree()

        keypoints: list[KeyPoint] = []
        descriptor_blocks: list[np.ndarray] = []
        for level, level_keys in enumerate(per_level):
            if not level_keys:
                continue
            working = gaussian_blur(self.image_pyramid[level], 7, 2.0)
            descriptor_blocks.append(compute_descriptors(working, level_keys, self.pattern))
            if level != 0:
                scale = self.scale_factors[level]
                for kp in level_keys:
                    kp.x *= scale
                    kp.y *= scale
            keypoints.extend(level_keys)

        if not keypoints:
            return [], empty
        return keypoints, np.vstack(descriptor_blocks)