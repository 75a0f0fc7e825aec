"""Oriented FAST keypoints and rotated BRIEF descriptors."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, Sequence

import numpy as np

PATCH_SIZE = 31
HALF_PATCH_SIZE = 15
DESCRIPTOR_BYTES = 32

# 256 learned point pairs (x0, y0, x1, y1) for the binary tests.
_BIT_PATTERN_31 = (
    8, -3, 9, 5,
    4, 2, 7, -12,
    -11, 9, -8, 2,
    7, -12, 12, -13,
    2, -13, 2, 12,
    1, -7, 1, 6,
    -2, -10, -2, -4,
    -13, -13, -11, -8,
    -13, -3, -12, -9,
    10, 4, 11, 9,
    -13, -8, -8, -9,
    -11, 7, -9, 12,
    7, 7, 12, 6,
    -4, -5, -3, 0,
    -13, 2, -12, -3,
    -9, 0, -7, 5,
    12, -6, 12, -1,
    -3, 6, -2, 12,
    -6, -13, -4, -8,
    11, -13, 12, -8,
    4, 7, 5, 1,
    5, -3, 10, -3,
    3, -7, 6, 12,
    -8, -7, -6, -2,
    -2, 11, -1, -10,
    -13, 12, -8, 10,
    -7, 3, -5, -3,
    -4, 2, -3, 7,
    -10, -12, -6, 11,
    5, -12, 6, -7,
    5, -6, 7, -1,
    1, 0, 4, -5,
    9, 11, 11, -13,
    4, 7, 4, 12,
    2, -1, 4, 4,
    -4, -12, -2, 7,
    -8, -5, -7, -10,
    4, 11, 9, 12,
    0, -8, 1, -13,
    -13, -2, -8, 2,
    -3, -2, -2, 3,
    -6, 9, -4, -9,
    8, 12, 10, 7,
    0, 9, 1, 3,
    7, -5, 11, -10,
    -13, -6, -11, 0,
    10, 7, 12, 1,
    -6, -3, -6, 12,
    10, -9, 12, -4,
    -13, 8, -8, -12,
    -13, 0, -8, -4,
    3, 3, 7, 8,
    5, 7, 10, -7,
    -1, 7, 1, -12,
    3, -10, 5, 6,
    2, -4, 3, -10,
    -13, 0, -13, 5,
    -13, -7, -12, 12,
    -13, 3, -11, 8,
    -7, 12, -4, 7,
    6, -10, 12, 8,
    -9, -1, -7, -6,
    -2, -5, 0, 12,
    -12, 5, -7, 5,
    3, -10, 8, -13,
    -7, -7, -4, 5,
    -3, -2, -1, -7,
    2, 9, 5, -11,
    -11, -13, -5, -13,
    -1, 6, 0, -1,
    5, -3, 5, 2,
    -4, -13, -4, 12,
    -9, -6, -9, 6,
    -12, -10, -8, -4,
    10, 2, 12, -3,
    7, 12, 12, 12,
    -7, -13, -6, 5,
    -4, 9, -3, 4,
    7, -1, 12, 2,
    -7, 6, -5, 1,
    -13, 11, -12, 5,
    -3, 7, -2, -6,
    7, -8, 12, -7,
    -13, -7, -11, -12,
    1, -3, 12, 12,
    2, -6, 3, 0,
    -4, 3, -2, -13,
    -1, -13, 1, 9,
    7, 1, 8, -6,
    1, -1, 3, 12,
    9, 1, 12, 6,
    -1, -9, -1, 3,
    -13, -13, -10, 5,
    7, 7, 10, 12,
    12, -5, 12, 9,
    6, 3, 7, 11,
    5, -13, 6, 10,
    2, -12, 2, 3,
    3, 8, 4, -6,
    2, 6, 12, -13,
    9, -12, 10, 3,
    -8, 4, -7, 9,
    -11, 12, -4, -6,
    1, 12, 2, -8,
    6, -9, 7, -4,
    2, 3, 3, -2,
    6, 3, 11, 0,
    3, -3, 8, -8,
    7, 8, 9, 3,
    -11, -5, -6, -4,
    -10, 11, -5, 10,
    -5, -8, -3, 12,
    -10, 5, -9, 0,
    8, -1, 12, -6,
    4, -6, 6, -11,
    -10, 12, -8, 7,
    4, -2, 6, 7,
    -2, 0, -2, 12,
    -5, -8, -5, 2,
    7, -6, 10, 12,
    -9, -13, -8, -8,
    -5, -13, -5, -2,
    8, -8, 9, -13,
    -9, -11, -9, 0,
    1, -8, 1, -2,
    7, -4, 9, 1,
    -2, 1, -1, -4,
    11, -6, 12, -11,
    -12, -9, -6, 4,
    3, 7, 7, 12,
    5, 5, 10, 8,
    0, -4, 2, 8,
    -9, 12, -5, -13,
    0, 7, 2, 12,
    -1, 2, 1, 7,
    5, 11, 7, -9,
    3, 5, 6, -8,
    -13, -4, -8, 9,
    -5, 9, -3, -3,
    -4, -7, -3, -12,
    6, 5, 8, 0,
    -7, 6, -6, 12,
    -13, 6, -5, -2,
    1, -10, 3, 10,
    4, 1, 8, -4,
    -2, -2, 2, -13,
    2, -12, 12, 12,
    -2, -13, 0, -6,
    4, 1, 9, 3,
    -6, -10, -3, -5,
    -3, -13, -1, 1,
    7, 5, 12, -11,
    4, -2, 5, -7,
    -13, 9, -9, -5,
    7, 1, 8, 6,
    7, -8, 7, 6,
    -7, -4, -7, 1,
    -8, 11, -7, -8,
    -13, 6, -12, -8,
    2, 4, 3, 9,
    10, -5, 12, 3,
    -6, -5, -6, 7,
    8, -3, 9, -8,
    2, -12, 2, 8,
    -11, -2, -10, 3,
    -12, -13, -7, -9,
    -11, 0, -10, -5,
    5, -3, 11, 8,
    -2, -13, -1, 12,
    -1, -8, 0, 9,
    -13, -11, -12, -5,
    -10, -2, -10, 11,
    -3, 9, -2, -13,
    2, -3, 3, 2,
    -9, -13, -4, 0,
    -4, 6, -3, -10,
    -4, 12, -2, -7,
    -6, -11, -4, 9,
    6, -3, 6, 11,
    -13, 11, -5, 5,
    11, 11, 12, 6,
    7, -5, 12, -2,
    -1, 12, 0, 7,
    -4, -8, -3, -2,
    -7, 1, -6, 7,
    -13, -12, -8, -13,
    -7, -2, -6, -8,
    -8, 5, -6, -9,
    -5, -1, -4, 5,
    -13, 7, -8, 10,
    1, 5, 5, -13,
    1, 0, 10, -13,
    9, 12, 10, -1,
    5, -8, 10, -9,
    -1, 11, 1, -13,
    -9, -3, -6, 2,
    -1, -10, 1, 12,
    -13, 1, -8, -10,
    8, -11, 10, -6,
    2, -13, 3, -6,
    7, -13, 12, -9,
    -10, -10, -5, -7,
    -10, -8, -8, -13,
    4, -6, 8, 5,
    3, 12, 8, -13,
    -4, 2, -3, -3,
    5, -13, 10, -12,
    4, -13, 5, -1,
    -9, 9, -4, 3,
    0, 3, 3, -9,
    -12, 1, -6, 1,
    3, 2, 4, -8,
    -10, -10, -10, 9,
    8, -13, 12, 12,
    -8, -12, -6, -5,
    2, 2, 3, 7,
    10, 6, 11, -8,
    6, 8, 8, -12,
    -7, 10, -6, 5,
    -3, -9, -3, 9,
    -1, -13, -1, 5,
    -3, -7, -3, 4,
    -8, -2, -8, 3,
    4, 2, 12, 12,
    2, -5, 3, 11,
    6, -9, 11, -13,
    3, -1, 7, 12,
    11, -1, 12, 4,
    -3, 0, -3, 6,
    4, -11, 4, 12,
    2, -4, 2, 1,
    -10, -6, -8, 1,
    -13, 7, -11, 1,
    -13, 12, -11, -13,
    6, 0, 11, -13,
    0, -1, 1, 4,
    -13, 3, -9, -2,
    -9, 8, -6, -3,
    -13, -6, -8, -2,
    5, -9, 8, 10,
    2, 7, 3, -9,
    -1, -6, -1, -1,
    9, 5, 11, -2,
    11, -3, 12, -8,
    3, 0, 3, 5,
    -1, 4, 0, 10,
    3, -6, 4, 5,
    -13, 0, -10, 5,
    5, 8, 12, 11,
    8, 9, 9, -6,
    7, -4, 8, -12,
    -10, 4, -10, 9,
    7, 3, 12, 4,
    9, -7, 10, -2,
    7, 0, 12, -2,
    -1, -6, 0, -11,
)


@dataclass
class KeyPoint:
    """A detected image feature: position, patch size, orientation and pyramid level."""

    x: float
    y: float
    size: float = 0.0
    angle: float = -1.0
    response: float = 0.0
    octave: int = 0

    @property
    def pt(self) -> tuple[float, float]:
        return (self.x, self.y)


def pattern_points() -> np.ndarray:
    """The 512 sampling points of the descriptor as an (512, 2) array of (x, y)."""
    return np.array(_BIT_PATTERN_31, dtype=np.int64).reshape(512, 2)


def compute_umax(half_patch_size: int = HALF_PATCH_SIZE) -> list[int]:
    """Half-width of each row of a circular patch, made symmetric about the diagonal."""
    umax = [0] * (half_patch_size + 1)
    vmax = math.floor(half_patch_size * math.sqrt(2.0) / 2 + 1)
    vmin = math.ceil(half_patch_size * math.sqrt(2.0) / 2)
    hp2 = half_patch_size * half_patch_size
    for v in range(min(vmax, half_patch_size) + 1):
        umax[v] = round(math.sqrt(hp2 - v * v))

    v0 = 0
    for v in range(half_patch_size, vmin - 1, -1):
        while umax[v0] == umax[v0 + 1]:
            v0 += 1
        umax[v] = v0
        v0 += 1
    return umax


def _center(pt: Sequence[float]) -> tuple[int, int]:
    return int(np.rint(pt[0])), int(np.rint(pt[1]))


def ic_angle(image: np.ndarray, pt: Sequence[float], umax: Sequence[int]) -> float:
    """Intensity-centroid orientation of the patch around ``pt``, in degrees [0, 360)."""
    img = np.asarray(image)
    half = len(umax) - 1
    cx, cy = _center(pt)
    rows, cols = img.shape[:2]
    if cx - half < 0 or cy - half < 0 or cx + half >= cols or cy + half >= rows:
        raise ValueError(f"patch around {tuple(pt)} leaves the image")

    data = img.astype(np.int64)
    us = np.arange(-half, half + 1)
    m_10 = int(np.dot(us, data[cy, cx - half:cx + half + 1]))
    m_01 = 0
    for v in range(1, half + 1):
        d = umax[v]
        u = np.arange(-d, d + 1)
        plus = data[cy + v, cx - d:cx + d + 1]
        minus = data[cy - v, cx - d:cx + d + 1]
        m_01 += v * int((plus - minus).sum())
        m_10 += int(np.dot(u, plus + minus))

    return math.degrees(math.atan2(m_01, m_10)) % 360.0


def compute_orb_descriptor(keypoint: KeyPoint, image: np.ndarray, pattern: np.ndarray) -> np.ndarray:
    """32-byte rotated BRIEF descriptor of ``keypoint`` sampled with ``pattern``."""
    img = np.asarray(image)
    points = np.asarray(pattern, dtype=np.float64).reshape(-1, 2)
    if len(points) < 2 * 8 * DESCRIPTOR_BYTES:
        raise ValueError("pattern needs 512 points")
    points = points[: 2 * 8 * DESCRIPTOR_BYTES]

    angle = math.radians(keypoint.angle)
    a, b = math.cos(angle), math.sin(angle)
    cx, cy = _center(keypoint.pt)
    px, py = points[:, 0], points[:, 1]
    row_idx = cy + np.rint(px * b + py * a).astype(np.int64)
    col_idx = cx + np.rint(px * a - py * b).astype(np.int64)
    rows, cols = img.shape[:2]
    if row_idx.min() < 0 or col_idx.min() < 0 or row_idx.max() >= rows or col_idx.max() >= cols:
        raise ValueError(f"descriptor pattern around {keypoint.pt} leaves the image")

    values = img[row_idx, col_idx].astype(np.int64)
    bits = values[0::2] < values[1::2]
    return np.packbits(bits.reshape(DESCRIPTOR_BYTES, 8), axis=1, bitorder="little").ravel()


def compute_descriptors(
    image: np.ndarray, keypoints: Iterable[KeyPoint], pattern: np.ndarray
) -> np.ndarray:
    """Descriptors for every keypoint as an (N, 32) uint8 array."""
    rows = [compute_orb_descriptor(kp, image, pattern) for kp in keypoints]
    if not rows:
        return np.zeros((0, DESCRIPTOR_BYTES), dtype=np.uint8)
    return np.vstack(rows).astype(np.uint8)