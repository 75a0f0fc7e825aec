"""Two-view geometry used when creating new map points."""

from __future__ import annotations

from typing import Any

import numpy as np


def _vector3(v: Any, name: str) -> np.ndarray:
    arr = np.asarray(v, dtype=float).ravel()
    if arr.shape != (3,):
        raise ValueError(f"{name} must hold 3 values")
    return arr


def _matrix(m: Any, shape: tuple[int, int], name: str) -> np.ndarray:
    arr = np.asarray(m, dtype=float)
    if arr.shape != shape:
        raise ValueError(f"{name} must have shape {shape}")
    return arr


def skew_symmetric(v: Any) -> np.ndarray:
    """The 3x3 matrix ``[v]x`` with ``[v]x @ w == cross(v, w)``."""
    x, y, z = _vector3(v, "v")
    return np.array(
        [
            [0.0, -z, y],
            [z, 0.0, -x],
            [-y, x, 0.0],
        ]
    )


def fundamental_from_poses(
    r1w: Any, t1w: Any, k1: Any, r2w: Any, t2w: Any, k2: Any
) -> np.ndarray:
    """Fundamental matrix F12 with ``x1.T @ F12 @ x2 == 0`` for matching pixels."""
    r1 = _matrix(r1w, (3, 3), "r1w")
    r2 = _matrix(r2w, (3, 3), "r2w")
    t1 = _vector3(t1w, "t1w")
    t2 = _vector3(t2w, "t2w")
    k1m = _matrix(k1, (3, 3), "k1")
    k2m = _matrix(k2, (3, 3), "k2")

    r12 = r1 @ r2.T
    t12 = -r12 @ t2 + t1
    return np.linalg.inv(k1m.T) @ skew_symmetric(t12) @ r12 @ np.linalg.inv(k2m)


def triangulate_linear(xn1: Any, xn2: Any, tcw1: Any, tcw2: Any) -> np.ndarray | None:
    """Linear (DLT) triangulation from normalised image points and two 3x4 poses.

    Returns the 3D point in world coordinates, or None when the solution lies
    at infinity.
    """
    p1 = np.asarray(xn1, dtype=float).ravel()
    p2 = np.asarray(xn2, dtype=float).ravel()
    if p1.size < 2 or p2.size < 2:
        raise ValueError("normalised points need at least x and y")
    pose1 = _matrix(tcw1, (3, 4), "tcw1")
    pose2 = _matrix(tcw2, (3, 4), "tcw2")

    a = np.vstack(
        [
            p1[0] * pose1[2] - pose1[0],
            p1[1] * pose1[2] - pose1[1],
            p2[0] * pose2[2] - pose2[0],
            p2[1] * pose2[2] - pose2[1],
        ]
    )
    _, _, vt = np.linalg.svd(a)
    homogeneous = vt[3]
    if homogeneous[3] == 0:
        return None
    return homogeneous[:3] / homogeneous[3]


def parallax_cosine(ray1: Any, ray2: Any) -> float:
    """Cosine of the angle between two viewing rays."""
    a = _vector3(ray1, "ray1")
    b = _vector3(ray2, "ray2")
    norms = float(np.linalg.norm(a) * np.linalg.norm(b))
    if norms == 0:
        raise ValueError("rays must not be zero vectors")
    return float(np.dot(a, b) / norms)