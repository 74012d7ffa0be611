"""Two-view geometry between keyframes: fundamental matrix and linear triangulation."""

from __future__ import annotations

import numpy as np


def skew_symmetric_matrix(v) -> np.ndarray:
    """The 3x3 matrix ``[v]x`` such that ``[v]x @ w == cross(v, w)``."""
    vec = np.asarray(v, dtype=np.float64).reshape(-1)
    if vec.size != 3:
        raise ValueError(f"expected a 3-vector, got {vec.size} values")
    x, y, z = vec
    return np.array([[0.0, -z, y], [z, 0.0, -x], [-y, x, 0.0]])


def compute_f12(keyframe1, keyframe2) -> np.ndarray:
    """Fundamental matrix F12 with ``x1.T @ F12 @ x2 == 0`` for matching pixels."""
    r1w = keyframe1.rotation
    t1w = keyframe1.translation
    r2w = keyframe2.rotation
    t2w = keyframe2.translation

    r12 = r1w @ r2w.T
    t12 = -r1w @ r2w.T @ t2w + t1w
    t12x = skew_symmetric_matrix(t12)

    k1 = np.asarray(keyframe1.K, dtype=np.float64)
    k2 = np.asarray(keyframe2.K, dtype=np.float64)
    return np.linalg.inv(k1.T) @ t12x @ r12 @ np.linalg.inv(k2)


def _projection(tcw) -> np.ndarray:
    matrix = np.asarray(tcw, dtype=np.float64)
    if matrix.shape not in ((3, 4), (4, 4)):
        raise ValueError(f"expected a 3x4 or 4x4 pose, got shape {matrix.shape}")
    return matrix[:3]


def triangulate(xn1, xn2, tcw1, tcw2):
    """Linear (DLT) triangulation of normalised image points seen from two poses.

    ``xn1`` and ``xn2`` are normalised coordinates (x, y[, 1]); ``tcw1`` and
    ``tcw2`` are world-to-camera transforms. Returns the world point, or None
    when the solution lies at infinity.
    """
    p1 = _projection(tcw1)
    p2 = _projection(tcw2)
    a1 = np.asarray(xn1, dtype=np.float64).reshape(-1)
    a2 = np.asarray(xn2, dtype=np.float64).reshape(-1)

    system = np.array(
        [
            a1[0] * p1[2] - p1[0],
            a1[1] * p1[2] - p1[1],
            a2[0] * p2[2] - p2[0],
            a2[1] * p2[2] - p2[1],
        ]
    )
    _, _, vt = np.linalg.svd(system)
    homogeneous = vt[3]
    if homogeneous[3] == 0:
        return None
    return homogeneous[:3] / homogeneous[3]