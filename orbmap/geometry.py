"""Two-view geometry helpers used when creating new map points."""

from __future__ import annotations

import numpy as np


def skew_symmetric_matrix(v) -> np.ndarray:
    """Matrix ``S`` such that ``S @ w`` equals ``cross(v, w)``."""
    x, y, z = np.asarray(v, dtype=np.float32).reshape(3)
    return np.array(
        [[0, -z, y], [z, 0, -x], [-y, x, 0]],
        dtype=np.float32,
    )


def compute_f12(keyframe1, keyframe2) -> np.ndarray:
    """Fundamental matrix mapping points of ``keyframe2`` to epipolar lines in ``keyframe1``."""
    r1w = np.asarray(keyframe1.rotation(), dtype=np.float64)
    t1w = np.asarray(keyframe1.translation(), dtype=np.float64).reshape(3)
    r2w = np.asarray(keyframe2.rotation(), dtype=np.float64)
    t2w = np.asarray(keyframe2.translation(), dtype=np.float64).reshape(3)

    r12 = r1w @ r2w.T
    t12 = -r1w @ r2w.T @ t2w + t1w
    t12x = skew_symmetric_matrix(t12).astype(np.float64)

    k1 = np.asarray(keyframe1.k, dtype=np.float64)
    k2 = np.asarray(keyframe2.k, dtype=np.float64)
    return (np.linalg.inv(k1.T) @ t12x @ r12 @ np.linalg.inv(k2)).astype(np.float32)


def triangulate_linear(xn1, xn2, tcw1, tcw2):
    """Linear (DLT) triangulation of normalised image points in two views.

    ``tcw1`` and ``tcw2`` are the 3x4 (or 4x4) world-to-camera poses.
    Returns the 3D point, or None when it lies at infinity.
    """
    p1 = np.asarray(xn1, dtype=np.float64).ravel()
    p2 = np.asarray(xn2, dtype=np.float64).ravel()
    t1 = np.asarray(tcw1, dtype=np.float64)[:3, :4]
    t2 = np.asarray(tcw2, dtype=np.float64)[:3, :4]

    a = np.vstack(
        [
            p1[0] * t1[2] - t1[0],
            p1[1] * t1[2] - t1[1],
            p2[0] * t2[2] - t2[0],
            p2[1] * t2[2] - t2[1],
        ]
    )
    _, _, vt = np.linalg.svd(a, full_matrices=True)
    x = vt[3]
    if x[3] == 0:
        return None
    return (x[:3] / x[3]).astype(np.float32)


def cos_parallax(ray1, ray2) -> float:
    """Cosine of the angle between two viewing rays."""
    a = np.asarray(ray1, dtype=np.float64).ravel()
    b = np.asarray(ray2, dtype=np.float64).ravel()
    return float(a @ b / (np.linalg.norm(a) * np.linalg.norm(b)))