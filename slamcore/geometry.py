"""Two-view geometry used to bootstrap a map from a pair of images.

Points are given as sequences of ``(x, y)`` pixel coordinates, matches as
sequences of ``(index_in_first, index_in_second)`` pairs.
"""

from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np

HOMOGRAPHY_CHI2 = 5.991
FUNDAMENTAL_CHI2 = 3.841
PARALLAX_COS_LIMIT = 0.99998
PARALLAX_RANK = 50


@dataclass
class TriangulationCheck:
    """Outcome of checking one motion hypothesis against the matches."""

    n_good: int
    points: np.ndarray
    good: list[bool] = field(default_factory=list)
    parallax: float = 0.0


def _as_points(points) -> np.ndarray:
    arr = np.asarray(points, dtype=float)
    if arr.size == 0:
        return arr.reshape(0, 2)
    return arr.reshape(-1, 2)


def _as_matches(matches) -> np.ndarray:
    arr = np.asarray(matches, dtype=int)
    if arr.size == 0:
        return arr.reshape(0, 2)
    return arr.reshape(-1, 2)


def _paired(points1, points2) -> tuple[np.ndarray, np.ndarray]:
    p1 = _as_points(points1)
    p2 = _as_points(points2)
    if len(p1) != len(p2):
        raise ValueError("point sets must have the same length")
    if len(p1) == 0:
        raise ValueError("at least one correspondence is required")
    return p1, p2


def _match_coords(keys1, keys2, matches):
    k1 = _as_points(keys1)
    k2 = _as_points(keys2)
    m = _as_matches(matches)
    a = k1[m[:, 0]]
    b = k2[m[:, 1]]
    return a[:, 0], a[:, 1], b[:, 0], b[:, 1]


def normalize(points) -> tuple[np.ndarray, np.ndarray]:
    """Centre the points and scale them to unit mean absolute deviation.

    Returns the normalized points and the 3x3 transform that produces them.
    """
    pts = _as_points(points)
    if len(pts) == 0:
        raise ValueError("cannot normalize an empty point set")
    mean = pts.mean(axis=0)
    centered = pts - mean
    deviation = np.abs(centered).mean(axis=0)
    with np.errstate(divide="ignore", invalid="ignore"):
        scale = 1.0 / deviation
        normalized = centered * scale
    transform = np.eye(3)
    transform[0, 0] = scale[0]
    transform[1, 1] = scale[1]
    transform[0, 2] = -mean[0] * scale[0]
    transform[1, 2] = -mean[1] * scale[1]
    return normalized, transform


def compute_h21(points1, points2) -> np.ndarray:
    """Direct linear estimate of the homography mapping image 1 to image 2."""
    p1, p2 = _paired(points1, points2)
    u1, v1 = p1[:, 0], p1[:, 1]
    u2, v2 = p2[:, 0], p2[:, 1]
    zeros = np.zeros_like(u1)
    ones = np.ones_like(u1)
    a = np.empty((2 * len(p1), 9))
    a[0::2] = np.column_stack([zeros, zeros, zeros, -u1, -v1, -ones, v2 * u1, v2 * v1, v2])
    a[1::2] = np.column_stack([u1, v1, ones, zeros, zeros, zeros, -u2 * u1, -u2 * v1, -u2])
    _, _, vt = np.linalg.svd(a, full_matrices=True)
    return vt[8].reshape(3, 3)


def compute_f21(points1, points2) -> np.ndarray:
    """Eight-point estimate of the fundamental matrix, forced to rank two."""
    p1, p2 = _paired(points1, points2)
    u1, v1 = p1[:, 0], p1[:, 1]
    u2, v2 = p2[:, 0], p2[:, 1]
    a = np.column_stack(
        [u2 * u1, u2 * v1, u2, v2 * u1, v2 * v1, v2, u1, v1, np.ones_like(u1)]
    )
    _, _, vt = np.linalg.svd(a, full_matrices=True)
    f_pre = vt[8].reshape(3, 3)
    u, w, vt = np.linalg.svd(f_pre, full_matrices=True)
    w[2] = 0.0
    return u @ np.diag(w) @ vt


def triangulate(point1, point2, p1, p2) -> np.ndarray:
    """Linear triangulation of one correspondence from two 3x4 projections."""
    x1, y1 = point1
    x2, y2 = point2
    p1 = np.asarray(p1, dtype=float)
    p2 = np.asarray(p2, dtype=float)
    a = np.vstack(
        [
            x1 * p1[2] - p1[0],
            y1 * p1[2] - p1[1],
            x2 * p2[2] - p2[0],
            y2 * p2[2] - p2[1],
        ]
    )
    _, _, vt = np.linalg.svd(a, full_matrices=True)
    h = vt[3]
    with np.errstate(divide="ignore", invalid="ignore"):
        return h[:3] / h[3]


def decompose_e(e) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Split an essential matrix into two rotations and a unit translation."""
    u, _, vt = np.linalg.svd(np.asarray(e, dtype=float))
    t = u[:, 2] / np.linalg.norm(u[:, 2])
    w = np.array([[0.0, -1.0, 0.0], [1.0, 0.0, 0.0], [0.0, 0.0, 1.0]])
    r1 = u @ w @ vt
    if np.linalg.det(r1) < 0:
        r1 = -r1
    r2 = u @ w.T @ vt
    if np.linalg.det(r2) < 0:
        r2 = -r2
    return r1, r2, t


def _score(chi_a: np.ndarray, chi_b: np.ndarray, threshold: float, score_th: float):
    in_a = ~(chi_a > threshold)
    in_b = ~(chi_b > threshold)
    score = float(np.sum(score_th - chi_a[in_a]) + np.sum(score_th - chi_b[in_b]))
    return score, [bool(flag) for flag in in_a & in_b]


def check_homography(h21, h12, keys1, keys2, matches, sigma) -> tuple[float, list[bool]]:
    """Score a homography by symmetric transfer error; return score and inliers."""
    h = np.asarray(h21, dtype=float)
    hi = np.asarray(h12, dtype=float)
    u1, v1, u2, v2 = _match_coords(keys1, keys2, matches)
    inv_sigma2 = 1.0 / (sigma * sigma)
    with np.errstate(divide="ignore", invalid="ignore"):
        w21 = 1.0 / (hi[2, 0] * u2 + hi[2, 1] * v2 + hi[2, 2])
        u2in1 = (hi[0, 0] * u2 + hi[0, 1] * v2 + hi[0, 2]) * w21
        v2in1 = (hi[1, 0] * u2 + hi[1, 1] * v2 + hi[1, 2]) * w21
        chi1 = ((u1 - u2in1) ** 2 + (v1 - v2in1) ** 2) * inv_sigma2

        w12 = 1.0 / (h[2, 0] * u1 + h[2, 1] * v1 + h[2, 2])
        u1in2 = (h[0, 0] * u1 + h[0, 1] * v1 + h[0, 2]) * w12
        v1in2 = (h[1, 0] * u1 + h[1, 1] * v1 + h[1, 2]) * w12
        chi2 = ((u2 - u1in2) ** 2 + (v2 - v1in2) ** 2) * inv_sigma2
        return _score(chi1, chi2, HOMOGRAPHY_CHI2, HOMOGRAPHY_CHI2)


def check_fundamental(f21, keys1, keys2, matches, sigma) -> tuple[float, list[bool]]:
    """Score a fundamental matrix by point-to-epipolar-line distance."""
    f = np.asarray(f21, dtype=float)
    u1, v1, u2, v2 = _match_coords(keys1, keys2, matches)
    inv_sigma2 = 1.0 / (sigma * sigma)
    with np.errstate(divide="ignore", invalid="ignore"):
        a2 = f[0, 0] * u1 + f[0, 1] * v1 + f[0, 2]
        b2 = f[1, 0] * u1 + f[1, 1] * v1 + f[1, 2]
        c2 = f[2, 0] * u1 + f[2, 1] * v1 + f[2, 2]
        num2 = a2 * u2 + b2 * v2 + c2
        chi1 = num2 * num2 / (a2 * a2 + b2 * b2) * inv_sigma2

        a1 = f[0, 0] * u2 + f[1, 0] * v2 + f[2, 0]
        b1 = f[0, 1] * u2 + f[1, 1] * v2 + f[2, 1]
        c1 = f[0, 2] * u2 + f[1, 2] * v2 + f[2, 2]
        num1 = a1 * u1 + b1 * v1 + c1
        chi2 = num1 * num1 / (a1 * a1 + b1 * b1) * inv_sigma2
        return _score(chi1, chi2, FUNDAMENTAL_CHI2, HOMOGRAPHY_CHI2)


def check_rt(r, t, keys1, keys2, matches, inliers, k, th2) -> TriangulationCheck:
    """Triangulate inlier matches under motion ``(r, t)`` and count good points."""
    r = np.asarray(r, dtype=float)
    t = np.asarray(t, dtype=float).reshape(3)
    k = np.asarray(k, dtype=float)
    k1 = _as_points(keys1)
    k2 = _as_points(keys2)
    fx, fy, cx, cy = k[0, 0], k[1, 1], k[0, 2], k[1, 2]

    good = [False] * len(k1)
    points = np.zeros((len(k1), 3))
    cos_parallaxes: list[float] = []

    p1 = np.zeros((3, 4))
    p1[:, :3] = k
    p2 = k @ np.hstack([r, t.reshape(3, 1)])
    o2 = -r.T @ t

    n_good = 0
    with np.errstate(divide="ignore", invalid="ignore"):
        for (i1, i2), inlier in zip(_as_matches(matches), inliers):
            if not inlier:
                continue
            kp1 = k1[i1]
            kp2 = k2[i2]
            x3d = triangulate(kp1, kp2, p1, p2)
            if not np.all(np.isfinite(x3d)):
                good[i1] = False
                continue

            dist1 = np.linalg.norm(x3d)
            normal2 = x3d - o2
            dist2 = np.linalg.norm(normal2)
            cos_parallax = np.dot(x3d, normal2) / (dist1 * dist2)

            if x3d[2] <= 0 and cos_parallax < PARALLAX_COS_LIMIT:
                continue
            x3d_c2 = r @ x3d + t
            if x3d_c2[2] <= 0 and cos_parallax < PARALLAX_COS_LIMIT:
                continue

            inv_z1 = 1.0 / x3d[2]
            im1x = fx * x3d[0] * inv_z1 + cx
            im1y = fy * x3d[1] * inv_z1 + cy
            if (im1x - kp1[0]) ** 2 + (im1y - kp1[1]) ** 2 > th2:
                continue

            inv_z2 = 1.0 / x3d_c2[2]
            im2x = fx * x3d_c2[0] * inv_z2 + cx
            im2y = fy * x3d_c2[1] * inv_z2 + cy
            if (im2x - kp2[0]) ** 2 + (im2y - kp2[1]) ** 2 > th2:
                continue

            cos_parallaxes.append(float(cos_parallax))
            points[i1] = x3d
            n_good += 1
            if cos_parallax < PARALLAX_COS_LIMIT:
                good[i1] = True

    if n_good > 0:
        cos_parallaxes.sort()
        idx = min(PARALLAX_RANK, len(cos_parallaxes) - 1)
        with np.errstate(invalid="ignore"):
            parallax = float(np.degrees(np.arccos(cos_parallaxes[idx])))
    else:
        parallax = 0.0

    return TriangulationCheck(n_good=n_good, points=points, good=good, parallax=parallax)