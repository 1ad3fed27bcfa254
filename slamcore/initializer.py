"""Monocular map initialization from two views.

A homography and a fundamental matrix are estimated in parallel RANSAC loops
over the same minimal sets; the model that explains the matches better is then
decomposed into a relative motion and a set of triangulated points.
"""

from __future__ import annotations

import random
from dataclasses import dataclass

import numpy as np

from slamcore.geometry import (
    check_fundamental,
    check_homography,
    check_rt,
    compute_f21,
    compute_h21,
    decompose_e,
    normalize,
)

MIN_SET = 8
HOMOGRAPHY_RATIO = 0.40


@dataclass
class Reconstruction:
    """Relative motion of the second camera and the points it reconstructs."""

    rotation: np.ndarray
    translation: np.ndarray
    points: np.ndarray
    triangulated: list[bool]


def _inverse(m: np.ndarray) -> np.ndarray:
    try:
        return np.linalg.inv(m)
    except np.linalg.LinAlgError:
        return np.zeros_like(m)


class Initializer:
    """Estimates the first relative pose between a reference and a current view."""

    def __init__(self, reference_keys, k, sigma=1.0, iterations=200):
        self.k = np.array(k, dtype=float)
        self.keys1 = np.asarray(reference_keys, dtype=float).reshape(-1, 2)
        self.sigma = float(sigma)
        self.sigma2 = self.sigma * self.sigma
        self.max_iterations = int(iterations)
        self.keys2: np.ndarray | None = None
        self._matches: list[tuple[int, int]] = []
        self._sets: list[list[int]] = []
        self._rng = random.Random(0)

    def _require_matches(self) -> np.ndarray:
        if self.keys2 is None:
            raise RuntimeError("initialize() must be called first")
        return np.asarray(self._matches, dtype=int).reshape(-1, 2)

    def initialize(self, current_keys, matches12) -> Reconstruction | None:
        """Try to reconstruct from the current view.

        ``matches12[i]`` is the index of the current keypoint matched to
        reference keypoint ``i``, or negative for none. Returns ``None`` when
        no reliable reconstruction is found.
        """
        self.keys2 = np.asarray(current_keys, dtype=float).reshape(-1, 2)
        self._matches = [(i, int(j)) for i, j in enumerate(matches12) if j >= 0]
        n = len(self._matches)
        if n < MIN_SET:
            raise ValueError(f"at least {MIN_SET} matches are required, got {n}")

        self._sets = []
        for _ in range(self.max_iterations):
            available = list(range(n))
            sample = []
            for _ in range(MIN_SET):
                pick = self._rng.randint(0, len(available) - 1)
                sample.append(available[pick])
                available[pick] = available[-1]
                available.pop()
            self._sets.append(sample)

        score_h, inliers_h, h21 = self.find_homography()
        score_f, inliers_f, f21 = self.find_fundamental()

        total = score_h + score_f
        ratio = score_h / total if total > 0 else 0.0
        if ratio > HOMOGRAPHY_RATIO:
            return self.reconstruct_h(inliers_h, h21, 1.0, 50)
        return self.reconstruct_f(inliers_f, f21, 1.0, 50)

    def _normalized(self):
        pn1, t1 = normalize(self.keys1)
        pn2, t2 = normalize(self.keys2)
        return pn1, t1, pn2, t2

    def find_homography(self) -> tuple[float, list[bool], np.ndarray | None]:
        """RANSAC over the minimal sets; return best score, inliers and H21."""
        matches = self._require_matches()
        pn1, t1, pn2, t2 = self._normalized()
        t2_inv = _inverse(t2)

        best_score = 0.0
        best_inliers = [False] * len(matches)
        best_h = None
        for sample in self._sets:
            chosen = matches[sample]
            hn = compute_h21(pn1[chosen[:, 0]], pn2[chosen[:, 1]])
            h21 = t2_inv @ hn @ t1
            h12 = _inverse(h21)
            score, inliers = check_homography(
                h21, h12, self.keys1, self.keys2, matches, self.sigma
            )
            if score > best_score:
                best_score, best_inliers, best_h = score, inliers, h21.copy()
        return best_score, best_inliers, best_h

    def find_fundamental(self) -> tuple[float, list[bool], np.ndarray | None]:
        """RANSAC over the minimal sets; return best score, inliers and F21."""
        matches = self._require_matches()
        pn1, t1, pn2, t2 = self._normalized()
        t2_t = t2.T

        best_score = 0.0
        best_inliers = [False] * len(matches)
        best_f = None
        for sample in self._sets:
            chosen = matches[sample]
            fn = compute_f21(pn1[chosen[:, 0]], pn2[chosen[:, 1]])
            f21 = t2_t @ fn @ t1
            score, inliers = check_fundamental(
                f21, self.keys1, self.keys2, matches, self.sigma
            )
            if score > best_score:
                best_score, best_inliers, best_f = score, inliers, f21.copy()
        return best_score, best_inliers, best_f

    def _check(self, r, t, inliers):
        matches = self._require_matches()
        return check_rt(
            r, t, self.keys1, self.keys2, matches, inliers, self.k, 4.0 * self.sigma2
        )

    def reconstruct_f(self, inliers, f21, min_parallax=1.0, min_triangulated=50):
        """Recover motion from a fundamental matrix, or ``None`` if ambiguous."""
        self._require_matches()
        if f21 is None:
            return None
        n_inliers = sum(1 for flag in inliers if flag)
        k = self.k
        e21 = k.T @ np.asarray(f21, dtype=float) @ k
        r1, r2, t = decompose_e(e21)

        hypotheses = [(r1, t), (r2, t), (r1, -t), (r2, -t)]
        checks = [self._check(r, tt, inliers) for r, tt in hypotheses]
        goods = [c.n_good for c in checks]
        max_good = max(goods)
        min_good = max(int(0.9 * n_inliers), min_triangulated)
        similar = sum(1 for g in goods if g > 0.7 * max_good)
        if max_good < min_good or similar > 1:
            return None

        for (r, tt), check in zip(hypotheses, checks):
            if check.n_good == max_good:
                if check.parallax > min_parallax:
                    return Reconstruction(
                        rotation=r.copy(),
                        translation=tt.copy(),
                        points=check.points,
                        triangulated=check.good,
                    )
                return None
        return None

    def reconstruct_h(self, inliers, h21, min_parallax=1.0, min_triangulated=50):
        """Recover motion from a homography (Faugeras' eight hypotheses)."""
        self._require_matches()
        if h21 is None:
            return None
        n_inliers = sum(1 for flag in inliers if flag)
        k = self.k
        a = _inverse(k) @ np.asarray(h21, dtype=float) @ k
        u, w, vt = np.linalg.svd(a)
        v = vt.T
        s = np.linalg.det(u) * np.linalg.det(vt)
        d1, d2, d3 = (float(x) for x in w)

        with np.errstate(divide="ignore", invalid="ignore"):
            if not (d1 / d2 >= 1.00001 and d2 / d3 >= 1.00001):
                return None

        aux1 = np.sqrt((d1 * d1 - d2 * d2) / (d1 * d1 - d3 * d3))
        aux3 = np.sqrt((d2 * d2 - d3 * d3) / (d1 * d1 - d3 * d3))
        x1 = [aux1, aux1, -aux1, -aux1]
        x3 = [aux3, -aux3, aux3, -aux3]

        rotations, translations = [], []

        def add(rp, tp):
            rotations.append(s * u @ rp @ vt)
            t = u @ tp
            translations.append(t / np.linalg.norm(t))

        # d' = d2
        aux_stheta = np.sqrt((d1 * d1 - d2 * d2) * (d2 * d2 - d3 * d3)) / ((d1 + d3) * d2)
        ctheta = (d2 * d2 + d1 * d3) / ((d1 + d3) * d2)
        stheta = [aux_stheta, -aux_stheta, -aux_stheta, aux_stheta]
        for xa, xc, st in zip(x1, x3, stheta):
            rp = np.eye(3)
            rp[0, 0] = ctheta
            rp[0, 2] = -st
            rp[2, 0] = st
            rp[2, 2] = ctheta
            add(rp, np.array([xa, 0.0, -xc]) * (d1 - d3))

        # d' = -d2
        aux_sphi = np.sqrt((d1 * d1 - d2 * d2) * (d2 * d2 - d3 * d3)) / ((d1 - d3) * d2)
        cphi = (d1 * d3 - d2 * d2) / ((d1 - d3) * d2)
        sphi = [aux_sphi, -aux_sphi, -aux_sphi, aux_sphi]
        for xa, xc, sp in zip(x1, x3, sphi):
            rp = np.eye(3)
            rp[0, 0] = cphi
            rp[0, 2] = sp
            rp[1, 1] = -1.0
            rp[2, 0] = sp
            rp[2, 2] = -cphi
            add(rp, np.array([xa, 0.0, xc]) * (d1 + d3))

        best_good = 0
        second_good = 0
        best_idx = -1
        best_check = None
        for idx, (r, t) in enumerate(zip(rotations, translations)):
            check = self._check(r, t, inliers)
            if check.n_good > best_good:
                second_good = best_good
                best_good = check.n_good
                best_idx = idx
                best_check = check
            elif check.n_good > second_good:
                second_good = check.n_good

        if (
            best_check is not None
            and second_good < 0.75 * best_good
            and best_check.parallax >= min_parallax
            and best_good > min_triangulated
            and best_good > 0.9 * n_inliers
        ):
            return Reconstruction(
                rotation=rotations[best_idx].copy(),
                translation=translations[best_idx].copy(),
                points=best_check.points,
                triangulated=best_check.good,
            )
        return None