"""Pose and structure corrections applied once a loop has been closed.

Keyframes are expected to offer ``id``, ``pose``, ``pose_inverse``,
``set_pose(tcw)``, ``map_point_matches()``, ``update_connections()``,
``children()`` and the fields ``tcw_gba``, ``tcw_bef_gba`` and
``ba_global_for_kf``. Map points offer ``world_pos``, ``set_world_pos()``,
``is_bad()``, ``update_normal_and_depth()``, ``reference_keyframe`` and the
fields ``corrected_by_kf``, ``corrected_reference``, ``pos_gba`` and
``ba_global_for_kf``.
"""

from __future__ import annotations

from collections import deque

import numpy as np


class Sim3:
    """A similarity transform ``x -> s * R @ x + t``."""

    def __init__(self, rotation=None, translation=None, scale=1.0):
        self.rotation = np.eye(3) if rotation is None else np.array(rotation, dtype=float).reshape(3, 3)
        self.translation = (
            np.zeros(3) if translation is None else np.array(translation, dtype=float).reshape(3)
        )
        self.scale = float(scale)
        if not self.scale > 0:
            raise ValueError("scale must be positive")

    @classmethod
    def from_pose(cls, tcw):
        """Similarity with unit scale taken from a 4x4 rigid transform."""
        t = np.asarray(tcw, dtype=float).reshape(4, 4)
        return cls(t[:3, :3], t[:3, 3], 1.0)

    def inverse(self) -> Sim3:
        r_inv = self.rotation.T
        inv_scale = 1.0 / self.scale
        return Sim3(r_inv, -inv_scale * (r_inv @ self.translation), inv_scale)

    def map(self, point) -> np.ndarray:
        p = np.asarray(point, dtype=float).reshape(3)
        return self.scale * (self.rotation @ p) + self.translation

    def __mul__(self, other):
        if not isinstance(other, Sim3):
            return NotImplemented
        return Sim3(
            self.rotation @ other.rotation,
            self.scale * (self.rotation @ other.translation) + self.translation,
            self.scale * other.scale,
        )

    def to_se3(self) -> np.ndarray:
        """Rigid 4x4 transform ``[R t/s; 0 1]``."""
        tcw = np.eye(4)
        tcw[:3, :3] = self.rotation
        tcw[:3, 3] = self.translation / self.scale
        return tcw

    def __repr__(self) -> str:
        return (
            f"Sim3(rotation={self.rotation.tolist()}, "
            f"translation={self.translation.tolist()}, scale={self.scale})"
        )


def propagate_sim3(current_keyframe, scw, connected_keyframes):
    """Spread the loop correction ``scw`` of the current keyframe to its neighbours.

    Returns ``(corrected, non_corrected)``: dictionaries from keyframe to the
    corrected and the original world-to-camera similarity. The current
    keyframe is always included.
    """
    keyframes = list(dict.fromkeys(connected_keyframes))
    if current_keyframe not in keyframes:
        keyframes.append(current_keyframe)

    corrected = {current_keyframe: scw}
    non_corrected = {}
    twc = current_keyframe.pose_inverse
    for keyframe in keyframes:
        tiw = keyframe.pose
        if keyframe is not current_keyframe:
            tic = tiw @ twc
            sic = Sim3(tic[:3, :3], tic[:3, 3], 1.0)
            corrected[keyframe] = sic * scw
        non_corrected[keyframe] = Sim3.from_pose(tiw)
    return corrected, non_corrected


def correct_map_points(corrected, non_corrected, current_keyframe_id):
    """Move observed map points and keyframe poses onto the corrected side.

    Each point is projected with the uncorrected pose and back with the
    corrected one, at most once per loop. Returns the number of points moved.
    """
    moved = 0
    for keyframe, siw_corrected in corrected.items():
        swi_corrected = siw_corrected.inverse()
        siw = non_corrected.get(keyframe, Sim3())
        for point in keyframe.map_point_matches():
            if point is None or point.is_bad():
                continue
            if point.corrected_by_kf == current_keyframe_id:
                continue
            point.set_world_pos(swi_corrected.map(siw.map(point.world_pos)))
            point.corrected_by_kf = current_keyframe_id
            point.corrected_reference = keyframe.id
            point.update_normal_and_depth()
            moved += 1

        keyframe.set_pose(siw_corrected.to_se3())
        keyframe.update_connections()
    return moved


def apply_global_correction(map, loop_keyframe_id):
    """Apply a finished global bundle adjustment to every keyframe and point.

    Keyframes left out of the adjustment are corrected through the spanning
    tree from the map origins; points left out follow their reference keyframe.
    """
    with map.map_update_lock:
        queue = deque(map.keyframe_origins)
        while queue:
            keyframe = queue.popleft()
            if keyframe.tcw_gba is None:
                raise ValueError(f"keyframe {keyframe.id} has no adjusted pose")
            twc = keyframe.pose_inverse
            for child in keyframe.children():
                if child.ba_global_for_kf != loop_keyframe_id:
                    child.tcw_gba = child.pose @ twc @ keyframe.tcw_gba
                    child.ba_global_for_kf = loop_keyframe_id
                queue.append(child)
            keyframe.tcw_bef_gba = keyframe.pose
            keyframe.set_pose(keyframe.tcw_gba)

        for point in map.all_map_points():
            if point.is_bad():
                continue
            if point.ba_global_for_kf == loop_keyframe_id:
                point.set_world_pos(point.pos_gba)
                continue
            reference = point.reference_keyframe
            if reference is None or reference.ba_global_for_kf != loop_keyframe_id:
                continue
            before = np.asarray(reference.tcw_bef_gba, dtype=float)
            xc = before[:3, :3] @ point.world_pos + before[:3, 3]
            twc = reference.pose_inverse
            point.set_world_pos(twc[:3, :3] @ xc + twc[:3, 3])

    map.inform_new_big_change()