"""Keyframes: selected frames that anchor the map and the covisibility graph.

Keypoints are objects with ``x``, ``y`` and ``octave`` attributes. Map points
handed to a keyframe are expected to offer ``is_bad()``, ``observations()``,
``observation_count()``, ``index_in_keyframe(keyframe)``,
``erase_observation(keyframe)`` and a ``world_pos`` attribute. The map must
offer ``erase_keyframe(keyframe)`` and the database ``erase(keyframe)``.
"""

from __future__ import annotations

import itertools
import math
import numbers
import threading
from dataclasses import dataclass, field

import numpy as np

CONNECTION_THRESHOLD = 15
DEFAULT_GRID_COLS = 64
DEFAULT_GRID_ROWS = 48


@dataclass
class FrameData:
    """Everything a keyframe takes over from the frame it is created from.

    Missing per-keypoint data is filled in for a monocular frame: no right
    coordinate, no depth, empty descriptors and no map points.
    """

    id: int
    tcw: np.ndarray
    k: np.ndarray
    keys: list
    keys_un: list | None = None
    u_right: list | None = None
    depths: list | None = None
    descriptors: np.ndarray | None = None
    map_points: list | None = None
    bow_vec: dict = field(default_factory=dict)
    feat_vec: dict = field(default_factory=dict)
    timestamp: float = 0.0
    bf: float = 0.0
    th_depth: float = 0.0
    scale_factor: float = 1.2
    scale_levels: int = 8
    min_x: float = 0.0
    min_y: float = 0.0
    max_x: float = 640.0
    max_y: float = 480.0
    grid_cols: int = DEFAULT_GRID_COLS
    grid_rows: int = DEFAULT_GRID_ROWS
    grid: list | None = None

    def __post_init__(self):
        n = len(self.keys)
        self.tcw = np.array(self.tcw, dtype=float).reshape(4, 4)
        self.k = np.array(self.k, dtype=float).reshape(3, 3)
        if self.keys_un is None:
            self.keys_un = list(self.keys)
        if self.u_right is None:
            self.u_right = [-1.0] * n
        if self.depths is None:
            self.depths = [-1.0] * n
        if self.descriptors is None:
            self.descriptors = np.zeros((n, 32), dtype=np.uint8)
        if self.map_points is None:
            self.map_points = [None] * n
        if n != len(self.keys_un) or n != len(self.u_right) or n != len(self.depths):
            raise ValueError("per-keypoint data must all have the same length")
        if n != len(self.map_points):
            raise ValueError("map point list must match the number of keypoints")


def _ordered_by_weight(weights: dict) -> tuple[list, list]:
    pairs = sorted(weights.items(), key=lambda item: (item[1], item[0].id), reverse=True)
    return [kf for kf, _ in pairs], [w for _, w in pairs]


class KeyFrame:
    """A keyframe with its pose, observed map points and graph links."""

    _ids = itertools.count()

    def __init__(self, frame, map, database=None):
        self.id = next(KeyFrame._ids)
        self.frame_id = frame.id
        self.timestamp = frame.timestamp

        # Grid
        self.grid_cols = frame.grid_cols
        self.grid_rows = frame.grid_rows
        self.grid_element_width_inv = frame.grid_cols / (frame.max_x - frame.min_x)
        self.grid_element_height_inv = frame.grid_rows / (frame.max_y - frame.min_y)

        # Tracking, local mapping, database and loop closing bookkeeping
        self.track_reference_for_frame = 0
        self.fuse_target_for_kf = 0
        self.ba_local_for_kf = 0
        self.ba_fixed_for_kf = 0
        self.loop_query = 0
        self.loop_words = 0
        self.loop_score = 0.0
        self.reloc_query = 0
        self.reloc_words = 0
        self.reloc_score = 0.0
        self.tcw_gba = None
        self.tcw_bef_gba = None
        self.ba_global_for_kf = 0

        # Calibration
        self.k = frame.k.copy()
        self.fx = float(self.k[0, 0])
        self.fy = float(self.k[1, 1])
        self.cx = float(self.k[0, 2])
        self.cy = float(self.k[1, 2])
        self.invfx = 1.0 / self.fx
        self.invfy = 1.0 / self.fy
        self.bf = float(frame.bf)
        self.baseline = self.bf / self.fx
        self.th_depth = float(frame.th_depth)

        # Keypoints
        self.n = len(frame.keys)
        self.keys = list(frame.keys)
        self.keys_un = list(frame.keys_un)
        self.u_right = list(frame.u_right)
        self.depths = list(frame.depths)
        self.descriptors = np.array(frame.descriptors, copy=True)
        self.bow_vec = dict(frame.bow_vec)
        self.feat_vec = dict(frame.feat_vec)

        # Scale pyramid
        self.scale_levels = int(frame.scale_levels)
        self.scale_factor = float(frame.scale_factor)
        self.log_scale_factor = math.log(self.scale_factor)
        self.scale_factors = [self.scale_factor**i for i in range(self.scale_levels)]
        self.level_sigma2 = [f * f for f in self.scale_factors]
        self.inv_level_sigma2 = [1.0 / s for s in self.level_sigma2]

        # Image bounds
        self.min_x = frame.min_x
        self.min_y = frame.min_y
        self.max_x = frame.max_x
        self.max_y = frame.max_y

        self.tcp = None

        self._pose_lock = threading.RLock()
        self._conn_lock = threading.RLock()
        self._feat_lock = threading.RLock()

        self._map_points = list(frame.map_points)
        self._database = database
        self._map = map
        self._grid = frame.grid if frame.grid is not None else self._build_grid()

        self._connected_weights: dict = {}
        self._ordered_connected: list = []
        self._ordered_weights: list = []

        self._first_connection = True
        self._parent = None
        self._children: dict = {}
        self._loop_edges: dict = {}

        self._not_erase = False
        self._to_be_erased = False
        self._bad = False

        self._half_baseline = self.baseline / 2
        self.set_pose(frame.tcw)

    def _build_grid(self) -> list:
        grid = [[[] for _ in range(self.grid_rows)] for _ in range(self.grid_cols)]
        for index, kp in enumerate(self.keys_un):
            gx = round((kp.x - self.min_x) * self.grid_element_width_inv)
            gy = round((kp.y - self.min_y) * self.grid_element_height_inv)
            if 0 <= gx < self.grid_cols and 0 <= gy < self.grid_rows:
                grid[gx][gy].append(index)
        return grid

    # Pose

    def set_pose(self, tcw) -> None:
        """Set the world-to-camera transform and refresh the derived centres."""
        with self._pose_lock:
            self._tcw = np.array(tcw, dtype=float).reshape(4, 4)
            rcw = self._tcw[:3, :3]
            tvec = self._tcw[:3, 3]
            rwc = rcw.T
            self._ow = -rwc @ tvec
            self._twc = np.eye(4)
            self._twc[:3, :3] = rwc
            self._twc[:3, 3] = self._ow
            center = np.array([self._half_baseline, 0.0, 0.0, 1.0])
            self._cw = (self._twc @ center)[:3]

    @property
    def pose(self) -> np.ndarray:
        with self._pose_lock:
            return self._tcw.copy()

    @property
    def pose_inverse(self) -> np.ndarray:
        with self._pose_lock:
            return self._twc.copy()

    @property
    def camera_center(self) -> np.ndarray:
        with self._pose_lock:
            return self._ow.copy()

    @property
    def stereo_center(self) -> np.ndarray:
        with self._pose_lock:
            return self._cw.copy()

    @property
    def rotation(self) -> np.ndarray:
        with self._pose_lock:
            return self._tcw[:3, :3].copy()

    @property
    def translation(self) -> np.ndarray:
        with self._pose_lock:
            return self._tcw[:3, 3].copy()

    # Covisibility graph

    def add_connection(self, keyframe, weight) -> None:
        with self._conn_lock:
            if self._connected_weights.get(keyframe) == weight:
                return
            self._connected_weights[keyframe] = weight
        self.update_best_covisibles()

    def erase_connection(self, keyframe) -> None:
        with self._conn_lock:
            updated = self._connected_weights.pop(keyframe, None) is not None
        if updated:
            self.update_best_covisibles()

    def update_best_covisibles(self) -> None:
        """Re-sort the connected keyframes by decreasing weight."""
        with self._conn_lock:
            self._ordered_connected, self._ordered_weights = _ordered_by_weight(
                self._connected_weights
            )

    def update_connections(self) -> None:
        """Rebuild the covisibility links from the shared map point observations."""
        with self._feat_lock:
            points = list(self._map_points)

        counter: dict = {}
        for point in points:
            if point is None or point.is_bad():
                continue
            for other in point.observations():
                if other.id == self.id:
                    continue
                counter[other] = counter.get(other, 0) + 1

        if not counter:
            return

        n_max = 0
        best = None
        selected = {}
        for other, count in counter.items():
            if count > n_max:
                n_max = count
                best = other
            if count >= CONNECTION_THRESHOLD:
                selected[other] = count
                other.add_connection(self, count)

        if not selected:
            selected[best] = n_max
            best.add_connection(self, n_max)

        ordered, weights = _ordered_by_weight(selected)
        with self._conn_lock:
            self._connected_weights = counter
            self._ordered_connected = ordered
            self._ordered_weights = weights
            if self._first_connection and self.id != 0:
                self._parent = ordered[0]
                self._parent.add_child(self)
                self._first_connection = False

    def connected_keyframes(self) -> set:
        with self._conn_lock:
            return set(self._connected_weights)

    def covisible_keyframes(self) -> list:
        """Connected keyframes, strongest link first."""
        with self._conn_lock:
            return list(self._ordered_connected)

    def best_covisibility_keyframes(self, n) -> list:
        with self._conn_lock:
            return list(self._ordered_connected[:n])

    def covisibles_by_weight(self, w) -> list:
        """Keyframes ranked before the first one weighing less than ``w``.

        If no connected keyframe weighs less than ``w`` the result is empty.
        """
        with self._conn_lock:
            for position, weight in enumerate(self._ordered_weights):
                if w > weight:
                    return list(self._ordered_connected[:position])
            return []

    def weight(self, keyframe) -> int:
        with self._conn_lock:
            return self._connected_weights.get(keyframe, 0)

    # Spanning tree

    def add_child(self, keyframe) -> None:
        with self._conn_lock:
            self._children[keyframe] = None

    def erase_child(self, keyframe) -> None:
        with self._conn_lock:
            self._children.pop(keyframe, None)

    def change_parent(self, keyframe) -> None:
        with self._conn_lock:
            self._parent = keyframe
            keyframe.add_child(self)

    def children(self) -> set:
        with self._conn_lock:
            return set(self._children)

    def parent(self):
        with self._conn_lock:
            return self._parent

    def has_child(self, keyframe) -> bool:
        with self._conn_lock:
            return keyframe in self._children

    # Loop edges

    def add_loop_edge(self, keyframe) -> None:
        with self._conn_lock:
            self._not_erase = True
            self._loop_edges[keyframe] = None

    def loop_edges(self) -> set:
        with self._conn_lock:
            return set(self._loop_edges)

    # Map point observations

    def add_map_point(self, map_point, index) -> None:
        with self._feat_lock:
            self._map_points[index] = map_point

    def erase_map_point_match(self, target) -> None:
        """Forget the map point at an index, or wherever a given point sits."""
        if isinstance(target, numbers.Integral):
            with self._feat_lock:
                self._map_points[target] = None
            return
        index = target.index_in_keyframe(self)
        if index >= 0:
            with self._feat_lock:
                self._map_points[index] = None

    def replace_map_point_match(self, index, map_point) -> None:
        with self._feat_lock:
            self._map_points[index] = map_point

    def map_points(self) -> set:
        """The good map points this keyframe observes."""
        with self._feat_lock:
            return {p for p in self._map_points if p is not None and not p.is_bad()}

    def map_point_matches(self) -> list:
        """Map point per keypoint, ``None`` where there is none."""
        with self._feat_lock:
            return list(self._map_points)

    def tracked_map_points(self, min_obs) -> int:
        """Count good map points, only those with enough observations if ``min_obs > 0``."""
        with self._feat_lock:
            points = list(self._map_points)
        count = 0
        for point in points:
            if point is None or point.is_bad():
                continue
            if min_obs > 0 and point.observation_count() < min_obs:
                continue
            count += 1
        return count

    def map_point(self, index):
        with self._feat_lock:
            return self._map_points[index]

    # Keypoints and image

    def features_in_area(self, x, y, r) -> list:
        """Indices of undistorted keypoints within a square of half-side ``r``."""
        min_cell_x = max(0, math.floor((x - self.min_x - r) * self.grid_element_width_inv))
        if min_cell_x >= self.grid_cols:
            return []
        max_cell_x = min(
            self.grid_cols - 1, math.ceil((x - self.min_x + r) * self.grid_element_width_inv)
        )
        if max_cell_x < 0:
            return []
        min_cell_y = max(0, math.floor((y - self.min_y - r) * self.grid_element_height_inv))
        if min_cell_y >= self.grid_rows:
            return []
        max_cell_y = min(
            self.grid_rows - 1, math.ceil((y - self.min_y + r) * self.grid_element_height_inv)
        )
        if max_cell_y < 0:
            return []

        indices = []
        for ix in range(min_cell_x, max_cell_x + 1):
            for iy in range(min_cell_y, max_cell_y + 1):
                for index in self._grid[ix][iy]:
                    kp = self.keys_un[index]
                    if abs(kp.x - x) < r and abs(kp.y - y) < r:
                        indices.append(index)
        return indices

    def unproject_stereo(self, i):
        """World position of keypoint ``i`` from its depth, or ``None`` without one."""
        z = self.depths[i]
        if z <= 0:
            return None
        kp = self.keys[i]
        xc = np.array([(kp.x - self.cx) * z * self.invfx, (kp.y - self.cy) * z * self.invfy, z])
        with self._pose_lock:
            return self._twc[:3, :3] @ xc + self._twc[:3, 3]

    def is_in_image(self, x, y) -> bool:
        return self.min_x <= x < self.max_x and self.min_y <= y < self.max_y

    # Lifetime

    def set_not_erase(self) -> None:
        with self._conn_lock:
            self._not_erase = True

    def set_erase(self) -> None:
        """Allow erasing again; apply a removal that was postponed meanwhile."""
        with self._conn_lock:
            if not self._loop_edges:
                self._not_erase = False
        if self._to_be_erased:
            self.set_bad_flag()

    def set_bad_flag(self) -> None:
        """Remove the keyframe from the graph, the spanning tree and the map."""
        with self._conn_lock:
            if self.id == 0:
                return
            if self._not_erase:
                self._to_be_erased = True
                return
            connected = list(self._connected_weights)

        for other in connected:
            other.erase_connection(self)

        with self._feat_lock:
            points = list(self._map_points)
        for point in points:
            if point is not None:
                point.erase_observation(self)

        with self._conn_lock, self._feat_lock:
            self._connected_weights.clear()
            self._ordered_connected = []
            self._ordered_weights = []

            candidates = {self._parent: None} if self._parent is not None else {}
            # Each round links one child to the candidate it shares most with.
            while self._children:
                best_weight = -1
                best_child = None
                best_parent = None
                for child in self._children:
                    if child.is_bad():
                        continue
                    for neighbour in child.covisible_keyframes():
                        for candidate in candidates:
                            if neighbour.id == candidate.id:
                                w = child.weight(neighbour)
                                if w > best_weight:
                                    best_child = child
                                    best_parent = neighbour
                                    best_weight = w
                if best_child is None:
                    break
                best_child.change_parent(best_parent)
                candidates[best_child] = None
                del self._children[best_child]

            if self._parent is not None:
                for child in list(self._children):
                    child.change_parent(self._parent)
                self._parent.erase_child(self)
                with self._pose_lock:
                    self.tcp = self._tcw @ self._parent.pose_inverse
            self._bad = True

        if self._map is not None:
            self._map.erase_keyframe(self)
        if self._database is not None:
            self._database.erase(self)

    def is_bad(self) -> bool:
        with self._conn_lock:
            return self._bad

    def compute_scene_median_depth(self, q) -> float:
        """Depth of the map points at rank ``(n - 1) // q`` (``q = 2``: median)."""
        with self._feat_lock, self._pose_lock:
            points = list(self._map_points)
            tcw = self._tcw.copy()
        row = tcw[2, :3]
        zcw = tcw[2, 3]
        depths = sorted(
            float(row @ np.asarray(p.world_pos, dtype=float).reshape(3) + zcw)
            for p in points
            if p is not None
        )
        if not depths:
            raise ValueError("keyframe observes no map points")
        return depths[(len(depths) - 1) // q]