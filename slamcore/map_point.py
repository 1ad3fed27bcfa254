"""Map points: 3D landmarks observed by one or more keyframes.

Keyframes handed to a map point are expected to offer ``id``, ``frame_id``,
``u_right`` (negative for monocular keypoints), ``descriptors`` (one row per
keypoint), ``keys_un`` (keypoints with an ``octave``), ``scale_factors``,
``scale_levels``, ``log_scale_factor``, ``camera_center``, ``is_bad()``,
``erase_map_point_match(index)`` and ``replace_map_point_match(index, point)``.
The map must offer ``erase_map_point(point)`` and a ``point_creation_lock``.
"""

from __future__ import annotations

import itertools
import math
import threading

import numpy as np

MIN_DISTANCE_FACTOR = 0.8
MAX_DISTANCE_FACTOR = 1.2


def _as_bytes(descriptor) -> np.ndarray:
    if isinstance(descriptor, (bytes, bytearray, memoryview)):
        return np.frombuffer(bytes(descriptor), dtype=np.uint8)
    return np.asarray(descriptor, dtype=np.uint8).ravel()


def descriptor_distance(a, b) -> int:
    """Hamming distance between two binary descriptors."""
    da = _as_bytes(a)
    db = _as_bytes(b)
    if da.shape != db.shape:
        raise ValueError("descriptors must have the same length")
    return int(np.unpackbits(np.bitwise_xor(da, db)).sum())


class MapPoint:
    """A landmark with its observations, descriptor and scale bounds."""

    _ids = itertools.count()
    _global_lock = threading.Lock()

    def __init__(self, position, reference_keyframe, map):
        self._setup(position, map)
        self.first_keyframe_id = reference_keyframe.id
        self.first_frame = reference_keyframe.frame_id
        self._reference_keyframe = reference_keyframe
        self._assign_id()

    @classmethod
    def from_frame(cls, position, map, frame, index):
        """Create a point from a plain frame, before any keyframe observes it."""
        point = cls.__new__(cls)
        point._setup(position, map)
        point.first_keyframe_id = -1
        point.first_frame = frame.id
        point._reference_keyframe = None

        center = np.asarray(frame.camera_center, dtype=float).reshape(3)
        offset = point._world_pos - center
        dist = float(np.linalg.norm(offset))
        point._normal = offset / dist
        level = frame.keys_un[index].octave
        point._max_distance = dist * frame.scale_factors[level]
        point._min_distance = point._max_distance / frame.scale_factors[frame.scale_levels - 1]
        point._descriptor = np.array(frame.descriptors[index], copy=True)
        point._assign_id()
        return point

    def _setup(self, position, map) -> None:
        self._lock = threading.RLock()
        self._map = map
        self._world_pos = np.array(position, dtype=float).reshape(3)
        self._normal = np.zeros(3)
        self._descriptor = None
        self._observations: dict = {}
        self._n_obs = 0
        self._visible = 1
        self._found = 1
        self._bad = False
        self._replaced = None
        self._min_distance = 0.0
        self._max_distance = 0.0

        # Tracking bookkeeping
        self.track_proj_x = 0.0
        self.track_proj_y = 0.0
        self.track_proj_xr = 0.0
        self.track_in_view = False
        self.track_scale_level = 0
        self.track_view_cos = 0.0
        self.track_reference_for_frame = 0
        self.last_frame_seen = 0

        # Local mapping bookkeeping
        self.ba_local_for_kf = 0
        self.fuse_candidate_for_kf = 0

        # Loop closing bookkeeping
        self.loop_point_for_kf = 0
        self.corrected_by_kf = 0
        self.corrected_reference = 0
        self.pos_gba = None
        self.ba_global_for_kf = 0

    def _assign_id(self) -> None:
        with self._map.point_creation_lock:
            self.id = next(MapPoint._ids)

    # Position and geometry

    @property
    def world_pos(self) -> np.ndarray:
        with self._lock:
            return self._world_pos.copy()

    def set_world_pos(self, position) -> None:
        with MapPoint._global_lock, self._lock:
            self._world_pos = np.array(position, dtype=float).reshape(3)

    @property
    def normal(self) -> np.ndarray:
        with self._lock:
            return self._normal.copy()

    @property
    def descriptor(self):
        with self._lock:
            return None if self._descriptor is None else self._descriptor.copy()

    @property
    def reference_keyframe(self):
        with self._lock:
            return self._reference_keyframe

    # Observations

    def observations(self) -> dict:
        """Keyframes observing this point, mapped to the keypoint index."""
        with self._lock:
            return dict(self._observations)

    def observation_count(self) -> int:
        """Number of observations; a stereo observation counts twice."""
        with self._lock:
            return self._n_obs

    def add_observation(self, keyframe, index) -> None:
        with self._lock:
            if keyframe in self._observations:
                return
            self._observations[keyframe] = index
            self._n_obs += 2 if keyframe.u_right[index] >= 0 else 1

    def erase_observation(self, keyframe) -> None:
        """Drop an observation; the point turns bad at two observations or fewer."""
        bad = False
        with self._lock:
            if keyframe in self._observations:
                index = self._observations.pop(keyframe)
                self._n_obs -= 2 if keyframe.u_right[index] >= 0 else 1
                if self._reference_keyframe is keyframe:
                    self._reference_keyframe = next(iter(self._observations), None)
                bad = self._n_obs <= 2
        if bad:
            self.set_bad_flag()

    def index_in_keyframe(self, keyframe) -> int:
        with self._lock:
            return self._observations.get(keyframe, -1)

    def is_in_keyframe(self, keyframe) -> bool:
        with self._lock:
            return keyframe in self._observations

    # Lifetime

    def set_bad_flag(self) -> None:
        """Mark the point bad and detach it from its keyframes and the map."""
        with self._lock:
            self._bad = True
            observations = dict(self._observations)
            self._observations.clear()
        for keyframe, index in observations.items():
            keyframe.erase_map_point_match(index)
        self._map.erase_map_point(self)

    def is_bad(self) -> bool:
        with self._lock:
            return self._bad

    def replace(self, other) -> None:
        """Hand every observation and counter over to ``other`` and retire."""
        if other.id == self.id:
            return
        with self._lock:
            observations = dict(self._observations)
            self._observations.clear()
            self._bad = True
            visible = self._visible
            found = self._found
            self._replaced = other

        for keyframe, index in observations.items():
            if not other.is_in_keyframe(keyframe):
                keyframe.replace_map_point_match(index, other)
                other.add_observation(keyframe, index)
            else:
                keyframe.erase_map_point_match(index)

        other.increase_found(found)
        other.increase_visible(visible)
        other.compute_distinctive_descriptors()
        self._map.erase_map_point(self)

    def replaced(self):
        """The point that took over this one, if any."""
        with self._lock:
            return self._replaced

    # Tracking statistics

    def increase_visible(self, n=1) -> None:
        with self._lock:
            self._visible += n

    def increase_found(self, n=1) -> None:
        with self._lock:
            self._found += n

    @property
    def found(self) -> int:
        with self._lock:
            return self._found

    @property
    def visible(self) -> int:
        with self._lock:
            return self._visible

    def found_ratio(self) -> float:
        with self._lock:
            return self._found / self._visible

    # Descriptor and scale

    def compute_distinctive_descriptors(self) -> None:
        """Keep the observed descriptor with least median distance to the others."""
        with self._lock:
            if self._bad:
                return
            observations = dict(self._observations)
        if not observations:
            return

        descriptors = [
            np.asarray(keyframe.descriptors[index])
            for keyframe, index in observations.items()
            if not keyframe.is_bad()
        ]
        if not descriptors:
            return

        n = len(descriptors)
        distances = np.zeros((n, n), dtype=int)
        for i, j in itertools.combinations(range(n), 2):
            d = descriptor_distance(descriptors[i], descriptors[j])
            distances[i, j] = d
            distances[j, i] = d

        medians = [int(np.sort(row)[(n - 1) // 2]) for row in distances]
        best = min(range(n), key=medians.__getitem__)
        with self._lock:
            self._descriptor = np.array(descriptors[best], copy=True)

    def update_normal_and_depth(self) -> None:
        """Recompute the mean viewing direction and the scale-invariance range."""
        with self._lock:
            if self._bad:
                return
            observations = dict(self._observations)
            reference = self._reference_keyframe
            position = self._world_pos.copy()
        if not observations or reference is None:
            return

        normal = np.zeros(3)
        for keyframe in observations:
            offset = position - np.asarray(keyframe.camera_center, dtype=float).reshape(3)
            normal += offset / np.linalg.norm(offset)

        center = np.asarray(reference.camera_center, dtype=float).reshape(3)
        dist = float(np.linalg.norm(position - center))
        level = reference.keys_un[observations.get(reference, 0)].octave
        max_distance = dist * reference.scale_factors[level]
        min_distance = max_distance / reference.scale_factors[reference.scale_levels - 1]

        with self._lock:
            self._max_distance = max_distance
            self._min_distance = min_distance
            self._normal = normal / len(observations)

    def min_distance_invariance(self) -> float:
        with self._lock:
            return MIN_DISTANCE_FACTOR * self._min_distance

    def max_distance_invariance(self) -> float:
        with self._lock:
            return MAX_DISTANCE_FACTOR * self._max_distance

    def predict_scale(self, current_dist, frame) -> int:
        """Pyramid level at which the point should appear at ``current_dist``."""
        with self._lock:
            max_distance = self._max_distance
        top = frame.scale_levels - 1
        if current_dist <= 0:
            return top if max_distance > 0 else 0
        ratio = max_distance / current_dist
        if ratio <= 0:
            return 0
        scale = math.ceil(math.log(ratio) / frame.log_scale_factor)
        return max(0, min(scale, top))