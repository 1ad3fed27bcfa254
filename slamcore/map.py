"""Container for the keyframes and map points that make up a reconstruction."""

from __future__ import annotations

import threading


class Map:
    """Thread-safe registry of keyframes and map points.

    Keyframes are expected to expose an integer ``id`` attribute. Elements are
    kept in insertion order and compared by identity.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._keyframes: dict = {}
        self._map_points: dict = {}
        self._reference_map_points: list = []
        self._max_keyframe_id = 0
        self._big_change_idx = 0
        self.keyframe_origins: list = []
        self.map_update_lock = threading.Lock()
        self.point_creation_lock = threading.Lock()

    def add_keyframe(self, keyframe) -> None:
        """Register a keyframe and track the highest keyframe id seen."""
        with self._lock:
            self._keyframes[keyframe] = None
            if keyframe.id > self._max_keyframe_id:
                self._max_keyframe_id = keyframe.id

    def add_map_point(self, map_point) -> None:
        with self._lock:
            self._map_points[map_point] = None

    def erase_map_point(self, map_point) -> None:
        with self._lock:
            self._map_points.pop(map_point, None)

    def erase_keyframe(self, keyframe) -> None:
        with self._lock:
            self._keyframes.pop(keyframe, None)

    def set_reference_map_points(self, map_points) -> None:
        with self._lock:
            self._reference_map_points = list(map_points)

    def inform_new_big_change(self) -> None:
        """Record that the map went through a large correction."""
        with self._lock:
            self._big_change_idx += 1

    def last_big_change_idx(self) -> int:
        with self._lock:
            return self._big_change_idx

    def all_keyframes(self) -> list:
        with self._lock:
            return list(self._keyframes)

    def all_map_points(self) -> list:
        with self._lock:
            return list(self._map_points)

    def map_points_in_map(self) -> int:
        with self._lock:
            return len(self._map_points)

    def keyframes_in_map(self) -> int:
        with self._lock:
            return len(self._keyframes)

    def reference_map_points(self) -> list:
        with self._lock:
            return list(self._reference_map_points)

    def max_keyframe_id(self) -> int:
        with self._lock:
            return self._max_keyframe_id

    def clear(self) -> None:
        """Forget every keyframe, map point and origin."""
        with self._lock:
            self._map_points.clear()
            self._keyframes.clear()
            self._max_keyframe_id = 0
            self._reference_map_points = []
            self.keyframe_origins.clear()