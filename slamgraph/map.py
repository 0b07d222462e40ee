"""The shared map: keyframes, map points and change bookkeeping."""

from __future__ import annotations

import threading


class Map:
    """Thread-safe container of keyframes and map points."""

    def __init__(self):
        self._map_points: dict = {}
        self._keyframes: dict = {}
        self._reference_map_points: list = []
        self._max_keyframe_id = 0
        self._big_change_index = 0
        self._lock = threading.Lock()

        self.keyframe_origins: list = []
        self.mutex_map_update = threading.Lock()
        # Keeps two threads from creating points at once (id conflicts).
        self.mutex_point_creation = threading.Lock()

    def add_keyframe(self, keyframe) -> None:
        with self._lock:
            self._keyframes[keyframe] = None
            if keyframe.id > self._max_keyframe_id:
                self._max_keyframe_id = keyframe.id

    def add_map_point(self, point) -> None:
        with self._lock:
            self._map_points[point] = None

    def erase_map_point(self, point) -> None:
        with self._lock:
            self._map_points.pop(point, None)

    def erase_keyframe(self, keyframe) -> None:
        with self._lock:
            self._keyframes.pop(keyframe, None)

    def set_reference_map_points(self, points) -> None:
        with self._lock:
            self._reference_map_points = list(points)

    def inform_new_big_change(self) -> None:
        """Record a large map change such as a loop closure or global BA."""
        with self._lock:
            self._big_change_index += 1

    def last_big_change_index(self) -> int:
        with self._lock:
            return self._big_change_index

    def all_keyframes(self) -> list:
        with self._lock:
            return list(self._keyframes)

    def all_map_points(self) -> list:
        with self._lock:
            return list(self._map_points)

    def reference_map_points(self) -> list:
        with self._lock:
            return list(self._reference_map_points)

    def map_points_in_map(self) -> int:
        with self._lock:
            return len(self._map_points)

    def keyframes_in_map(self) -> int:
        with self._lock:
            return len(self._keyframes)

    def max_keyframe_id(self) -> int:
        with self._lock:
            return self._max_keyframe_id

    def clear(self) -> None:
        """Drop every keyframe and map point."""
        with self._lock:
            self._map_points.clear()
            self._keyframes.clear()
            self._max_keyframe_id = 0
            self._reference_map_points = []
            self.keyframe_origins.clear()