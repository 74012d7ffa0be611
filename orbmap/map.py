"""The shared map: the sets of keyframes and map points built so far."""

from __future__ import annotations

import threading


class Map:
    """Holds keyframes and map points and tracks large map changes."""

    def __init__(self):
        self._lock = threading.Lock()
        # Held while the map is being restructured (loop correction, BA).
        self.map_update_lock = threading.Lock()
        # Serialises id assignment of points created from several threads.
        self.point_creation_lock = threading.Lock()
        self._keyframes: dict = {}
        self._map_points: dict = {}
        self._max_keyframe_id = 0
        self._big_change_index = 0
        self._reference_map_points: list = []
        self.keyframe_origins: list = []

    def add_keyframe(self, keyframe):
        """Insert a keyframe and keep track of the largest keyframe id."""
        with self._lock:
            self._keyframes[keyframe] = None
            if keyframe.id > self._max_keyframe_id:
                self._max_keyframe_id = keyframe.id

    def add_map_point(self, point):
        """Insert a map point."""
        with self._lock:
            self._map_points[point] = None

    def erase_map_point(self, point):
        """Remove a map point; unknown points are ignored."""
        with self._lock:
            self._map_points.pop(point, None)

    def erase_keyframe(self, keyframe):
        """Remove a keyframe; unknown keyframes are ignored."""
        with self._lock:
            self._keyframes.pop(keyframe, None)

    @property
    def reference_map_points(self) -> list:
        """The map points currently used as the tracking reference."""
        with self._lock:
            return list(self._reference_map_points)

    @reference_map_points.setter
    def reference_map_points(self, points):
        with self._lock:
            self._reference_map_points = list(points)

    def inform_new_big_change(self):
        """Record that the map changed substantially (loop closure, global BA)."""
        with self._lock:
            self._big_change_index += 1

    @property
    def last_big_change_index(self) -> int:
        with self._lock:
            return self._big_change_index

    def all_keyframes(self) -> list:
        """All keyframes in the map."""
        with self._lock:
            return list(self._keyframes)

    def all_map_points(self) -> list:
        """All map points in the map."""
        with self._lock:
            return list(self._map_points)

    @property
    def map_points_in_map(self) -> int:
        with self._lock:
            return len(self._map_points)

    @property
    def keyframes_in_map(self) -> int:
        with self._lock:
            return len(self._keyframes)

    @property
    def max_keyframe_id(self) -> int:
        with self._lock:
            return self._max_keyframe_id

    def clear(self):
        """Drop every keyframe, map point, reference point and origin."""
        with self._lock:
            self._map_points.clear()
            self._keyframes.clear()
            self._max_keyframe_id = 0
            self._reference_map_points = []
            self.keyframe_origins = []