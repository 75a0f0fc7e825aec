"""The shared map: keyframes, map points and detected objects."""

from __future__ import annotations

import threading
from typing import Any


class Map:
    """Thread-safe container for the keyframes and map points of a session."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._keyframes: dict[Any, None] = {}
        self._map_points: dict[Any, None] = {}
        self._object_points: dict[Any, None] = {}
        self._reference_points: list[Any] = []
        self._objects: list[Any] = []
        self._max_keyframe_id = 0
        self._big_change_index = 0
        self.keyframe_origins: list[Any] = []
        # Held while a whole-map correction (loop closure, global BA) is applied.
        self.update_lock = threading.RLock()
        # Serialises the creation of map points so that ids stay unique.
        self.point_creation_lock = threading.Lock()

    def add_keyframe(self, keyframe: Any) -> None:
        """Insert a keyframe and track the largest keyframe id seen."""
        with self._lock:
            self._keyframes[keyframe] = None
            if keyframe.id > self._max_keyframe_id:
                self._max_keyframe_id = keyframe.id

    def add_map_point(self, point: Any) -> None:
        with self._lock:
            self._map_points[point] = None

    def erase_map_point(self, point: Any) -> None:
        with self._lock:
            self._map_points.pop(point, None)

    def erase_keyframe(self, keyframe: Any) -> None:
        with self._lock:
            self._keyframes.pop(keyframe, None)

    def set_reference_map_points(self, points: list[Any]) -> None:
        with self._lock:
            self._reference_points = list(points)

    def add_object_map_point(self, point: Any) -> None:
        with self._lock:
            self._object_points[point] = None

    def add_object(self, obj: Any) -> None:
        with self._lock:
            self._objects.append(obj)

    def inform_new_big_change(self) -> None:
        """Record that the map went through a large correction."""
        with self._lock:
            self._big_change_index += 1

    @property
    def big_change_index(self) -> int:
        with self._lock:
            return self._big_change_index

    def all_keyframes(self) -> list[Any]:
        with self._lock:
            return list(self._keyframes)

    def all_map_points(self) -> list[Any]:
        with self._lock:
            return list(self._map_points)

    def object_map_points(self) -> list[Any]:
        with self._lock:
            return list(self._object_points)

    def objects(self) -> list[Any]:
        with self._lock:
            return list(self._objects)

    def map_points_in_map(self) -> int:
        with self._lock:
            return len(self._map_points)

    def keyframes_in_map(self) -> int:
        with self._lock:
            return len(self._keyframes)

    def reference_map_points(self) -> list[Any]:
        with self._lock:
            return list(self._reference_points)

    def max_keyframe_id(self) -> int:
        with self._lock:
            return self._max_keyframe_id

    def clear(self) -> None:
        """Drop all keyframes, map points, reference points and origins."""
        with self._lock:
            self._map_points.clear()
            self._keyframes.clear()
            self._max_keyframe_id = 0
            self._reference_points = []
            self.keyframe_origins.clear()