"""Container for the keyframes and map points of a reconstruction."""

from __future__ import annotations

import threading
from typing import Any, Iterable


class Map:
    """Thread-safe registry of keyframes and map points."""

    def __init__(self):
        self._lock = threading.RLock()
        self._keyframes: dict[Any, None] = {}
        self._map_points: dict[Any, None] = {}
        self._reference_map_points: list[Any] = []
        self._max_keyframe_id = 0
        self._big_change_idx = 0
        self.keyframe_origins: list[Any] = []
        # Held while the map is being updated as a whole (loop correction).
        self.mutex_map_update = threading.RLock()
        # Serialises map point id assignment across threads.
        self.mutex_point_creation = threading.Lock()

    def add_keyframe(self, keyframe) -> None:
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

    def set_reference_map_points(self, map_points: Iterable[Any]) -> None:
        with self._lock:
            self._reference_map_points = list(map_points)

    def inform_new_big_change(self) -> None:
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
        """Drop all keyframes, map points, references and origins."""
        with self._lock:
            self._map_points.clear()
            self._keyframes.clear()
            self._max_keyframe_id = 0
            self._reference_map_points = []
            self.keyframe_origins = []