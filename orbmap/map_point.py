"""3D landmarks observed by keyframes."""

from __future__ import annotations

import math
import threading
from typing import Any

import numpy as np


def descriptor_distance(a, b) -> int:
    """Hamming distance between two binary descriptors stored as bytes."""
    xa = np.asarray(a, dtype=np.uint8).ravel()
    xb = np.asarray(b, dtype=np.uint8).ravel()
    if xa.shape != xb.shape:
        raise ValueError("descriptors must have the same length")
    return int(np.unpackbits(np.bitwise_xor(xa, xb)).sum())


def _as_vector(pos) -> np.ndarray:
    return np.array(pos, dtype=np.float32).reshape(3)


class MapPoint:
    """A landmark with its observations, viewing direction and scale range."""

    _next_id = 0
    _global_lock = threading.Lock()

    def __init__(self, pos, ref_keyframe, world_map):
        self._lock = threading.RLock()
        self.first_kf_id = ref_keyframe.id if ref_keyframe is not None else -1
        self.first_frame = ref_keyframe.frame_id if ref_keyframe is not None else 0
        self.n_obs = 0

        # Tracking bookkeeping.
        self.track_proj_x = 0.0
        self.track_proj_y = 0.0
        self.track_proj_xr = 0.0
        self.track_in_view = False
        self.track_scale_level = 0
        self.track_view_cos = 0.0
        self.track_reference_for_frame = 0
        self.last_frame_seen = 0

        # Local mapping bookkeeping.
        self.ba_local_for_kf = 0
        self.fuse_candidate_for_kf = 0

        # Loop closing bookkeeping.
        self.loop_point_for_kf = 0
        self.corrected_by_kf = 0
        self.corrected_reference = 0
        self.pos_gba: np.ndarray | None = None
        self.ba_global_for_kf = 0

        self._world_pos = _as_vector(pos)
        self._normal = np.zeros(3, dtype=np.float32)
        self._descriptor: np.ndarray | None = None
        self._observations: dict[Any, int] = {}
        self._ref_keyframe = ref_keyframe
        self._visible = 1
        self._found = 1
        self._bad = False
        self._replaced: MapPoint | None = None
        self._min_distance = 0.0
        self._max_distance = 0.0
        self._map = world_map

        with world_map.mutex_point_creation:
            self.id = MapPoint._next_id
            MapPoint._next_id += 1

    @classmethod
    def from_frame(cls, pos, world_map, frame, idx):
        """Create a point seen by keypoint ``idx`` of an ordinary frame."""
        point = cls(pos, None, world_map)
        point.first_kf_id = -1
        point.first_frame = frame.id
        center = np.asarray(frame.camera_center(), dtype=np.float32).reshape(3)
        offset = point._world_pos - center
        dist = float(np.linalg.norm(offset))
        point._normal = (offset / dist).astype(np.float32)
        level = frame.keys_un[idx].octave
        point._max_distance = dist * frame.scale_factors[level]
        point._min_distance = point._max_distance / frame.scale_factors[frame.scale_levels - 1]
        point._descriptor = np.array(frame.descriptors[idx], copy=True)
        return point

    def set_world_pos(self, pos) -> None:
        with MapPoint._global_lock, self._lock:
            self._world_pos = _as_vector(pos)

    def world_pos(self) -> np.ndarray:
        with self._lock:
            return self._world_pos.copy()

    def normal(self) -> np.ndarray:
        with self._lock:
            return self._normal.copy()

    def reference_keyframe(self):
        with self._lock:
            return self._ref_keyframe

    def observations(self) -> dict:
        with self._lock:
            return dict(self._observations)

    def num_observations(self) -> int:
        with self._lock:
            return self.n_obs

    def add_observation(self, keyframe, idx) -> None:
        """Record that ``keyframe`` sees this point at keypoint ``idx``."""
        with self._lock:
            if keyframe in self._observations:
                return
            self._observations[keyframe] = idx
            self.n_obs += 2 if keyframe.u_right[idx] >= 0 else 1

    def erase_observation(self, keyframe) -> None:
        """Remove an observation; the point turns bad with two or fewer left."""
        bad = False
        with self._lock:
            if keyframe in self._observations:
                idx = self._observations.pop(keyframe)
                self.n_obs -= 2 if keyframe.u_right[idx] >= 0 else 1
                if self._ref_keyframe is keyframe:
                    self._ref_keyframe = next(iter(self._observations), None)
                bad = self.n_obs <= 2
        if bad:
            self.set_bad_flag()

    def index_in_keyframe(self, keyframe) -> int:
        with self._lock:
            return self._observations.get(keyframe, -1)

    def is_in_keyframe(self, keyframe) -> bool:
        with self._lock:
            return keyframe in self._observations

    def set_bad_flag(self) -> None:
        """Mark the point bad and detach it from its keyframes and the map."""
        with self._lock:
            self._bad = True
            obs = self._observations
            self._observations = {}
        for keyframe, idx in obs.items():
            keyframe.erase_map_point_match(idx)
        self._map.erase_map_point(self)

    def is_bad(self) -> bool:
        with self._lock:
            return self._bad

    def replace(self, other: MapPoint) -> None:
        """Hand all observations and counters over to ``other``."""
        if other.id == self.id:
            return
        with self._lock:
            obs = self._observations
            self._observations = {}
            self._bad = True
            visible = self._visible
            found = self._found
            self._replaced = other
        for keyframe, idx in obs.items():
            if not other.is_in_keyframe(keyframe):
                keyframe.replace_map_point_match(idx, other)
                other.add_observation(keyframe, idx)
            else:
                keyframe.erase_map_point_match(idx)
        other.increase_found(found)
        other.increase_visible(visible)
        other.compute_distinctive_descriptors()
        self._map.erase_map_point(self)

    def replaced(self) -> MapPoint | None:
        with self._lock:
            return self._replaced

    def increase_visible(self, n=1) -> None:
        with self._lock:
            self._visible += n

    def increase_found(self, n=1) -> None:
        with self._lock:
            self._found += n

    def found_ratio(self) -> float:
        with self._lock:
            return self._found / self._visible

    def found(self) -> int:
        with self._lock:
            return self._found

    def compute_distinctive_descriptors(self) -> None:
        """Pick the observed descriptor with the least median distance to the rest."""
        with self._lock:
            if self._bad:
                return
            observations = dict(self._observations)
        if not observations:
            return
        descriptors = [
            np.asarray(kf.descriptors[idx])
            for kf, idx in observations.items()
            if not kf.is_bad()
        ]
        if not descriptors:
            return
        n = len(descriptors)
        distances = np.zeros((n, n), dtype=np.int64)
        for i, di in enumerate(descriptors):
            for j in range(i + 1, n):
                d = descriptor_distance(di, descriptors[j])
                distances[i, j] = distances[j, i] = d
        medians = np.sort(distances, axis=1)[:, (n - 1) // 2]
        best = int(np.argmin(medians))
        with self._lock:
            self._descriptor = np.array(descriptors[best], copy=True)

    def descriptor(self) -> np.ndarray | None:
        with self._lock:
            return None if self._descriptor is None else self._descriptor.copy()

    def update_normal_and_depth(self) -> None:
        """Recompute the mean viewing direction and the scale-invariance range."""
        with self._lock:
            if self._bad:
                return
            observations = dict(self._observations)
            ref = self._ref_keyframe
            pos = self._world_pos.copy()
        if not observations:
            return
        normal = np.zeros(3, dtype=np.float64)
        for keyframe in observations:
            offset = pos - np.asarray(keyframe.camera_center(), dtype=np.float32).reshape(3)
            normal += offset / np.linalg.norm(offset)
        ref_center = np.asarray(ref.camera_center(), dtype=np.float32).reshape(3)
        dist = float(np.linalg.norm(pos - ref_center))
        level = ref.keys_un[observations.get(ref, 0)].octave
        level_scale = ref.scale_factors[level]
        with self._lock:
            self._max_distance = dist * level_scale
            self._min_distance = self._max_distance / ref.scale_factors[ref.scale_levels - 1]
            self._normal = (normal / len(observations)).astype(np.float32)

    def min_distance_invariance(self) -> float:
        with self._lock:
            return 0.8 * self._min_distance

    def max_distance_invariance(self) -> float:
        with self._lock:
            return 1.2 * self._max_distance

    def predict_scale(self, current_dist, frame) -> int:
        """Predict the pyramid level at which the point appears at ``current_dist``."""
        with self._lock:
            ratio = self._max_distance / current_dist
        if ratio <= 0:
            return 0
        n_scale = math.ceil(math.log(ratio) / frame.log_scale_factor)
        if n_scale < 0:
            return 0
        if n_scale >= frame.scale_levels:
            return frame.scale_levels - 1
        return n_scale