"""Keyframes: selected frames that anchor the map and its covisibility graph."""

from __future__ import annotations

import math
import threading
from typing import Any

import numpy as np


def _ordered_by_weight(pairs):
    """Sort ``(weight, keyframe)`` pairs by decreasing weight."""
    ordered = sorted(pairs, key=lambda p: (p[0], p[1].id), reverse=True)
    return [kf for _, kf in ordered], [w for w, _ in ordered]


class KeyFrame:
    """A frame kept in the map, with its pose, features and graph links.

    The source ``frame`` must provide: ``id``, ``timestamp``, ``grid`` (indexed
    ``[col][row]``), ``grid_element_width_inv``, ``grid_element_height_inv``,
    ``fx``, ``fy``, ``cx``, ``cy``, ``invfx``, ``invfy``, ``bf``, ``b``,
    ``th_depth``, ``n``, ``keys``, ``keys_un`` (objects with ``pt`` and
    ``octave``), ``u_right``, ``depth``, ``descriptors``, ``bow_vec``,
    ``feat_vec``, ``scale_levels``, ``scale_factor``, ``log_scale_factor``,
    ``scale_factors``, ``level_sigma2``, ``inv_level_sigma2``, ``min_x``,
    ``min_y``, ``max_x``, ``max_y``, ``k``, ``map_points``, ``vocabulary`` and
    ``tcw``.
    """

    _next_id = 0
    _id_lock = threading.Lock()

    def __init__(self, frame, world_map, database):
        self.frame_id = frame.id
        self.timestamp = frame.timestamp

        self._grid = [[list(cell) for cell in column] for column in frame.grid]
        self.grid_cols = len(self._grid)
        self.grid_rows = len(self._grid[0]) if self._grid else 0
        self.grid_element_width_inv = frame.grid_element_width_inv
        self.grid_element_height_inv = frame.grid_element_height_inv

        # Tracking and local mapping bookkeeping.
        self.track_reference_for_frame = 0
        self.fuse_target_for_kf = 0
        self.ba_local_for_kf = 0
        self.ba_fixed_for_kf = 0

        # Keyframe database bookkeeping.
        self.loop_query = 0
        self.loop_words = 0
        self.loop_score = 0.0
        self.reloc_query = 0
        self.reloc_words = 0
        self.reloc_score = 0.0

        # Loop closing bookkeeping.
        self.tcw_gba: np.ndarray | None = None
        self.tcw_bef_gba: np.ndarray | None = None
        self.ba_global_for_kf = 0

        self.fx = frame.fx
        self.fy = frame.fy
        self.cx = frame.cx
        self.cy = frame.cy
        self.invfx = frame.invfx
        self.invfy = frame.invfy
        self.bf = frame.bf
        self.b = frame.b
        self.th_depth = frame.th_depth

        self.n = frame.n
        self.keys = list(frame.keys)
        self.keys_un = list(frame.keys_un)
        self.u_right = list(frame.u_right)
        self.depth = list(frame.depth)
        self.descriptors = np.array(frame.descriptors, copy=True)

        self.bow_vec = dict(frame.bow_vec)
        self.feat_vec = dict(frame.feat_vec)

        self.tcp: np.ndarray | None = None

        self.scale_levels = frame.scale_levels
        self.scale_factor = frame.scale_factor
        self.log_scale_factor = frame.log_scale_factor
        self.scale_factors = list(frame.scale_factors)
        self.level_sigma2 = list(frame.level_sigma2)
        self.inv_level_sigma2 = list(frame.inv_level_sigma2)

        self.min_x = int(frame.min_x)
        self.min_y = int(frame.min_y)
        self.max_x = int(frame.max_x)
        self.max_y = int(frame.max_y)
        self.k = np.array(frame.k, dtype=np.float32, copy=True)

        self._pose_lock = threading.RLock()
        self._connections_lock = threading.RLock()
        self._features_lock = threading.RLock()

        self._map_points: list[Any] = list(frame.map_points)
        self._database = database
        self._vocabulary = frame.vocabulary

        self._connected_weights: dict[Any, int] = {}
        self._ordered_connected: list[Any] = []
        self._ordered_weights: list[int] = []

        self._first_connection = True
        self._parent: KeyFrame | None = None
        self._children: set[KeyFrame] = set()
        self._loop_edges: set[KeyFrame] = set()

        self._not_erase = False
        self._to_be_erased = False
        self._bad = False

        self._half_baseline = frame.b / 2
        self._map = world_map

        self._tcw = np.eye(4, dtype=np.float32)
        self._twc = np.eye(4, dtype=np.float32)
        self._ow = np.zeros(3, dtype=np.float32)
        self._cw = np.array([0, 0, 0, 1], dtype=np.float32)

        with KeyFrame._id_lock:
            self.id = KeyFrame._next_id
            KeyFrame._next_id += 1

        self.set_pose(frame.tcw)

    # Bag of words

    def compute_bow(self) -> None:
        """Fill the bag-of-words vectors from the descriptors if still empty."""
        if not self.bow_vec or not self.feat_vec:
            bow, feat = self._vocabulary.transform(list(self.descriptors), 4)
            self.bow_vec = dict(bow)
            self.feat_vec = dict(feat)

    # Pose

    def set_pose(self, tcw) -> None:
        with self._pose_lock:
            self._tcw = np.array(tcw, dtype=np.float32).reshape(4, 4)
            rcw = self._tcw[:3, :3]
            tvec = self._tcw[:3, 3]
            rwc = rcw.T
            self._ow = (-rwc @ tvec).astype(np.float32)
            twc = np.eye(4, dtype=np.float32)
            twc[:3, :3] = rwc
            twc[:3, 3] = self._ow
            self._twc = twc
            center = np.array([self._half_baseline, 0, 0, 1], dtype=np.float32)
            self._cw = (twc @ center).astype(np.float32)

    def pose(self) -> np.ndarray:
        with self._pose_lock:
            return self._tcw.copy()

    def pose_inverse(self) -> np.ndarray:
        with self._pose_lock:
            return self._twc.copy()

    def camera_center(self) -> np.ndarray:
        with self._pose_lock:
            return self._ow.copy()

    def stereo_center(self) -> np.ndarray:
        """Homogeneous world position of the stereo rig midpoint."""
        with self._pose_lock:
            return self._cw.copy()

    def rotation(self) -> np.ndarray:
        with self._pose_lock:
            return self._tcw[:3, :3].copy()

    def translation(self) -> np.ndarray:
        with self._pose_lock:
            return self._tcw[:3, 3].copy()

    # Covisibility graph

    def add_connection(self, keyframe, weight) -> None:
        with self._connections_lock:
            if self._connected_weights.get(keyframe) == weight:
                return
            self._connected_weights[keyframe] = weight
        self.update_best_covisibles()

    def update_best_covisibles(self) -> None:
        with self._connections_lock:
            pairs = [(w, kf) for kf, w in self._connected_weights.items()]
            self._ordered_connected, self._ordered_weights = _ordered_by_weight(pairs)

    def connected_keyframes(self) -> set:
        with self._connections_lock:
            return set(self._connected_weights)

    def covisible_keyframes(self) -> list:
        with self._connections_lock:
            return list(self._ordered_connected)

    def best_covisibility_keyframes(self, n) -> list:
        with self._connections_lock:
            return list(self._ordered_connected[:n])

    def covisibles_by_weight(self, w) -> list:
        """Keyframes ahead of the first one whose weight is below ``w``."""
        with self._connections_lock:
            cut = next(
                (i for i, weight in enumerate(self._ordered_weights) if weight < w),
                None,
            )
            if cut is None:
                return []
            return list(self._ordered_connected[:cut])

    def weight(self, keyframe) -> int:
        with self._connections_lock:
            return self._connected_weights.get(keyframe, 0)

    def erase_connection(self, keyframe) -> None:
        with self._connections_lock:
            if keyframe not in self._connected_weights:
                return
            del self._connected_weights[keyframe]
        self.update_best_covisibles()

    def update_connections(self) -> None:
        """Rebuild covisibility links from the map points shared with other keyframes."""
        with self._features_lock:
            points = list(self._map_points)

        counter: dict[Any, int] = {}
        for point in points:
            if point is None or point.is_bad():
                continue
            for keyframe in point.observations():
                if keyframe.id == self.id:
                    continue
                counter[keyframe] = counter.get(keyframe, 0) + 1

        if not counter:
            return

        threshold = 15
        n_max = 0
        kf_max = None
        pairs = []
        for keyframe, count in counter.items():
            if count > n_max:
                n_max = count
                kf_max = keyframe
            if count >= threshold:
                pairs.append((count, keyframe))
                keyframe.add_connection(self, count)

        if not pairs:
            pairs.append((n_max, kf_max))
            kf_max.add_connection(self, n_max)

        ordered, weights = _ordered_by_weight(pairs)

        with self._connections_lock:
            self._connected_weights = counter
            self._ordered_connected = ordered
            self._ordered_weights = weights
            if self._first_connection and self.id != 0:
                self._parent = ordered[0]
                self._parent.add_child(self)
                self._first_connection = False

    # Spanning tree

    def add_child(self, keyframe) -> None:
        with self._connections_lock:
            self._children.add(keyframe)

    def erase_child(self, keyframe) -> None:
        with self._connections_lock:
            self._children.discard(keyframe)

    def change_parent(self, keyframe) -> None:
        with self._connections_lock:
            self._parent = keyframe
            keyframe.add_child(self)

    def children(self) -> set:
        with self._connections_lock:
            return set(self._children)

    def parent(self):
        with self._connections_lock:
            return self._parent

    def has_child(self, keyframe) -> bool:
        with self._connections_lock:
            return keyframe in self._children

    # Loop edges

    def add_loop_edge(self, keyframe) -> None:
        with self._connections_lock:
            self._not_erase = True
            self._loop_edges.add(keyframe)

    def loop_edges(self) -> set:
        with self._connections_lock:
            return set(self._loop_edges)

    # Map point associations

    def add_map_point(self, map_point, idx) -> None:
        with self._features_lock:
            self._map_points[idx] = map_point

    def erase_map_point_match(self, idx) -> None:
        with self._features_lock:
            self._map_points[idx] = None

    def erase_map_point(self, map_point) -> None:
        idx = map_point.index_in_keyframe(self)
        if idx >= 0:
            with self._features_lock:
                self._map_points[idx] = None

    def replace_map_point_match(self, idx, map_point) -> None:
        with self._features_lock:
            self._map_points[idx] = map_point

    def map_points(self) -> set:
        with self._features_lock:
            return {p for p in self._map_points if p is not None and not p.is_bad()}

    def map_point_matches(self) -> list:
        with self._features_lock:
            return list(self._map_points)

    def tracked_map_points(self, min_obs) -> int:
        """Count good points, only those with at least ``min_obs`` observations if positive."""
        with self._features_lock:
            points = self._map_points[: self.n]
            return sum(
                1
                for p in points
                if p is not None
                and not p.is_bad()
                and (min_obs <= 0 or p.num_observations() >= min_obs)
            )

    def map_point(self, idx):
        with self._features_lock:
            return self._map_points[idx]

    # Keypoints

    def features_in_area(self, x, y, r) -> list:
        """Indices of undistorted keypoints within a square of half-size ``r``."""
        indices: list[int] = []
        min_cell_x = max(0, math.floor((x - self.min_x - r) * self.grid_element_width_inv))
        if min_cell_x >= self.grid_cols:
            return indices
        max_cell_x = min(self.grid_cols - 1, math.ceil((x - self.min_x + r) * self.grid_element_width_inv))
        if max_cell_x < 0:
            return indices
        min_cell_y = max(0, math.floor((y - self.min_y - r) * self.grid_element_height_inv))
        if min_cell_y >= self.grid_rows:
            return indices
        max_cell_y = min(self.grid_rows - 1, math.ceil((y - self.min_y + r) * self.grid_element_height_inv))
        if max_cell_y < 0:
            return indices

        for column in self._grid[min_cell_x : max_cell_x + 1]:
            for cell in column[min_cell_y : max_cell_y + 1]:
                for idx in cell:
                    pt = self.keys_un[idx].pt
                    if abs(pt[0] - x) < r and abs(pt[1] - y) < r:
                        indices.append(idx)
        return indices

    def unproject_stereo(self, i):
        """World position of keypoint ``i`` from its depth, or None without depth."""
        z = self.depth[i]
        if z <= 0:
            return None
        u, v = self.keys[i].pt[0], self.keys[i].pt[1]
        x3dc = np.array(
            [(u - self.cx) * z * self.invfx, (v - self.cy) * z * self.invfy, z],
            dtype=np.float32,
        )
        with self._pose_lock:
            return (self._twc[:3, :3] @ x3dc + self._twc[:3, 3]).astype(np.float32)

    def is_in_image(self, x, y) -> bool:
        return self.min_x <= x < self.max_x and self.min_y <= y < self.max_y

    # Erasure

    def set_not_erase(self) -> None:
        with self._connections_lock:
            self._not_erase = True

    def set_erase(self) -> None:
        with self._connections_lock:
            if not self._loop_edges:
                self._not_erase = False
        if self._to_be_erased:
            self.set_bad_flag()

    def set_bad_flag(self) -> None:
        """Remove the keyframe from the graph, re-linking its children."""
        with self._connections_lock:
            if self.id == 0:
                return
            if self._not_erase:
                self._to_be_erased = True
                return
            connected = list(self._connected_weights)

        for keyframe in connected:
            keyframe.erase_connection(self)

        with self._features_lock:
            points = list(self._map_points)
        for point in points:
            if point is not None:
                point.erase_observation(self)

        with self._connections_lock, self._features_lock:
            self._connected_weights = {}
            self._ordered_connected = []
            self._ordered_weights = []

            candidates = {self._parent} if self._parent is not None else set()
            candidate_ids = {c.id for c in candidates}

            while self._children:
                best_weight = -1
                best_child = None
                best_parent = None
                for child in self._children:
                    if child.is_bad():
                        continue
                    for neighbour in child.covisible_keyframes():
                        if neighbour.id in candidate_ids:
                            w = child.weight(neighbour)
                            if w > best_weight:
                                best_child, best_parent, best_weight = child, neighbour, w
                if best_child is None:
                    break
                best_child.change_parent(best_parent)
                candidates.add(best_child)
                candidate_ids.add(best_child.id)
                self._children.discard(best_child)

            if self._parent is not None:
                for child in list(self._children):
                    child.change_parent(self._parent)
                self._parent.erase_child(self)
                with self._pose_lock:
                    self.tcp = (self._tcw @ self._parent.pose_inverse()).astype(np.float32)
            self._bad = True

        self._map.erase_keyframe(self)
        self._database.erase(self)

    def is_bad(self) -> bool:
        with self._connections_lock:
            return self._bad

    def compute_scene_median_depth(self, q) -> float:
        """Depth of the ``(n-1)//q``-th closest map point (q=2 gives the median)."""
        with self._features_lock, self._pose_lock:
            points = list(self._map_points[: self.n])
            tcw = self._tcw.copy()
        row = tcw[2, :3]
        zcw = tcw[2, 3]
        depths = sorted(
            float(row @ p.world_pos() + zcw) for p in points if p is not None
        )
        if not depths:
            raise ValueError("keyframe has no map points")
        return depths[(len(depths) - 1) // q]