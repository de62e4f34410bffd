"""Geometry for displaying the map: points, keyframe frustums and graph edges.

Nothing here talks to a graphics API. The drawer turns the map into plain
arrays of positions and line segments that any renderer can consume.
"""

from __future__ import annotations

import threading

import numpy as np


def frustum_segments(size) -> np.ndarray:
    """Line segments of a camera frustum of width ``size`` in camera coordinates.

    Returns an array of shape ``(8, 2, 3)``: four edges from the optical
    centre to the corners of the image plane, then the four sides of the
    image plane.
    """
    w = float(size)
    h = w * 0.75
    z = w * 0.6
    origin = (0.0, 0.0, 0.0)
    corners = [(w, h, z), (w, -h, z), (-w, -h, z), (-w, h, z)]
    segments = [(origin, corner) for corner in corners]
    segments += [
        ((w, h, z), (w, -h, z)),
        ((-w, h, z), (-w, -h, z)),
        ((-w, h, z), (w, h, z)),
        ((-w, -h, z), (w, -h, z)),
    ]
    return np.array(segments, dtype=np.float64)


def _transform(segments: np.ndarray, twc) -> np.ndarray:
    t = np.asarray(twc, dtype=np.float64).reshape(4, 4)
    return segments @ t[:3, :3].T + t[:3, 3]


def _center(keyframe) -> np.ndarray:
    return np.asarray(keyframe.camera_center(), dtype=np.float64).reshape(3)


class MapDrawer:
    """Collects what a map viewer draws, in world coordinates."""

    def __init__(
        self,
        world_map,
        keyframe_size=0.05,
        keyframe_line_width=1.0,
        graph_line_width=0.9,
        point_size=2.0,
        camera_size=0.08,
        camera_line_width=3.0,
    ):
        self._map = world_map
        self.keyframe_size = float(keyframe_size)
        self.keyframe_line_width = float(keyframe_line_width)
        self.graph_line_width = float(graph_line_width)
        self.point_size = float(point_size)
        self.camera_size = float(camera_size)
        self.camera_line_width = float(camera_line_width)
        self._camera_lock = threading.Lock()
        self._camera_pose: np.ndarray | None = None

    def map_point_positions(self) -> tuple[np.ndarray, np.ndarray]:
        """Positions of good map points as ``(others, references)``.

        Reference map points (the local map of the tracker) are returned
        separately; both arrays have shape ``(n, 3)``.
        """
        points = self._map.all_map_points()
        references = list(dict.fromkeys(self._map.reference_map_points()))
        reference_set = set(references)

        others = [
            np.asarray(p.world_pos(), dtype=np.float64).reshape(3)
            for p in points
            if not p.is_bad() and p not in reference_set
        ]
        refs = [
            np.asarray(p.world_pos(), dtype=np.float64).reshape(3)
            for p in references
            if not p.is_bad()
        ]
        return np.array(others).reshape(-1, 3), np.array(refs).reshape(-1, 3)

    def keyframe_frustums(self) -> list[np.ndarray]:
        """World-space frustum segments for every keyframe in the map."""
        local = frustum_segments(self.keyframe_size)
        return [_transform(local, kf.pose_inverse()) for kf in self._map.all_keyframes()]

    def graph_edges(self) -> dict[str, list[tuple[np.ndarray, np.ndarray]]]:
        """Edges between camera centres, grouped by kind.

        ``covisibility`` holds strong covisibility links (weight 100 or more),
        ``spanning_tree`` the child-to-parent links and ``loop`` the loop
        closure edges. Symmetric edges are listed once.
        """
        edges: dict[str, list[tuple[np.ndarray, np.ndarray]]] = {
            "covisibility": [],
            "spanning_tree": [],
            "loop": [],
        }
        for keyframe in self._map.all_keyframes():
            ow = _center(keyframe)
            for other in keyframe.covisibles_by_weight(100):
                if other.id < keyframe.id:
                    continue
                edges["covisibility"].append((ow, _center(other)))

            parent = keyframe.parent()
            if parent is not None:
                edges["spanning_tree"].append((ow, _center(parent)))

            for other in keyframe.loop_edges():
                if other.id < keyframe.id:
                    continue
                edges["loop"].append((ow, _center(other)))
        return edges

    def current_camera_frustum(self, twc) -> np.ndarray:
        """Frustum segments of the current camera placed at pose ``twc``."""
        return _transform(frustum_segments(self.camera_size), twc)

    def set_current_camera_pose(self, tcw) -> None:
        with self._camera_lock:
            self._camera_pose = np.array(tcw, dtype=np.float64).reshape(4, 4)

    def current_opengl_camera_matrix(self) -> np.ndarray:
        """Camera-to-world matrix as 16 values in column-major order.

        The identity is returned while no camera pose has been set.
        """
        with self._camera_lock:
            pose = None if self._camera_pose is None else self._camera_pose.copy()
        if pose is None:
            return np.eye(4).ravel(order="F")
        rwc = pose[:3, :3].T
        twc = -rwc @ pose[:3, 3]
        matrix = np.eye(4)
        matrix[:3, :3] = rwc
        matrix[:3, 3] = twc
        return matrix.ravel(order="F")