import numpy as np
import pytest

from orbmap.map import Map
from orbmap.map_drawer import MapDrawer, frustum_segments


class FakePoint:
    def __init__(self, pos, bad=False):
        self._pos = np.array(pos, dtype=np.float32)
        self._bad = bad

    def world_pos(self):
        return self._pos.copy()

    def is_bad(self):
        return self._bad


class FakeKeyFrame:
    def __init__(self, kid, center):
        self.id = kid
        self._twc = np.eye(4)
        self._twc[:3, 3] = center
        self.covisibles = []
        self.parent_kf = None
        self.loops = set()
        self.requested_weights = []

    def pose_inverse(self):
        return self._twc.copy()

    def camera_center(self):
        return self._twc[:3, 3].copy()

    def covisibles_by_weight(self, w):
        self.requested_weights.append(w)
        return list(self.covisibles)

    def parent(self):
        return self.parent_kf

    def loop_edges(self):
        return set(self.loops)


def test_frustum_segments_shape_and_proportions():
    segs = frustum_segments(2.0)
    assert segs.shape == (8, 2, 3)
    assert np.allclose(segs[:4, 0], 0.0)
    assert segs[0, 1] == pytest.approx([2.0, 2.0 * 0.75, 2.0 * 0.6])
    assert np.allclose(segs[4:, :, 2], 2.0 * 0.6)


def test_frustum_scales_linearly():
    assert np.allclose(frustum_segments(3.0), 3.0 * frustum_segments(1.0))


def test_map_point_positions_split_reference_and_skip_bad():
    world = Map()
    a, b, bad, ref = FakePoint([1, 2, 3]), FakePoint([4, 5, 6]), FakePoint([0, 0, 0], True), FakePoint([7, 8, 9])
    for p in (a, b, bad, ref):
        world.add_map_point(p)
    world.set_reference_map_points([ref, bad])
    drawer = MapDrawer(world)
    others, refs = drawer.map_point_positions()
    assert others.shape == (2, 3)
    assert np.allclose(sorted(map(tuple, others)), [(1, 2, 3), (4, 5, 6)])
    assert np.allclose(refs, [[7, 8, 9]])


def test_map_point_positions_empty_map():
    others, refs = MapDrawer(Map()).map_point_positions()
    assert others.shape == (0, 3)
    assert refs.shape == (0, 3)


def test_keyframe_frustums_translated_by_pose():
    world = Map()
    kf = FakeKeyFrame(0, [1.0, -2.0, 5.0])
    world.add_keyframe(kf)
    drawer = MapDrawer(world, keyframe_size=0.5)
    (frustum,) = drawer.keyframe_frustums()
    assert np.allclose(frustum - kf.camera_center(), frustum_segments(0.5))


def test_graph_edges_listed_once():
    world = Map()
    a = FakeKeyFrame(0, [0, 0, 0])
    b = FakeKeyFrame(1, [1, 0, 0])
    a.covisibles = [b]
    b.covisibles = [a]
    b.parent_kf = a
    a.loops = {b}
    b.loops = {a}
    world.add_keyframe(a)
    world.add_keyframe(b)
    edges = MapDrawer(world).graph_edges()
    assert len(edges["covisibility"]) == 1
    assert len(edges["spanning_tree"]) == 1
    assert len(edges["loop"]) == 1
    start, end = edges["spanning_tree"][0]
    assert np.allclose(start, b.camera_center())
    assert np.allclose(end, a.camera_center())
    assert a.requested_weights == [100]


def test_current_camera_frustum_identity_and_translation():
    drawer = MapDrawer(Map(), camera_size=0.2)
    assert np.allclose(drawer.current_camera_frustum(np.eye(4)), frustum_segments(0.2))
    twc = np.eye(4)
    twc[:3, 3] = [3, 4, 5]
    shifted = drawer.current_camera_frustum(twc)
    assert np.allclose(shifted - np.array([3, 4, 5]), frustum_segments(0.2))


def test_opengl_matrix_identity_without_pose():
    drawer = MapDrawer(Map())
    assert np.allclose(drawer.current_opengl_camera_matrix(), np.eye(4).ravel())


def test_opengl_matrix_inverts_pose():
    angle = 0.3
    tcw = np.eye(4)
    tcw[:3, :3] = [[np.cos(angle), -np.sin(angle), 0], [np.sin(angle), np.cos(angle), 0], [0, 0, 1]]
    tcw[:3, 3] = [0.5, -1.0, 2.0]
    drawer = MapDrawer(Map())
    drawer.set_current_camera_pose(tcw)
    m = drawer.current_opengl_camera_matrix()
    assert m.shape == (16,)
    twc = m.reshape(4, 4, order="F")
    assert np.allclose(twc @ tcw, np.eye(4))
    assert m[15] == pytest.approx(1.0)
    assert np.allclose(m[[3, 7, 11]], 0.0)