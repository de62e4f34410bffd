# orbmap

Data structures and algorithms for the mapping side of a feature-based visual SLAM system.
The package covers the map of 3D points and keyframes, the covisibility graph and spanning
tree, and a bag-of-words keyframe database for place recognition. It also provides loop
detection by covisibility consistency and the propagation of a global bundle-adjustment
result through the map.

Matrices and vectors are `numpy` arrays. Poses are 4×4 world-to-camera transforms (`Tcw`).

## Installation

```
pip install .
```

To run the tests:

```
pip install .[test]
pytest
```

## What is in the package

- `orbmap.map.Map` holds the set of keyframes and map points. It also keeps the reference
  points shown to a viewer, the origin keyframes (`keyframe_origins`) and a counter of large
  map changes (`inform_new_big_change`, `last_big_change_idx`). `mutex_map_update` is a lock
  held while the map is updated as a whole.
- `orbmap.map_point.MapPoint` is a 3D landmark. It holds:
  - its world position and the keyframes that observe it;
  - its mean viewing direction (`update_normal_and_depth`);
  - its representative descriptor. `compute_distinctive_descriptors` picks the descriptor
    with the least median Hamming distance to the others (see `descriptor_distance`);
  - its scale-invariance distances (`min_distance_invariance`, `max_distance_invariance`,
    `predict_scale`).

  `MapPoint.from_frame` creates a point from a keypoint of an ordinary frame. `replace` hands
  all observations over to another point.
- `orbmap.keyframe.KeyFrame` stores a pose, its features and their map points. It keeps:
  - the covisibility graph (`update_connections`, `best_covisibility_keyframes`,
    `covisibles_by_weight`);
  - the spanning tree (`parent`, `children`, `change_parent`);
  - loop edges.

  Culling a keyframe with `set_bad_flag` reattaches its children to the best-connected parent
  candidates. The keyframe is then removed from the map and from the database.
  `features_in_area` searches keypoints through the frame grid. `unproject_stereo` and
  `compute_scene_median_depth` give depth information.
- `orbmap.keyframe_database.KeyFrameDatabase` is an inverted file over vocabulary words. It
  answers `detect_loop_candidates` and `detect_relocalization_candidates`.
- `orbmap.geometry` has the two-view helpers:
  - `skew_symmetric_matrix`;
  - `compute_f12`, the fundamental matrix between two keyframes;
  - `triangulate_linear`, linear triangulation that returns `None` for a point at infinity;
  - `cos_parallax`.
- `orbmap.loop_detection.LoopDetector` computes the minimum covisibility score for a
  keyframe. It also tracks consistent groups (`ConsistentGroup`) of loop candidates over
  consecutive keyframes.
- `orbmap.loop_closing.LoopClosing` handles the loop-closing side:
  - It queues keyframes; keyframe 0 is never queued.
  - `detect_loop` runs loop detection. It raises `LookupError` when the queue is empty.
  - `propagate_global_correction` applies a finished global bundle adjustment to the map,
    carrying it through the spanning tree.
  - It provides reset (`request_reset`, which can time out with `TimeoutError`) and finish
    handshakes.
- `orbmap.map_drawer.MapDrawer` turns the map into drawable geometry. It returns:
  - point positions;
  - keyframe frustums (`frustum_segments`);
  - covisibility, spanning-tree and loop edges;
  - the column-major OpenGL camera matrix.

  It does no rendering itself.

Objects supplied from outside the package are used through attributes and methods only:

- A vocabulary provides `len()`, `score(bow_a, bow_b)` and, for `KeyFrame.compute_bow`,
  `transform(descriptors, levels)`.
- A frame passed to `KeyFrame` supplies the attributes listed in the `KeyFrame` docstring.

## Example

```python
import numpy as np
from orbmap.geometry import skew_symmetric_matrix, triangulate_linear
from orbmap.map import Map

world = Map()
world.inform_new_big_change()
assert world.last_big_change_idx() == 1
assert world.keyframes_in_map() == 0

v = np.array([1.0, 2.0, 3.0])
w = np.array([4.0, 5.0, 6.0])
assert np.allclose(skew_symmetric_matrix(v) @ w, np.cross(v, w))

tcw1 = np.hstack([np.eye(3), np.zeros((3, 1))])
tcw2 = np.hstack([np.eye(3), np.array([[-1.0], [0.0], [0.0]])])
point = triangulate_linear([0.0, 0.0, 1.0], [-0.5, 0.0, 1.0], tcw1, tcw2)
assert np.allclose(point, [0.0, 0.0, 2.0], atol=1e-5)
```

A map point is created from a world position, its reference keyframe and the map. With no
reference keyframe, `first_kf_id` is -1. `add_observation` counts a stereo observation
twice, and `erase_observation` marks the point bad once two observations or fewer are left.

## What the package does not do

- It does not extract features or track the camera.
- It does not run the local-mapping back end that processes new keyframes, triangulates new
  points and culls redundant ones in a background thread.
- It does not perform bundle adjustment, pose-graph optimisation or similarity-transform
  estimation. `LoopClosing` detects loop candidates and propagates an adjustment result, but
  the caller must supply that result in `tcw_gba` on the keyframes and `pos_gba` on the map
  points. It also does not fuse the two sides of a loop.
- It draws nothing on screen and stores nothing on disk.