# slamgraph

`slamgraph` holds the map side of a feature-based visual SLAM system. It keeps
map points and keyframes and maintains the covisibility graph and the spanning
tree. It also indexes keyframes by visual word, triangulates new points between
neighbouring keyframes, and detects and corrects loops with similarity
transforms.

Poses are 4×4 `float` NumPy arrays that map world coordinates to camera
coordinates (`Tcw`). Points are 3-vectors.

## Installation

```
pip install slamgraph
```

NumPy is the only dependency.

## What the package does not do

`slamgraph` is bookkeeping and geometry. It does not:

- read images, extract features or compute descriptors,
- build or load a bag-of-words vocabulary,
- track the camera frame by frame,
- run any optimisation (local or global bundle adjustment, Sim3 or pose-graph
  optimisation) or RANSAC,
- render anything on screen.

Those parts come in as duck-typed collaborators, described below. The package
has no command-line program.

## Modules

| Module | Contents |
| --- | --- |
| `slamgraph.geometry` | `Sim3`, `se3`, `skew_symmetric` |
| `slamgraph.map` | `Map`: thread-safe sets of keyframes and map points |
| `slamgraph.mappoint` | `MapPoint`, `descriptor_distance` (Hamming distance of binary descriptors) |
| `slamgraph.keyframe` | `KeyFrame`: pose, map-point matches, covisibility graph, spanning tree, loop edges, feature grid |
| `slamgraph.keyframe_database` | `KeyFrameDatabase`: inverted word index for loop and relocalisation queries |
| `slamgraph.loop_detection` | `LoopDetector`, `ConsistentGroup` |
| `slamgraph.triangulation` | `fundamental_matrix`, `create_new_map_points` |
| `slamgraph.loop_closing` | `LoopClosing`: the loop-closing worker |
| `slamgraph.local_mapping` | `LocalMapping`: the local-mapping worker |
| `slamgraph.drawer` | `MapDrawer`, `frustum_segments`: point and line geometry for a viewer |

## Similarity transforms

```python
import numpy as np
from slamgraph.geometry import Sim3, se3, skew_symmetric

pose = se3(np.eye(3), np.array([1.0, 0.0, 0.0]))   # 4x4 [R | t; 0 1]
s = Sim3.from_pose(pose)                            # unit scale
scaled = Sim3(np.eye(3), np.zeros(3), 2.0)

combined = scaled * s
point = combined.map(np.array([0.0, 1.0, 0.0]))     # s * R @ x + t
back = combined.inverse().map(point)                # the original point
matrix = combined.to_matrix()                       # [sR | t; 0 1]
rigid = combined.to_se3()                           # [R | t/s; 0 1]

skew_symmetric([1.0, 2.0, 3.0]) @ np.array([0.0, 0.0, 1.0])   # cross product
```

`Sim3` rejects a zero scale, and all constructors check array shapes, raising
`ValueError` when they are wrong.

## The map

```python
from slamgraph.map import Map

world = Map()
world.add_keyframe(keyframe)
world.add_map_point(point)

world.keyframes_in_map()       # number of keyframes
world.map_points_in_map()      # number of map points
world.max_keyframe_id()        # highest keyframe id added
world.inform_new_big_change()  # note a loop closure or global adjustment
world.last_big_change_index()
world.clear()
```

`Map` also has `keyframe_origins` (a list), a `mutex_map_update` lock held while
the workers change the map, and a `mutex_point_creation` lock used when map
points take their ids.

## Keyframes and map points

A `KeyFrame(frame, world_map, database)` copies what it needs from a frame
object. The frame must have these attributes:

- `id`, `timestamp`, `tcw`, `k`
- `fx`, `fy`, `cx`, `cy`, `invfx`, `invfy`, `b`, `bf`, `th_depth`
- `n`, `keys`, `keys_un` (keypoints with `pt` and `octave`), `u_right`,
  `depth`, `descriptors`, `map_points`
- `bow_vector`, `feature_vector`, `vocabulary`
- `scale_levels`, `scale_factor`, `log_scale_factor`, `scale_factors`,
  `level_sigma2`, `inv_level_sigma2`
- `min_x`, `max_x`, `min_y`, `max_y`, `grid`, `grid_element_width_inv`,
  `grid_element_height_inv`

Keyframe ids come from a counter shared by the class. The keyframe with id 0 is
never removed by `set_bad_flag()`.

`update_connections()` rebuilds covisibility edges from shared map points. An
edge needs at least 15 shared points. If no other keyframe reaches that, the
strongest one gets an edge anyway. On its first connection, a keyframe other
than id 0 takes its strongest neighbour as its spanning-tree parent.

A `MapPoint(position, reference_keyframe, world_map)` is created from a
keyframe. `MapPoint.from_frame(position, world_map, frame, index)` creates one
from an ordinary frame; that frame must also provide `camera_center()`. A point
counts a stereo observation twice. It turns bad once two or fewer observations
remain. `replace(other)` hands all its observations over to `other`.

## Keyframe database and loop detection

```python
from slamgraph.keyframe_database import KeyFrameDatabase
from slamgraph.loop_detection import LoopDetector

database = KeyFrameDatabase(vocabulary)
database.add(keyframe)
candidates = database.detect_loop_candidates(keyframe, min_score)
relocalisation = database.detect_relocalization_candidates(frame)  # frame: bow_vector, id

detector = LoopDetector(database, vocabulary, consistency_threshold=3)
loops = detector.detect(keyframe, last_loop_id)
```

The vocabulary must provide `score(bow_a, bow_b) -> float`. Bag-of-words
vectors are mappings keyed by word id. `KeyFrame.compute_bow()` calls
`vocabulary.transform(descriptors, 4)` and expects
`(bow_vector, feature_vector)` in return.

`LoopDetector.detect` returns nothing while `keyframe.id` is within 10 of
`last_loop_id`. Otherwise it returns the candidates whose covisibility group
has stayed consistent over `consistency_threshold` consecutive queries. Either
way, the keyframe is added to the database.

## Triangulation

```python
from slamgraph.triangulation import fundamental_matrix, create_new_map_points

f12 = fundamental_matrix(kf1, kf2)
new_points = create_new_map_points(current, neighbours, matcher, world, monocular=True)
```

`matcher.search_for_triangulation(kf1, kf2, f12, only_stereo)` must return pairs
of keypoint indices. A new point is kept only if it passes these checks:

- parallax, unless stereo depth is available,
- positive depth in both cameras,
- chi-square reprojection error (5.991 monocular, 7.8 stereo),
- scale consistency.

The function returns the points it created and adds them to the map.

## Running the workers

`LocalMapping` and `LoopClosing` are meant to run on their own threads. Each
`run()` loop ends after `request_finish()`.

```python
import threading
from slamgraph.local_mapping import LocalMapping
from slamgraph.loop_closing import LoopClosing

mapper = LocalMapping(world, monocular=True, matcher=matcher, optimizer=optimizer)
closer = LoopClosing(world, database, vocabulary, fix_scale=False,
                     matcher=matcher, optimizer=optimizer, solver_factory=solver_factory)
mapper.set_loop_closer(closer)
closer.set_local_mapper(mapper)

threading.Thread(target=mapper.run, daemon=True).start()
threading.Thread(target=closer.run, daemon=True).start()

mapper.insert_keyframe(keyframe)
...
mapper.request_finish()
closer.request_finish()
```

The collaborators need these methods.

Matcher:

- `search_for_triangulation(kf1, kf2, f12, only_stereo)`
- `fuse_projection(keyframe, points)`
- `search_by_bow(kf1, kf2) -> matches`
- `search_by_sim3(kf1, kf2, matches, s, R, t, th) -> matches`
- `search_by_projection(kf, scw, points, matches, th) -> matches`
- `fuse(kf, scw, points, th) -> replacements`

Optimizer:

- `local_bundle_adjustment(keyframe, abort_event, world_map)`
- `optimize_sim3(kf1, kf2, matches, sim3, th2, fix_scale) -> (inliers, sim3, matches)`
- `optimize_essential_graph(world_map, loop_kf, current_kf, non_corrected, corrected, loop_connections, fix_scale)`
- `global_bundle_adjustment(world_map, iterations, stop_event, loop_kf_id, robust)`

Solver factory:

- `solver_factory(kf1, kf2, matches, fix_scale)` returns a solver with
  `set_ransac_parameters(probability, min_inliers, max_iterations)`,
  `iterate(n) -> (transform or None, no_more, inliers, n_inliers)`,
  `estimated_rotation()`, `estimated_translation()` and `estimated_scale()`.

`LocalMapping` also offers `request_stop()`, `stop()`, `release()`,
`is_stopped()`, `set_not_stop(flag)`, `accept_keyframes()`,
`keyframes_in_queue()`, `interrupt_ba()` and `request_reset()`. Its `abort_ba`
property is the event passed to the local bundle adjustment.

Once a loop is corrected, `LoopClosing` starts a global bundle adjustment on a
daemon thread. It then carries the result through the spanning tree to
keyframes and map points the adjustment did not cover.

Both workers report progress through the standard `logging` module.

## Drawing

`MapDrawer` draws nothing itself. It returns vertices and line segments in world
coordinates that any renderer can display.

```python
from slamgraph.drawer import MapDrawer, frustum_segments

drawer = MapDrawer(world, {"Viewer.KeyFrameSize": 0.05, "Viewer.CameraSize": 0.08})
points, reference_points = drawer.map_point_vertices()      # n x 3 arrays
frustums, graph = drawer.keyframe_segments(True, True)      # k x 8 x 2 x 3, m x 2 x 3
drawer.set_current_camera_pose(tcw)
gl_matrix = drawer.current_opengl_camera_matrix()           # 16 column-major values
camera = drawer.current_camera_segments(gl_matrix)          # 8 x 2 x 3
```

The graph edges cover three kinds of link:

- covisibility links of weight 100 or more,
- spanning-tree links,
- loop edges.

Settings missing from the mapping default to 0.

## Tests

```
pip install "slamgraph[test]"
python -m pytest
```