# slamcore

This package holds the bookkeeping and geometry of a keyframe-based visual
SLAM system. It is plain Python built on NumPy.

## Modules

- `slamcore.geometry` provides two-view geometry.
  - `normalize` normalizes point sets.
  - `compute_h21` makes a DLT homography estimate.
  - `compute_f21` makes an eight-point fundamental-matrix estimate and forces
    the result to rank two.
  - `triangulate` performs linear triangulation.
  - `decompose_e` decomposes an essential matrix.
  - `check_homography` and `check_fundamental` score a model and return its
    inliers.
  - `check_rt` triangulates the inlier matches under one motion hypothesis
    and returns a `TriangulationCheck`.
- `slamcore.initializer` provides `Initializer`, which performs monocular
  initialization from two views.
  - It runs RANSAC for a homography and for a fundamental matrix over the
    same minimal sets of eight matches.
  - It picks the model by the ratio of the two scores.
  - It recovers the relative motion and the triangulated points as a
    `Reconstruction`.
- `slamcore.map` provides `Map`, a thread-safe registry.
  - It holds the keyframes, the map points and the reference map points.
  - It keeps the keyframe origins, the highest keyframe id and a counter of
    large changes.
- `slamcore.map_point` provides `MapPoint` and `descriptor_distance`.
  - `descriptor_distance` computes the Hamming distance between descriptors.
  - A map point keeps its observations, its visible and found counters and
    its bad and replaced state.
  - It keeps a representative descriptor, which is the one with the least
    median distance to the others.
  - It keeps its mean viewing direction and its scale-invariance distances.
  - It predicts the scale level at which it should be seen.
- `slamcore.keyframe` provides `FrameData` and `KeyFrame`.
  - `FrameData` holds what a keyframe is built from.
  - `KeyFrame` holds the pose and its derived centres.
  - It holds the covisibility graph, the spanning tree and the loop edges.
  - It holds the map-point associations and a grid-based lookup of
    keypoints by area.
  - It provides stereo unprojection and the scene median depth.
  - It handles deferred erasure. When a keyframe is erased, its children
    are re-parented.
- `slamcore.keyframe_database` provides `KeyFrameDatabase`, an inverted file
  over bag-of-words entries. It finds loop candidates and relocalization
  candidates.
- `slamcore.culling` provides two culling functions.
  - `map_point_culling` checks the probation of recently created map points.
  - `keyframe_culling` removes redundant covisible keyframes.
- `slamcore.loop_closing` provides `LoopClosing`.
  - It keeps the queue of keyframes to check.
  - It does covisibility-consistent loop detection (`detect_loop`) and keeps
    the resulting `ConsistentGroup` list.
  - It has reset and finish requests for use across threads.
- `slamcore.loop_correction` provides a similarity transform `Sim3` and three
  functions.
  - `propagate_sim3` spreads a loop correction to the neighbouring keyframes.
  - `correct_map_points` moves the observed points and the keyframe poses
    onto the corrected side.
  - `apply_global_correction` applies a finished global adjustment through
    the spanning tree.

## Installation

```
pip install .
```

To run the tests:

```
pip install .[test]
pytest
```

## Example: two-view initialization

```python
import numpy as np
from slamcore.initializer import Initializer

k = np.array([[500.0, 0.0, 320.0],
              [0.0, 500.0, 240.0],
              [0.0, 0.0, 1.0]])

# reference_keys, current_keys: (N, 2) arrays of undistorted pixel positions
# matches12[i]: index in current_keys matched to reference_keys[i], or -1
init = Initializer(reference_keys, k, 1.0, 200)
result = init.initialize(current_keys, matches12)
if result is not None:
    print(result.rotation, result.translation, sum(result.triangulated))
```

If fewer than eight matches are given, `initialize` raises `ValueError`. If
the result is ambiguous or too weak, it returns `None`.

## Example: keyframes in a map

```python
from collections import namedtuple

import numpy as np
from slamcore.keyframe import FrameData, KeyFrame
from slamcore.map import Map

KeyPoint = namedtuple("KeyPoint", "x y octave")

world = Map()
frame = FrameData(
    id=0,
    tcw=np.eye(4),
    k=[[500.0, 0.0, 320.0], [0.0, 500.0, 240.0], [0.0, 0.0, 1.0]],
    keys=[KeyPoint(100.0, 120.0, 0), KeyPoint(300.0, 200.0, 1)],
)
keyframe = KeyFrame(frame, world)
world.add_keyframe(keyframe)
print(world.keyframes_in_map(), keyframe.features_in_area(100.0, 120.0, 5.0))
```

## Conventions

- Poses are 4×4 NumPy arrays (`Tcw`, world to camera), stored as `float64`.
- Keypoints are objects with `x`, `y` and `octave` attributes.
- Bag-of-words vectors are plain mappings from word id to weight. The caller
  passes the similarity function to `KeyFrameDatabase` and `LoopClosing`.
- Errors are raised as exceptions. A negative outcome is returned as `None`,
  `False` or an empty list.

## What this package does not do

- It does not extract features or compute descriptors.
- It does not build bag-of-words vectors from a vocabulary.
- It does not run bundle adjustment or pose-graph optimization.
  `apply_global_correction` expects the adjusted poses (`tcw_gba`) and
  positions (`pos_gba`) to be filled in already.
- It does not estimate a `Sim3` from point matches.
- It does not triangulate new map points between neighbouring keyframes.
- It does not run the mapping and loop-closing work as background threads.
  `LoopClosing` only offers the queue, the detection step and the
  reset/finish signalling.
- It has no viewer, no command-line program and no way to save or load a map.