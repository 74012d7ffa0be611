# orbmap

`orbmap` holds the map side of a feature-based visual SLAM system: keyframes
and map points, the covisibility graph and spanning tree that link them,
vocabulary files for a bag-of-words tree, an inverted-file keyframe database
for place recognition, and the bookkeeping for local mapping and loop
detection.

Poses are 4×4 `numpy` arrays that map world points into camera coordinates
(`Tcw`). Binary ORB descriptors are rows of 32 `uint8` values.

## Installation

```
pip install .
```

With the test tools:

```
pip install .[test]
```

## Modules

| Module | Contents |
| --- | --- |
| `orbmap.map` | `Map`: the keyframes and map points, reference points, keyframe origins, a big-change counter and the locks shared by the workers. |
| `orbmap.mappoint` | `MapPoint` (observations, bad flag, replacement, found ratio, distinctive descriptor, viewing normal and scale prediction) and `descriptor_distance`, the Hamming distance between two descriptors. |
| `orbmap.keyframe` | `KeyPoint`, `FrameData` (the input a keyframe is built from, with neutral defaults) and `KeyFrame`: pose, covisibility graph, spanning tree, loop edges, erasure protection, feature-grid lookup, stereo unprojection and scene median depth. |
| `orbmap.vocabulary` | `OrbVocabulary` loads and saves a vocabulary tree as text (`load_text`, `save_text`) or binary (`load_binary`, `save_binary`); malformed files raise `VocabularyError`. `WeightingType`, `ScoringType` and `VocabularyNode` describe it. |
| `orbmap.keyframe_database` | `KeyFrameDatabase`: indexes keyframes by word and answers `detect_loop_candidates` and `detect_relocalization_candidates`. |
| `orbmap.local_mapping` | `LocalMapping`: the new-keyframe queue, `process_new_keyframe`, map-point and keyframe culling, the stop/release, reset and finish handshakes, and a `run` loop. |
| `orbmap.map_drawer` | `MapDrawer` and `camera_frustum_lines`: point positions, keyframe frusta, graph edges and the current camera matrix (column-major, 16 values) for a viewer. |
| `orbmap.loop_closing` | `LoopClosing` and `ConsistentGroup`: the loop queue, covisibility-consistent loop detection, a `run` loop and the global bundle adjustment handshake. |
| `orbmap.epipolar` | `skew_symmetric_matrix`, `compute_f12` (fundamental matrix between two keyframes) and `triangulate` (linear two-view triangulation). |
| `orbmap.global_correction` | `propagate_keyframe_corrections`, `correct_map_points` and `apply_global_correction`: carry optimised poses through the spanning tree and move map points to match. |

## Example

Build a keyframe from frame data, add it to a map and attach a map point to
its only feature:

```python
import numpy as np

from orbmap.keyframe import FrameData, KeyFrame, KeyPoint
from orbmap.map import Map
from orbmap.mappoint import MapPoint

world = Map()
frame = FrameData(keys=[KeyPoint(320.0, 240.0)])
keyframe = KeyFrame(frame, world, None)
world.add_keyframe(keyframe)

point = MapPoint(np.array([0.0, 0.0, 2.0]), keyframe, world)
point.add_observation(keyframe, 0)
keyframe.add_map_point(point, 0)
world.add_map_point(point)

print(len(world.all_map_points()), keyframe.tracked_map_points(0))  # 1 1
```

Convert a text vocabulary into the binary format:

```python
from orbmap.vocabulary import OrbVocabulary, ScoringType, WeightingType

vocabulary = OrbVocabulary(10, 6, WeightingType.TF_IDF, ScoringType.L1_NORM)
vocabulary.load_text("ORBvoc.txt")
vocabulary.save_binary("ORBvoc.bin")
print(len(vocabulary), "words")
```

## Plugging in the heavy steps

`LocalMapping.run` and `LoopClosing.run` take the expensive steps as
callables:

- `LocalMapping.run(create_new_map_points, search_in_neighbors, local_bundle_adjustment)`
- `LoopClosing.run(compute_sim3, correct_loop)`; without `compute_sim3` no
  loop is ever accepted.
- `LoopClosing.run_global_bundle_adjustment(loop_kf_id, optimize, apply_correction)`
  and `launch_global_bundle_adjustment` (the same, in a background thread);
  `orbmap.global_correction.apply_global_correction` fits the
  `apply_correction` slot.

## What the package does not do

- It does not extract features, match descriptors or track the camera;
  keyframes are built from `FrameData` you fill in.
- `OrbVocabulary` only stores the tree. It does not turn descriptors into
  bag-of-words vectors and does not score them. `KeyFrameDatabase` and
  `LoopClosing` need a vocabulary object offering `len()` and
  `score(bow_a, bow_b)`, and keyframes whose `bow_vec` is already filled in.
- It contains no bundle adjustment, pose-graph optimisation or similarity
  (Sim3) solver; those are supplied as the callables above.
- `MapDrawer` computes geometry only; it opens no window and renders nothing.
- There is no command-line program.

## Running the tests

```
pytest
```