# slamkit

Building blocks for a keyframe-based visual SLAM back end, written with NumPy.

Each part can be used and tested alone.

## What is in the package

- **ORB features** (`slamkit.orb_features`): the `KeyPoint` dataclass,
  `pattern_points()` (the 512 sampling points of the binary tests),
  `compute_umax()` (row half-widths of the circular patch),
  `ic_angle()` (intensity-centroid orientation in degrees) and
  `compute_orb_descriptor()` / `compute_descriptors()` (32-byte rotated
  BRIEF descriptors as `uint8` arrays).
- **ORB extraction** (`slamkit.orb_extractor`): `ORBExtractor` builds a
  scale pyramid, finds FAST corners cell by cell, spreads them over the image
  with a quadtree of `ExtractorNode` cells, keeps the strongest corner of each
  cell, orients it and describes it. Calling the extractor on a 2-D `uint8`
  image returns `(keypoints, descriptors)` with keypoints in input-image
  coordinates. The helpers `features_per_level`, `fast_detect`,
  `gaussian_blur` and `resize_bilinear` are public too.
- **Map bookkeeping** (`slamkit.map`, `slamkit.mappoint`): `Map` is a
  thread-safe store of keyframes, map points, reference points, object points
  and objects. `MapPoint` tracks its observations, the visible and found
  counters, the representative descriptor (least median Hamming distance to
  the other observed descriptors), the mean viewing direction and the
  scale-invariance distances, and can predict the pyramid level at which it
  should be seen. `descriptor_distance` is the Hamming distance between two
  descriptors.
- **Two-view geometry** (`slamkit.geometry`): `skew_symmetric`,
  `fundamental_from_poses`, `triangulate_linear` (DLT; returns `None` for a
  point at infinity) and `parallax_cosine`.
- **Local mapping** (`slamkit.local_mapping`): `LocalMapping` holds the
  keyframe queue, binds tracked points to a new keyframe, culls recent map
  points and redundant keyframes, and handles stop, release, reset and finish
  requests. `run()` is a worker loop meant for its own thread.
- **Loop detection** (`slamkit.loop_detection`, `slamkit.loop_closing`):
  `ConsistencyTracker` accepts a loop candidate once its covisibility group
  has been consistent over several consecutive queries (three by default).
  `LoopClosing` queues keyframes, scores them against their covisible
  keyframes, queries a keyframe database and applies the consistency check.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Example: extracting ORB features

```python
import numpy as np
from slamkit.orb_extractor import ORBExtractor

image = (np.random.default_rng(0).random((240, 320)) * 255).astype(np.uint8)
extractor = ORBExtractor(nfeatures=500, scale_factor=1.2, nlevels=4,
                         ini_th_fast=20, min_th_fast=7)
keypoints, descriptors = extractor(image)
print(len(keypoints), descriptors.shape)   # N keypoints, (N, 32) bytes
```

## Example: triangulating a match

```python
import numpy as np
from slamkit.geometry import triangulate_linear

tcw1 = np.hstack([np.eye(3), np.zeros((3, 1))])
tcw2 = np.hstack([np.eye(3), np.array([[-1.0], [0.0], [0.0]])])
point = np.array([0.5, 0.2, 4.0])
xn1 = np.append(point[:2] / point[2], 1.0)
shifted = point + np.array([-1.0, 0.0, 0.0])
xn2 = np.append(shifted[:2] / shifted[2], 1.0)
print(triangulate_linear(xn1, xn2, tcw1, tcw2))   # close to [0.5, 0.2, 4.0]
```

## Bringing your own keyframes

`Map`, `MapPoint`, `LocalMapping` and `LoopClosing` work with any keyframe
object that has the attributes and methods listed in their docstrings (ids,
camera centre, keypoints, descriptors, covisibility queries and so on).

## What the package does not do

slamkit is not a complete SLAM system. It has no tracking front end, no
camera or dataset input, no bag-of-words vocabulary or keyframe database, no
bundle adjustment or pose-graph optimisation, no Sim3 estimation and no
viewer. In particular:

- `LocalMapping` does not triangulate new points, fuse neighbours or run
  local bundle adjustment itself; pass those steps as the
  `create_new_map_points`, `search_in_neighbors` and
  `local_bundle_adjustment` hooks.
- `LoopClosing` only detects loop candidates; correcting the map after a
  loop is left to the `close_loop` hook.
- There is no ready-made set of acceptance checks for triangulated points
  (reprojection error, depth in front of the cameras, scale consistency);
  build them from `slamkit.geometry` as your system needs.
- There is no command-line program.