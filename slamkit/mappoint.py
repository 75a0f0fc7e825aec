"""3D map points observed by keyframes."""

from __future__ import annotations

import itertools
import math
import threading
from typing import Any

import numpy as np

from .map import Map


def descriptor_distance(a: Any, b: Any) -> int:
    """Hamming distance between two binary descriptors."""
    x = np.asarray(a, dtype=np.uint8).ravel()
    y = np.asarray(b, dtype=np.uint8).ravel()
    return int(np.unpackbits(np.bitwise_xor(x, y)).sum())


class MapPoint:
    """A landmark with its observations, descriptor and viewing geometry.

    Keyframes are expected to provide ``id``, ``frame_id``, ``u_right``,
    ``descriptors``, ``keys_un`` (items with ``octave``), ``scale_factors``,
    ``scale_levels``, ``log_scale_factor``, ``is_bad()``, ``camera_center()``,
    ``erase_map_point_match(index)`` and ``replace_map_point_match(index, point)``.
    """

    _ids = itertools.count()
    _global_lock = threading.Lock()

    def __init__(self, position: Any, reference_keyframe: Any, map_: Map) -> None:
        self._init_common(position, map_)
        self.first_kf_id = reference_keyframe.id
        self.first_frame = reference_keyframe.frame_id
        self._reference_keyframe = reference_keyframe
        self._normal = np.zeros(3)
        with map_.point_creation_lock:
            self.id = next(MapPoint._ids)

    @classmethod
    def from_frame(cls, position: Any, map_: Map, frame: Any, index: int) -> "MapPoint":
        """Create a point seen by an ordinary frame at keypoint ``index``."""
        point = cls.__new__(cls)
        point._init_common(position, map_)
        point.first_kf_id = -1
        point.first_frame = frame.id
        point._reference_keyframe = None

        center = np.asarray(frame.camera_center(), dtype=float).ravel()
        offset = point._position - center
        dist = float(np.linalg.norm(offset))
        point._normal = offset / dist
        level = frame.keys_un[index].octave
        point._max_distance = dist * frame.scale_factors[level]
        point._min_distance = point._max_distance / frame.scale_factors[frame.scale_levels - 1]
        point._descriptor = np.array(frame.descriptors[index], dtype=np.uint8, copy=True)
        with map_.point_creation_lock:
            point.id = next(MapPoint._ids)
        return point

    def _init_common(self, position: Any, map_: Map) -> None:
        self._lock = threading.RLock()
        self._map = map_
        self._position = np.array(position, dtype=float).ravel().copy()
        self._observations: dict[Any, int] = {}
        self._n_obs = 0
        self._visible = 1
        self._found = 1
        self._bad = False
        self._replaced: MapPoint | None = None
        self._min_distance = 0.0
        self._max_distance = 0.0
        self._descriptor: np.ndarray | None = None
        self.track_reference_for_frame = 0
        self.last_frame_seen = 0
        self.ba_local_for_kf = 0
        self.fuse_candidate_for_kf = 0
        self.loop_point_for_kf = 0
        self.corrected_by_kf = 0
        self.corrected_reference = 0
        self.ba_global_for_kf = 0
        self.pos_gba: np.ndarray | None = None
        self.object_id = -1
        self.add_id = -1
        self.have_feature = False

    def set_world_pos(self, position: Any) -> None:
        with MapPoint._global_lock, self._lock:
            self._position = np.array(position, dtype=float).ravel().copy()

    def world_pos(self) -> np.ndarray:
        with self._lock:
            return self._position.copy()

    @property
    def normal(self) -> np.ndarray:
        with self._lock:
            return self._normal.copy()

    @property
    def reference_keyframe(self) -> Any:
        with self._lock:
            return self._reference_keyframe

    @property
    def replaced(self) -> "MapPoint | None":
        with self._lock:
            return self._replaced

    @property
    def descriptor(self) -> np.ndarray | None:
        with self._lock:
            return None if self._descriptor is None else self._descriptor.copy()

    def add_observation(self, keyframe: Any, index: int) -> None:
        """Record that ``keyframe`` sees this point at keypoint ``index``."""
        with self._lock:
            if keyframe in self._observations:
                return
            self._observations[keyframe] = index
            self._n_obs += 2 if keyframe.u_right[index] >= 0 else 1

    def erase_observation(self, keyframe: Any) -> None:
        """Forget an observation; the point turns bad with two or fewer left."""
        bad = False
        with self._lock:
            if keyframe in self._observations:
                index = self._observations.pop(keyframe)
                self._n_obs -= 2 if keyframe.u_right[index] >= 0 else 1
                if self._reference_keyframe is keyframe:
                    self._reference_keyframe = next(iter(self._observations), None)
                bad = self._n_obs <= 2
        if bad:
            self.set_bad_flag()

    def observations(self) -> dict[Any, int]:
        with self._lock:
            return dict(self._observations)

    def observation_count(self) -> int:
        with self._lock:
            return self._n_obs

    def set_bad_flag(self) -> None:
        """Mark the point bad and detach it from its keyframes and the map."""
        with self._lock:
            self._bad = True
            observed = self._observations
            self._observations = {}
        for keyframe, index in observed.items():
            keyframe.erase_map_point_match(index)
        self._map.erase_map_point(self)

    def replace(self, other: "MapPoint") -> None:
        """Hand every observation of this point over to ``other``."""
        if other.id == self.id:
            return
        with self._lock:
            observed = self._observations
            self._observations = {}
            self._bad = True
            visible = self._visible
            found = self._found
            self._replaced = other

        for keyframe, index in observed.items():
            if not other.is_in_keyframe(keyframe):
                keyframe.replace_map_point_match(index, other)
                other.add_observation(keyframe, index)
            else:
                keyframe.erase_map_point_match(index)

        other.increase_found(found)
        other.increase_visible(visible)
        other.compute_distinctive_descriptors()
        self._map.erase_map_point(self)

    def is_bad(self) -> bool:
        with self._lock:
            return self._bad

    def increase_visible(self, n: int = 1) -> None:
        with self._lock:
            self._visible += n

    def increase_found(self, n: int = 1) -> None:
        with self._lock:
            self._found += n

    def found_ratio(self) -> float:
        with self._lock:
            return self._found / self._visible

    def compute_distinctive_descriptors(self) -> None:
        """Pick the observed descriptor with the least median distance to the rest."""
        with self._lock:
            if self._bad:
                return
            observed = dict(self._observations)
        if not observed:
            return

        descriptors = [
            np.asarray(keyframe.descriptors[index], dtype=np.uint8)
            for keyframe, index in observed.items()
            if not keyframe.is_bad()
        ]
        if not descriptors:
            return

        n = len(descriptors)
        distances = np.zeros((n, n), dtype=int)
        for i, j in itertools.combinations(range(n), 2):
            distances[i, j] = distances[j, i] = descriptor_distance(descriptors[i], descriptors[j])

        median_index = int(0.5 * (n - 1))
        medians = [int(np.sort(row)[median_index]) for row in distances]
        best = medians.index(min(medians))

        with self._lock:
            self._descriptor = descriptors[best].copy()

    def index_in_keyframe(self, keyframe: Any) -> int | None:
        """Keypoint index of this point in ``keyframe``, or None if not observed."""
        with self._lock:
            return self._observations.get(keyframe)

    def is_in_keyframe(self, keyframe: Any) -> bool:
        with self._lock:
            return keyframe in self._observations

    def update_normal_and_depth(self) -> None:
        """Recompute the mean viewing direction and the scale-invariance distances."""
        with self._lock:
            if self._bad:
                return
            observed = dict(self._observations)
            reference = self._reference_keyframe
            position = self._position.copy()
        if not observed or reference is None:
            return

        normal = np.zeros(3)
        for keyframe in observed:
            offset = position - np.asarray(keyframe.camera_center(), dtype=float).ravel()
            normal += offset / np.linalg.norm(offset)

        dist = float(np.linalg.norm(position - np.asarray(reference.camera_center(), dtype=float).ravel()))
        level = reference.keys_un[observed.get(reference, 0)].octave
        level_scale = reference.scale_factors[level]

        with self._lock:
            self._max_distance = dist * level_scale
            self._min_distance = self._max_distance / reference.scale_factors[reference.scale_levels - 1]
            self._normal = normal / len(observed)

    def min_distance_invariance(self) -> float:
        with self._lock:
            return 0.8 * self._min_distance

    def max_distance_invariance(self) -> float:
        with self._lock:
            return 1.2 * self._max_distance

    def predict_scale(self, current_dist: float, frame: Any) -> int:
        """Pyramid level at which the point should appear at ``current_dist``."""
        with self._lock:
            max_distance = self._max_distance
        ratio = max_distance / current_dist if current_dist else math.inf
        if ratio <= 0:
            return 0
        if math.isinf(ratio):
            return frame.scale_levels - 1
        scale = math.ceil(math.log(ratio) / frame.log_scale_factor)
        return max(0, min(scale, frame.scale_levels - 1))