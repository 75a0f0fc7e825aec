"""Local mapping: brings new keyframes into the map and prunes recent points and redundant keyframes."""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from typing import Any, Callable, Optional

from .map import Map

log = logging.getLogger(__name__)

_IDLE_SECONDS = 0.003
_REDUNDANT_OBSERVATIONS = 3
_REDUNDANT_FRACTION = 0.9

KeyFrameHook = Callable[["LocalMapping", Any], None]


class LocalMapping:
    """Worker that processes the keyframe queue filled by tracking.

    Keyframes are expected to provide ``id``, ``compute_bow()``,
    ``map_point_matches()``, ``update_connections()``,
    ``covisible_keyframes()``, ``depth``, ``th_depth``, ``keys_un`` and
    ``set_bad_flag()``. Triangulation, neighbour fusion and local bundle
    adjustment are supplied as hooks taking ``(local_mapping, keyframe)``.
    """

    def __init__(
        self,
        map_: Map,
        monocular: bool = False,
        *,
        create_new_map_points: Optional[KeyFrameHook] = None,
        search_in_neighbors: Optional[KeyFrameHook] = None,
        local_bundle_adjustment: Optional[KeyFrameHook] = None,
        loop_closer: Any = None,
    ) -> None:
        self.map = map_
        self.monocular = monocular
        self.loop_closer = loop_closer
        self._create_new_map_points = create_new_map_points
        self._search_in_neighbors = search_in_neighbors
        self._local_bundle_adjustment = local_bundle_adjustment

        self._new_kfs_lock = threading.Lock()
        self._stop_lock = threading.Lock()
        self._finish_lock = threading.Lock()
        self._reset_lock = threading.Lock()
        self._accept_lock = threading.Lock()

        self._new_keyframes: deque[Any] = deque()
        self._recent_points: list[Any] = []
        self.current_keyframe: Any = None

        self._reset_requested = False
        self._finish_requested = False
        self._finished = True
        self._abort_ba = False
        self._stopped = False
        self._stop_requested = False
        self._not_stop = False
        self._accept_keyframes = True

    @property
    def abort_ba(self) -> bool:
        """True while a running local bundle adjustment should give up."""
        return self._abort_ba

    @property
    def recent_map_points(self) -> list[Any]:
        """Recently added map points still under probation."""
        return list(self._recent_points)

    def add_recent_map_point(self, point: Any) -> None:
        """Put a newly created map point under probation."""
        self._recent_points.append(point)

    def run(self) -> None:
        """Process queued keyframes until a finish is requested."""
        with self._finish_lock:
            self._finished = False
        while True:
            self.set_accept_keyframes(False)

            if self.check_new_keyframes():
                self.process_new_keyframe()
                self.map_point_culling()
                if self._create_new_map_points is not None:
                    self._create_new_map_points(self, self.current_keyframe)
                if not self.check_new_keyframes() and self._search_in_neighbors is not None:
                    self._search_in_neighbors(self, self.current_keyframe)

                self._abort_ba = False
                if not self.check_new_keyframes() and not self.stop_requested():
                    if (
                        self._local_bundle_adjustment is not None
                        and self.map.keyframes_in_map() > 2
                    ):
                        self._local_bundle_adjustment(self, self.current_keyframe)
                    self.keyframe_culling()

                if self.loop_closer is not None:
                    self.loop_closer.insert_keyframe(self.current_keyframe)
            elif self.stop():
                while self.is_stopped() and not self.check_finish():
                    time.sleep(_IDLE_SECONDS)
                if self.check_finish():
                    break

            self.reset_if_requested()
            self.set_accept_keyframes(True)
            if self.check_finish():
                break
            time.sleep(_IDLE_SECONDS)

        self.set_finish()

    def insert_keyframe(self, keyframe: Any) -> None:
        """Queue a keyframe and ask any running bundle adjustment to abort."""
        with self._new_kfs_lock:
            self._new_keyframes.append(keyframe)
            self._abort_ba = True

    def check_new_keyframes(self) -> bool:
        with self._new_kfs_lock:
            return bool(self._new_keyframes)

    def process_new_keyframe(self) -> Any:
        """Take the next queued keyframe, bind its points and add it to the map.

        Raises IndexError when the queue is empty.
        """
        with self._new_kfs_lock:
            keyframe = self._new_keyframes.popleft()
        self.current_keyframe = keyframe

        keyframe.compute_bow()
        for index, point in enumerate(keyframe.map_point_matches()):
            if point is None or point.is_bad():
                continue
            if not point.is_in_keyframe(keyframe):
                point.add_observation(keyframe, index)
                point.update_normal_and_depth()
                point.compute_distinctive_descriptors()
            else:
                # Only points just created by tracking already know this keyframe.
                self._recent_points.append(point)

        keyframe.update_connections()
        self.map.add_keyframe(keyframe)
        return keyframe

    def map_point_culling(self) -> None:
        """Drop recent points that are bad, rarely found or seen by too few keyframes."""
        current_id = int(self.current_keyframe.id)
        th_obs = 2 if self.monocular else 3
        kept = []
        for point in self._recent_points:
            age = current_id - int(point.first_kf_id)
            if point.is_bad():
                continue
            if point.found_ratio() < 0.25:
                point.set_bad_flag()
            elif age >= 2 and point.observation_count() <= th_obs:
                point.set_bad_flag()
            elif age >= 3:
                continue
            else:
                kept.append(point)
        self._recent_points = kept

    def keyframe_culling(self) -> None:
        """Mark bad the covisible keyframes whose points are mostly seen elsewhere."""
        for keyframe in self.current_keyframe.covisible_keyframes():
            if keyframe.id == 0:
                continue
            redundant = 0
            n_points = 0
            for index, point in enumerate(keyframe.map_point_matches()):
                if point is None or point.is_bad():
                    continue
                if not self.monocular:
                    depth = keyframe.depth[index]
                    if depth > keyframe.th_depth or depth < 0:
                        continue
                n_points += 1
                if point.observation_count() <= _REDUNDANT_OBSERVATIONS:
                    continue
                scale_level = keyframe.keys_un[index].octave
                n_obs = 0
                for other, other_index in point.observations().items():
                    if other is keyframe:
                        continue
                    if other.keys_un[other_index].octave <= scale_level + 1:
                        n_obs += 1
                        if n_obs >= _REDUNDANT_OBSERVATIONS:
                            break
                if n_obs >= _REDUNDANT_OBSERVATIONS:
                    redundant += 1
            if redundant > _REDUNDANT_FRACTION * n_points:
                keyframe.set_bad_flag()

    def request_stop(self) -> None:
        with self._stop_lock:
            self._stop_requested = True
        with self._new_kfs_lock:
            self._abort_ba = True

    def stop(self) -> bool:
        """Enter the stopped state if a stop was requested and is allowed."""
        with self._stop_lock:
            if self._stop_requested and not self._not_stop:
                self._stopped = True
                log.info("Local Mapping STOP")
                return True
            return False

    def is_stopped(self) -> bool:
        with self._stop_lock:
            return self._stopped

    def stop_requested(self) -> bool:
        with self._stop_lock:
            return self._stop_requested

    def release(self) -> None:
        """Leave the stopped state and drop queued keyframes, unless finished."""
        with self._finish_lock:
            if self._finished:
                return
        with self._stop_lock:
            self._stopped = False
            self._stop_requested = False
        with self._new_kfs_lock:
            self._new_keyframes.clear()
        log.info("Local Mapping RELEASE")

    def accept_keyframes(self) -> bool:
        with self._accept_lock:
            return self._accept_keyframes

    def set_accept_keyframes(self, flag: bool) -> None:
        with self._accept_lock:
            self._accept_keyframes = flag

    def set_not_stop(self, flag: bool) -> bool:
        """Forbid or allow stopping; forbidding fails when already stopped."""
        with self._stop_lock:
            if flag and self._stopped:
                return False
            self._not_stop = flag
            return True

    def interrupt_ba(self) -> None:
        self._abort_ba = True

    def request_reset(self) -> None:
        """Ask the worker to reset and block until it has done so."""
        with self._reset_lock:
            self._reset_requested = True
        while True:
            with self._reset_lock:
                if not self._reset_requested:
                    return
            time.sleep(_IDLE_SECONDS)

    def reset_if_requested(self) -> None:
        with self._reset_lock:
            if self._reset_requested:
                with self._new_kfs_lock:
                    self._new_keyframes.clear()
                self._recent_points = []
                self._reset_requested = False

    def request_finish(self) -> None:
        with self._finish_lock:
            self._finish_requested = True

    def check_finish(self) -> bool:
        with self._finish_lock:
            return self._finish_requested

    def set_finish(self) -> None:
        with self._finish_lock:
            self._finished = True
        with self._stop_lock:
            self._stopped = True

    def is_finished(self) -> bool:
        with self._finish_lock:
            return self._finished