"""Loop closing: detects places that were visited before."""

from __future__ import annotations

import threading
import time
from collections import deque
from typing import Any, Callable, Optional

from .loop_detection import DEFAULT_CONSISTENCY_THRESHOLD, ConsistencyTracker
from .map import Map

_IDLE_SECONDS = 0.005
# Keyframes that must pass after a closed loop before another is looked for.
_KEYFRAMES_BETWEEN_LOOPS = 10


class LoopClosing:
    """Worker that queries the keyframe database for loop candidates.

    Keyframes are expected to provide ``id``, ``bow_vec``, ``is_bad()``,
    ``set_not_erase()``, ``set_erase()``, ``covisible_keyframes()`` and
    ``connected_keyframes()``. The database provides ``add(keyframe)`` and
    ``detect_loop_candidates(keyframe, min_score)``; the vocabulary provides
    ``score(bow_a, bow_b)``. Once a loop is detected ``close_loop`` is called
    with this object.
    """

    def __init__(
        self,
        map_: Map,
        keyframe_db: Any,
        vocabulary: Any,
        fix_scale: bool = False,
        *,
        close_loop: Optional[Callable[["LoopClosing"], None]] = None,
        consistency_threshold: int = DEFAULT_CONSISTENCY_THRESHOLD,
    ) -> None:
        self.map = map_
        self.keyframe_db = keyframe_db
        self.vocabulary = vocabulary
        self.fix_scale = fix_scale
        self.local_mapper: Any = None
        self._close_loop = close_loop

        self.consistency = ConsistencyTracker(consistency_threshold)
        self.current_keyframe: Any = None
        self.enough_consistent_candidates: list[Any] = []
        self.last_loop_kf_id = 0

        self._queue_lock = threading.Lock()
        self._reset_lock = threading.Lock()
        self._finish_lock = threading.Lock()
        self._queue: deque[Any] = deque()
        self._reset_requested = False
        self._finish_requested = False
        self._finished = True

    def run(self) -> None:
        """Look for loops in queued keyframes until a finish is requested."""
        with self._finish_lock:
            self._finished = False
        while True:
            if self.check_new_keyframes() and self.detect_loop():
                if self._close_loop is not None:
                    self._close_loop(self)
            self.reset_if_requested()
            if self.check_finish():
                break
            time.sleep(_IDLE_SECONDS)
        self.set_finish()

    def insert_keyframe(self, keyframe: Any) -> None:
        """Queue a keyframe; the very first keyframe is never queued."""
        with self._queue_lock:
            if keyframe.id != 0:
                self._queue.append(keyframe)

    def check_new_keyframes(self) -> bool:
        with self._queue_lock:
            return bool(self._queue)

    def detect_loop(self) -> bool:
        """Take the next keyframe and report whether consistent loop candidates exist.

        Raises IndexError when the queue is empty.
        """
        with self._queue_lock:
            current = self._queue.popleft()
            current.set_not_erase()
        self.current_keyframe = current

        if current.id < self.last_loop_kf_id + _KEYFRAMES_BETWEEN_LOOPS:
            self.keyframe_db.add(current)
            current.set_erase()
            return False

        min_score = 1.0
        for keyframe in current.covisible_keyframes():
            if keyframe.is_bad():
                continue
            score = self.vocabulary.score(current.bow_vec, keyframe.bow_vec)
            min_score = min(min_score, score)

        candidates = list(self.keyframe_db.detect_loop_candidates(current, min_score))
        if not candidates:
            self.keyframe_db.add(current)
            self.consistency.reset()
            current.set_erase()
            return False

        self.enough_consistent_candidates = self.consistency.update(
            candidates, lambda candidate: candidate.connected_keyframes()
        )
        self.keyframe_db.add(current)

        if not self.enough_consistent_candidates:
            current.set_erase()
            return False
        return True

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
                with self._queue_lock:
                    self._queue.clear()
                self.last_loop_kf_id = 0
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

    def is_finished(self) -> bool:
        with self._finish_lock:
            return self._finished