"""Covisibility consistency check for loop candidates."""

from __future__ import annotations

from typing import Any, Callable, Hashable, Iterable, Sequence

DEFAULT_CONSISTENCY_THRESHOLD = 3


class ConsistencyTracker:
    """Tracks groups of covisible keyframes across consecutive loop queries.

    A candidate's group is the candidate together with its connected keyframes.
    A group is consistent with a previous group when they share a keyframe; a
    candidate is accepted once its group has been consistent over enough
    consecutive queries.
    """

    def __init__(self, threshold: int = DEFAULT_CONSISTENCY_THRESHOLD) -> None:
        self.threshold = threshold
        self._groups: list[tuple[frozenset[Hashable], int]] = []

    @property
    def groups(self) -> list[tuple[frozenset[Hashable], int]]:
        """The current groups with their consistency counters."""
        return list(self._groups)

    def update(
        self,
        candidates: Sequence[Any],
        connected_of: Callable[[Any], Iterable[Any]],
    ) -> list[Any]:
        """Feed the candidates of one query; return those that are consistent enough."""
        enough: list[Any] = []
        current: list[tuple[frozenset[Hashable], int]] = []
        previous_used = [False] * len(self._groups)

        for candidate in candidates:
            group = frozenset(connected_of(candidate)) | {candidate}
            accepted = False
            consistent_somewhere = False

            for g, (previous, consistency) in enumerate(self._groups):
                if group.isdisjoint(previous):
                    continue
                consistent_somewhere = True
                count = consistency + 1
                if not previous_used[g]:
                    current.append((group, count))
                    previous_used[g] = True
                if count >= self.threshold and not accepted:
                    enough.append(candidate)
                    accepted = True

            if not consistent_somewhere:
                current.append((group, 0))

        self._groups = current
        return enough

    def reset(self) -> None:
        """Forget every group."""
        self._groups = []