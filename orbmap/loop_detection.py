"""Covisibility-consistency checks used to accept loop candidates."""

from __future__ import annotations

import threading
from dataclasses import dataclass


@dataclass(frozen=True)
class ConsistentGroup:
    """A candidate's covisibility group and how many times in a row it was seen."""

    keyframes: frozenset
    consistency: int


class LoopDetector:
    """Keeps the consistent groups of loop candidates across keyframes.

    A candidate is accepted once its covisibility group has overlapped a
    previous group in ``consistency_threshold`` consecutive detections.
    """

    def __init__(self, database, vocabulary, consistency_threshold=3):
        self.database = database
        self.vocabulary = vocabulary
        self.consistency_threshold = consistency_threshold
        self._lock = threading.Lock()
        self._groups: list[ConsistentGroup] = []

    def minimum_score(self, keyframe) -> float:
        """Lowest similarity between ``keyframe`` and its good covisible keyframes.

        Starts from 1, the highest score, when there is nothing to compare.
        """
        min_score = 1.0
        for other in keyframe.covisible_keyframes():
            if other.is_bad():
                continue
            score = self.vocabulary.score(keyframe.bow_vec, other.bow_vec)
            if score < min_score:
                min_score = score
        return min_score

    def update_consistency(self, candidates) -> list:
        """Update the groups with this round's candidates.

        Returns the candidates that are consistent enough to be accepted.
        """
        with self._lock:
            previous = self._groups
            claimed = [False] * len(previous)
            current: list[ConsistentGroup] = []
            accepted = []

            for candidate in candidates:
                group = frozenset(candidate.connected_keyframes()) | {candidate}
                enough = False
                consistent_for_some = False
                for position, old in enumerate(previous):
                    if group.isdisjoint(old.keyframes):
                        continue
                    consistent_for_some = True
                    consistency = old.consistency + 1
                    if not claimed[position]:
                        current.append(ConsistentGroup(group, consistency))
                        claimed[position] = True
                    if consistency >= self.consistency_threshold and not enough:
                        accepted.append(candidate)
                        enough = True
                if not consistent_for_some:
                    current.append(ConsistentGroup(group, 0))

            self._groups = current
            return accepted

    def reset_groups(self) -> None:
        with self._lock:
            self._groups = []

    def consistent_groups(self) -> list[ConsistentGroup]:
        with self._lock:
            return list(self._groups)