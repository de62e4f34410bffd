"""Inverted index from vocabulary words to keyframes, for place recognition."""

from __future__ import annotations

import threading
from typing import Any


class KeyFrameDatabase:
    """Finds loop and relocalisation candidates by shared visual words.

    The ``vocabulary`` must support ``len()`` (the number of words) and
    ``score(bow_a, bow_b)``. Bag-of-words vectors are mappings from word id
    to weight.
    """

    def __init__(self, vocabulary):
        self._vocabulary = vocabulary
        self._lock = threading.RLock()
        self._inverted_file: list[list[Any]] = [[] for _ in range(len(vocabulary))]

    def _entries(self, word) -> list:
        if not 0 <= word < len(self._inverted_file):
            raise IndexError(f"word {word} is outside the vocabulary")
        return self._inverted_file[word]

    def add(self, keyframe) -> None:
        """Index ``keyframe`` under every word of its bag-of-words vector."""
        with self._lock:
            for word in sorted(keyframe.bow_vec):
                self._entries(word).append(keyframe)

    def erase(self, keyframe) -> None:
        """Remove ``keyframe`` from the lists of the words it contains."""
        with self._lock:
            for word in sorted(keyframe.bow_vec):
                entries = self._entries(word)
                for position, other in enumerate(entries):
                    if other is keyframe:
                        del entries[position]
                        break

    def clear(self) -> None:
        with self._lock:
            self._inverted_file = [[] for _ in range(len(self._vocabulary))]

    def detect_loop_candidates(self, keyframe, min_score) -> list:
        """Keyframes that may close a loop with ``keyframe``.

        Keyframes already connected to ``keyframe`` in the covisibility graph
        are ignored, as are those scoring below ``min_score``.
        """
        connected = keyframe.connected_keyframes()
        sharing: list[Any] = []

        with self._lock:
            for word in sorted(keyframe.bow_vec):
                for other in self._entries(word):
                    if other.loop_query != keyframe.id:
                        other.loop_words = 0
                        if other not in connected:
                            other.loop_query = keyframe.id
                            sharing.append(other)
                    other.loop_words += 1

        if not sharing:
            return []

        max_common = max(other.loop_words for other in sharing)
        min_common = int(max_common * 0.8)

        scored: list[tuple[float, Any]] = []
        for other in sharing:
            if other.loop_words > min_common:
                score = self._vocabulary.score(keyframe.bow_vec, other.bow_vec)
                other.loop_score = score
                if score >= min_score:
                    scored.append((score, other))

        if not scored:
            return []

        accumulated: list[tuple[float, Any]] = []
        best_acc = min_score
        for score, other in scored:
            best_score = score
            acc_score = score
            best_kf = other
            for neighbour in other.best_covisibility_keyframes(10):
                if neighbour.loop_query == keyframe.id and neighbour.loop_words > min_common:
                    acc_score += neighbour.loop_score
                    if neighbour.loop_score > best_score:
                        best_kf = neighbour
                        best_score = neighbour.loop_score
            accumulated.append((acc_score, best_kf))
            best_acc = max(best_acc, acc_score)

        return _retain(accumulated, 0.75 * best_acc)

    def detect_relocalization_candidates(self, frame) -> list:
        """Keyframes similar enough to ``frame`` to attempt relocalisation."""
        sharing: list[Any] = []

        with self._lock:
            for word in sorted(frame.bow_vec):
                for other in self._entries(word):
                    if other.reloc_query != frame.id:
                        other.reloc_words = 0
                        other.reloc_query = frame.id
                        sharing.append(other)
                    other.reloc_words += 1

        if not sharing:
            return []

        max_common = max(other.reloc_words for other in sharing)
        min_common = int(max_common * 0.8)

        scored: list[tuple[float, Any]] = []
        for other in sharing:
            if other.reloc_words > min_common:
                score = self._vocabulary.score(frame.bow_vec, other.bow_vec)
                other.reloc_score = score
                scored.append((score, other))

        if not scored:
            return []

        accumulated: list[tuple[float, Any]] = []
        best_acc = 0.0
        for score, other in scored:
            best_score = score
            acc_score = score
            best_kf = other
            for neighbour in other.best_covisibility_keyframes(10):
                if neighbour.reloc_query != frame.id:
                    continue
                acc_score += neighbour.reloc_score
                if neighbour.reloc_score > best_score:
                    best_kf = neighbour
                    best_score = neighbour.reloc_score
            accumulated.append((acc_score, best_kf))
            best_acc = max(best_acc, acc_score)

        return _retain(accumulated, 0.75 * best_acc)


def _retain(accumulated, threshold) -> list:
    """Keyframes whose accumulated score exceeds ``threshold``, without repeats."""
    seen: set[int] = set()
    result = []
    for score, keyframe in accumulated:
        if score > threshold and id(keyframe) not in seen:
            seen.add(id(keyframe))
            result.append(keyframe)
    return result