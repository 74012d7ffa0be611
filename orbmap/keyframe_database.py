"""Inverted index from vocabulary words to keyframes, for loop and relocalisation queries."""

from __future__ import annotations

import threading

NEIGHBOURS_FOR_ACCUMULATION = 10


def _retain_best(accumulated, best_score) -> list:
    """Keyframes whose accumulated score exceeds 75% of the best, without repeats."""
    threshold = 0.75 * best_score
    seen = set()
    result = []
    for score, keyframe in accumulated:
        if score > threshold and keyframe not in seen:
            seen.add(keyframe)
            result.append(keyframe)
    return result


class KeyFrameDatabase:
    """Keyframes indexed by the words of their bag-of-words vectors.

    The vocabulary must support ``len()`` and ``score(bow_a, bow_b)``.
    Keyframes expose ``id``, ``bow_vec`` (word id -> weight),
    ``connected_keyframes()`` and ``best_covisibility_keyframes(n)``.
    """

    def __init__(self, vocabulary):
        self._vocabulary = vocabulary
        self._lock = threading.Lock()
        self._inverted = [[] for _ in range(len(vocabulary))]

    def add(self, keyframe):
        """Index ``keyframe`` under each of its words."""
        with self._lock:
            for word in sorted(keyframe.bow_vec):
                self._inverted[word].append(keyframe)

    def erase(self, keyframe):
        """Remove ``keyframe`` from the lists of its words."""
        with self._lock:
            for word in sorted(keyframe.bow_vec):
                entries = self._inverted[word]
                try:
                    entries.remove(keyframe)
                except ValueError:
                    pass

    def clear(self):
        """Empty the index."""
        with self._lock:
            self._inverted = [[] for _ in range(len(self._vocabulary))]

    def detect_loop_candidates(self, keyframe, min_score) -> list:
        """Keyframes not connected to ``keyframe`` that look like the same place."""
        connected = keyframe.connected_keyframes()
        sharing = []
        with self._lock:
            for word in sorted(keyframe.bow_vec):
                for candidate in self._inverted[word]:
                    if candidate.loop_query != keyframe.id:
                        candidate.loop_words = 0
                        if candidate not in connected:
                            candidate.loop_query = keyframe.id
                            sharing.append(candidate)
                    candidate.loop_words += 1

        if not sharing:
            return []

        max_common = max(0, max(kf.loop_words for kf in sharing))
        min_common = int(max_common * 0.8)

        scored = []
        for candidate in sharing:
            if candidate.loop_words > min_common:
                score = self._vocabulary.score(keyframe.bow_vec, candidate.bow_vec)
                candidate.loop_score = score
                if score >= min_score:
                    scored.append((score, candidate))

        if not scored:
            return []

        accumulated = []
        best_acc = min_score
        for score, candidate in scored:
            best_score = score
            acc_score = score
            best_kf = candidate
            for neighbour in candidate.best_covisibility_keyframes(
                NEIGHBOURS_FOR_ACCUMULATION
            ):
                if (
                    neighbour.loop_query == keyframe.id
                    and neighbour.loop_words > min_common
                ):
                    acc_score += neighbour.loop_score
                    if neighbour.loop_score > best_score:
                        best_kf = neighbour
                        best_score = neighbour.loop_score
            accumulated.append((acc_score, best_kf))
            best_acc = max(best_acc, acc_score)

        return _retain_best(accumulated, best_acc)

    def detect_relocalization_candidates(self, frame) -> list:
        """Keyframes that share enough words with ``frame`` to try relocalising against."""
        sharing = []
        with self._lock:
            for word in sorted(frame.bow_vec):
                for candidate in self._inverted[word]:
                    if candidate.reloc_query != frame.id:
                        candidate.reloc_words = 0
                        candidate.reloc_query = frame.id
                        sharing.append(candidate)
                    candidate.reloc_words += 1

        if not sharing:
            return []

        max_common = max(0, max(kf.reloc_words for kf in sharing))
        min_common = int(max_common * 0.8)

        scored = []
        for candidate in sharing:
            if candidate.reloc_words > min_common:
                score = self._vocabulary.score(frame.bow_vec, candidate.bow_vec)
                candidate.reloc_score = score
                scored.append((score, candidate))

        if not scored:
            return []

        accumulated = []
        best_acc = 0.0
        for score, candidate in scored:
            best_score = score
            acc_score = score
            best_kf = candidate
            for neighbour in candidate.best_covisibility_keyframes(
                NEIGHBOURS_FOR_ACCUMULATION
            ):
                if neighbour.reloc_query != frame.id:
                    continue
                acc_score += neighbour.reloc_score
                if neighbour.reloc_score > best_score:
                    best_kf = neighbour
                    best_score = neighbour.reloc_score
            accumulated.append((acc_score, best_kf))
            best_acc = max(best_acc, acc_score)

        return _retain_best(accumulated, best_acc)