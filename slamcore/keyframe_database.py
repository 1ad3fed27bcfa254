"""Inverted-file index of keyframes by visual word, for place recognition.

Keyframes are expected to offer ``id``, ``bow_vec`` (a mapping of word id to
weight), ``connected_keyframes()``, ``best_covisibility_keyframes(n)`` and the
mutable query fields ``loop_query``, ``loop_words``, ``loop_score``,
``reloc_query``, ``reloc_words`` and ``reloc_score``. Frames offer ``id`` and
``bow_vec``.
"""

from __future__ import annotations

import threading
from collections import defaultdict

COVISIBLE_NEIGHBOURS = 10
RETAIN_FRACTION = 0.75


def _min_common_words(max_common: int) -> int:
    # Only keyframes sharing more than 80% of the best word count are scored.
    return max_common * 4 // 5


def _unique(keyframes) -> list:
    return list(dict.fromkeys(keyframes))


class KeyFrameDatabase:
    """Finds keyframes similar to a query by their shared visual words.

    ``score`` compares two bag-of-words vectors and returns a similarity.
    """

    def __init__(self, score):
        self._score = score
        self._lock = threading.Lock()
        self._inverted: defaultdict = defaultdict(list)

    def add(self, keyframe) -> None:
        with self._lock:
            for word in keyframe.bow_vec:
                self._inverted[word].append(keyframe)

    def erase(self, keyframe) -> None:
        with self._lock:
            for word in keyframe.bow_vec:
                entries = self._inverted.get(word)
                if entries and keyframe in entries:
                    entries.remove(keyframe)

    def clear(self) -> None:
        with self._lock:
            self._inverted = defaultdict(list)

    def detect_loop_candidates(self, keyframe, min_score) -> list:
        """Keyframes that may close a loop with ``keyframe``.

        Keyframes already connected to the query are skipped; the rest are
        scored, reinforced by their covisible neighbours, and those above 75%
        of the best accumulated score are returned.
        """
        connected = keyframe.connected_keyframes()
        sharing = []
        with self._lock:
            for word in sorted(keyframe.bow_vec):
                for other in self._inverted.get(word, ()):
                    if other.loop_query != keyframe.id:
                        other.loop_words = 0
                        if other not in connected:
                            other.loop_query = keyframe.id
                            sharing.append(other)
                    other.loop_words += 1

        if not sharing:
            return []

        min_common = _min_common_words(max(kf.loop_words for kf in sharing))

        scored = []
        for other in sharing:
            if other.loop_words > min_common:
                similarity = self._score(keyframe.bow_vec, other.bow_vec)
                other.loop_score = similarity
                if similarity >= min_score:
                    scored.append((similarity, other))

        if not scored:
            return []

        accumulated = []
        best_accumulated = min_score
        for similarity, other in scored:
            best_score = similarity
            total = similarity
            best_keyframe = other
            for neighbour in other.best_covisibility_keyframes(COVISIBLE_NEIGHBOURS):
                if neighbour.loop_query == keyframe.id and neighbour.loop_words > min_common:
                    total += neighbour.loop_score
                    if neighbour.loop_score > best_score:
                        best_keyframe = neighbour
                        best_score = neighbour.loop_score
            accumulated.append((total, best_keyframe))
            best_accumulated = max(best_accumulated, total)

        threshold = RETAIN_FRACTION * best_accumulated
        return _unique(kf for total, kf in accumulated if total > threshold)

    def detect_relocalization_candidates(self, frame) -> list:
        """Keyframes that look like ``frame``, for relocalization."""
        sharing = []
        with self._lock:
            for word in sorted(frame.bow_vec):
                for other in self._inverted.get(word, ()):
                    if other.reloc_query != frame.id:
                        other.reloc_words = 0
                        other.reloc_query = frame.id
                        sharing.append(other)
                    other.reloc_words += 1

        if not sharing:
            return []

        min_common = _min_common_words(max(kf.reloc_words for kf in sharing))

        scored = []
        for other in sharing:
            if other.reloc_words > min_common:
                similarity = self._score(frame.bow_vec, other.bow_vec)
                other.reloc_score = similarity
                scored.append((similarity, other))

        if not scored:
            return []

        accumulated = []
        best_accumulated = 0.0
        for similarity, other in scored:
            best_score = similarity
            total = similarity
            best_keyframe = other
            for neighbour in other.best_covisibility_keyframes(COVISIBLE_NEIGHBOURS):
                if neighbour.reloc_query != frame.id:
                    continue
                total += neighbour.reloc_score
                if neighbour.reloc_score > best_score:
                    best_keyframe = neighbour
                    best_score = neighbour.reloc_score
            accumulated.append((total, best_keyframe))
            best_accumulated = max(best_accumulated, total)

        threshold = RETAIN_FRACTION * best_accumulated
        return _unique(kf for total, kf in accumulated if total > threshold)