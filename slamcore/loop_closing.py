"""Loop detection: finds keyframes that revisit an earlier part of the map.

A loop candidate is accepted only after it has been consistent, through the
covisibility graph, over several consecutive keyframes.

Keyframes are expected to offer ``id``, ``bow_vec``, ``covisible_keyframes()``,
``connected_keyframes()``, ``is_bad()``, ``set_not_erase()`` and
``set_erase()``. The database offers ``add(keyframe)`` and
``detect_loop_candidates(keyframe, min_score)``.
"""

from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass

COVISIBILITY_CONSISTENCY_THRESHOLD = 3
MIN_KEYFRAMES_BETWEEN_LOOPS = 10


@dataclass
class ConsistentGroup:
    """A candidate with its covisible keyframes and how long it has been consistent."""

    keyframes: frozenset
    consistency: int


class LoopClosing:
    """Queue of keyframes to check for loops, and the loop detector itself.

    ``score`` compares two bag-of-words vectors and returns a similarity.
    """

    def __init__(self, database, score):
        self._database = database
        self._score = score

        self._queue_lock = threading.Lock()
        self._queue: deque = deque()

        self._reset_cond = threading.Condition()
        self._reset_requested = False

        self._finish_lock = threading.Lock()
        self._finish_requested = False
        self._finished = True

        self.covisibility_consistency_th = COVISIBILITY_CONSISTENCY_THRESHOLD
        self.current_keyframe = None
        self.matched_keyframe = None
        self.consistent_groups: list[ConsistentGroup] = []
        self.enough_consistent_candidates: list = []
        self.last_loop_kf_id = 0

    def insert_keyframe(self, keyframe) -> None:
        """Queue a keyframe for loop detection; the first keyframe is never queued."""
        with self._queue_lock:
            if keyframe.id != 0:
                self._queue.append(keyframe)

    def has_new_keyframes(self) -> bool:
        with self._queue_lock:
            return bool(self._queue)

    def _reject(self) -> bool:
        self.current_keyframe.set_erase()
        return False

    def detect_loop(self) -> bool:
        """Take the next queued keyframe and decide whether it closes a loop.

        On success the accepted candidates are left in
        ``enough_consistent_candidates`` and the keyframe stays protected
        from erasure.
        """
        with self._queue_lock:
            if not self._queue:
                raise LookupError("no keyframe is queued for loop detection")
            current = self._queue.popleft()
            current.set_not_erase()
        self.current_keyframe = current

        if current.id < self.last_loop_kf_id + MIN_KEYFRAMES_BETWEEN_LOOPS:
            self._database.add(current)
            return self._reject()

        # Candidates must look more alike than the least similar covisible keyframe.
        min_score = 1.0
        for keyframe in current.covisible_keyframes():
            if keyframe.is_bad():
                continue
            min_score = min(min_score, self._score(current.bow_vec, keyframe.bow_vec))

        candidates = self._database.detect_loop_candidates(current, min_score)
        if not candidates:
            self._database.add(current)
            self.consistent_groups = []
            return self._reject()

        self.enough_consistent_candidates = []
        current_groups: list[ConsistentGroup] = []
        group_taken = [False] * len(self.consistent_groups)

        for candidate in candidates:
            group = frozenset(candidate.connected_keyframes()) | {candidate}
            enough = False
            consistent_somewhere = False
            for position, previous in enumerate(self.consistent_groups):
                if previous.keyframes.isdisjoint(group):
                    continue
                consistent_somewhere = True
                consistency = previous.consistency + 1
                if not group_taken[position]:
                    current_groups.append(ConsistentGroup(group, consistency))
                    group_taken[position] = True
                if consistency >= self.covisibility_consistency_th and not enough:
                    self.enough_consistent_candidates.append(candidate)
                    enough = True
            if not consistent_somewhere:
                current_groups.append(ConsistentGroup(group, 0))

        self.consistent_groups = current_groups
        self._database.add(current)

        if not self.enough_consistent_candidates:
            return self._reject()
        return True

    def request_reset(self) -> None:
        """Ask for a reset and wait until the loop thread has carried it out."""
        with self._reset_cond:
            self._reset_requested = True
            self._reset_cond.wait_for(lambda: not self._reset_requested)

    def reset_if_requested(self) -> bool:
        """Carry out a pending reset; return whether one was done."""
        with self._reset_cond:
            if not self._reset_requested:
                return False
            with self._queue_lock:
                self._queue.clear()
            self.last_loop_kf_id = 0
            self._reset_requested = False
            self._reset_cond.notify_all()
            return True

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