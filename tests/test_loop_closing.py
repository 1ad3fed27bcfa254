import threading

import pytest

from slamcore.loop_closing import ConsistentGroup, LoopClosing


class FakeKeyFrame:
    def __init__(self, id, bow=None, covisible=(), connected=(), bad=False):
        self.id = id
        self.bow_vec = bow if bow is not None else {}
        self._covisible = list(covisible)
        self._connected = set(connected)
        self._bad = bad
        self.not_erase = False
        self.erase_calls = 0

    def covisible_keyframes(self):
        return list(self._covisible)

    def connected_keyframes(self):
        return set(self._connected)

    def is_bad(self):
        return self._bad

    def set_not_erase(self):
        self.not_erase = True

    def set_erase(self):
        self.not_erase = False
        self.erase_calls += 1


class FakeDatabase:
    def __init__(self, candidates=()):
        self.candidates = list(candidates)
        self.added = []
        self.queries = []

    def add(self, keyframe):
        self.added.append(keyframe)

    def detect_loop_candidates(self, keyframe, min_score):
        self.queries.append(min_score)
        return list(self.candidates)


def score_by_tag(a, b):
    return b.get("s", 0.0)


def test_first_keyframe_is_not_queued():
    closer = LoopClosing(FakeDatabase(), score_by_tag)
    closer.insert_keyframe(FakeKeyFrame(0))
    assert closer.has_new_keyframes() is False
    closer.insert_keyframe(FakeKeyFrame(5))
    assert closer.has_new_keyframes() is True


def test_detect_loop_without_queue_raises():
    closer = LoopClosing(FakeDatabase(), score_by_tag)
    with pytest.raises(LookupError):
        closer.detect_loop()


def test_too_soon_after_last_loop_is_rejected():
    database = FakeDatabase([FakeKeyFrame(1)])
    closer = LoopClosing(database, score_by_tag)
    keyframe = FakeKeyFrame(5)
    closer.insert_keyframe(keyframe)
    assert closer.detect_loop() is False
    assert database.added == [keyframe]
    assert database.queries == []
    assert keyframe.erase_calls == 1
    assert closer.has_new_keyframes() is False


def test_min_score_is_lowest_similarity_to_good_covisibles():
    database = FakeDatabase()
    bad = FakeKeyFrame(1, {"s": 0.1}, bad=True)
    k2 = FakeKeyFrame(2, {"s": 0.5})
    k3 = FakeKeyFrame(3, {"s": 0.3})
    current = FakeKeyFrame(20, {"s": 1.0}, covisible=[bad, k2, k3])
    closer = LoopClosing(database, score_by_tag)
    closer.insert_keyframe(current)
    assert closer.detect_loop() is False
    assert database.queries == [0.3]
    assert database.added == [current]


def test_no_candidates_clears_groups():
    candidate = FakeKeyFrame(1)
    database = FakeDatabase([candidate])
    closer = LoopClosing(database, score_by_tag)
    closer.insert_keyframe(FakeKeyFrame(20))
    closer.detect_loop()
    assert len(closer.consistent_groups) == 1

    database.candidates = []
    closer.insert_keyframe(FakeKeyFrame(21))
    assert closer.detect_loop() is False
    assert closer.consistent_groups == []


def test_loop_accepted_after_consistent_keyframes():
    neighbour = FakeKeyFrame(2)
    candidate = FakeKeyFrame(1, connected=[neighbour])
    closer = LoopClosing(FakeDatabase([candidate]), score_by_tag)

    results = []
    for kid in (20, 21, 22, 23):
        keyframe = FakeKeyFrame(kid)
        closer.insert_keyframe(keyframe)
        results.append(closer.detect_loop())

    assert results == [False, False, False, True]
    assert closer.enough_consistent_candidates == [candidate]
    assert closer.current_keyframe is keyframe
    assert keyframe.not_erase is True
    assert closer.consistent_groups == [
        ConsistentGroup(frozenset({candidate, neighbour}), closer.covisibility_consistency_th)
    ]


def test_unrelated_candidate_restarts_consistency():
    first = FakeKeyFrame(1)
    other = FakeKeyFrame(7)
    database = FakeDatabase([first])
    closer = LoopClosing(database, score_by_tag)
    for kid in (20, 21):
        closer.insert_keyframe(FakeKeyFrame(kid))
        closer.detect_loop()
    assert closer.consistent_groups[0].consistency == 1

    database.candidates = [other]
    closer.insert_keyframe(FakeKeyFrame(22))
    assert closer.detect_loop() is False
    assert closer.consistent_groups == [ConsistentGroup(frozenset({other}), 0)]


def test_reset_waits_for_loop_thread():
    closer = LoopClosing(FakeDatabase(), score_by_tag)
    closer.insert_keyframe(FakeKeyFrame(3))
    closer.last_loop_kf_id = 40

    requester = threading.Thread(target=closer.request_reset)
    requester.start()
    done = False
    for _ in range(2000):
        if closer.reset_if_requested():
            done = True
            break
        requester.join(0.001)
    requester.join(5)

    assert done is True
    assert not requester.is_alive()
    assert closer.has_new_keyframes() is False
    assert closer.last_loop_kf_id == 0
    assert closer.reset_if_requested() is False


def test_finish_flags():
    closer = LoopClosing(FakeDatabase(), score_by_tag)
    assert closer.is_finished() is True
    assert closer.check_finish() is False
    closer.request_finish()
    assert closer.check_finish() is True
    closer.set_finish()
    assert closer.is_finished() is True