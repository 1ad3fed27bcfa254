from dataclasses import dataclass, field
from types import SimpleNamespace

from slamcore.culling import keyframe_culling, map_point_culling


@dataclass(eq=False)
class FakePoint:
    first_keyframe_id: int = 0
    ratio: float = 1.0
    obs: int = 5
    bad: bool = False
    bad_calls: int = 0
    seen_by: dict = field(default_factory=dict)

    def is_bad(self):
        return self.bad

    def found_ratio(self):
        return self.ratio

    def set_bad_flag(self):
        self.bad = True
        self.bad_calls += 1

    def observation_count(self):
        return self.obs

    def observations(self):
        return dict(self.seen_by)


@dataclass(eq=False)
class FakeKeyFrame:
    id: int
    octaves: list = field(default_factory=list)
    depths: list = field(default_factory=list)
    th_depth: float = 10.0
    matches: list = field(default_factory=list)
    covisible: list = field(default_factory=list)
    bad: bool = False

    @property
    def keys_un(self):
        return [SimpleNamespace(octave=o) for o in self.octaves]

    def map_point_matches(self):
        return list(self.matches)

    def covisible_keyframes(self):
        return list(self.covisible)

    def set_bad_flag(self):
        self.bad = True


def test_bad_points_are_dropped_without_flagging():
    point = FakePoint(bad=True)
    assert map_point_culling([point], 5, True) == []
    assert point.bad_calls == 0


def test_low_found_ratio_is_flagged_bad():
    point = FakePoint(first_keyframe_id=5, ratio=0.2)
    assert map_point_culling([point], 5, False) == []
    assert point.bad_calls == 1


def test_few_observations_after_two_keyframes():
    mono_weak = FakePoint(first_keyframe_id=3, obs=2)
    mono_ok = FakePoint(first_keyframe_id=3, obs=3)
    assert map_point_culling([mono_weak, mono_ok], 5, True) == [mono_ok]
    assert mono_weak.bad and not mono_ok.bad

    stereo_weak = FakePoint(first_keyframe_id=3, obs=3)
    assert map_point_culling([stereo_weak], 5, False) == []
    assert stereo_weak.bad


def test_old_points_leave_probation_unharmed():
    old = FakePoint(first_keyframe_id=1, obs=10)
    young = FakePoint(first_keyframe_id=5, obs=1)
    assert map_point_culling([old, young], 5, False) == [young]
    assert not old.bad
    assert not young.bad


def _redundant_setup(observer_octave, depth=1.0, kf_id=2):
    observers = [FakeKeyFrame(id=10 + j, octaves=[observer_octave]) for j in range(3)]
    target = FakeKeyFrame(id=kf_id, octaves=[0, 0], depths=[depth, depth])
    points = []
    for idx in range(2):
        seen = {target: idx}
        seen.update({o: 0 for o in observers})
        points.append(FakePoint(obs=4, seen_by=seen))
    target.matches = points
    current = FakeKeyFrame(id=20, covisible=[target])
    return current, target


def test_redundant_keyframe_is_culled():
    current, target = _redundant_setup(observer_octave=1)
    assert keyframe_culling(current, True) == [target]
    assert target.bad


def test_coarser_observers_do_not_make_redundant():
    current, target = _redundant_setup(observer_octave=2)
    assert keyframe_culling(current, True) == []
    assert not target.bad


def test_first_keyframe_is_never_culled():
    current, target = _redundant_setup(observer_octave=0, kf_id=0)
    assert keyframe_culling(current, True) == []
    assert not target.bad


def test_far_stereo_points_are_ignored():
    current, target = _redundant_setup(observer_octave=0, depth=50.0)
    assert keyframe_culling(current, False) == []
    assert not target.bad

    current, target = _redundant_setup(observer_octave=0, depth=50.0)
    assert keyframe_culling(current, True) == [target]


def test_points_with_too_few_observations_are_not_redundant():
    current, target = _redundant_setup(observer_octave=0)
    for point in target.matches:
        point.obs = 3
    assert keyframe_culling(current, True) == []
    assert not target.bad