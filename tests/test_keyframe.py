from dataclasses import dataclass

import numpy as np
import pytest

from slamcore.keyframe import FrameData, KeyFrame
from slamcore.map import Map
from slamcore.map_point import MapPoint

K = np.array([[500.0, 0.0, 320.0], [0.0, 500.0, 240.0], [0.0, 0.0, 1.0]])


@dataclass
class Kp:
    x: float
    y: float
    octave: int = 0


def make_keyframe(slam_map, keys=None, n=20, tcw=None, **kwargs):
    if keys is None:
        keys = [Kp(10.0 + 20 * i, 20.0 + 10 * i) for i in range(n)]
    frame = FrameData(
        id=0,
        tcw=np.eye(4) if tcw is None else tcw,
        k=K,
        keys=keys,
        **kwargs,
    )
    keyframe = KeyFrame(frame, slam_map, None)
    slam_map.add_keyframe(keyframe)
    return keyframe


def share_points(slam_map, kf_a, kf_b, count):
    points = []
    for i in range(count):
        point = MapPoint([0.0, 0.0, 5.0 + i], kf_a, slam_map)
        kf_a.add_map_point(point, i)
        kf_b.add_map_point(point, i)
        point.add_observation(kf_a, i)
        point.add_observation(kf_b, i)
        slam_map.add_map_point(point)
        points.append(point)
    return points


def test_pose_and_centres():
    slam_map = Map()
    tcw = np.eye(4)
    tcw[:3, 3] = [1.0, -2.0, 3.0]
    kf = make_keyframe(slam_map, tcw=tcw)
    assert np.allclose(kf.camera_center, [-1.0, 2.0, -3.0])
    assert np.allclose(kf.pose_inverse @ kf.pose, np.eye(4))
    assert np.allclose(kf.translation, [1.0, -2.0, 3.0])
    assert np.allclose(kf.rotation, np.eye(3))


def test_stereo_center_offsets_by_half_baseline():
    slam_map = Map()
    kf = make_keyframe(slam_map, bf=50.0)
    assert np.allclose(kf.stereo_center, [kf.baseline / 2, 0.0, 0.0])


def test_connections_are_ordered_by_weight():
    slam_map = Map()
    kf, a, b, c = (make_keyframe(slam_map) for _ in range(4))
    kf.add_connection(a, 10)
    kf.add_connection(b, 30)
    kf.add_connection(c, 20)
    assert kf.covisible_keyframes() == [b, c, a]
    assert kf.best_covisibility_keyframes(2) == [b, c]
    assert kf.weight(c) == 20
    assert kf.connected_keyframes() == {a, b, c}


def test_weight_of_unconnected_keyframe_is_zero():
    slam_map = Map()
    kf, other = make_keyframe(slam_map), make_keyframe(slam_map)
    assert kf.weight(other) == 0


def test_covisibles_by_weight():
    slam_map = Map()
    kf, a, b, c = (make_keyframe(slam_map) for _ in range(4))
    kf.add_connection(a, 10)
    kf.add_connection(b, 30)
    kf.add_connection(c, 20)
    assert kf.covisibles_by_weight(15) == [b, c]
    # No weight below the threshold: nothing is returned.
    assert kf.covisibles_by_weight(5) == []


def test_erase_connection():
    slam_map = Map()
    kf, a, b = (make_keyframe(slam_map) for _ in range(3))
    kf.add_connection(a, 10)
    kf.add_connection(b, 30)
    kf.erase_connection(b)
    assert kf.covisible_keyframes() == [a]
    assert kf.weight(b) == 0


def test_map_point_matches():
    slam_map = Map()
    kf, other = make_keyframe(slam_map), make_keyframe(slam_map)
    points = share_points(slam_map, kf, other, 3)
    assert kf.map_point(1) is points[1]
    kf.erase_map_point_match(0)
    assert kf.map_point(0) is None
    kf.erase_map_point_match(points[2])
    assert kf.map_point(2) is None
    assert kf.map_points() == {points[1]}
    assert kf.map_point_matches()[1] is points[1]


def test_tracked_map_points():
    slam_map = Map()
    kf, other = make_keyframe(slam_map), make_keyframe(slam_map)
    share_points(slam_map, kf, other, 4)
    assert kf.tracked_map_points(0) == 4
    assert kf.tracked_map_points(2) == 4
    assert kf.tracked_map_points(3) == 0


def test_update_connections_links_both_ways_and_sets_parent():
    slam_map = Map()
    first, second = make_keyframe(slam_map), make_keyframe(slam_map)
    first.id = 0
    share_points(slam_map, first, second, 20)
    second.update_connections()
    assert second.weight(first) == 20
    assert first.weight(second) == 20
    assert second.covisible_keyframes() == [first]
    assert second.parent() is first
    assert first.has_child(second)


def test_update_connections_keeps_best_below_threshold():
    slam_map = Map()
    first, second = make_keyframe(slam_map), make_keyframe(slam_map)
    share_points(slam_map, first, second, 5)
    second.update_connections()
    assert second.covisible_keyframes() == [first]
    assert first.weight(second) == 5


def test_features_in_area():
    slam_map = Map()
    keys = [Kp(100.0, 100.0), Kp(105.0, 102.0), Kp(300.0, 300.0)]
    kf = make_keyframe(slam_map, keys=keys)
    assert sorted(kf.features_in_area(102.0, 101.0, 5.0)) == [0, 1]
    assert kf.features_in_area(300.0, 300.0, 1.0) == [2]


def test_is_in_image():
    slam_map = Map()
    kf = make_keyframe(slam_map)
    assert kf.is_in_image(0.0, 0.0)
    assert not kf.is_in_image(640.0, 10.0)
    assert not kf.is_in_image(10.0, -1.0)


def test_unproject_stereo_round_trip():
    slam_map = Map()
    keys = [Kp(420.0, 340.0), Kp(50.0, 60.0)]
    kf = make_keyframe(slam_map, keys=keys, depths=[2.0, -1.0])
    point = kf.unproject_stereo(0)
    projected = K @ point
    assert np.allclose(projected[:2] / projected[2], [420.0, 340.0])
    assert point[2] == pytest.approx(2.0)
    assert kf.unproject_stereo(1) is None


def test_scene_median_depth():
    slam_map = Map()
    kf = make_keyframe(slam_map, n=5)
    for i, z in enumerate([5.0, 1.0, 4.0, 2.0, 3.0]):
        kf.add_map_point(MapPoint([0.0, 0.0, z], kf, slam_map), i)
    assert kf.compute_scene_median_depth(2) == pytest.approx(3.0)


def test_scene_median_depth_without_points():
    slam_map = Map()
    kf = make_keyframe(slam_map)
    with pytest.raises(ValueError):
        kf.compute_scene_median_depth(2)


def test_first_keyframe_is_never_bad():
    slam_map = Map()
    kf = make_keyframe(slam_map)
    kf.id = 0
    kf.set_bad_flag()
    assert not kf.is_bad()


def test_not_erase_postpones_removal():
    slam_map = Map()
    kf = make_keyframe(slam_map)
    kf.set_not_erase()
    kf.set_bad_flag()
    assert not kf.is_bad()
    kf.set_erase()
    assert kf.is_bad()
    assert kf not in slam_map.all_keyframes()


def test_loop_edge_prevents_erasing():
    slam_map = Map()
    kf, other = make_keyframe(slam_map), make_keyframe(slam_map)
    kf.add_loop_edge(other)
    kf.set_bad_flag()
    kf.set_erase()
    assert not kf.is_bad()
    assert kf.loop_edges() == {other}


def test_set_bad_flag_reparents_children():
    slam_map = Map()
    root, middle, leaf = (make_keyframe(slam_map) for _ in range(3))
    root.id = 0
    middle.change_parent(root)
    leaf.change_parent(middle)
    middle.add_connection(root, 10)
    middle.add_connection(leaf, 20)
    root.add_connection(middle, 10)
    leaf.add_connection(middle, 20)
    leaf.add_connection(root, 30)

    middle.set_bad_flag()

    assert middle.is_bad()
    assert leaf.parent() is root
    assert root.has_child(leaf)
    assert not root.has_child(middle)
    assert root.weight(middle) == 0
    assert middle not in slam_map.all_keyframes()
    assert np.allclose(middle.tcp, np.eye(4))


def test_unlinked_child_falls_back_to_original_parent():
    slam_map = Map()
    root, middle, leaf = (make_keyframe(slam_map) for _ in range(3))
    root.id = 0
    middle.change_parent(root)
    leaf.change_parent(middle)
    middle.set_bad_flag()
    assert leaf.parent() is root
    assert root.children() == {leaf}


def test_frame_data_rejects_mismatched_lengths():
    with pytest.raises(ValueError):
        FrameData(id=0, tcw=np.eye(4), k=K, keys=[Kp(1.0, 1.0)], depths=[1.0, 2.0])