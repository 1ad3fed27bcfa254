"""Removal of unreliable map points and redundant keyframes.

Map points are expected to offer ``is_bad()``, ``found_ratio()``,
``set_bad_flag()``, ``observation_count()``, ``observations()`` (a mapping of
keyframe to keypoint index) and a ``first_keyframe_id`` attribute. Keyframes
offer ``id``, ``depths``, ``th_depth``, ``keys_un`` (keypoints with an
``octave``), ``map_point_matches()``, ``covisible_keyframes()`` and
``set_bad_flag()``.
"""

from __future__ import annotations

MIN_FOUND_RATIO = 0.25
REDUNDANT_OBSERVERS = 3
REDUNDANT_FRACTION = 0.9


def map_point_culling(recent_points, current_keyframe_id, monocular):
    """Drop recently created points that failed, or have outgrown, probation.

    Points found too rarely or observed too little are flagged bad. Points old
    enough to have passed are removed from the list but left alone. Returns the
    points that are still under probation, in their original order.
    """
    min_observations = 2 if monocular else 3
    kept = []
    for point in recent_points:
        if point.is_bad():
            continue
        if point.found_ratio() < MIN_FOUND_RATIO:
            point.set_bad_flag()
            continue
        age = int(current_keyframe_id) - int(point.first_keyframe_id)
        if age >= 2 and point.observation_count() <= min_observations:
            point.set_bad_flag()
            continue
        if age >= 3:
            continue
        kept.append(point)
    return kept


def _observers_at_similar_scale(point, keyframe, level) -> int:
    count = 0
    for other, index in point.observations().items():
        if other is keyframe:
            continue
        if other.keys_un[index].octave <= level + 1:
            count += 1
            if count >= REDUNDANT_OBSERVERS:
                break
    return count


def keyframe_culling(current_keyframe, monocular):
    """Flag covisible keyframes whose points are nearly all seen elsewhere.

    A keyframe is redundant when more than 90% of its (close, for stereo) map
    points are seen by at least three other keyframes at the same or a finer
    scale. The first keyframe is never culled. Returns the culled keyframes.
    """
    culled = []
    for keyframe in current_keyframe.covisible_keyframes():
        if keyframe.id == 0:
            continue
        redundant = 0
        n_points = 0
        for i, point in enumerate(keyframe.map_point_matches()):
            if point is None or point.is_bad():
                continue
            if not monocular:
                depth = keyframe.depths[i]
                if depth > keyframe.th_depth or depth < 0:
                    continue
            n_points += 1
            if point.observation_count() > REDUNDANT_OBSERVERS:
                level = keyframe.keys_un[i].octave
                if _observers_at_similar_scale(point, keyframe, level) >= REDUNDANT_OBSERVERS:
                    redundant += 1
        if redundant > REDUNDANT_FRACTION * n_points:
            keyframe.set_bad_flag()
            culled.append(keyframe)
    return culled