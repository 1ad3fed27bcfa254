"""Keyframe-based visual SLAM core: map, keyframes, map points, two-view initialization, culling, and loop detection and correction."""

__version__ = "0.1.0"

__all__ = [
    "geometry",
    "culling",
    "map",
    "initializer",
    "map_point",
    "keyframe_database",
    "keyframe",
    "loop_correction",
    "loop_closing",
]