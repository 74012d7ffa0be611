"""Keyframes, map points, vocabulary files, place recognition and loop-detection bookkeeping for visual SLAM."""

__version__ = "0.1.0"

__all__ = [
    "map",
    "mappoint",
    "keyframe",
    "vocabulary",
    "keyframe_database",
    "local_mapping",
    "map_drawer",
    "loop_closing",
    "epipolar",
    "global_correction",
]