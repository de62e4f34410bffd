"""Map, keyframe, keyframe-database and loop-detection structures for visual SLAM."""

__version__ = "0.1.0"
__all__ = [
    "geometry",
    "keyframe",
    "keyframe_database",
    "loop_closing",
    "loop_detection",
    "map",
    "map_drawer",
    "map_point",
]