"""Map, keyframe, covisibility-graph, loop-closing and local-mapping logic for feature-based visual SLAM."""

__version__ = "0.1.0"