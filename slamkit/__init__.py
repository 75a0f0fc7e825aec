"""Building blocks for keyframe-based visual SLAM: ORB features, map bookkeeping, two-view geometry, local mapping and loop detection."""

__version__ = "0.1.0"