"""
Pose Classification Module

Maps an approximate head orientation (yaw, pitch in degrees) to one of the
five enrollment capture buckets. The ranges leave small dead zones between
neighbouring buckets (e.g. yaw in (8, 12)) so that a head resting near a
boundary does not flicker between two buckets.

Sign conventions follow the pose estimator: negative yaw is LEFT, negative
pitch is UP.

Usage:
    from core.pose_classifier import PoseBucket, classify_pose

    bucket = classify_pose(-20.0, 0.0)   # PoseBucket.LEFT
"""

from enum import Enum
from typing import Dict, List, Tuple


class PoseBucket(str, Enum):
    """Discrete head-orientation classes. NONE means no bucket matched."""

    FRONT = "FRONT"
    LEFT = "LEFT"
    RIGHT = "RIGHT"
    UP = "UP"
    DOWN = "DOWN"
    NONE = "NONE"


# The five buckets an enrollment must capture, in guidance order
REQUIRED_BUCKETS: Tuple[PoseBucket, ...] = (
    PoseBucket.FRONT,
    PoseBucket.LEFT,
    PoseBucket.RIGHT,
    PoseBucket.UP,
    PoseBucket.DOWN,
)

# Evaluated in order, first match wins: (bucket, (yaw_min, yaw_max), (pitch_min, pitch_max))
BUCKET_RANGES: List[Tuple[PoseBucket, Tuple[float, float], Tuple[float, float]]] = [
    (PoseBucket.FRONT, (-8.0, 8.0), (-6.0, 6.0)),
    (PoseBucket.LEFT, (-35.0, -12.0), (-15.0, 15.0)),
    (PoseBucket.RIGHT, (12.0, 35.0), (-15.0, 15.0)),
    (PoseBucket.UP, (-20.0, 20.0), (-30.0, -8.0)),
    (PoseBucket.DOWN, (-20.0, 20.0), (8.0, 25.0)),
]

# Short user-facing hints for each bucket
POSE_INSTRUCTIONS: Dict[PoseBucket, str] = {
    PoseBucket.FRONT: "Look straight ahead",
    PoseBucket.LEFT: "Turn your head to the left",
    PoseBucket.RIGHT: "Turn your head to the right",
    PoseBucket.UP: "Tilt your head up",
    PoseBucket.DOWN: "Tilt your head down",
}


def classify_pose(yaw: float, pitch: float) -> PoseBucket:
    """
    Classify a head pose into a capture bucket.

    Args:
        yaw: Horizontal rotation in degrees, Left(-) / Right(+).
        pitch: Vertical rotation in degrees, Up(-) / Down(+).

    Returns:
        The first matching PoseBucket, or PoseBucket.NONE.
    """
    for bucket, (yaw_min, yaw_max), (pitch_min, pitch_max) in BUCKET_RANGES:
        if yaw_min <= yaw <= yaw_max and pitch_min <= pitch <= pitch_max:
            return bucket
    return PoseBucket.NONE
