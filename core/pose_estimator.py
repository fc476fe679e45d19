"""
Head Pose Estimation Module

Approximates yaw and pitch from the geometry of a detected face box. There is
no landmark detector: the eyes, nose and mouth are assumed to sit at fixed
fractions of the box, and the angles are driven mostly by where the face sits
relative to the frame center.

This is a 2-D approximation, not a 3-D head model. Its accuracy ceiling is
known and accepted; the capture buckets it feeds are deliberately wide.

Usage:
    from core.pose_estimator import PoseEstimator

    estimator = PoseEstimator()
    pose = estimator.estimate(face, frame_width, frame_height)
    print(pose.yaw, pose.pitch)
"""

from dataclasses import dataclass
from typing import Dict, Tuple

from core.face_detector import FaceCandidate


# Landmark positions as (x, y) fractions of the face box
LANDMARK_LAYOUT: Dict[str, Tuple[float, float]] = {
    "left_eye": (0.3, 0.35),
    "right_eye": (0.7, 0.35),
    "nose": (0.5, 0.5),
    "mouth": (0.5, 0.7),
}

MAX_YAW = 45.0
MAX_PITCH = 30.0
YAW_TURN_CORRECTION = 15.0
PITCH_PROPORTION_CORRECTION = 10.0
EXPECTED_EYE_DISTANCE_RATIO = 0.4  # of box width
TURNED_EYE_DISTANCE_RATIO = 0.8    # of the expected distance
EXPECTED_EYE_NOSE_RATIO = 0.6
EYE_NOSE_RATIO_TOLERANCE = 0.1


@dataclass(frozen=True)
class HeadPose:
    """Approximate head orientation in degrees."""

    yaw: float    # Left(-) / Right(+)
    pitch: float  # Up(-) / Down(+)


def _clamp(value: float, limit: float) -> float:
    return max(-limit, min(limit, value))


def approximate_landmarks(face: FaceCandidate) -> Dict[str, Tuple[float, float]]:
    """Place the fixed landmark layout inside a face box (pixel coordinates)."""
    return {
        name: (face.x + face.width * fx, face.y + face.height * fy)
        for name, (fx, fy) in LANDMARK_LAYOUT.items()
    }


class PoseEstimator:
    """Yaw/pitch from box position plus simple perspective corrections."""

    def estimate(self, face: FaceCandidate, frame_width: int, frame_height: int) -> HeadPose:
        """
        Estimate the head pose of a validated face.

        Args:
            face: The validated face box in working-frame pixels.
            frame_width: Working frame width.
            frame_height: Working frame height.

        Returns:
            HeadPose with yaw clamped to [-45, 45] and pitch to [-30, 30].
        """
        landmarks = approximate_landmarks(face)
        face_cx, face_cy = face.center

        # Yaw: horizontal offset of the face, pushed further out when the eyes
        # look too close together (a face turned away from the camera)
        horizontal_offset = (face_cx - frame_width / 2.0) / (frame_width / 2.0)
        yaw = horizontal_offset * MAX_YAW

        eye_distance = landmarks["right_eye"][0] - landmarks["left_eye"][0]
        expected_eye_distance = face.width * EXPECTED_EYE_DISTANCE_RATIO
        if expected_eye_distance > 0 and eye_distance / expected_eye_distance < TURNED_EYE_DISTANCE_RATIO:
            yaw += YAW_TURN_CORRECTION if yaw > 0 else -YAW_TURN_CORRECTION

        # Pitch: vertical offset, corrected by the eye-nose-mouth proportions
        vertical_offset = (face_cy - frame_height / 2.0) / (frame_height / 2.0)
        pitch = vertical_offset * MAX_PITCH

        eye_to_nose = landmarks["nose"][1] - landmarks["left_eye"][1]
        nose_to_mouth = landmarks["mouth"][1] - landmarks["nose"][1]
        span = eye_to_nose + nose_to_mouth
        if span > 0:
            ratio = eye_to_nose / span
            if ratio > EXPECTED_EYE_NOSE_RATIO + EYE_NOSE_RATIO_TOLERANCE:
                pitch -= PITCH_PROPORTION_CORRECTION
            elif ratio < EXPECTED_EYE_NOSE_RATIO - EYE_NOSE_RATIO_TOLERANCE:
                pitch += PITCH_PROPORTION_CORRECTION

        return HeadPose(yaw=_clamp(yaw, MAX_YAW), pitch=_clamp(pitch, MAX_PITCH))
