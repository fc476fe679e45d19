"""
Capture guidance messages.

Turns the latest DetectionResult into the one-line instruction shown to the
person being enrolled. Checks run in a fixed priority order so the message
always names the first thing that blocks a capture.
"""

from typing import AbstractSet

from core.frame_analyzer import DetectionResult
from core.pose_classifier import PoseBucket


def guidance_message(
    detection: DetectionResult,
    captured: AbstractSet[PoseBucket],
    min_confidence: float = 0.9,
    min_quality: float = 0.85,
) -> str:
    """
    Build the status message for a detection.

    Args:
        detection: Latest per-frame result.
        captured: Buckets already accepted by the server.
        min_confidence: Face confidence needed before capturing.
        min_quality: Quality needed before capturing.

    Returns:
        Human-readable guidance.
    """
    if detection.face_count > 1:
        return (
            f"{detection.face_count} faces detected. "
            "Please ensure only one person is in the camera view."
        )

    if not detection.face_detected or detection.face_count == 0:
        return "Position your face in the circular guide"

    if detection.face_confidence < min_confidence:
        percent = round(detection.face_confidence * 100)
        return f"Face clarity: {percent}%. Move closer and ensure good lighting."

    if not detection.face_in_frame:
        return "Keep your entire face within the circular guide"

    if detection.quality < min_quality:
        percent = round(detection.quality * 100)
        return f"Image quality: {percent}%. Improve lighting and focus."

    bucket = detection.pose_bucket
    if bucket is PoseBucket.NONE:
        return "Adjust your head position to match a pose direction"

    if bucket in captured:
        return f"{bucket.value} pose completed. Try another direction."

    percent = round(detection.quality * 100)
    return f"Perfect! Hold steady for {bucket.value} pose ({percent}% quality)"
