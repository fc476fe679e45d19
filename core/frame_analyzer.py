"""
Frame Analysis Module

Runs the full per-tick pipeline on one frame:

    downsample -> FaceDetector -> PoseEstimator -> QualityScorer + classify_pose

and condenses the outcome into a DetectionResult, the only thing the capture
controller ever sees. Ambiguous detections (no face, several faces, or too
little confidence) are ordinary results with the pose and quality zeroed;
nothing in this module raises for them.

Usage:
    from core.frame_analyzer import FaceAnalyzer

    analyzer = FaceAnalyzer(detection_config, quality_config)
    result = analyzer.analyze(frame)
    if result.pose_bucket is not PoseBucket.NONE:
        ...
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from core.face_detector import FaceDetection, FaceDetector, is_face_in_frame
from core.frame import Frame
from core.pose_classifier import PoseBucket, classify_pose
from core.pose_estimator import PoseEstimator
from core.quality_scorer import QualityScorer

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DetectionResult:
    """
    Per-frame detection summary.

    Attributes:
        face_detected: At least one face candidate survived.
        face_count: Number of surviving candidates.
        face_confidence: Confidence of the best candidate (0-1).
        face_in_frame: The single face clears the edge margin.
        pose_bucket: Capture bucket, PoseBucket.NONE when unclassified or invalid.
        yaw: Approximate yaw in degrees (0 when invalid).
        pitch: Approximate pitch in degrees (0 when invalid).
        quality: Composite quality score (0 when invalid).
        bbox: (x1, y1, x2, y2) of the best candidate in working-frame pixels.
    """

    face_detected: bool = False
    face_count: int = 0
    face_confidence: float = 0.0
    face_in_frame: bool = False
    pose_bucket: PoseBucket = PoseBucket.NONE
    yaw: float = 0.0
    pitch: float = 0.0
    quality: float = 0.0
    bbox: Optional[Tuple[int, int, int, int]] = None

    @classmethod
    def empty(cls) -> "DetectionResult":
        return cls()


class FaceAnalyzer:
    """Composes detection, pose, quality and classification for one frame."""

    def __init__(
        self,
        detection_config: Optional[Dict[str, Any]] = None,
        quality_config: Optional[Dict[str, Any]] = None,
    ):
        detection_config = detection_config or {}

        self.working_width = detection_config.get("working_width", 720)
        self.face_margin_ratio = detection_config.get("face_margin_ratio", 0.1)

        self.detector = FaceDetector(detection_config)
        self.pose_estimator = PoseEstimator()
        self.quality_scorer = QualityScorer(quality_config, detection_config)

    def analyze(self, frame: Optional[Frame]) -> DetectionResult:
        """
        Analyze one frame.

        Args:
            frame: Frame at source resolution, or None when the source has
                   nothing to deliver yet.

        Returns:
            DetectionResult for this tick.
        """
        if frame is None or frame.is_empty:
            return DetectionResult.empty()

        working = frame.resize_to_width(self.working_width)
        detection = self.detector.detect(working)
        return self.summarize(detection, working)

    def summarize(self, detection: FaceDetection, working: Frame) -> DetectionResult:
        """Turn a detector pass into a DetectionResult."""
        primary = detection.primary

        if not detection.is_valid:
            in_frame = False
            if detection.face_count == 1:
                in_frame = is_face_in_frame(primary, working.width, working.height, self.face_margin_ratio)

            return DetectionResult(
                face_detected=detection.face_count > 0,
                face_count=detection.face_count,
                face_confidence=detection.max_confidence,
                face_in_frame=in_frame,
                bbox=primary.bbox if primary is not None else None,
            )

        pose = self.pose_estimator.estimate(primary, working.width, working.height)
        quality = self.quality_scorer.score(primary, working.luminance())
        bucket = classify_pose(pose.yaw, pose.pitch)

        logger.debug(
            f"Face at {primary.bbox}: conf={primary.confidence:.2f}, "
            f"yaw={pose.yaw:.1f}, pitch={pose.pitch:.1f}, "
            f"quality={quality:.2f}, bucket={bucket.value}"
        )

        return DetectionResult(
            face_detected=True,
            face_count=1,
            face_confidence=primary.confidence,
            face_in_frame=is_face_in_frame(primary, working.width, working.height, self.face_margin_ratio),
            pose_bucket=bucket,
            yaw=pose.yaw,
            pitch=pose.pitch,
            quality=quality,
            bbox=primary.bbox,
        )
