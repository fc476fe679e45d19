"""
Core Module for Guided Face-Pose Enrollment

This package contains the per-frame analysis pipeline: face detection, head
pose approximation, quality scoring, pose bucketing and guidance text.

Main components:
    - config: Configuration loading and management
    - frame: RGBA frame buffers and the FrameSource protocol
    - face_detector: Multi-scale heuristic face detection
    - pose_estimator: Yaw/pitch approximation from the face box
    - quality_scorer: Composite frame quality
    - pose_classifier: (yaw, pitch) -> capture bucket
    - frame_analyzer: Per-frame composition of the stages above
    - guidance: User-facing status messages

Usage:
    from core.config import get_face_detection_config, get_quality_config
    from core.frame_analyzer import FaceAnalyzer
    analyzer = FaceAnalyzer(get_face_detection_config(), get_quality_config())
"""

from core.config import (
    get_config,
    get_section,
    get_face_detection_config,
    get_quality_config,
    get_capture_config,
    get_enrollment_api_config,
    get_camera_config,
    get_server_config,
)

from core.frame import Frame, FrameSource

from core.face_detector import FaceDetector, FaceDetection, FaceCandidate

from core.pose_estimator import PoseEstimator, HeadPose

from core.quality_scorer import QualityScorer, QualityBreakdown

from core.pose_classifier import (
    PoseBucket,
    REQUIRED_BUCKETS,
    classify_pose,
)

from core.frame_analyzer import FaceAnalyzer, DetectionResult

from core.guidance import guidance_message

__all__ = [
    # Configuration
    "get_config",
    "get_section",
    "get_face_detection_config",
    "get_quality_config",
    "get_capture_config",
    "get_enrollment_api_config",
    "get_camera_config",
    "get_server_config",
    # Frames
    "Frame",
    "FrameSource",
    # Detection
    "FaceDetector",
    "FaceDetection",
    "FaceCandidate",
    # Pose and quality
    "PoseEstimator",
    "HeadPose",
    "QualityScorer",
    "QualityBreakdown",
    "PoseBucket",
    "REQUIRED_BUCKETS",
    "classify_pose",
    # Composition
    "FaceAnalyzer",
    "DetectionResult",
    "guidance_message",
]
