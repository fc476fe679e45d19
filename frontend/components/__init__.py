"""
Frontend components for guided face-pose enrollment.
"""

from .webcam_capture import WebcamCapture, CaptureConfig

__all__ = [
    "WebcamCapture", "CaptureConfig",
]
