"""
Webcam capture component for guided enrollment.

Wraps an OpenCV VideoCapture as a FrameSource: the capture controller opens
it on start, reads one Frame per tick, and closes it on completion or cancel.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import cv2

from core.frame import Frame

logger = logging.getLogger(__name__)


@dataclass
class CaptureConfig:
    """Configuration for webcam capture."""
    width: int = 1280
    height: int = 720
    fps: int = 30
    device_id: int = 0

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> "CaptureConfig":
        return cls(
            width=config.get("width", cls.width),
            height=config.get("height", cls.height),
            fps=config.get("fps", cls.fps),
            device_id=config.get("device_id", cls.device_id),
        )


class WebcamCapture:
    """
    OpenCV webcam exposed through the FrameSource protocol.

    Frames are converted from BGR to RGBA on read; the latest frame is also
    kept so a caller can redraw it without touching the device again.
    """

    def __init__(self, config: Optional[CaptureConfig] = None):
        self.config = config or CaptureConfig()
        self._cap: Optional[cv2.VideoCapture] = None
        self._last_frame: Optional[Frame] = None

    def open(self) -> bool:
        """
        Open the webcam device.

        Returns:
            True if webcam opened successfully, False otherwise.
        """
        if self._cap is not None:
            self.close()

        self._cap = cv2.VideoCapture(self.config.device_id)

        if not self._cap.isOpened():
            logger.error(f"Failed to open camera {self.config.device_id}")
            self._cap.release()
            self._cap = None
            return False

        self._cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.config.width)
        self._cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.config.height)
        self._cap.set(cv2.CAP_PROP_FPS, self.config.fps)

        logger.info(f"Opened camera {self.config.device_id} at {self.config.width}x{self.config.height}")
        return True

    def read(self) -> Optional[Frame]:
        """Grab the next frame, or None if the device has nothing to give."""
        if self._cap is None:
            return None

        ret, bgr = self._cap.read()
        if not ret or bgr is None:
            return None

        self._last_frame = Frame.from_bgr(bgr)
        return self._last_frame

    def close(self) -> None:
        """Release the webcam device."""
        if self._cap is not None:
            self._cap.release()
            self._cap = None
            logger.info("Camera closed")
        self._last_frame = None

    @property
    def last_frame(self) -> Optional[Frame]:
        return self._last_frame

    @property
    def is_open(self) -> bool:
        """Check if webcam is currently open."""
        return self._cap is not None and self._cap.isOpened()

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
