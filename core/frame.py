"""
Frame Module

Immutable RGBA pixel buffers flowing through the per-tick analysis pipeline,
plus the FrameSource protocol that camera adapters implement.

A Frame remembers the resolution it was captured at (source_width,
source_height) so the pipeline can analyze a downsampled working copy while
uploads are still encoded from the original pixels.

Usage:
    from core.frame import Frame

    frame = Frame.from_bgr(cv2_image)
    working = frame.resize_to_width(720)
    jpeg_bytes = frame.encode_jpeg(quality=90)
"""

from dataclasses import dataclass
from typing import Optional, Protocol

import cv2
import numpy as np


@dataclass(frozen=True)
class Frame:
    """
    A decoded video frame.

    Attributes:
        pixels: RGBA image, numpy uint8 array with shape (H, W, 4).
        source_width: Width of the frame as delivered by the camera.
        source_height: Height of the frame as delivered by the camera.
    """

    pixels: np.ndarray
    source_width: int
    source_height: int

    @classmethod
    def from_rgba(cls, rgba: np.ndarray) -> "Frame":
        """Wrap an RGBA array, recording its own size as the source size."""
        if rgba.ndim != 3 or rgba.shape[2] != 4:
            raise ValueError(f"Expected an (H, W, 4) RGBA array, got shape {rgba.shape}")
        pixels = np.array(rgba, dtype=np.uint8, order="C")
        pixels.flags.writeable = False
        height, width = pixels.shape[:2]
        return cls(pixels=pixels, source_width=width, source_height=height)

    @classmethod
    def from_bgr(cls, bgr: np.ndarray) -> "Frame":
        """Build a frame from an OpenCV BGR image (cv2.imread / VideoCapture)."""
        if bgr.size == 0:
            return cls.from_rgba(np.zeros((0, 0, 4), dtype=np.uint8))
        return cls.from_rgba(cv2.cvtColor(bgr, cv2.COLOR_BGR2RGBA))

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def is_empty(self) -> bool:
        return self.width == 0 or self.height == 0

    def luminance(self) -> np.ndarray:
        """Per-pixel brightness as the plain (R + G + B) / 3 average (float32)."""
        rgb = self.pixels[:, :, :3].astype(np.float32)
        return rgb.sum(axis=2) / 3.0

    def resize_to_width(self, target_width: int) -> "Frame":
        """
        Return the canonical working copy of this frame.

        The height follows the source aspect ratio. Provenance (the source
        resolution) is carried over unchanged.
        """
        if self.is_empty or self.width == target_width:
            return self

        target_height = max(1, int(round(target_width * self.height / self.width)))
        interpolation = cv2.INTER_AREA if target_width < self.width else cv2.INTER_LINEAR
        resized = cv2.resize(
            np.asarray(self.pixels), (target_width, target_height), interpolation=interpolation
        )
        resized.flags.writeable = False
        return Frame(
            pixels=resized,
            source_width=self.source_width,
            source_height=self.source_height,
        )

    def encode_jpeg(self, quality: int = 90) -> bytes:
        """
        Compress the frame to JPEG bytes for upload.

        Raises:
            ValueError: If the frame is empty or OpenCV fails to encode it.
        """
        if self.is_empty:
            raise ValueError("Cannot encode an empty frame")

        bgr = cv2.cvtColor(np.asarray(self.pixels), cv2.COLOR_RGBA2BGR)
        success, buffer = cv2.imencode(".jpg", bgr, [int(cv2.IMWRITE_JPEG_QUALITY), quality])
        if not success:
            raise ValueError("Failed to encode frame")
        return buffer.tobytes()


class FrameSource(Protocol):
    """
    Supplies decoded frames on demand.

    The capture controller only consumes frames; opening devices, permissions
    and streaming mechanics belong to the implementation.
    """

    def open(self) -> bool:
        """Prepare the source. Returns False when no frames can be delivered."""
        ...

    def read(self) -> Optional[Frame]:
        """Return the latest frame, or None when none is available yet."""
        ...

    def close(self) -> None:
        """Release the underlying device."""
        ...
