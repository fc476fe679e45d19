"""
Quality Scoring Module

Scores how usable a frame is for enrollment, looking only at the validated
face box. The composite score blends:

    0.30 * size quality      (same curve as the detector's size score)
    0.25 * position quality  (same curve as the detector's position score)
    0.25 * sharpness         (mean absolute Laplacian on a stride-2 grid)
    0.20 * lighting          (evenness and brightness on a stride-4 grid)

Usage:
    from core.quality_scorer import QualityScorer

    scorer = QualityScorer(config)
    quality = scorer.score(face, luminance)
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

import numpy as np

from core.face_detector import FaceCandidate, position_score, size_score


@dataclass(frozen=True)
class QualityBreakdown:
    """Individual quality components, each in [0, 1]."""

    size: float
    position: float
    sharpness: float
    lighting: float

    @property
    def total(self) -> float:
        return self.size * 0.3 + self.position * 0.25 + self.sharpness * 0.25 + self.lighting * 0.2


class QualityScorer:
    """Composite quality score for a single validated face."""

    def __init__(self, config: Optional[Dict[str, Any]] = None, detection_config: Optional[Dict[str, Any]] = None):
        config = config or {}
        detection_config = detection_config or {}

        self.sharpness_normalizer = config.get("sharpness_normalizer", 50.0)
        self.lighting_std_normalizer = config.get("lighting_std_normalizer", 50.0)
        self.brightness_range = tuple(config.get("brightness_range", (80.0, 180.0)))

        self.min_face_size_ratio = detection_config.get("min_face_size_ratio", 0.08)
        self.max_face_size_ratio = detection_config.get("max_face_size_ratio", 0.4)
        self.optimal_face_size_ratio = detection_config.get("optimal_face_size_ratio", 0.15)

    def score(self, face: FaceCandidate, luminance: np.ndarray) -> float:
        """Composite quality in [0, 1]."""
        return self.breakdown(face, luminance).total

    def breakdown(self, face: FaceCandidate, luminance: np.ndarray) -> QualityBreakdown:
        """
        Compute every quality component.

        Args:
            face: Validated face box in working-frame pixels.
            luminance: (H, W) luminance map of the working frame.

        Returns:
            QualityBreakdown with the four components.
        """
        frame_height, frame_width = luminance.shape

        return QualityBreakdown(
            size=size_score(
                face.width,
                face.height,
                frame_width,
                frame_height,
                self.min_face_size_ratio,
                self.max_face_size_ratio,
                self.optimal_face_size_ratio,
            ),
            position=position_score(face.x, face.y, face.width, face.height, frame_width, frame_height),
            sharpness=self.sharpness(face, luminance),
            lighting=self.lighting(face, luminance),
        )

    def sharpness(self, face: FaceCandidate, luminance: np.ndarray) -> float:
        """
        Edge strength inside the face box.

        The discrete Laplacian |4c - up - down - left - right| is sampled on a
        stride-2 grid that stays one pixel inside the box, averaged, and
        divided by the normalizer.
        """
        frame_height, frame_width = luminance.shape
        y_end = min(face.y + face.height - 1, frame_height - 1)
        x_end = min(face.x + face.width - 1, frame_width - 1)
        ys = np.arange(max(face.y + 1, 1), y_end, 2)
        xs = np.arange(max(face.x + 1, 1), x_end, 2)
        if ys.size == 0 or xs.size == 0:
            return 0.0

        center = luminance[np.ix_(ys, xs)]
        up = luminance[np.ix_(ys - 1, xs)]
        down = luminance[np.ix_(ys + 1, xs)]
        left = luminance[np.ix_(ys, xs - 1)]
        right = luminance[np.ix_(ys, xs + 1)]

        laplacian = np.abs(4.0 * center - up - down - left - right)
        return float(min(1.0, laplacian.mean() / self.sharpness_normalizer))

    def lighting(self, face: FaceCandidate, luminance: np.ndarray) -> float:
        """Evenness (70%) and a brightness bonus (30%) on a stride-4 grid."""
        samples = luminance[face.y : face.y + face.height : 4, face.x : face.x + face.width : 4]
        if samples.size == 0:
            return 0.0

        mean = float(samples.mean())
        std = float(samples.std())

        evenness = 1.0 - min(1.0, std / self.lighting_std_normalizer)
        low, high = self.brightness_range
        brightness = 1.0 if low < mean < high else 0.5

        return evenness * 0.7 + brightness * 0.3
