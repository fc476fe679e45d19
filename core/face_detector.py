"""
Face Detection Module

This module provides a landmark-free, heuristic face detector. It slides square
windows over a frame at several scales and scores each window with four cheap
region evaluators (eye band darkness, nose brightness, mouth band darkness and
skin-tone occupancy). Overlapping windows are reduced with greedy non-maximum
suppression and the survivors are ranked by a confidence that also rewards a
well-sized, centered face.

All region statistics are read from integral images (summed-area tables), so
every window of one size is scored in a single vectorized numpy pass.

The detection is only usable when exactly one candidate survives and its
confidence reaches the configured minimum (0.9 by default). Zero or several
faces are a hard rejection, not a degraded mode.

Usage:
    from core.face_detector import FaceDetector

    detector = FaceDetector(config)
    detection = detector.detect(working_frame)
    if detection.is_valid:
        face = detection.primary
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Tuple

import numpy as np

from core.frame import Frame

logger = logging.getLogger(__name__)


# Window sub-regions as fractions of the window side:
# (row_start, row_span, col_start, col_end)
EYE_BAND = (0.25, 0.2, 0.2, 0.8)
MOUTH_BAND = (0.65, 0.15, 0.3, 0.7)
# (col_start, row_start, col_span, row_span)
NOSE_BOX = (0.4, 0.4, 0.2, 0.3)

EYE_DARK_LUMINANCE = 100
MOUTH_DARK_LUMINANCE = 120
NOSE_LUMINANCE_RANGE = (80.0, 200.0)

# Ratios at which each evaluator saturates to 1.0
EYE_DARK_TARGET = 0.3
MOUTH_DARK_TARGET = 0.2
SKIN_TARGET = 0.4
SKIN_SAMPLE_STRIDE = 3

REGION_WEIGHTS = {"eye": 0.4, "nose": 0.2, "mouth": 0.2, "skin": 0.2}


@dataclass
class FaceCandidate:
    """
    A scored face window.

    Attributes:
        x, y: Top-left corner in working-frame pixels.
        width, height: Window size in pixels (square windows).
        raw_score: Composite region score in [0, 1].
        confidence: Final confidence, filled in after suppression.
    """

    x: int
    y: int
    width: int
    height: int
    raw_score: float
    confidence: float = 0.0

    @property
    def bbox(self) -> Tuple[int, int, int, int]:
        """Bounding box as (x1, y1, x2, y2)."""
        return (self.x, self.y, self.x + self.width, self.y + self.height)

    @property
    def center(self) -> Tuple[float, float]:
        return (self.x + self.width / 2.0, self.y + self.height / 2.0)


@dataclass
class FaceDetection:
    """
    Output of one detector pass.

    Attributes:
        faces: Surviving candidates sorted by confidence, highest first.
        is_valid: True only for exactly one face with sufficient confidence.
    """

    faces: List[FaceCandidate] = field(default_factory=list)
    is_valid: bool = False

    @property
    def face_count(self) -> int:
        return len(self.faces)

    @property
    def max_confidence(self) -> float:
        return self.faces[0].confidence if self.faces else 0.0

    @property
    def primary(self) -> Optional[FaceCandidate]:
        return self.faces[0] if self.faces else None


def _round_half_up(value: float) -> int:
    """Round to the nearest integer with halves going up (40.5 -> 41)."""
    return int(math.floor(value + 0.5))


def skin_mask(rgb: np.ndarray) -> np.ndarray:
    """
    Classify pixels as skin using three channel-ordering heuristics.

    Args:
        rgb: Array (..., 3) with R, G, B channels in 0-255.

    Returns:
        Boolean array of the leading shape.
    """
    rgb = rgb.astype(np.int16)
    r, g, b = rgb[..., 0], rgb[..., 1], rgb[..., 2]

    light = (r > 95) & (g > 40) & (b > 20) & (r > g) & (r > b) & (np.abs(r - g) > 15)
    medium = (r > 80) & (g > 50) & (b > 30) & (r >= g) & (g >= b)
    dark = (r > 50) & (g > 30) & (b > 15) & (r >= g) & (g >= b) & ((r - b) > 10)

    return light | medium | dark


def integral_image(values: np.ndarray) -> np.ndarray:
    """Summed-area table with a leading zero row and column."""
    height, width = values.shape
    table = np.zeros((height + 1, width + 1), dtype=np.float64)
    table[1:, 1:] = values.astype(np.float64).cumsum(axis=0).cumsum(axis=1)
    return table


def _rect_sums(table: np.ndarray, x0, y0, x1, y1) -> np.ndarray:
    """Sum of values over [y0, y1) x [x0, x1) for arrays of rectangles."""
    return table[y1, x1] - table[y0, x1] - table[y1, x0] + table[y0, x0]


def intersection_over_union(a: FaceCandidate, b: FaceCandidate) -> float:
    """Intersection-over-union of two axis-aligned boxes."""
    x1 = max(a.x, b.x)
    y1 = max(a.y, b.y)
    x2 = min(a.x + a.width, b.x + b.width)
    y2 = min(a.y + a.height, b.y + b.height)

    if x2 <= x1 or y2 <= y1:
        return 0.0

    intersection = (x2 - x1) * (y2 - y1)
    union = a.width * a.height + b.width * b.height - intersection
    return intersection / union


def size_score(
    box_width: float,
    box_height: float,
    frame_width: int,
    frame_height: int,
    min_ratio: float = 0.08,
    max_ratio: float = 0.4,
    optimal_ratio: float = 0.15,
) -> float:
    """
    Score the face area relative to the frame area.

    Peaks at the optimal ratio with a linear falloff, and is zero outside
    [min_ratio, max_ratio].
    """
    ratio = (box_width * box_height) / float(frame_width * frame_height)
    if ratio < min_ratio or ratio > max_ratio:
        return 0.0
    return max(0.0, 1.0 - abs(ratio - optimal_ratio) / optimal_ratio)


def position_score(
    x: float, y: float, box_width: float, box_height: float, frame_width: int, frame_height: int
) -> float:
    """1 minus the mean fractional offset of the box center from the frame center."""
    frame_cx = frame_width / 2.0
    frame_cy = frame_height / 2.0
    offset_x = abs(x + box_width / 2.0 - frame_cx) / frame_cx
    offset_y = abs(y + box_height / 2.0 - frame_cy) / frame_cy
    return 1.0 - min(1.0, (offset_x + offset_y) / 2.0)


def is_face_in_frame(
    face: FaceCandidate, frame_width: int, frame_height: int, margin_ratio: float = 0.1
) -> bool:
    """Check that the box clears a margin of margin_ratio * min(W, H) on every edge."""
    margin = min(frame_width, frame_height) * margin_ratio
    return (
        face.x >= margin
        and face.y >= margin
        and face.x + face.width <= frame_width - margin
        and face.y + face.height <= frame_height - margin
    )


@dataclass
class _ScanMaps:
    """Summed-area tables shared by every window of one frame."""

    width: int
    height: int
    luminance: np.ndarray
    eye_dark: np.ndarray
    mouth_dark: np.ndarray
    # (3, 3, rows, cols): one table per stride-3 sampling phase
    skin_phases: np.ndarray


class FaceDetector:
    """
    Multi-scale heuristic face detector.

    Attributes:
        config: Configuration dictionary with detection parameters.
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        """
        Initialize the FaceDetector.

        Args:
            config: Configuration dictionary, see the face_detection section
                    of config.yaml. Missing keys fall back to defaults.
        """
        config = config or {}
        self.config = config

        self.scales = tuple(config.get("scales", (1.0, 0.85, 0.7)))
        self.min_window_ratio = config.get("min_window_ratio", 0.1)
        self.max_window_ratio = config.get("max_window_ratio", 0.4)
        self.window_growth = config.get("window_growth", 0.2)
        self.stride_ratio = config.get("stride_ratio", 0.1)
        self.window_score_threshold = config.get("window_score_threshold", 0.6)
        self.nms_iou_threshold = config.get("nms_iou_threshold", 0.3)
        self.min_candidate_confidence = config.get("min_candidate_confidence", 0.6)
        self.min_face_confidence = config.get("min_face_confidence", 0.9)
        self.min_face_size_ratio = config.get("min_face_size_ratio", 0.08)
        self.max_face_size_ratio = config.get("max_face_size_ratio", 0.4)
        self.optimal_face_size_ratio = config.get("optimal_face_size_ratio", 0.15)

    def detect(self, frame: Frame) -> FaceDetection:
        """
        Find faces in a working-resolution frame.

        Args:
            frame: Frame already downsampled to the working resolution.

        Returns:
            FaceDetection with the surviving candidates, best first.
        """
        if frame.is_empty:
            return FaceDetection()

        candidates = self.scan(frame)
        kept = self.non_maximum_suppression(candidates)

        for face in kept:
            face.confidence = self.face_confidence(face, frame.width, frame.height)

        faces = sorted(
            (f for f in kept if f.confidence > self.min_candidate_confidence),
            key=lambda f: f.confidence,
            reverse=True,
        )

        is_valid = len(faces) == 1 and faces[0].confidence >= self.min_face_confidence

        logger.debug(
            f"Detection: {len(candidates)} windows, {len(kept)} after NMS, "
            f"{len(faces)} faces, valid={is_valid}"
        )

        return FaceDetection(faces=faces, is_valid=is_valid)

    def scan(self, frame: Frame) -> List[FaceCandidate]:
        """Score every window at every scale and keep those above threshold."""
        maps = self._build_maps(frame)
        candidates: List[FaceCandidate] = []

        for scale in self.scales:
            for size in self._window_sizes(maps.width, maps.height, scale):
                step = max(1, _round_half_up(size * self.stride_ratio))
                xs = np.arange(0, maps.width - size + 1, step)
                ys = np.arange(0, maps.height - size + 1, step)
                if xs.size == 0 or ys.size == 0:
                    continue

                grid_y, grid_x = np.meshgrid(ys, xs, indexing="ij")
                grid_x = grid_x.ravel()
                grid_y = grid_y.ravel()

                scores = self.score_windows(maps, grid_x, grid_y, size)
                hits = np.nonzero(scores > self.window_score_threshold)[0]

                candidates.extend(
                    FaceCandidate(
                        x=int(grid_x[i]),
                        y=int(grid_y[i]),
                        width=size,
                        height=size,
                        raw_score=float(scores[i]),
                    )
                    for i in hits
                )

        return candidates

    def _window_sizes(self, width: int, height: int, scale: float) -> Iterator[int]:
        shortest = min(width, height)
        size = max(1, _round_half_up(shortest * self.min_window_ratio * scale))
        max_size = _round_half_up(shortest * self.max_window_ratio * scale)

        while size <= max_size:
            yield size
            size += max(1, _round_half_up(size * self.window_growth))

    def _build_maps(self, frame: Frame) -> _ScanMaps:
        luminance = frame.luminance()
        skin = skin_mask(frame.pixels[:, :, :3])
        height, width = luminance.shape

        phase_rows = (height + SKIN_SAMPLE_STRIDE - 1) // SKIN_SAMPLE_STRIDE
        phase_cols = (width + SKIN_SAMPLE_STRIDE - 1) // SKIN_SAMPLE_STRIDE
        skin_phases = np.zeros(
            (SKIN_SAMPLE_STRIDE, SKIN_SAMPLE_STRIDE, phase_rows + 1, phase_cols + 1),
            dtype=np.float64,
        )
        for py in range(SKIN_SAMPLE_STRIDE):
            for px in range(SKIN_SAMPLE_STRIDE):
                sub = skin[py::SKIN_SAMPLE_STRIDE, px::SKIN_SAMPLE_STRIDE]
                rows, cols = sub.shape
                skin_phases[py, px, : rows + 1, : cols + 1] = integral_image(sub)

        return _ScanMaps(
            width=width,
            height=height,
            luminance=integral_image(luminance),
            eye_dark=integral_image(luminance < EYE_DARK_LUMINANCE),
            mouth_dark=integral_image(luminance < MOUTH_DARK_LUMINANCE),
            skin_phases=skin_phases,
        )

    def score_windows(
        self, maps: _ScanMaps, xs: np.ndarray, ys: np.ndarray, size: int
    ) -> np.ndarray:
        """
        Composite region score for square windows of one size.

        Args:
            maps: Summed-area tables of the frame.
            xs, ys: Window top-left corners (1-D arrays of equal length).
            size: Window side in pixels.

        Returns:
            Array of scores in [0, 1].
        """
        eye = self._band_dark_ratio(maps.eye_dark, xs, ys, size, EYE_BAND)
        eye_score = np.minimum(1.0, eye / EYE_DARK_TARGET)

        mouth = self._band_dark_ratio(maps.mouth_dark, xs, ys, size, MOUTH_BAND)
        mouth_score = np.minimum(1.0, mouth / MOUTH_DARK_TARGET)

        nose_score = self._nose_score(maps.luminance, xs, ys, size)
        skin_score = np.minimum(1.0, self._skin_ratio(maps.skin_phases, xs, ys, size) / SKIN_TARGET)

        score = (
            eye_score * REGION_WEIGHTS["eye"]
            + nose_score * REGION_WEIGHTS["nose"]
            + mouth_score * REGION_WEIGHTS["mouth"]
            + skin_score * REGION_WEIGHTS["skin"]
        )
        return np.minimum(1.0, score)

    @staticmethod
    def _band_dark_ratio(table, xs, ys, size, band) -> np.ndarray:
        row_start, row_span, col_start, col_end = band
        top = _round_half_up(size * row_start)
        rows = _round_half_up(size * row_span)
        left = _round_half_up(size * col_start)
        cols = _round_half_up(size * col_end) - left

        if rows <= 0 or cols <= 0:
            return np.zeros(len(xs))

        y0 = ys + top
        x0 = xs + left
        return _rect_sums(table, x0, y0, x0 + cols, y0 + rows) / float(rows * cols)

    @staticmethod
    def _nose_score(table, xs, ys, size) -> np.ndarray:
        col_start, row_start, col_span, row_span = NOSE_BOX
        cols = _round_half_up(size * col_span)
        rows = _round_half_up(size * row_span)
        if rows <= 0 or cols <= 0:
            return np.full(len(xs), 0.5)

        x0 = xs + _round_half_up(size * col_start)
        y0 = ys + _round_half_up(size * row_start)
        mean = _rect_sums(table, x0, y0, x0 + cols, y0 + rows) / float(rows * cols)
        low, high = NOSE_LUMINANCE_RANGE
        return np.where((mean >= low) & (mean <= high), 1.0, 0.5)

    @staticmethod
    def _skin_ratio(phases, xs, ys, size) -> np.ndarray:
        # Samples sit at (y + 3i, x + 3j), i.e. on the sub-grid of the window's phase
        samples = (size + SKIN_SAMPLE_STRIDE - 1) // SKIN_SAMPLE_STRIDE
        py = ys % SKIN_SAMPLE_STRIDE
        px = xs % SKIN_SAMPLE_STRIDE
        r0 = ys // SKIN_SAMPLE_STRIDE
        c0 = xs // SKIN_SAMPLE_STRIDE
        r1 = r0 + samples
        c1 = c0 + samples

        sums = (
            phases[py, px, r1, c1]
            - phases[py, px, r0, c1]
            - phases[py, px, r1, c0]
            + phases[py, px, r0, c0]
        )
        return sums / float(samples * samples)

    def non_maximum_suppression(self, candidates: List[FaceCandidate]) -> List[FaceCandidate]:
        """
        Greedy suppression of overlapping windows.

        Candidates are visited by raw score (highest first, ties in scan order).
        A candidate survives only if its IoU with every survivor so far is at
        most the configured threshold.
        """
        if not candidates:
            return []

        scores = np.array([c.raw_score for c in candidates])
        order = np.argsort(-scores, kind="stable")

        x1 = np.array([c.x for c in candidates], dtype=np.float64)[order]
        y1 = np.array([c.y for c in candidates], dtype=np.float64)[order]
        x2 = x1 + np.array([c.width for c in candidates], dtype=np.float64)[order]
        y2 = y1 + np.array([c.height for c in candidates], dtype=np.float64)[order]
        areas = (x2 - x1) * (y2 - y1)

        remaining = np.arange(len(order))
        keep: List[int] = []

        while remaining.size > 0:
            best = remaining[0]
            keep.append(int(order[best]))
            rest = remaining[1:]

            inter_w = np.clip(np.minimum(x2[best], x2[rest]) - np.maximum(x1[best], x1[rest]), 0, None)
            inter_h = np.clip(np.minimum(y2[best], y2[rest]) - np.maximum(y1[best], y1[rest]), 0, None)
            intersection = inter_w * inter_h
            iou = intersection / (areas[best] + areas[rest] - intersection)

            remaining = rest[iou <= self.nms_iou_threshold]

        return [candidates[i] for i in keep]

    def face_confidence(self, face: FaceCandidate, frame_width: int, frame_height: int) -> float:
        """Blend the raw window score with size and position scores (0.4 / 0.3 / 0.3)."""
        size = size_score(
            face.width,
            face.height,
            frame_width,
            frame_height,
            self.min_face_size_ratio,
            self.max_face_size_ratio,
            self.optimal_face_size_ratio,
        )
        position = position_score(face.x, face.y, face.width, face.height, frame_width, frame_height)
        return face.raw_score * 0.4 + size * 0.3 + position * 0.3
