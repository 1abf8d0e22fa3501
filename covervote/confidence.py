"""Margin confidence from per-cell class probabilities.

For every cell the two most probable classes are found (ties go to the lowest
class index) and ``confidence = 1 - top2_prob / top1_prob``. Cells whose top
probability is zero or missing carry no information and are masked instead of
dividing by zero.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional, Sequence, Tuple

import numpy as np

from .errors import ShapeMismatch
from .grid import LABEL_DTYPE, NODATA, check_same_shape
from .probability import ProbabilityRaster

CONFIDENCE_LOGGER_NAME = "covervote.confidence"
CONFIDENCE_BANDS = ("top1_class", "top2_class", "top1_prob", "top2_prob", "confidence")


def _get_logger() -> logging.Logger:
    return logging.getLogger(CONFIDENCE_LOGGER_NAME)


@dataclass(frozen=True, eq=False)
class ConfidenceRaster:
    """Five per-cell bands; masked cells hold NODATA classes and NaN values."""

    top1_class: np.ndarray
    top2_class: np.ndarray
    top1_prob: np.ndarray
    top2_prob: np.ndarray
    confidence: np.ndarray

    @property
    def shape(self) -> Tuple[int, int]:
        return self.confidence.shape

    @property
    def valid(self) -> np.ndarray:
        return ~np.isnan(self.confidence)

    def masked(self, keep: np.ndarray) -> "ConfidenceRaster":
        """Return a copy with every cell outside ``keep`` masked."""

        keep = np.asarray(keep, dtype=bool)
        if keep.shape != self.shape:
            raise ShapeMismatch(
                f"Mask shape {keep.shape} does not match confidence {self.shape}."
            )
        drop = ~keep
        return ConfidenceRaster(
            top1_class=np.where(drop, NODATA, self.top1_class).astype(LABEL_DTYPE),
            top2_class=np.where(drop, NODATA, self.top2_class).astype(LABEL_DTYPE),
            top1_prob=np.where(drop, np.nan, self.top1_prob).astype("float32"),
            top2_prob=np.where(drop, np.nan, self.top2_prob).astype("float32"),
            confidence=np.where(drop, np.nan, self.confidence).astype("float32"),
        )

    def for_class(self, classified: np.ndarray, class_value: int) -> "ConfidenceRaster":
        """Keep only cells where ``classified`` equals ``class_value``."""

        classified = np.asarray(classified)
        check_same_shape(
            classified, self.confidence, what="classified and confidence rasters"
        )
        return self.masked(classified == int(class_value))

    def to_bands(self) -> np.ndarray:
        """Stack the bands as (5, rows, cols) float32 with NaN where masked."""

        valid = self.valid
        bands = []
        for name in CONFIDENCE_BANDS:
            values = getattr(self, name).astype("float32")
            bands.append(np.where(valid, values, np.nan))
        return np.stack(bands, axis=0)


def score_confidence(probabilities: ProbabilityRaster) -> ConfidenceRaster:
    """Derive top-1/top-2 classes, their probabilities and margin confidence."""

    probs = np.asarray(probabilities.probabilities, dtype="float64")
    classes = np.asarray(probabilities.classes, dtype=LABEL_DTYPE)
    height, width, num_classes = probs.shape

    filled = np.where(np.isnan(probs), 0.0, probs)
    top1_idx = filled.argmax(axis=2)
    top1_prob = np.take_along_axis(filled, top1_idx[:, :, None], axis=2)[:, :, 0]

    if num_classes > 1:
        # Drop the winner from a derived copy; argmax of the rest keeps the
        # lowest-index tie-break and never returns the top-1 class again.
        remainder = filled.copy()
        np.put_along_axis(remainder, top1_idx[:, :, None], -np.inf, axis=2)
        top2_idx = remainder.argmax(axis=2)
        top2_prob = np.take_along_axis(filled, top2_idx[:, :, None], axis=2)[:, :, 0]
        top2_class = classes[top2_idx]
    else:
        top2_prob = np.zeros((height, width), dtype="float64")
        top2_class = np.full((height, width), NODATA, dtype=LABEL_DTYPE)

    degenerate = ~(top1_prob > 0)
    if np.any(degenerate):
        _get_logger().debug(
            "Masking %d cells with no class probability.", int(degenerate.sum())
        )

    with np.errstate(invalid="ignore", divide="ignore"):
        confidence = 1.0 - top2_prob / top1_prob
    confidence = np.clip(confidence, 0.0, 1.0)

    top1_class = classes[top1_idx]
    return ConfidenceRaster(
        top1_class=np.where(degenerate, NODATA, top1_class).astype(LABEL_DTYPE),
        top2_class=np.where(degenerate, NODATA, top2_class).astype(LABEL_DTYPE),
        top1_prob=np.where(degenerate, np.nan, top1_prob).astype("float32"),
        top2_prob=np.where(degenerate, np.nan, top2_prob).astype("float32"),
        confidence=np.where(degenerate, np.nan, confidence).astype("float32"),
    )


def class_confidence(
    confidence: ConfidenceRaster,
    classified: np.ndarray,
    classes: Optional[Sequence[int]] = None,
) -> Dict[int, ConfidenceRaster]:
    """Split confidence by the extent of each class in ``classified``."""

    classified = np.asarray(classified)
    if classes is None:
        classes = sorted(int(v) for v in np.unique(classified[classified != NODATA]))
    return {int(c): confidence.for_class(classified, c) for c in classes}


__all__ = [
    "CONFIDENCE_BANDS",
    "ConfidenceRaster",
    "score_confidence",
    "class_confidence",
]
