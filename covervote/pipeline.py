"""End-to-end classification: ensemble vote, denoise, probability and confidence."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional

import numpy as np
from sklearn.ensemble import RandomForestClassifier

from .config import PipelineConfig
from .confidence import ConfidenceRaster, class_confidence, score_confidence
from .denoise import denoise
from .ensemble import ensemble_consensus
from .grid import NODATA, FeatureGrid, LabelSamples, training_matrix
from .probability import ProbabilityRaster, probability_raster

PIPELINE_LOGGER_NAME = "covervote.pipeline"


def _get_logger() -> logging.Logger:
    return logging.getLogger(PIPELINE_LOGGER_NAME)


@dataclass(frozen=True, eq=False)
class ClassificationResult:
    consensus: np.ndarray
    agreement: np.ndarray
    classification: np.ndarray
    probabilities: ProbabilityRaster
    confidence: ConfidenceRaster
    class_confidence: Dict[int, ConfidenceRaster]
    forest: RandomForestClassifier


def run_pipeline(
    grid: FeatureGrid,
    samples: LabelSamples,
    config: Optional[PipelineConfig] = None,
    *,
    progress: Optional[bool] = None,
) -> ClassificationResult:
    """Classify ``grid`` from ``samples`` and score every cell's confidence.

    Bands and class coverage are validated once, before any forest is trained.
    Confidence is masked to the extent of the denoised classification and also
    split per class.
    """

    config = config or PipelineConfig()
    logger = _get_logger()
    training = training_matrix(grid, samples, config.bands, config.classes)
    X, _, classes = training
    logger.info(
        "Classifying a %dx%d grid into %d classes from %d samples.",
        grid.shape[0],
        grid.shape[1],
        len(classes),
        X.shape[0],
    )

    consensus, agreement = ensemble_consensus(
        grid, samples, config, progress=progress, training=training
    )
    classification = denoise(
        consensus,
        radius=config.radius,
        min_size=config.min_component_size,
        connectivity=config.connectivity,
    )
    kept = int(np.count_nonzero(classification != NODATA))
    logger.info(
        "Denoising kept %d of %d classified cells.",
        kept,
        int(np.count_nonzero(consensus != NODATA)),
    )

    probabilities, forest = probability_raster(
        grid, samples, config, training=training
    )
    scored = score_confidence(probabilities)
    confidence = scored.masked(classification != NODATA)
    per_class = class_confidence(scored, classification, classes)

    return ClassificationResult(
        consensus=consensus,
        agreement=agreement,
        classification=classification,
        probabilities=probabilities,
        confidence=confidence,
        class_confidence=per_class,
        forest=forest,
    )


__all__ = ["ClassificationResult", "run_pipeline"]
