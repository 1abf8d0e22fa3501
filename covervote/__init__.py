"""Top-level package for covervote."""

from .config import PipelineConfig
from .confidence import ConfidenceRaster, class_confidence, score_confidence
from .denoise import mode_filter, sieve
from .ensemble import (
    VoteCounter,
    ensemble_consensus,
    iter_ensemble,
    majority_vote,
    train_ensemble,
)
from .errors import FeatureMismatch, InsufficientSamples, ShapeMismatch
from .grid import NODATA, FeatureGrid, LabelSamples
from .pipeline import ClassificationResult, run_pipeline
from .probability import ProbabilityRaster, classify_probabilities, probability_raster

__version__ = "0.1.0"

__all__ = [
    "PipelineConfig",
    "FeatureGrid",
    "LabelSamples",
    "NODATA",
    "train_ensemble",
    "iter_ensemble",
    "ensemble_consensus",
    "majority_vote",
    "VoteCounter",
    "probability_raster",
    "classify_probabilities",
    "ProbabilityRaster",
    "score_confidence",
    "class_confidence",
    "ConfidenceRaster",
    "mode_filter",
    "sieve",
    "run_pipeline",
    "ClassificationResult",
    "InsufficientSamples",
    "FeatureMismatch",
    "ShapeMismatch",
]
