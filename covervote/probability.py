"""Single Random Forest that reports per-class tree-vote fractions."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
from sklearn.ensemble import RandomForestClassifier

from .config import PipelineConfig
from .errors import FeatureMismatch
from .forest import MaxFeatures, fit_forest, predict_vote_fractions
from .grid import FeatureGrid, LabelSamples, TrainingSet, training_matrix

PROBABILITY_LOGGER_NAME = "covervote.probability"


def _get_logger() -> logging.Logger:
    return logging.getLogger(PROBABILITY_LOGGER_NAME)


@dataclass(frozen=True, eq=False)
class ProbabilityRaster:
    """(rows, cols, C) class probabilities with the class value of each band.

    Values are fractions in [0, 1] that sum to 1 on valid cells; invalid cells
    are NaN. Percentages are never used.
    """

    probabilities: np.ndarray
    classes: Tuple[int, ...]

    def __post_init__(self) -> None:
        probs = np.array(self.probabilities, dtype="float32", copy=True)
        if probs.ndim != 3:
            raise FeatureMismatch("Probability raster must be (rows, cols, classes).")
        classes = tuple(int(c) for c in self.classes)
        if probs.shape[2] != len(classes):
            raise FeatureMismatch(
                f"Probability raster has {probs.shape[2]} bands for "
                f"{len(classes)} classes."
            )
        probs = probs.view()
        probs.setflags(write=False)
        object.__setattr__(self, "probabilities", probs)
        object.__setattr__(self, "classes", classes)

    @property
    def shape(self) -> Tuple[int, int]:
        return int(self.probabilities.shape[0]), int(self.probabilities.shape[1])

    def band(self, class_value: int) -> np.ndarray:
        try:
            idx = self.classes.index(int(class_value))
        except ValueError as exc:
            raise FeatureMismatch(
                f"Class {class_value} is not in {list(self.classes)}."
            ) from exc
        return self.probabilities[:, :, idx]

    def to_bands(self) -> np.ndarray:
        """Return a (C, rows, cols) float32 copy for band-sequential writers."""

        return np.ascontiguousarray(self.probabilities.transpose(2, 0, 1))


def train_probability_forest(
    grid: FeatureGrid,
    samples: LabelSamples,
    config: PipelineConfig,
    *,
    max_features: MaxFeatures = "sqrt",
    training: Optional[TrainingSet] = None,
) -> RandomForestClassifier:
    """Train the one forest whose tree votes become class probabilities.

    Pass ``training`` to reuse an already validated ``training_matrix`` result.
    """

    if training is None:
        training = training_matrix(grid, samples, config.bands, config.classes)
    X, y, classes = training
    _get_logger().info(
        "Training probability forest of %d trees on %d samples (%d bands).",
        config.forest_trees,
        X.shape[0],
        X.shape[1],
    )
    model = fit_forest(
        X,
        y,
        n_estimators=config.forest_trees,
        max_features=max_features,
        random_state=config.seed,
    )
    model.band_names = config.bands  # type: ignore[attr-defined]
    model.class_set = classes  # type: ignore[attr-defined]
    return model


def classify_probabilities(
    model: RandomForestClassifier,
    grid: FeatureGrid,
    bands: Optional[Tuple[str, ...]] = None,
    *,
    block_size: int = 65536,
) -> ProbabilityRaster:
    """Classify every valid cell into per-class vote fractions."""

    if bands is None:
        bands = getattr(model, "band_names", None)
    expected = getattr(model, "n_features_in_", None)
    count = len(grid.band_positions(bands))
    if expected is not None and expected != count:
        raise FeatureMismatch(
            f"Model expects {expected} bands, but {count} were selected from the grid."
        )
    fractions = predict_vote_fractions(model, grid, bands, block_size=block_size)
    classes = tuple(int(c) for c in model.classes_)
    return ProbabilityRaster(fractions, classes)


def probability_raster(
    grid: FeatureGrid,
    samples: LabelSamples,
    config: PipelineConfig,
    *,
    training: Optional[TrainingSet] = None,
) -> Tuple[ProbabilityRaster, RandomForestClassifier]:
    """Train the probability forest and classify the grid with it."""

    model = train_probability_forest(grid, samples, config, training=training)
    raster = classify_probabilities(
        model, grid, config.bands, block_size=config.block_size
    )
    return raster, model


__all__ = [
    "ProbabilityRaster",
    "train_probability_forest",
    "classify_probabilities",
    "probability_raster",
]
