"""Random Forest fitting and block-wise grid prediction helpers."""

from __future__ import annotations

import logging
from typing import Callable, Optional, Sequence, Union

import numpy as np
from sklearn.ensemble import RandomForestClassifier

from .grid import LABEL_DTYPE, NODATA, FeatureGrid

LOGGER_NAME = "covervote.forest"

MaxFeatures = Union[int, float, str, None]


def _get_logger() -> logging.Logger:
    return logging.getLogger(LOGGER_NAME)


def clamp_split_features(split_features: int, band_count: int) -> int:
    """Limit the per-split feature count to the number of available bands."""

    if split_features > band_count:
        _get_logger().warning(
            "split_features=%d exceeds the %d training bands; using %d.",
            split_features,
            band_count,
            band_count,
        )
        return band_count
    return split_features


def fit_forest(
    X: np.ndarray,
    y: np.ndarray,
    *,
    n_estimators: int,
    max_features: MaxFeatures,
    random_state: Optional[int],
) -> RandomForestClassifier:
    """Fit one bootstrapped forest; each tree sees a resample of the samples."""

    rf = RandomForestClassifier(
        n_estimators=n_estimators,
        max_features=max_features,
        bootstrap=True,
        n_jobs=1,
        random_state=random_state,
        oob_score=False,
    )
    rf.fit(X, y)
    return rf


def _predict_cells(
    grid: FeatureGrid,
    bands: Optional[Sequence[str]],
    block_size: int,
    predict: Callable[[np.ndarray], np.ndarray],
    out: np.ndarray,
) -> np.ndarray:
    """Fill ``out`` (rows, cols, ...) at valid cells, ``block_size`` cells at a time."""

    stack = grid.select(bands)
    height, width, count = stack.shape
    samples = stack.reshape(height * width, count)
    valid_idx = np.flatnonzero(np.isfinite(samples).all(axis=1))

    flat_out = out.reshape((height * width,) + out.shape[2:])
    for start in range(0, valid_idx.size, block_size):
        idx = valid_idx[start : start + block_size]
        flat_out[idx] = predict(samples[idx])
    return out


def predict_labels(
    model: RandomForestClassifier,
    grid: FeatureGrid,
    bands: Optional[Sequence[str]] = None,
    *,
    block_size: int = 65536,
) -> np.ndarray:
    """Classify every valid grid cell into an int16 label raster (NODATA elsewhere)."""

    out = np.full(grid.shape, NODATA, dtype=LABEL_DTYPE)
    return _predict_cells(
        grid,
        bands,
        block_size,
        lambda X: model.predict(X).astype(LABEL_DTYPE, copy=False),
        out,
    )


def tree_vote_fractions(model: RandomForestClassifier, X: np.ndarray) -> np.ndarray:
    """Return the (N, C) share of trees whose hard vote is each class.

    Forest members are fitted on class indices into ``model.classes_``, so each
    tree's prediction is a column index.
    """

    num_classes = len(model.classes_)
    votes = np.zeros((X.shape[0], num_classes), dtype="float64")
    rows = np.arange(X.shape[0])
    for tree in model.estimators_:
        idx = tree.predict(X).astype(np.intp, copy=False)
        votes[rows, idx] += 1.0
    return (votes / len(model.estimators_)).astype("float32")


def predict_vote_fractions(
    model: RandomForestClassifier,
    grid: FeatureGrid,
    bands: Optional[Sequence[str]] = None,
    *,
    block_size: int = 65536,
) -> np.ndarray:
    """Per-class tree-vote fractions for every valid cell (NaN elsewhere)."""

    num_classes = len(model.classes_)
    out = np.full(grid.shape + (num_classes,), np.nan, dtype="float32")
    return _predict_cells(
        grid,
        bands,
        block_size,
        lambda X: tree_vote_fractions(model, X),
        out,
    )


__all__ = [
    "clamp_split_features",
    "fit_forest",
    "predict_labels",
    "predict_vote_fractions",
    "tree_vote_fractions",
]
