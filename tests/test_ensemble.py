"""Tests for ensemble training and majority voting."""

from __future__ import annotations

import itertools

import numpy as np
import pytest

from covervote import ensemble
from covervote.config import PipelineConfig
from covervote.errors import FeatureMismatch, InsufficientSamples, ShapeMismatch
from covervote.grid import NODATA, FeatureGrid, LabelSamples


def _three_class_grid():
    data = np.array(
        [[0.0, 0.0, 0.0], [10.0, 10.0, 10.0], [20.0, 20.0, 20.0]], dtype="float32"
    )
    grid = FeatureGrid(data[:, :, np.newaxis], ("ndvi",))
    samples = LabelSamples.from_pairs(
        [
            ((0, 0), 1),
            ((0, 1), 1),
            ((1, 0), 2),
            ((1, 1), 2),
            ((2, 0), 3),
            ((2, 1), 3),
        ]
    )
    expected = np.array([[1, 1, 1], [2, 2, 2], [3, 3, 3]])
    return grid, samples, expected


def test_majority_vote_picks_per_cell_mode():
    rasters = [
        np.array([[1, 2], [3, 3]]),
        np.array([[1, 2], [1, 3]]),
        np.array([[2, 1], [1, 2]]),
    ]

    result = ensemble.majority_vote(rasters)

    np.testing.assert_array_equal(result, [[1, 2], [1, 3]])


def test_majority_vote_breaks_ties_by_lowest_class():
    rasters = [np.array([[3, 2]]), np.array([[2, 1]])]

    result = ensemble.majority_vote(rasters)

    np.testing.assert_array_equal(result, [[2, 1]])


def test_majority_vote_is_order_independent():
    rasters = [
        np.array([[1, 2, 3]]),
        np.array([[2, 3, 1]]),
        np.array([[3, 1, 2]]),
        np.array([[1, 1, 3]]),
    ]
    baseline = ensemble.majority_vote(rasters)

    for perm in itertools.permutations(rasters):
        np.testing.assert_array_equal(ensemble.majority_vote(list(perm)), baseline)


def test_majority_vote_output_label_is_a_mode():
    rng = np.random.default_rng(7)
    rasters = [rng.integers(1, 5, size=(6, 7)) for _ in range(9)]

    result = ensemble.majority_vote(rasters)

    stack = np.stack(rasters)
    assert result.shape == (6, 7)
    for row in range(6):
        for col in range(7):
            counts = np.bincount(stack[:, row, col], minlength=5)
            assert counts[result[row, col]] == counts.max()
            assert result[row, col] == counts.argmax()


def test_majority_vote_single_raster_is_passthrough():
    raster = np.array([[1, NODATA], [0, 4]])

    result = ensemble.majority_vote([raster])

    np.testing.assert_array_equal(result, raster)


def test_majority_vote_ignores_nodata_votes():
    rasters = [
        np.array([[NODATA, NODATA]]),
        np.array([[NODATA, NODATA]]),
        np.array([[2, NODATA]]),
    ]

    result = ensemble.majority_vote(rasters)

    np.testing.assert_array_equal(result, [[2, NODATA]])


def test_majority_vote_keeps_class_zero_distinct_from_nodata():
    rasters = [np.array([[0]]), np.array([[0]]), np.array([[1]])]

    assert ensemble.majority_vote(rasters)[0, 0] == 0


def test_majority_vote_rejects_mismatched_shapes():
    with pytest.raises(ShapeMismatch):
        ensemble.majority_vote([np.ones((2, 2), int), np.ones((2, 3), int)])


def test_majority_vote_requires_input():
    with pytest.raises(ValueError):
        ensemble.majority_vote([])


def test_vote_counter_streaming_matches_barrier_and_reports_agreement():
    rasters = [
        np.array([[1, 2], [2, 2]]),
        np.array([[1, 1], [2, 3]]),
        np.array([[1, 2], [3, 1]]),
        np.array([[2, 2], [NODATA, 1]]),
    ]
    counter = ensemble.VoteCounter((2, 2), classes=[1, 2, 3])
    for raster in reversed(rasters):
        counter.add(raster)

    np.testing.assert_array_equal(counter.consensus(), ensemble.majority_vote(rasters))
    np.testing.assert_allclose(
        counter.agreement(), [[0.75, 0.75], [2.0 / 3.0, 0.5]], rtol=1e-6
    )
    assert counter.rasters == 4


def test_vote_counter_agreement_is_nan_without_votes():
    counter = ensemble.VoteCounter((1, 1), classes=[1])
    counter.add(np.array([[NODATA]]))

    assert counter.consensus()[0, 0] == NODATA
    assert np.isnan(counter.agreement()[0, 0])


def test_vote_counter_rejects_unknown_class():
    counter = ensemble.VoteCounter((1, 2), classes=[1, 2])

    with pytest.raises(ValueError, match=r"\[5\]"):
        counter.add(np.array([[1, 5]]))


def test_vote_counter_rejects_wrong_shape():
    counter = ensemble.VoteCounter((2, 2), classes=[1])

    with pytest.raises(ShapeMismatch):
        counter.add(np.ones((3, 3), dtype=int))


def test_run_seeds_are_reproducible_and_distinct():
    seeds = ensemble.run_seeds(42, 5)

    assert seeds == ensemble.run_seeds(42, 5)
    assert len(set(seeds)) == 5
    assert ensemble.run_seeds(42, 3) == seeds[:3]


def test_train_ensemble_on_separable_grid_agrees_with_each_run():
    grid, samples, expected = _three_class_grid()
    config = PipelineConfig(runs=3, trees=25, seed=0)

    rasters = ensemble.train_ensemble(grid, samples, config, progress=False)

    assert len(rasters) == 3
    for raster in rasters:
        assert raster.shape == (3, 3)
        np.testing.assert_array_equal(raster, expected)
    np.testing.assert_array_equal(ensemble.majority_vote(rasters), rasters[0])


def test_train_ensemble_is_deterministic_for_a_seed():
    grid, samples, _ = _three_class_grid()
    config = PipelineConfig(runs=2, trees=5, seed=11)

    first = ensemble.train_ensemble(grid, samples, config, progress=False)
    second = ensemble.train_ensemble(grid, samples, config, progress=False)

    for a, b in zip(first, second):
        np.testing.assert_array_equal(a, b)


def test_train_ensemble_leaves_nodata_cells_unclassified():
    data = np.array([[0.0, 10.0], [np.nan, 10.0]], dtype="float32")
    grid = FeatureGrid(data[:, :, np.newaxis], ("ndvi",))
    samples = LabelSamples.from_pairs([((0, 0), 1), ((0, 1), 2)])

    rasters = ensemble.train_ensemble(
        grid, samples, PipelineConfig(runs=1, trees=3), progress=False
    )

    assert rasters[0][1, 0] == NODATA


def test_split_features_are_clamped_with_warning(caplog):
    grid, samples, _ = _three_class_grid()

    with caplog.at_level("WARNING", logger="covervote.forest"):
        ensemble.train_ensemble(
            grid, samples, PipelineConfig(runs=1, trees=3), progress=False
        )

    assert "split_features=4 exceeds the 1 training bands" in caplog.text


def test_missing_class_fails_before_training(monkeypatch):
    grid, samples, _ = _three_class_grid()

    def _no_training(*args, **kwargs):
        raise AssertionError("forest should not be trained")

    monkeypatch.setattr(ensemble, "fit_forest", _no_training)

    with pytest.raises(InsufficientSamples, match=r"\[4\]"):
        ensemble.iter_ensemble(grid, samples, PipelineConfig(classes=(1, 2, 3, 4)))


def test_unknown_band_fails_before_training():
    grid, samples, _ = _three_class_grid()

    with pytest.raises(FeatureMismatch):
        ensemble.train_ensemble(grid, samples, PipelineConfig(bands=("swir",)))


def test_streaming_consensus_matches_barrier_vote():
    grid, samples, _ = _three_class_grid()
    config = PipelineConfig(runs=4, trees=3, seed=5)

    consensus, agreement = ensemble.ensemble_consensus(
        grid, samples, config, progress=False
    )
    rasters = ensemble.train_ensemble(grid, samples, config, progress=False)

    np.testing.assert_array_equal(consensus, ensemble.majority_vote(rasters))
    assert np.all((agreement > 0) & (agreement <= 1))


def test_parallel_ensemble_matches_serial():
    grid, samples, _ = _three_class_grid()
    serial = ensemble.train_ensemble(
        grid, samples, PipelineConfig(runs=3, trees=4, seed=3, jobs=1), progress=False
    )
    parallel = ensemble.train_ensemble(
        grid, samples, PipelineConfig(runs=3, trees=4, seed=3, jobs=2), progress=False
    )

    for a, b in zip(serial, parallel):
        np.testing.assert_array_equal(a, b)
