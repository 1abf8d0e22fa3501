"""Tests for the probability forest."""

import numpy as np
import pytest

from covervote import probability
from covervote.config import PipelineConfig
from covervote.errors import FeatureMismatch
from covervote.grid import FeatureGrid, LabelSamples


def _grid_and_samples():
    data = np.zeros((4, 4, 2), dtype="float32")
    data[:2, :, :] = [0.0, 1.0]
    data[2:, :, :] = [10.0, 11.0]
    data[3, 3, :] = np.nan
    grid = FeatureGrid(data, ("ndvi", "vv"))
    samples = LabelSamples.from_pairs(
        [((0, 0), 1), ((0, 1), 1), ((1, 2), 1), ((2, 0), 2), ((2, 1), 2), ((3, 2), 2)]
    )
    return grid, samples


def test_probabilities_are_vote_fractions_summing_to_one():
    grid, samples = _grid_and_samples()
    config = PipelineConfig(trees=7, probability_trees=8, seed=3)

    raster, model = probability.probability_raster(grid, samples, config)

    assert raster.classes == (1, 2)
    assert len(model.estimators_) == 8
    probs = raster.probabilities
    valid = np.isfinite(probs).all(axis=2)
    assert not valid[3, 3]
    assert np.isnan(probs[3, 3]).all()
    np.testing.assert_allclose(probs[valid].sum(axis=1), 1.0, atol=1e-6)
    scaled = probs[valid] * 8
    np.testing.assert_allclose(scaled, np.round(scaled), atol=1e-5)
    assert np.all((probs[valid] >= 0) & (probs[valid] <= 1))


def test_probability_forest_is_deterministic_for_a_seed():
    grid, samples = _grid_and_samples()
    config = PipelineConfig(trees=5, seed=9)

    first, _ = probability.probability_raster(grid, samples, config)
    second, _ = probability.probability_raster(grid, samples, config)

    np.testing.assert_array_equal(first.probabilities, second.probabilities)


def test_probability_forest_favors_the_training_class():
    grid, samples = _grid_and_samples()

    raster, _ = probability.probability_raster(
        grid, samples, PipelineConfig(trees=25, seed=0)
    )

    assert raster.band(1)[0, 3] > raster.band(2)[0, 3]
    assert raster.band(2)[2, 3] > raster.band(1)[2, 3]


def test_classify_probabilities_rejects_band_count_mismatch():
    grid, samples = _grid_and_samples()
    model = probability.train_probability_forest(
        grid, samples, PipelineConfig(trees=3)
    )

    with pytest.raises(FeatureMismatch, match="expects 2 bands"):
        probability.classify_probabilities(model, grid, ("ndvi",))


def test_classify_probabilities_reuses_training_bands():
    grid, samples = _grid_and_samples()
    model = probability.train_probability_forest(
        grid, samples, PipelineConfig(trees=3, bands=("vv",))
    )

    raster = probability.classify_probabilities(model, grid)

    assert raster.shape == (4, 4)
    assert model.band_names == ("vv",)


def test_probability_raster_band_lookup_and_layout():
    probs = np.zeros((2, 3, 2), dtype="float32")
    probs[:, :, 1] = 1.0
    raster = probability.ProbabilityRaster(probs, (0, 5))

    np.testing.assert_array_equal(raster.band(5), np.ones((2, 3)))
    assert raster.to_bands().shape == (2, 2, 3)
    with pytest.raises(FeatureMismatch):
        raster.band(3)
    with pytest.raises(ValueError):
        raster.probabilities[0, 0, 0] = 0.5


def test_probability_raster_does_not_alias_source_array():
    probs = np.full((1, 1, 2), 0.5, dtype="float32")
    raster = probability.ProbabilityRaster(probs, (1, 2))

    probs[0, 0, 0] = 1.0

    assert raster.probabilities[0, 0, 0] == 0.5


def test_probability_raster_rejects_class_count_mismatch():
    with pytest.raises(FeatureMismatch):
        probability.ProbabilityRaster(np.zeros((2, 2, 3)), (1, 2))
