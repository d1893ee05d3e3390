import numpy as np
import pytest

from bird_sdm.model_validation.prediction_scoring import (
    mean_absolute_deviation,
    score_predictions,
    subset_sizes,
)


def test_mean_model_on_three_counts():
    observed = [0.0, 2.0, 5.0]
    mean = np.mean(observed)
    assert mean_absolute_deviation(observed, [mean] * 3) == pytest.approx(16 / 9)


def test_exact_predictions_score_zero():
    obs = np.array([0.0, 1.0, 4.0, 0.0])
    assert mean_absolute_deviation(obs, obs) == 0.0


def test_missing_pairs_ignored():
    assert mean_absolute_deviation([1.0, np.nan, 3.0], [2.0, 5.0, np.nan]) == pytest.approx(1.0)
    assert np.isnan(mean_absolute_deviation([np.nan], [1.0]))


def test_table_by_variant_and_subset():
    observed = np.array([0.0, 0.0, 3.0, 5.0])
    table = score_predictions(observed, {
        "zero": np.zeros(4),
        "exact": observed.copy(),
        "ones": np.ones(4),
    })
    assert list(table.columns) == ["all", "zero", "nonzero"]
    assert table.loc["zero", "zero"] == 0.0
    assert table.loc["zero", "nonzero"] == pytest.approx(4.0)
    assert table.loc["zero", "all"] == pytest.approx(2.0)
    assert (table.loc["exact"] == 0.0).all()
    assert table.loc["ones", "all"] == pytest.approx(2.0)
    assert table.loc["ones", "zero"] == pytest.approx(1.0)
    assert (table.to_numpy() >= 0).all()


def test_empty_subset_is_nan():
    table = score_predictions([1.0, 2.0], {"m": [1.0, 1.0]})
    assert np.isnan(table.loc["m", "zero"])
    assert subset_sizes([1.0, 2.0]).to_dict() == {"all": 2, "zero": 0, "nonzero": 2}


def test_prediction_length_must_match():
    with pytest.raises(ValueError):
        score_predictions([1.0, 2.0], {"m": [1.0]})
