import numpy as np
import pytest

from bird_sdm.integration.elevation import (
    elevation_summary,
    extract_elevation,
    weighted_quantile,
)
from bird_sdm.integration.neighborhoods import build_neighborhoods


def test_flat_terrain(locations, make_layer):
    hoods = build_neighborhoods(locations, 1160.0)
    table, report = extract_elevation(hoods, make_layer(250.0))
    assert report.n_extracted == 2
    assert (table["elevation_mean"] == 250.0).all()
    assert (table["elevation_median"] == 250.0).all()
    assert np.allclose(table["elevation_sd"], 0.0)
    assert np.allclose(table["elevation_iqr"], 0.0)


def test_only_nodata_cells_gives_null_mean(locations, make_layer):
    hoods = build_neighborhoods(locations, 1160.0)
    table, report = extract_elevation(hoods, make_layer(-9999.0, nodata=-9999.0))
    assert report.n_empty == 2
    assert report.n_failed == 0
    assert table["elevation_mean"].isna().all()
    assert list(table["locality_id"]) == ["L1", "L2"]


def test_nodata_cells_are_ignored(locations, make_layer):
    arr = np.full((11, 11), 120.0)
    arr[:, :5] = np.nan
    hoods = build_neighborhoods(locations, 1160.0)
    summary = elevation_summary(make_layer(arr), hoods.geometry.iloc[0])
    assert summary["elevation_mean"] == pytest.approx(120.0)


def test_slope_summary_is_symmetric(locations, make_layer):
    # elevation rising west to east, neighborhood centred on the middle column
    arr = np.tile(np.arange(11, dtype=float) * 10.0, (11, 1))
    hoods = build_neighborhoods(locations, 1160.0)
    summary = elevation_summary(make_layer(arr), hoods.geometry.iloc[0])
    assert summary["elevation_mean"] == pytest.approx(50.0)
    assert summary["elevation_median"] == pytest.approx(50.0)
    assert summary["elevation_sd"] > 0
    assert summary["elevation_iqr"] > 0


def test_weighted_quantile_equal_weights():
    v = np.array([4.0, 1.0, 3.0, 2.0])
    w = np.ones(4)
    assert weighted_quantile(v, w, [0.5])[0] == pytest.approx(2.5)


def test_weighted_quantile_heavy_value_dominates():
    v = np.array([1.0, 2.0, 100.0])
    w = np.array([0.1, 0.1, 5.0])
    assert weighted_quantile(v, w, [0.6])[0] == pytest.approx(100.0)
    assert weighted_quantile(v, w, [0.5])[0] > 90.0
