"""Shared synthetic inputs: small rasters on the MODIS sinusoidal grid around (0, 0)
and prepared checklist tables. Nothing here touches the network or real data.
"""
from __future__ import annotations

import numpy as np
import pandas as pd
import pytest
from rasterio.transform import from_origin

from bird_sdm.config import SINUSOIDAL_CRS, reset_config
from bird_sdm.preprocessing.rasters import RasterLayer

# MCD12Q1 cell size in metres
RES = 463.3127165
NCELLS = 11


@pytest.fixture(autouse=True)
def _fresh_config(monkeypatch):
    monkeypatch.delenv("BIRD_SDM_CONFIG", raising=False)
    reset_config()
    yield
    reset_config()


@pytest.fixture
def grid_transform():
    half = NCELLS / 2 * RES
    return from_origin(-half, half, RES, RES)


@pytest.fixture
def make_layer(grid_transform):
    """Factory: 2D values (or a scalar fill) -> RasterLayer on the test grid."""
    def _make(values, name="raster", nodata=None):
        arr = np.asarray(values, dtype="float64")
        if arr.ndim == 0:
            arr = np.full((NCELLS, NCELLS), float(arr))
        return RasterLayer.from_array(arr, grid_transform, SINUSOIDAL_CRS, nodata=nodata, name=name)
    return _make


@pytest.fixture
def split_landcover(make_layer):
    """West half class 0, east half class 1 (no other class present)."""
    arr = np.zeros((NCELLS, NCELLS))
    arr[:, NCELLS // 2:] = 1
    return make_layer(arr, name="landcover")


@pytest.fixture
def locations():
    return pd.DataFrame({
        "locality_id": ["L1", "L2"],
        "latitude": [0.0, 0.004],
        "longitude": [0.0, -0.004],
    })


@pytest.fixture
def prepared_observations():
    """Two localities seen in 2016 and 2017, L1 again in 2018."""
    return pd.DataFrame({
        "checklist_id": ["S1", "S2", "S3", "S4", "S5"],
        "locality_id": ["L1", "L1", "L2", "L2", "L1"],
        "latitude": [0.0, 0.0, 0.004, 0.004, 0.0],
        "longitude": [0.0, 0.0, -0.004, -0.004, 0.0],
        "year": [2016, 2017, 2016, 2017, 2018],
        "observation_count": [0.0, 2.0, 1.0, np.nan, 3.0],
    })
