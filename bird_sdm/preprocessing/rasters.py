#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""Raster inputs for covariate extraction.

- Land cover: one categorical layer per year (MODIS MCD12Q1 style, codes 0-15)
- Elevation: a single continuous layer
Both are read with rioxarray (masked=True) so no-data becomes NaN, then held
as plain numpy arrays with their affine transform and CRS.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, Optional, Tuple

import numpy as np
import rioxarray as rxr
import xarray as xr
from rasterio.crs import CRS
from rasterio.errors import CRSError
from rasterio.transform import Affine

from bird_sdm.errors import ProjectionError

logger = logging.getLogger(__name__)

YEAR_RE = re.compile(r"(?<!\d)(19|20)\d{2}(?!\d)")


@dataclass(frozen=True)
class RasterLayer:
    values: np.ndarray  # 2D float, NaN = no-data
    transform: Affine
    crs: CRS
    name: str = "raster"

    def __post_init__(self):
        if self.values.ndim != 2:
            raise ValueError(f"{self.name}: expected a single-band 2D array, got shape {self.values.shape}")
        t = self.transform
        if t.b != 0 or t.d != 0:
            raise ValueError(f"{self.name}: rotated grids are not supported ({t})")

    @classmethod
    def from_array(cls, values, transform: Affine, crs, nodata: Optional[float] = None,
                   name: str = "raster") -> "RasterLayer":
        arr = np.asarray(values, dtype="float64").copy()
        if nodata is not None:
            arr[arr == float(nodata)] = np.nan
        return cls(values=arr, transform=transform, crs=resolve_crs(crs), name=name)

    @property
    def resolution(self) -> Tuple[float, float]:
        return abs(self.transform.a), abs(self.transform.e)

    @property
    def shape(self) -> Tuple[int, int]:
        return self.values.shape


def resolve_crs(crs) -> CRS:
    if crs is None:
        raise ProjectionError("CRS is missing")
    if isinstance(crs, CRS):
        return crs
    try:
        return CRS.from_user_input(crs)
    except CRSError as e:
        raise ProjectionError(f"Cannot resolve projection {crs!r}: {e}") from e


def _ensure_dataarray(raster) -> xr.DataArray:
    """Normalize rioxarray.open_rasterio outputs to DataArray."""
    if isinstance(raster, list):
        raster = raster[0]
    if isinstance(raster, xr.Dataset):
        if len(raster.data_vars) == 1:
            raster = next(iter(raster.data_vars.values()))
        else:
            raster = raster.to_array().isel(variable=0)
    if not isinstance(raster, xr.DataArray):
        raise TypeError(f"Unsupported raster type: {type(raster)}")
    return raster


def load_raster(path: Path, name: Optional[str] = None) -> RasterLayer:
    """Read the first band of a georeferenced raster.

    Unreadable files raise rasterio's RasterioIOError; a raster without CRS
    raises ProjectionError. Either aborts the data source.
    """
    path = Path(path)
    da = _ensure_dataarray(rxr.open_rasterio(path, masked=True))
    if "band" in da.dims:
        da = da.isel(band=0)
    if da.rio.crs is None:
        raise ProjectionError(f"Raster missing CRS: {path}")
    arr = da.values.astype("float64")
    nd = da.rio.nodata
    if nd is not None and np.isfinite(nd):
        arr[arr == float(nd)] = np.nan
    layer = RasterLayer(values=arr, transform=da.rio.transform(), crs=CRS.from_user_input(da.rio.crs),
                        name=name or path.stem)
    logger.info("Loaded raster %s shape=%s res=%s", path.name, layer.shape, layer.resolution)
    return layer


def discover_landcover_layers(directory: Path, pattern: str = "*.tif") -> Dict[int, Path]:
    """Map year -> raster path from file names such as landcover_2019.tif."""
    directory = Path(directory)
    if not directory.exists():
        raise FileNotFoundError(f"Land cover directory not found: {directory}")
    found: Dict[int, Path] = {}
    for p in sorted(directory.glob(pattern)):
        m = YEAR_RE.search(p.stem)
        if not m:
            logger.warning("Skipping land cover file without a year in its name: %s", p.name)
            continue
        year = int(m.group(0))
        if year in found:
            raise ValueError(f"Two land cover rasters for {year}: {found[year].name}, {p.name}")
        found[year] = p
    if not found:
        raise FileNotFoundError(f"No land cover rasters matching {pattern} in {directory}")
    return found


def load_landcover_layers(paths: Dict[int, Path]) -> Dict[int, RasterLayer]:
    return {year: load_raster(p, name=f"landcover_{year}") for year, p in sorted(paths.items())}


def select_landcover_year(year: int, available_years: Iterable[int],
                          extend_latest: bool = True) -> Optional[int]:
    """Return the raster year used for an observation year.

    Exact match when available. Past the last available year the latest
    raster is reused only when extend_latest is set (land cover assumed
    static beyond data availability). Anything else has no layer.
    """
    years = sorted(set(int(y) for y in available_years))
    if not years:
        return None
    if year in years:
        return int(year)
    if year > years[-1] and extend_latest:
        return years[-1]
    return None
