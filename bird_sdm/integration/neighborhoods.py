#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""Fixed-radius neighborhoods around observation locations.

One buffered disk per distinct locality, built in an equal-area projection
(the MODIS sinusoidal grid by default). Radius is derived once per raster:
    ceil(max(cell_resolution)) * 5 / 2
The same geometry serves land cover (per year) and elevation extraction.

Cell lookups are area weighted: every raster cell touching the disk gets a
coverage fraction = area(cell & disk) / area(cell).
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import geopandas as gpd
import numpy as np
import pandas as pd
import shapely
from pyproj import CRS as PJCRS
from pyproj.exceptions import CRSError

from bird_sdm.config import SINUSOIDAL_CRS
from bird_sdm.errors import InvalidCoordinate, ProjectionError
from bird_sdm.preprocessing.observations import LOCATION_KEY
from bird_sdm.preprocessing.rasters import RasterLayer

logger = logging.getLogger(__name__)


@dataclass
class CellSample:
    values: np.ndarray    # raster values of touched cells (NaN = no-data)
    coverage: np.ndarray  # fraction of each cell inside the polygon, (0, 1]

    @property
    def valid(self) -> np.ndarray:
        return np.isfinite(self.values)

    def is_empty(self) -> bool:
        return not bool(self.valid.any())


def neighborhood_radius(resolution: Sequence[float]) -> float:
    """2.5 cell widths, cell width rounded up to a whole unit."""
    res = [abs(float(r)) for r in resolution]
    if not res or max(res) <= 0:
        raise ValueError(f"Invalid raster resolution: {resolution}")
    return math.ceil(max(res)) * 5 / 2


def resolve_projection(crs) -> PJCRS:
    try:
        return PJCRS.from_user_input(crs)
    except CRSError as e:
        raise ProjectionError(f"Cannot resolve projection {crs!r}: {e}") from e


def _linear_unit(crs: PJCRS) -> Optional[str]:
    if not crs.is_projected:
        return None
    return crs.axis_info[0].unit_name


def radius_for_layer(layer: RasterLayer, crs=SINUSOIDAL_CRS) -> float:
    """Neighborhood radius for `layer`, in the units disks are buffered in.

    The raster cell size is only used as a distance when the raster CRS
    measures in the same linear unit as `crs`. A lat/lon raster, or one in
    feet against a metre grid, raises ProjectionError.
    """
    target = resolve_projection(crs)
    source = resolve_projection(layer.crs.to_wkt())
    unit = _linear_unit(target)
    if unit is None:
        raise ProjectionError(f"Neighborhoods need a projected CRS, got {target.name!r}")
    if not source.equals(target) and _linear_unit(source) != unit:
        raise ProjectionError(
            f"{layer.name} cell size is in {_linear_unit(source) or 'degrees'}, "
            f"neighborhoods are buffered in {unit}; reproject the raster first")
    return neighborhood_radius(layer.resolution)


def invalid_coordinate_mask(lat: pd.Series, lon: pd.Series) -> pd.Series:
    lat = pd.to_numeric(lat, errors="coerce")
    lon = pd.to_numeric(lon, errors="coerce")
    return ~(lat.between(-90, 90) & lon.between(-180, 180))


def validate_coordinates(df: pd.DataFrame, drop_invalid: bool = False) -> Tuple[pd.DataFrame, int]:
    """Check WGS84 ranges. Raises InvalidCoordinate unless drop_invalid, then returns the drop count."""
    bad = invalid_coordinate_mask(df["latitude"], df["longitude"])
    n_bad = int(bad.sum())
    if n_bad and not drop_invalid:
        sample = df.loc[bad, [LOCATION_KEY, "latitude", "longitude"]].head(5).to_dict("records")
        raise InvalidCoordinate(f"{n_bad} locations outside valid lat/lon range, e.g. {sample}")
    if n_bad:
        logger.warning("Dropped %d locations with invalid coordinates", n_bad)
    return df.loc[~bad].copy(), n_bad


def build_neighborhoods(locations: pd.DataFrame, radius: float, crs=SINUSOIDAL_CRS,
                        drop_invalid: bool = False) -> gpd.GeoDataFrame:
    """Buffered disk per distinct locality, in the target projection.

    `locations` holds locality_id, latitude, longitude (one row per locality).
    """
    target = resolve_projection(crs)
    if radius <= 0:
        raise ValueError(f"Neighborhood radius must be positive, got {radius}")
    locs, n_bad = validate_coordinates(locations, drop_invalid=drop_invalid)
    locs = locs.drop_duplicates(subset=[LOCATION_KEY], keep="first")
    pts = gpd.GeoDataFrame(
        locs[[LOCATION_KEY, "latitude", "longitude"]].reset_index(drop=True),
        geometry=gpd.points_from_xy(locs["longitude"], locs["latitude"]),
        crs="EPSG:4326",
    ).to_crs(target)
    pts["geometry"] = pts.geometry.buffer(radius, resolution=32)
    pts.attrs["radius"] = float(radius)
    pts.attrs["n_invalid"] = n_bad
    logger.info("Built %d neighborhoods (radius=%.1f)", len(pts), radius)
    return pts


def align_neighborhoods(neighborhoods: gpd.GeoDataFrame, layer: RasterLayer) -> gpd.GeoDataFrame:
    """Reproject neighborhoods into the raster CRS when they differ."""
    if neighborhoods.crs is None:
        raise ProjectionError("Neighborhoods have no CRS")
    target = resolve_projection(layer.crs.to_wkt())
    if PJCRS.from_user_input(neighborhoods.crs).equals(target):
        return neighborhoods
    return neighborhoods.to_crs(target)


def _cell_range(layer: RasterLayer, bounds: Tuple[float, float, float, float]) -> Optional[Tuple[slice, slice]]:
    minx, miny, maxx, maxy = bounds
    # north-up grid (rotation is rejected by RasterLayer)
    t = layer.transform
    cols = [(x - t.c) / t.a for x in (minx, maxx)]
    rows = [(y - t.f) / t.e for y in (miny, maxy)]
    nrows, ncols = layer.shape
    c0 = max(int(math.floor(min(cols))), 0)
    c1 = min(int(math.ceil(max(cols))), ncols)
    r0 = max(int(math.floor(min(rows))), 0)
    r1 = min(int(math.ceil(max(rows))), nrows)
    if c0 >= c1 or r0 >= r1:
        return None
    return slice(r0, r1), slice(c0, c1)


def cells_within(layer: RasterLayer, polygon) -> CellSample:
    """Raster cells intersecting `polygon` with their coverage fractions.

    `polygon` must already be in the raster CRS. Cells outside the raster
    extent are simply absent.
    """
    window = _cell_range(layer, polygon.bounds)
    if window is None:
        return CellSample(values=np.empty(0), coverage=np.empty(0))
    rs, cs = window
    rows, cols = np.meshgrid(np.arange(rs.start, rs.stop), np.arange(cs.start, cs.stop), indexing="ij")
    t = layer.transform
    x0 = t.c + cols * t.a
    x1 = x0 + t.a
    y0 = t.f + rows * t.e
    y1 = y0 + t.e
    cells = shapely.box(np.minimum(x0, x1), np.minimum(y0, y1), np.maximum(x0, x1), np.maximum(y0, y1))
    cell_area = abs(t.a * t.e)
    coverage = shapely.area(shapely.intersection(cells, polygon)) / cell_area
    values = layer.values[rs, cs]
    touched = coverage > 0
    return CellSample(values=values[touched].astype("float64"), coverage=np.clip(coverage[touched], 0.0, 1.0))
