#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""Land cover composition (PLAND) per location-year.

For every (locality_id, year):
  1. pick the land cover raster for that year (latest raster reused past the
     data when extend_latest_year is on; the substitution is logged and kept
     in the `landcover_year` column)
  2. sum the coverage fraction of cells per class inside the neighborhood
  3. PLAND_<cc> = weighted count / total weighted valid cells

No-data cells and codes outside the class list count in neither numerator
nor denominator. A neighborhood with no valid cells gives null PLAND values.

Every listed class counts in the denominator, including a class named for
reconstruction. On a table measured here, rebuilding that class as
1 - sum(others) gives back its measured share within float error. It only
changes values when the other class columns come from a different source or
miss cells (e.g. a table merged from an older extraction), and the
reconstruction keeps the row summing to one.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

import geopandas as gpd
import numpy as np
import pandas as pd
from joblib import Parallel, delayed

from bird_sdm.errors import EmptyNeighborhood
from bird_sdm.integration.neighborhoods import align_neighborhoods, cells_within
from bird_sdm.preprocessing.observations import LOCATION_KEY
from bird_sdm.preprocessing.rasters import RasterLayer, select_landcover_year

logger = logging.getLogger(__name__)

DEFAULT_CLASSES = tuple(range(16))
RECONSTRUCTION_TOL = 1e-6


def pland_column(code: int) -> str:
    return f"PLAND_{int(code):02d}"


@dataclass
class ExtractionReport:
    source: str
    n_requested: int = 0
    n_extracted: int = 0
    n_empty: int = 0
    n_no_layer: int = 0
    n_failed: int = 0
    substitutions: Dict[int, int] = field(default_factory=dict)
    failures: List[Dict] = field(default_factory=list)

    def as_dict(self) -> Dict:
        return {
            "source": self.source,
            "requested": self.n_requested,
            "extracted": self.n_extracted,
            "empty_neighborhood": self.n_empty,
            "no_layer": self.n_no_layer,
            "failed": self.n_failed,
            "year_substitutions": {str(k): v for k, v in sorted(self.substitutions.items())},
            "failures": self.failures,
        }


def class_counts(layer: RasterLayer, polygon, classes: Sequence[int] = DEFAULT_CLASSES) -> Dict[int, float]:
    """Coverage-weighted cell count per class. Raises EmptyNeighborhood when nothing valid intersects."""
    sample = cells_within(layer, polygon)
    codes = np.rint(sample.values)
    keep = sample.valid & np.isin(codes, np.asarray(classes, dtype="float64"))
    if not keep.any():
        raise EmptyNeighborhood(f"No valid {layer.name} cells in neighborhood")
    codes = codes[keep].astype(int)
    weights = sample.coverage[keep]
    return {int(c): float(weights[codes == c].sum()) for c in classes}


def pland_from_counts(counts: Dict[int, float], classes: Sequence[int] = DEFAULT_CLASSES) -> Dict[str, float]:
    total = float(sum(counts.get(c, 0.0) for c in classes))
    if total <= 0:
        raise EmptyNeighborhood("Neighborhood has zero weighted cells")
    out = {pland_column(c): counts.get(c, 0.0) / total for c in classes}
    out["landcover_cells"] = total
    return out


def reconstruct_class(df: pd.DataFrame, code: int, classes: Sequence[int] = DEFAULT_CLASSES,
                      tol: float = RECONSTRUCTION_TOL) -> pd.DataFrame:
    """Replace one class by 1 - sum(all other classes).

    Negative results are kept and flagged in `pland_reconstruction_negative`.
    Rows with null land cover stay null.
    """
    target = pland_column(code)
    others = [pland_column(c) for c in classes if c != code]
    out = df.copy()
    measured = out[others].notna().all(axis=1)
    out[target] = np.where(measured, 1.0 - out[others].sum(axis=1, min_count=1), np.nan)
    negative = measured & (out[target] < -tol)
    out["pland_reconstruction_negative"] = negative
    if negative.any():
        logger.warning("%s reconstructed below zero for %d location-years (min=%.6f)",
                       target, int(negative.sum()), float(out.loc[negative, target].min()))
    return out


def _extract_one(key, year, layer_year, polygon, layer, classes):
    row = {LOCATION_KEY: key, "year": year, "landcover_year": layer_year}
    try:
        row.update(pland_from_counts(class_counts(layer, polygon, classes), classes))
        status = "ok"
    except EmptyNeighborhood:
        status = "empty"
    except Exception as e:  # isolate per-row failures; recorded in the report
        logger.warning("Land cover extraction failed for %s/%s: %s", key, year, e)
        status = f"failed: {type(e).__name__}: {e}"
    return row, status


def extract_landcover(neighborhoods: gpd.GeoDataFrame, location_years: pd.DataFrame,
                      layers: Dict[int, RasterLayer], classes: Sequence[int] = DEFAULT_CLASSES,
                      extend_latest_year: bool = True, n_jobs: int = 1):
    """PLAND table, one row per requested (locality_id, year).

    Returns (table, ExtractionReport). Rows that could not be measured carry
    null PLAND values; the report says why.
    """
    classes = tuple(int(c) for c in classes)
    report = ExtractionReport(source="landcover", n_requested=len(location_years))
    geoms = {}
    for layer_year, layer in layers.items():
        aligned = align_neighborhoods(neighborhoods, layer)
        geoms[layer_year] = dict(zip(aligned[LOCATION_KEY], aligned.geometry))

    tasks = []
    rows: List[Dict] = []
    for key, year in location_years[[LOCATION_KEY, "year"]].itertuples(index=False):
        year = int(year)
        layer_year = select_landcover_year(year, layers.keys(), extend_latest=extend_latest_year)
        if layer_year is None:
            report.n_no_layer += 1
            rows.append({LOCATION_KEY: key, "year": year, "landcover_year": np.nan})
            continue
        if layer_year != year:
            report.substitutions[year] = layer_year
        polygon = geoms[layer_year].get(key)
        if polygon is None:
            report.n_failed += 1
            report.failures.append({LOCATION_KEY: key, "year": year, "error": "no neighborhood"})
            rows.append({LOCATION_KEY: key, "year": year, "landcover_year": layer_year})
            continue
        tasks.append((key, year, layer_year, polygon, layers[layer_year], classes))

    for year, used in sorted(report.substitutions.items()):
        logger.info("Land cover for %d taken from the %d raster (latest available)", year, used)

    if n_jobs == 1:
        results = [_extract_one(*t) for t in tasks]
    else:
        results = Parallel(n_jobs=n_jobs, prefer="threads")(delayed(_extract_one)(*t) for t in tasks)

    for row, status in results:
        rows.append(row)
        if status == "ok":
            report.n_extracted += 1
        elif status == "empty":
            report.n_empty += 1
        else:
            report.n_failed += 1
            report.failures.append({LOCATION_KEY: row[LOCATION_KEY], "year": row["year"], "error": status})

    columns = [LOCATION_KEY, "year", "landcover_year"] + [pland_column(c) for c in classes] + ["landcover_cells"]
    table = pd.DataFrame(rows).reindex(columns=columns)
    table = table.sort_values([LOCATION_KEY, "year"]).reset_index(drop=True)
    logger.info("Land cover: %d extracted, %d empty, %d without raster, %d failed (of %d)",
                report.n_extracted, report.n_empty, report.n_no_layer, report.n_failed, report.n_requested)
    return table, report
