#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""Elevation summary per location (year independent).

mean / median / sd / iqr over the cells intersecting each neighborhood,
every cell weighted by its coverage fraction. No-data cells are ignored; a
neighborhood without any valid cell yields nulls (raster edge case, not an
error).
"""
from __future__ import annotations

import logging
from typing import Dict, List, Sequence

import geopandas as gpd
import numpy as np
import pandas as pd
from joblib import Parallel, delayed

from bird_sdm.errors import EmptyNeighborhood
from bird_sdm.integration.landcover import ExtractionReport
from bird_sdm.integration.neighborhoods import align_neighborhoods, cells_within
from bird_sdm.preprocessing.observations import LOCATION_KEY
from bird_sdm.preprocessing.rasters import RasterLayer

logger = logging.getLogger(__name__)

ELEVATION_COLUMNS = ["elevation_mean", "elevation_median", "elevation_sd", "elevation_iqr"]


def weighted_quantile(values: np.ndarray, weights: np.ndarray, q: Sequence[float]) -> np.ndarray:
    """Quantiles of a weighted sample.

    Each value sits at the midpoint of its weight on the cumulative scale;
    with equal weights this matches the usual midpoint-interpolated quantile.
    """
    order = np.argsort(values, kind="mergesort")
    v = values[order]
    w = weights[order]
    cdf = (np.cumsum(w) - 0.5 * w) / w.sum()
    return np.interp(np.asarray(q, dtype="float64"), cdf, v)


def elevation_summary(layer: RasterLayer, polygon) -> Dict[str, float]:
    sample = cells_within(layer, polygon)
    valid = sample.valid
    if not valid.any():
        raise EmptyNeighborhood(f"No valid {layer.name} cells in neighborhood")
    v = sample.values[valid]
    w = sample.coverage[valid]
    mean = float(np.average(v, weights=w))
    sd = float(np.sqrt(np.average((v - mean) ** 2, weights=w)))
    q25, q50, q75 = weighted_quantile(v, w, [0.25, 0.5, 0.75])
    return {
        "elevation_mean": mean,
        "elevation_median": float(q50),
        "elevation_sd": sd,
        "elevation_iqr": float(q75 - q25),
    }


def _summarize_one(key, polygon, layer):
    row = {LOCATION_KEY: key}
    try:
        row.update(elevation_summary(layer, polygon))
        return row, "ok"
    except EmptyNeighborhood:
        return row, "empty"
    except Exception as e:  # isolate per-row failures; recorded in the report
        logger.warning("Elevation extraction failed for %s: %s", key, e)
        return row, f"failed: {type(e).__name__}: {e}"


def extract_elevation(neighborhoods: gpd.GeoDataFrame, layer: RasterLayer, n_jobs: int = 1):
    """Elevation table, one row per neighborhood. Returns (table, ExtractionReport)."""
    aligned = align_neighborhoods(neighborhoods, layer)
    report = ExtractionReport(source="elevation", n_requested=len(aligned))
    tasks = list(zip(aligned[LOCATION_KEY], aligned.geometry))
    if n_jobs == 1:
        results = [_summarize_one(k, g, layer) for k, g in tasks]
    else:
        results = Parallel(n_jobs=n_jobs, prefer="threads")(delayed(_summarize_one)(k, g, layer) for k, g in tasks)

    rows: List[Dict] = []
    for row, status in results:
        rows.append(row)
        if status == "ok":
            report.n_extracted += 1
        elif status == "empty":
            report.n_empty += 1
        else:
            report.n_failed += 1
            report.failures.append({LOCATION_KEY: row[LOCATION_KEY], "error": status})

    table = pd.DataFrame(rows).reindex(columns=[LOCATION_KEY] + ELEVATION_COLUMNS)
    table = table.sort_values(LOCATION_KEY).reset_index(drop=True)
    logger.info("Elevation: %d extracted, %d empty, %d failed (of %d)",
                report.n_extracted, report.n_empty, report.n_failed, report.n_requested)
    return table, report
