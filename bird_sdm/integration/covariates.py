#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""Covariate table: land cover PLAND + elevation summary per location-year.

build_covariate_table() runs the whole extraction chain:
  observations -> distinct locations -> neighborhoods
    -> land cover per location-year, elevation per location
    -> inner join on locality_id (+ optional class reconstruction)

Output columns:
  locality_id, year, landcover_year, PLAND_00..PLAND_15,
  elevation_mean, elevation_median, elevation_sd, elevation_iqr,
  landcover_cells[, pland_reconstruction_negative]
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Optional, Sequence

import pandas as pd

from bird_sdm.config import SINUSOIDAL_CRS
from bird_sdm.integration.elevation import ELEVATION_COLUMNS, extract_elevation
from bird_sdm.integration.landcover import (
    DEFAULT_CLASSES,
    ExtractionReport,
    extract_landcover,
    pland_column,
    reconstruct_class,
)
from bird_sdm.integration.neighborhoods import build_neighborhoods, radius_for_layer
from bird_sdm.preprocessing.observations import LOCATION_KEY, distinct_locations, location_years
from bird_sdm.preprocessing.rasters import RasterLayer

logger = logging.getLogger(__name__)

KEY = [LOCATION_KEY, "year"]


@dataclass
class MergeReport:
    landcover_rows: int = 0
    elevation_rows: int = 0
    merged_rows: int = 0
    dropped_no_elevation: int = 0
    dropped_no_landcover: int = 0
    reconstructed_class: Optional[int] = None
    negative_reconstructions: int = 0

    def as_dict(self) -> Dict:
        return dict(self.__dict__)


@dataclass
class CovariateResult:
    table: pd.DataFrame
    radius: float
    n_invalid_locations: int
    landcover: ExtractionReport
    elevation: ExtractionReport
    merge: MergeReport
    extra: Dict = field(default_factory=dict)

    def summary(self) -> Dict:
        return {
            "rows": len(self.table),
            "radius": self.radius,
            "invalid_locations": self.n_invalid_locations,
            "landcover": self.landcover.as_dict(),
            "elevation": self.elevation.as_dict(),
            "merge": self.merge.as_dict(),
            **self.extra,
        }


def merge_covariates(landcover: pd.DataFrame, elevation: pd.DataFrame,
                     reconstruct: Optional[int] = None,
                     classes: Sequence[int] = DEFAULT_CLASSES):
    """Inner join land cover and elevation on locality_id.

    A location missing from either side is dropped and counted. Returns
    (table, MergeReport); the table has exactly one row per (locality_id, year).
    """
    report = MergeReport(landcover_rows=len(landcover), elevation_rows=len(elevation))
    if elevation[LOCATION_KEY].duplicated().any():
        raise ValueError("Elevation table has duplicate locality_id rows")
    if landcover.duplicated(subset=KEY).any():
        raise ValueError("Land cover table has duplicate (locality_id, year) rows")

    lc_keys = set(landcover[LOCATION_KEY])
    el_keys = set(elevation[LOCATION_KEY])
    report.dropped_no_elevation = int((~landcover[LOCATION_KEY].isin(el_keys)).sum())
    report.dropped_no_landcover = len(el_keys - lc_keys)

    merged = landcover.merge(elevation, on=LOCATION_KEY, how="inner", validate="many_to_one")
    if reconstruct is not None:
        if int(reconstruct) not in set(int(c) for c in classes):
            raise ValueError(f"Class {reconstruct} to reconstruct is not in the class list")
        merged = reconstruct_class(merged, int(reconstruct), classes)
        report.reconstructed_class = int(reconstruct)
        report.negative_reconstructions = int(merged["pland_reconstruction_negative"].sum())

    plands = [pland_column(c) for c in classes]
    front = [c for c in [LOCATION_KEY, "year", "landcover_year"] if c in merged.columns]
    rest = [c for c in merged.columns if c not in front + plands + ELEVATION_COLUMNS]
    merged = merged[front + plands + ELEVATION_COLUMNS + rest]
    merged = merged.sort_values(KEY).reset_index(drop=True)
    report.merged_rows = len(merged)
    if report.dropped_no_elevation or report.dropped_no_landcover:
        logger.info("Covariate merge dropped %d land cover rows without elevation, %d locations without land cover",
                    report.dropped_no_elevation, report.dropped_no_landcover)
    return merged, report


def build_covariate_table(observations: pd.DataFrame,
                          landcover_layers: Dict[int, RasterLayer],
                          elevation_layer: RasterLayer,
                          classes: Sequence[int] = DEFAULT_CLASSES,
                          reconstruct: Optional[int] = None,
                          extend_latest_year: bool = True,
                          crs=SINUSOIDAL_CRS,
                          drop_invalid: bool = True,
                          n_jobs: int = 1) -> CovariateResult:
    """Observations (prepared) + rasters -> model-ready covariate table."""
    if not landcover_layers:
        raise ValueError("At least one land cover raster is required")
    latest = max(landcover_layers)
    radius = radius_for_layer(landcover_layers[latest], crs)

    locations = distinct_locations(observations)
    neighborhoods = build_neighborhoods(locations, radius, crs=crs, drop_invalid=drop_invalid)
    n_invalid = int(neighborhoods.attrs.get("n_invalid", 0))

    pairs = location_years(observations)
    pairs = pairs[pairs[LOCATION_KEY].isin(set(neighborhoods[LOCATION_KEY]))]

    lc_table, lc_report = extract_landcover(neighborhoods, pairs, landcover_layers, classes=classes,
                                            extend_latest_year=extend_latest_year, n_jobs=n_jobs)
    el_table, el_report = extract_elevation(neighborhoods, elevation_layer, n_jobs=n_jobs)
    table, merge_report = merge_covariates(lc_table, el_table, reconstruct=reconstruct, classes=classes)
    logger.info("Covariate table: %d location-years from %d locations", len(table), len(neighborhoods))
    return CovariateResult(table=table, radius=radius, n_invalid_locations=n_invalid,
                           landcover=lc_report, elevation=el_report, merge=merge_report)
