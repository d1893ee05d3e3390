#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""Normalize checklist tables coming out of the upstream extraction step.

Input: one row per checklist (zero-filled for the species), columns named
either in snake_case or in the raw eBird style (LOCALITY ID, OBSERVATION DATE, ...).

Output (new frame, input untouched):
  checklist_id, observer_id, locality_id, latitude, longitude,
  observation_date, year, day_of_year, hours_of_day,
  duration_minutes, effort_distance_km, number_observers, protocol_type,
  observation_count (float, NaN when unreported / "X")
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)

RESPONSE = "observation_count"
LOCATION_KEY = "locality_id"
STATIONARY = "stationary"

COLUMN_ALIASES: Dict[str, str] = {
    "sampling_event_identifier": "checklist_id",
    "checklist": "checklist_id",
    "observer": "observer_id",
    "locality": "locality_id",
    "lat": "latitude",
    "lon": "longitude",
    "lng": "longitude",
    "date": "observation_date",
    "time_observations_started": "time_observations_started",
    "duration": "duration_minutes",
    "effort_distance": "effort_distance_km",
    "distance_km": "effort_distance_km",
    "observers": "number_observers",
    "protocol": "protocol_type",
    "count": "observation_count",
}

REQUIRED = ["checklist_id", "locality_id", "latitude", "longitude", "observation_date", RESPONSE]


@dataclass
class EffortFilter:
    max_duration_minutes: Optional[float] = None
    max_distance_km: Optional[float] = None
    max_observers: Optional[int] = None

    def apply(self, df: pd.DataFrame) -> pd.DataFrame:
        keep = pd.Series(True, index=df.index)
        if self.max_duration_minutes is not None and "duration_minutes" in df:
            keep &= ~(df["duration_minutes"] > self.max_duration_minutes)
        if self.max_distance_km is not None and "effort_distance_km" in df:
            keep &= ~(df["effort_distance_km"] > self.max_distance_km)
        if self.max_observers is not None and "number_observers" in df:
            keep &= ~(df["number_observers"] > self.max_observers)
        dropped = int((~keep).sum())
        if dropped:
            logger.info("Effort filter removed %d of %d checklists", dropped, len(df))
        return df.loc[keep].copy()


def _standardize_columns(df: pd.DataFrame) -> pd.DataFrame:
    renamed = {}
    for c in df.columns:
        key = str(c).strip().lower().replace(" ", "_").replace("/", "_")
        renamed[c] = COLUMN_ALIASES.get(key, key)
    return df.rename(columns=renamed)


def _decimal_hours(times: pd.Series) -> pd.Series:
    parsed = pd.to_datetime(times.astype("string"), format="%H:%M:%S", errors="coerce")
    missing = parsed.isna() & times.notna()
    if missing.any():
        parsed = parsed.where(~missing, pd.to_datetime(times.astype("string"), format="%H:%M", errors="coerce"))
    return parsed.dt.hour + parsed.dt.minute / 60.0 + parsed.dt.second / 3600.0


def prepare_observations(df: pd.DataFrame, effort: Optional[EffortFilter] = None) -> pd.DataFrame:
    """Derive time fields, coerce the response and enforce the stationary-distance rule."""
    out = _standardize_columns(df.copy())
    missing = [c for c in REQUIRED if c not in out.columns]
    if missing:
        raise ValueError(f"Observation table missing columns: {missing}")

    out["locality_id"] = out["locality_id"].astype(str)
    out["latitude"] = pd.to_numeric(out["latitude"], errors="coerce")
    out["longitude"] = pd.to_numeric(out["longitude"], errors="coerce")
    out["observation_date"] = pd.to_datetime(out["observation_date"], errors="coerce")
    bad_dates = int(out["observation_date"].isna().sum())
    if bad_dates:
        raise ValueError(f"{bad_dates} observation rows have an unparseable date")
    out["year"] = out["observation_date"].dt.year.astype(int)
    out["day_of_year"] = out["observation_date"].dt.dayofyear.astype(int)
    if "time_observations_started" in out.columns:
        out["hours_of_day"] = _decimal_hours(out["time_observations_started"])
    elif "hours_of_day" not in out.columns:
        out["hours_of_day"] = np.nan

    # "X" = present but not counted
    out[RESPONSE] = pd.to_numeric(out[RESPONSE].replace({"X": np.nan, "x": np.nan}), errors="coerce")

    for c in ("duration_minutes", "effort_distance_km", "number_observers"):
        if c in out.columns:
            out[c] = pd.to_numeric(out[c], errors="coerce")
    if "protocol_type" in out.columns:
        protocol = out["protocol_type"].astype("string").str.strip().str.lower()
        stationary = protocol == STATIONARY
        if "effort_distance_km" not in out.columns:
            out["effort_distance_km"] = np.nan
        out.loc[stationary.fillna(False), "effort_distance_km"] = 0.0
        out["protocol_type"] = protocol

    if effort is not None:
        out = effort.apply(out)
    return out.reset_index(drop=True)


def distinct_locations(df: pd.DataFrame) -> pd.DataFrame:
    """One (locality_id, latitude, longitude) row per locality."""
    locs = df[[LOCATION_KEY, "latitude", "longitude"]].drop_duplicates()
    conflicts = locs[LOCATION_KEY].duplicated(keep="first")
    if conflicts.any():
        logger.warning("%d localities carry more than one coordinate pair; keeping the first",
                       int(locs.loc[conflicts, LOCATION_KEY].nunique()))
    locs = locs.loc[~conflicts]
    return locs.sort_values(LOCATION_KEY).reset_index(drop=True)


def location_years(df: pd.DataFrame) -> pd.DataFrame:
    """Distinct (locality_id, year) pairs present in the observation data."""
    return (df[[LOCATION_KEY, "year"]].drop_duplicates()
            .sort_values([LOCATION_KEY, "year"]).reset_index(drop=True))
