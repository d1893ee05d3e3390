#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""Join species observations to the covariate table and split by year.

Order matters for the drop accounting:
  1. inner join on (locality_id, year)       -> join misses counted
  2. rows with missing count removed         -> missing responses counted
  3. year split: each year goes wholly to train or to test
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Iterable, List, Optional

import pandas as pd

from bird_sdm.errors import JoinMiss, MissingResponseValue
from bird_sdm.preprocessing.observations import LOCATION_KEY, RESPONSE

logger = logging.getLogger(__name__)

KEY = [LOCATION_KEY, "year"]


@dataclass
class JoinReport:
    n_observations: int = 0
    n_join_miss: int = 0
    n_missing_response: int = 0
    n_train: int = 0
    n_test: int = 0
    train_years: List[int] = field(default_factory=list)
    test_years: List[int] = field(default_factory=list)

    def as_dict(self):
        return asdict(self)


@dataclass
class JoinResult:
    train: pd.DataFrame
    test: pd.DataFrame
    report: JoinReport

    @property
    def model_input(self) -> pd.DataFrame:
        return pd.concat([self.train, self.test], ignore_index=True)


def join_covariates(observations: pd.DataFrame, covariates: pd.DataFrame, strict: bool = False):
    """Inner join on (locality_id, year). Returns (joined, n_join_miss)."""
    if covariates.duplicated(subset=KEY).any():
        raise ValueError("Covariate table has duplicate (locality_id, year) keys")
    cov = covariates.copy()
    cov[LOCATION_KEY] = cov[LOCATION_KEY].astype(str)
    cov["year"] = cov["year"].astype(int)
    obs = observations.copy()
    obs[LOCATION_KEY] = obs[LOCATION_KEY].astype(str)
    obs["year"] = obs["year"].astype(int)

    overlap = [c for c in cov.columns if c in obs.columns and c not in KEY]
    if overlap:
        obs = obs.drop(columns=overlap)
    joined = obs.merge(cov, on=KEY, how="left", indicator=True, validate="many_to_one")
    miss = joined["_merge"] == "left_only"
    n_miss = int(miss.sum())
    if n_miss and strict:
        sample = joined.loc[miss, KEY].drop_duplicates().head(5).to_dict("records")
        raise JoinMiss(f"{n_miss} observation rows without covariates, e.g. {sample}")
    joined = joined.loc[~miss].drop(columns="_merge").reset_index(drop=True)
    return joined, n_miss


def drop_missing_response(df: pd.DataFrame, response: str = RESPONSE, strict: bool = False):
    """Remove rows whose count is missing. Returns (kept, n_dropped)."""
    missing = df[response].isna()
    n = int(missing.sum())
    if n and strict:
        raise MissingResponseValue(f"{n} rows have no {response}")
    return df.loc[~missing].reset_index(drop=True), n


def split_by_year(df: pd.DataFrame, test_years: Optional[Iterable[int]] = None):
    """Disjoint train/test by year. Default test set: the latest year present."""
    years = sorted(int(y) for y in df["year"].unique())
    if test_years is None or not list(test_years):
        test = set(years[-1:])
    else:
        test = set(int(y) for y in test_years)
    is_test = df["year"].astype(int).isin(test)
    train_df = df.loc[~is_test].reset_index(drop=True)
    test_df = df.loc[is_test].reset_index(drop=True)
    return train_df, test_df


def join_observations(observations: pd.DataFrame, covariates: pd.DataFrame,
                      test_years: Optional[Iterable[int]] = None,
                      response: str = RESPONSE, strict: bool = False) -> JoinResult:
    report = JoinReport(n_observations=len(observations))
    joined, report.n_join_miss = join_covariates(observations, covariates, strict=strict)
    usable, report.n_missing_response = drop_missing_response(joined, response=response, strict=strict)
    train, test = split_by_year(usable, test_years)
    report.n_train, report.n_test = len(train), len(test)
    report.train_years = sorted(int(y) for y in train["year"].unique())
    report.test_years = sorted(int(y) for y in test["year"].unique())
    logger.info("Join: %d observations, %d join misses, %d missing counts -> train=%d test=%d",
                report.n_observations, report.n_join_miss, report.n_missing_response,
                report.n_train, report.n_test)
    return JoinResult(train=train, test=test, report=report)
